from __future__ import annotations


class TorSidecarError(Exception):
    """Base exception for sidecar failures."""


class TorControlError(TorSidecarError):
    """Raised when the Tor control port cannot answer a command."""


class TorConnectionError(TorControlError):
    """Raised when the control connection is unreachable or dropped mid-exchange."""


class TorProtocolError(TorControlError):
    """Raised when the control port answers with an unexpected status."""

    def __init__(self, message: str, status_code: str = "", reply: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reply = reply


class TorAuthenticationError(TorProtocolError):
    """Raised when AUTHENTICATE is rejected."""


class WebhookDeliveryError(TorSidecarError):
    """Raised when a webhook receiver answers with a non-2xx status."""

    def __init__(self, status: int, body: str = "") -> None:
        super().__init__(f"webhook returned status {status}: {body}")
        self.status = status
        self.body = body
