from __future__ import annotations

import argparse
import logging
import os
import re
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional

_logger = logging.getLogger("tor_health_sidecar.config")

_MIN_EXTERNAL_TIMEOUT = 1
_MAX_EXTERNAL_TIMEOUT = 15

EVENT_CIRCUIT_RENEWED = "circuit_renewed"
EVENT_BOOTSTRAP_FAILED = "bootstrap_failed"
EVENT_HEALTH_CHANGED = "health_changed"

WEBHOOK_TEMPLATES = ("discord", "slack", "gotify", "json")
DEFAULT_EXTERNAL_ENDPOINTS = ("https://check.torproject.org/api/ip",)
DEFAULT_WEBHOOK_EVENTS = (
    EVENT_CIRCUIT_RENEWED,
    EVENT_BOOTSTRAP_FAILED,
    EVENT_HEALTH_CHANGED,
)

_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m)?$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, None: 1.0}
_MIN_PORT = 1
_MAX_PORT = 65_535


def _normalize_log_level(level: str) -> str:
    normalized = level.upper()
    allowed = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if normalized not in allowed:
        raise ValueError(f"Unsupported log level: {level}")
    return normalized


def _is_host_port(value: str) -> bool:
    host, _, port = value.rpartition(":")
    return bool(host) and port.isdigit() and _MIN_PORT <= int(port) <= _MAX_PORT


def _split_list(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def parse_duration(value: str) -> float:
    """Parse ``10``, ``10s``, ``500ms`` or ``1m`` into seconds."""

    match = _DURATION_PATTERN.match(value.strip().lower())
    if not match:
        raise ValueError(f"Invalid duration: {value}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


@dataclass(frozen=True)
class SidecarSettings:
    """Immutable runtime configuration produced once at startup."""

    control_address: str = "127.0.0.1:9051"
    control_password: str = ""
    control_timeout_seconds: float = 5.0

    health_port: int = 8085
    external_timeout_seconds: int = 15
    external_endpoints: tuple[str, ...] = DEFAULT_EXTERNAL_ENDPOINTS
    socks_proxy_url: str = "socks5://127.0.0.1:9050"

    log_level: str = "INFO"
    log_verbose: bool = False

    webhook_url: str = ""
    webhook_template: str = "json"
    webhook_events: tuple[str, ...] = field(default=DEFAULT_WEBHOOK_EVENTS)
    webhook_timeout_seconds: float = 10.0
    webhook_max_in_flight: int = 8

    def __post_init__(self) -> None:
        _normalize_log_level(self.log_level)
        if not _is_host_port(self.control_address):
            raise ValueError(f"control_address must be host:port, got {self.control_address!r}")
        if not (_MIN_PORT <= self.health_port <= _MAX_PORT):
            raise ValueError("health_port must be a valid TCP port")
        if not (_MIN_EXTERNAL_TIMEOUT <= self.external_timeout_seconds <= _MAX_EXTERNAL_TIMEOUT):
            raise ValueError(
                f"external_timeout_seconds must be between {_MIN_EXTERNAL_TIMEOUT} "
                f"and {_MAX_EXTERNAL_TIMEOUT}, got {self.external_timeout_seconds}"
            )
        if not self.external_endpoints:
            raise ValueError("at least one external endpoint is required")
        if self.webhook_template not in WEBHOOK_TEMPLATES:
            raise ValueError(f"Unsupported webhook template: {self.webhook_template}")
        if self.webhook_timeout_seconds <= 0:
            raise ValueError("webhook_timeout_seconds must be positive")
        if self.webhook_max_in_flight <= 0:
            raise ValueError("webhook_max_in_flight must be positive")

    @property
    def control_host(self) -> str:
        return self.control_address.rpartition(":")[0]

    @property
    def control_port(self) -> int:
        return int(self.control_address.rpartition(":")[2])

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.webhook_url)


def _get_env(env: Mapping[str, str], key: str, default: str) -> str:
    value = env.get(key, "").strip()
    return value or default


def _get_env_int(
    env: Mapping[str, str],
    key: str,
    default: int,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        _logger.warning("Invalid configuration value for %s: %r, using default %s", key, raw, default)
        return default
    if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
        _logger.warning("%s=%s out of range, using default %s", key, value, default)
        return default
    return value


def _get_env_duration(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        value = parse_duration(raw)
    except ValueError:
        _logger.warning("Invalid duration value for %s: %r, using default %ss", key, raw, default)
        return default
    if value <= 0:
        _logger.warning("%s must be positive, using default %ss", key, default)
        return default
    return value


def _get_env_address(env: Mapping[str, str], key: str, default: str) -> str:
    value = _get_env(env, key, default)
    if not _is_host_port(value):
        _logger.warning("Invalid address for %s: %r, using default %s", key, value, default)
        return default
    return value


def _resolve_template(webhook_url: str, raw_template: str) -> str:
    template = raw_template.lower()
    if not webhook_url:
        return template if template in WEBHOOK_TEMPLATES else "json"
    if not template:
        return "discord"
    if template not in WEBHOOK_TEMPLATES:
        _logger.error(
            "Invalid webhook template %r, defaulting to json (valid options: %s)",
            template,
            ", ".join(WEBHOOK_TEMPLATES),
        )
        return "json"
    return template


def load_settings(
    args: argparse.Namespace | None = None,
    env: Optional[Mapping[str, str]] = None,
) -> SidecarSettings:
    env = os.environ if env is None else env

    timeout = _get_env_int(env, "HEALTH_EXTERNAL_TIMEOUT", 15)
    clamped = min(max(timeout, _MIN_EXTERNAL_TIMEOUT), _MAX_EXTERNAL_TIMEOUT)
    if clamped != timeout:
        _logger.warning("HEALTH_EXTERNAL_TIMEOUT=%s out of range, using %s", timeout, clamped)

    webhook_url = _get_env(env, "WEBHOOK_URL", "")
    settings = SidecarSettings(
        control_address=_get_env_address(env, "TOR_CONTROL_ADDRESS", "127.0.0.1:9051"),
        control_password=env.get("TOR_CONTROL_PASSWORD", ""),
        health_port=_get_env_int(env, "HEALTH_PORT", 8085, _MIN_PORT, _MAX_PORT),
        external_timeout_seconds=clamped,
        external_endpoints=_split_list(env.get("HEALTH_EXTERNAL_ENDPOINTS", ""))
        or DEFAULT_EXTERNAL_ENDPOINTS,
        log_level=_normalize_log_level(_get_env(env, "LOG_LEVEL", "INFO")),
        log_verbose=_get_env(env, "LOG_VERBOSE", "false").lower() in {"1", "true", "yes"},
        webhook_url=webhook_url,
        webhook_template=_resolve_template(webhook_url, _get_env(env, "WEBHOOK_TEMPLATE", "")),
        webhook_events=_split_list(env.get("WEBHOOK_EVENTS", "")) or DEFAULT_WEBHOOK_EVENTS,
        webhook_timeout_seconds=_get_env_duration(env, "WEBHOOK_TIMEOUT", 10.0),
    )

    if args is not None:
        overrides: dict[str, object] = {}
        if getattr(args, "port", None) is not None:
            overrides["health_port"] = args.port
        if getattr(args, "log_level", None) is not None:
            overrides["log_level"] = _normalize_log_level(args.log_level)
        if getattr(args, "control_address", None) is not None:
            overrides["control_address"] = args.control_address
        if overrides:
            settings = replace(settings, **overrides)

    return settings


def _tcp_port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}") from None
    if not _MIN_PORT <= port <= _MAX_PORT:
        raise argparse.ArgumentTypeError(f"port out of range: {port}")
    return port


def _host_port(value: str) -> str:
    if not _is_host_port(value):
        raise argparse.ArgumentTypeError(f"expected host:port, got {value!r}")
    return value


def _log_level(value: str) -> str:
    try:
        return _normalize_log_level(value)
    except ValueError as error:
        raise argparse.ArgumentTypeError(str(error)) from None


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tor control-port health sidecar")
    parser.add_argument(
        "--port",
        dest="port",
        type=_tcp_port,
        default=None,
        help="HTTP listen port (overrides HEALTH_PORT)",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        type=_log_level,
        default=None,
        help="Logging level (overrides LOG_LEVEL)",
    )
    parser.add_argument(
        "--control-address",
        dest="control_address",
        type=_host_port,
        default=None,
        help="Tor control port host:port (overrides TOR_CONTROL_ADDRESS)",
    )
    return parser
