from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import aiohttp

from .config_manager import SidecarSettings
from .exceptions import WebhookDeliveryError
from .logging_utils import get_logger
from .statistics_manager import MetricsSink, NullMetricsSink
from .version import COMMIT, __version__, user_agent


class EventKind(str, Enum):
    CIRCUIT_RENEWED = "circuit_renewed"
    BOOTSTRAP_FAILED = "bootstrap_failed"
    HEALTH_CHANGED = "health_changed"


@dataclass(frozen=True)
class EventDetails:
    bootstrap: Optional[int] = None
    circuits: int = 0
    healthy: bool = False
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.bootstrap is not None:
            payload["bootstrap"] = self.bootstrap
        if self.circuits > 0:
            payload["circuits"] = self.circuits
        payload["healthy"] = self.healthy
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class NotificationEvent:
    kind: EventKind
    message: str
    details: EventDetails = field(default_factory=EventDetails)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# Discord colour, Slack colour keyword, Gotify priority
_EVENT_STYLE: Dict[EventKind, Tuple[int, str, int]] = {
    EventKind.CIRCUIT_RENEWED: (3447003, "good", 5),
    EventKind.BOOTSTRAP_FAILED: (15158332, "danger", 8),
    EventKind.HEALTH_CHANGED: (15844367, "warning", 6),
}
_DEFAULT_STYLE = (9807270, "#95a5a6", 5)

_JSON = "application/json"


def _style(kind: EventKind) -> Tuple[int, str, int]:
    return _EVENT_STYLE.get(kind, _DEFAULT_STYLE)


def _detail_fields(details: EventDetails) -> List[Tuple[str, str, bool]]:
    fields: List[Tuple[str, str, bool]] = []
    if details.bootstrap is not None:
        fields.append(("Bootstrap", f"{details.bootstrap}%", True))
    if details.circuits > 0:
        fields.append(("Circuits", str(details.circuits), True))
    if details.error:
        fields.append(("Error", details.error, False))
    return fields


def format_discord(event: NotificationEvent) -> Dict[str, Any]:
    embed = {
        "title": event.kind.value,
        "description": event.message,
        "color": _style(event.kind)[0],
        "timestamp": event.timestamp.isoformat(),
        "footer": {"text": f"tor-health-sidecar v{__version__}"},
        "fields": [
            {"name": name, "value": value, "inline": inline}
            for name, value, inline in _detail_fields(event.details)
        ],
    }
    return {"embeds": [embed]}


def format_slack(event: NotificationEvent) -> Dict[str, Any]:
    attachment = {
        "title": event.kind.value,
        "text": event.message,
        "color": _style(event.kind)[1],
        "footer": f"tor-health-sidecar v{__version__}",
        "ts": int(event.timestamp.timestamp()),
        "fields": [
            {"title": name, "value": value, "short": short}
            for name, value, short in _detail_fields(event.details)
        ],
    }
    return {"attachments": [attachment]}


def format_gotify(event: NotificationEvent) -> Dict[str, Any]:
    return {
        "title": event.kind.value,
        "message": event.message,
        "priority": _style(event.kind)[2],
        "extras": {"client::display": {"contentType": "text/markdown"}},
    }


def format_json(event: NotificationEvent) -> Dict[str, Any]:
    return {
        "event": event.kind.value,
        "timestamp": event.timestamp.isoformat(),
        "message": event.message,
        "details": event.details.to_dict(),
        "version": __version__,
        "commit": COMMIT,
    }


_FORMATTERS: Dict[str, Callable[[NotificationEvent], Dict[str, Any]]] = {
    "discord": format_discord,
    "slack": format_slack,
    "gotify": format_gotify,
    "json": format_json,
}


def format_payload(template: str, event: NotificationEvent) -> Tuple[bytes, str]:
    """Serialize an event for the given template; unknown templates use plain JSON."""

    formatter = _FORMATTERS.get(template, format_json)
    return json.dumps(formatter(event)).encode("utf-8"), _JSON


class WebhookNotifier:
    """POST notification events to a webhook receiver."""

    def __init__(
        self, url: str, template: str = "json", client: Optional[aiohttp.ClientSession] = None
    ) -> None:
        self._url = url
        self._template = template
        self._client = client
        self._logger = get_logger("webhook")

    @property
    def template(self) -> str:
        return self._template

    def _get_client(self) -> aiohttp.ClientSession:
        if self._client is None:
            self._client = aiohttp.ClientSession()
        return self._client

    async def send(self, event: NotificationEvent) -> None:
        body, content_type = format_payload(self._template, event)
        headers = {"Content-Type": content_type, "User-Agent": user_agent()}
        async with self._get_client().post(self._url, data=body, headers=headers) as response:
            if not 200 <= response.status < 300:
                text = await response.text()
                raise WebhookDeliveryError(response.status, text)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class NotificationDispatcher:
    """Deliver events on detached, timeout-bound tasks.

    Delivery is at-most-once: failures are logged and counted, never retried
    or surfaced to the caller. At most ``max_in_flight`` deliveries run at a
    time; events beyond that are dropped.
    """

    def __init__(
        self,
        notifier: Optional[WebhookNotifier],
        events: Iterable[str],
        timeout_seconds: float,
        metrics: Optional[MetricsSink] = None,
        max_in_flight: int = 8,
    ) -> None:
        self._notifier = notifier
        self._events = frozenset(events)
        self._timeout = timeout_seconds
        self._metrics = metrics or NullMetricsSink()
        self._max_in_flight = max_in_flight
        self._tasks: Set[asyncio.Task] = set()
        self._logger = get_logger("notify")

    @classmethod
    def from_settings(
        cls, settings: SidecarSettings, metrics: Optional[MetricsSink] = None
    ) -> "NotificationDispatcher":
        notifier = None
        if settings.webhook_enabled:
            notifier = WebhookNotifier(settings.webhook_url, settings.webhook_template)
        return cls(
            notifier,
            settings.webhook_events,
            settings.webhook_timeout_seconds,
            metrics=metrics,
            max_in_flight=settings.webhook_max_in_flight,
        )

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def is_enabled(self, kind: EventKind) -> bool:
        return self._notifier is not None and kind.value in self._events

    def dispatch(self, event: NotificationEvent) -> Optional[asyncio.Task]:
        if not self.is_enabled(event.kind):
            return None
        if len(self._tasks) >= self._max_in_flight:
            self._logger.warning(
                "Dropping %s notification: %s deliveries already in flight",
                event.kind.value,
                len(self._tasks),
            )
            return None
        task = asyncio.create_task(self._deliver(event), name=f"webhook-{event.kind.value}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, event: NotificationEvent) -> None:
        if self._notifier is None:
            return
        start = time.monotonic()
        success = False
        try:
            await asyncio.wait_for(self._notifier.send(event), self._timeout)
            success = True
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self._logger.error(
                "Webhook notification %s timed out after %.1fs", event.kind.value, self._timeout
            )
        except Exception as error:  # noqa: BLE001
            self._logger.error("Webhook notification %s failed: %s", event.kind.value, error)
        duration = time.monotonic() - start
        self._metrics.observe_webhook(event.kind.value, success, duration)
        if success:
            self._logger.debug("Webhook notification %s sent in %.3fs", event.kind.value, duration)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self._notifier is not None:
            await self._notifier.close()
