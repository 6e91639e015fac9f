from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Optional

from aiohttp import web

from .config_manager import SidecarSettings
from .exceptions import TorControlError
from .exit_verifier import EgressVerifier
from .health_tracker import HealthEvaluator, ReadinessTracker
from .logging_utils import get_logger
from .models import (
    STATUS_ERROR,
    STATUS_NOT_READY,
    STATUS_OK,
    STATUS_READY,
    create_error_response,
    create_status_response,
    snapshot_to_response,
)
from .statistics_manager import StatisticsManager
from .tor_control import TorControlLink
from .tor_status import StatusReader
from .webhook_notifier import EventDetails, EventKind, NotificationDispatcher, NotificationEvent

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

_PROMETHEUS_CONTENT_TYPE = "text/plain"

# Label for requests that match no registered route (404, 405).
UNMATCHED_ROUTE = "unmatched"


def _route_path(request: web.Request) -> str:
    resource = getattr(request.match_info.route, "resource", None)
    if resource is not None:
        return resource.canonical
    return UNMATCHED_ROUTE


def instrument_middleware(metrics: StatisticsManager, logger: logging.Logger):
    """Log every request and record its count and duration."""

    @web.middleware
    async def instrument(request: web.Request, handler: Handler) -> web.StreamResponse:
        start = time.monotonic()
        status = 500
        try:
            response = await handler(request)
            status = response.status
            return response
        except web.HTTPException as error:
            status = error.status
            raise
        finally:
            duration = time.monotonic() - start
            logger.info(
                "request handled method=%s path=%s status=%s duration=%.3fs",
                request.method,
                request.path,
                status,
                duration,
            )
            metrics.observe_request(_route_path(request), request.method, status, duration)

    return instrument


class HealthServer:
    """HTTP surface exposing Tor liveness, readiness and diagnostics."""

    def __init__(
        self,
        settings: SidecarSettings,
        link: Optional[TorControlLink] = None,
        metrics: Optional[StatisticsManager] = None,
        verifier: Optional[EgressVerifier] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self._settings = settings
        self._logger = get_logger("server")
        self.metrics = metrics or StatisticsManager()
        self.link = link or TorControlLink.from_settings(settings)
        self.reader = StatusReader(self.link)
        self.evaluator = HealthEvaluator(self.reader, ReadinessTracker(), self.metrics)
        self.verifier = verifier or EgressVerifier.from_settings(settings, self.metrics)
        self.dispatcher = dispatcher or NotificationDispatcher.from_settings(settings, self.metrics)

        self.app = web.Application(middlewares=[instrument_middleware(self.metrics, self._logger)])
        self._register_routes()
        self.app.on_cleanup.append(self._on_cleanup)

    def _register_routes(self) -> None:
        self.app.router.add_get("/ping", self.ping)
        self.app.router.add_get("/health", self.health)
        self.app.router.add_get("/ready", self.ready)
        self.app.router.add_get("/status", self.status)
        self.app.router.add_post("/renew", self.renew)
        self.app.router.add_get("/metrics", self.metrics_text)

    async def ping(self, request: web.Request) -> web.Response:
        return web.json_response(create_status_response(STATUS_OK))

    async def health(self, request: web.Request) -> web.Response:
        outcome = await self.evaluator.evaluate()
        for event in outcome.events:
            self.dispatcher.dispatch(event)

        if not outcome.healthy:
            return web.json_response(
                create_error_response("tor not ready", status=STATUS_NOT_READY), status=503
            )
        return web.json_response(create_status_response(STATUS_READY))

    async def ready(self, request: web.Request) -> web.Response:
        """Verify egress through the proxy; slow, not meant for frequent polling."""

        result = await self.verifier.check()
        return web.json_response(result.to_dict(), status=200 if result.success else 503)

    async def status(self, request: web.Request) -> web.Response:
        try:
            snapshot = await self.reader.get_status()
        except TorControlError as error:
            return web.json_response(create_error_response(str(error), status=STATUS_ERROR), status=503)

        self.metrics.observe_tor_status(snapshot)
        return web.json_response(snapshot_to_response(snapshot))

    async def renew(self, request: web.Request) -> web.Response:
        try:
            await self.link.signal("NEWNYM")
        except TorControlError as error:
            self._logger.error("NEWNYM failed: %s", error)
            return web.json_response(create_error_response(str(error)), status=500)

        try:
            snapshot = await self.reader.get_status()
        except TorControlError as error:
            self._logger.warning(
                "Failed to get Tor status after NEWNYM; skipping circuit renewal notification: %s", error
            )
        else:
            self.dispatcher.dispatch(
                NotificationEvent(
                    EventKind.CIRCUIT_RENEWED,
                    "Tor circuit renewal requested",
                    EventDetails(circuits=snapshot.num_circuits, healthy=snapshot.circuit_established),
                )
            )

        return web.json_response(create_status_response(STATUS_OK, "Signal NEWNYM sent"))

    async def metrics_text(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self.metrics.render_prometheus(),
            content_type=_PROMETHEUS_CONTENT_TYPE,
            charset="utf-8",
        )

    async def _on_cleanup(self, app: web.Application) -> None:
        self._logger.info("Shutting down health server")
        await self.link.close()
        await self.dispatcher.close()
