from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
from aiohttp import ClientTimeout
from aiohttp_socks import ProxyConnector, ProxyError

from .config_manager import SidecarSettings
from .logging_utils import get_logger
from .statistics_manager import MetricsSink, NullMetricsSink
from .version import user_agent

MAX_RETRIES = 2
INITIAL_BACKOFF_SECONDS = 1.0


class Dialect(str, Enum):
    """How an IP-identification service phrases its answer."""

    TORPROJECT = "torproject"
    DAN_ME_UK = "dan_me_uk"
    IPINFO = "ipinfo"
    UNKNOWN = "unknown"


_DIALECT_HOSTS = (
    ("check.torproject.org", Dialect.TORPROJECT),
    ("check.dan.me.uk", Dialect.DAN_ME_UK),
    ("ipinfo.io", Dialect.IPINFO),
)


def dialect_for_url(url: str) -> Dialect:
    host = (urlparse(url).hostname or "").lower()
    for suffix, dialect in _DIALECT_HOSTS:
        if host == suffix or host.endswith("." + suffix):
            return dialect
    return Dialect.UNKNOWN


@dataclass(frozen=True)
class VerificationEndpoint:
    url: str
    dialect: Dialect

    @classmethod
    def from_url(cls, url: str) -> "VerificationEndpoint":
        return cls(url=url, dialect=dialect_for_url(url))


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    is_tor: bool = False
    ip: str = ""
    endpoint: str = ""
    checked_at: str = ""
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("ip", "endpoint", "error"):
            if not payload[key]:
                del payload[key]
        return payload


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(body: str) -> Optional[Dict[str, Any]]:
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def interpret_response(dialect: Dialect, body: str) -> Tuple[bool, str]:
    """Return ``(is_tor, ip)`` for a response body in the given dialect."""

    if dialect is Dialect.TORPROJECT:
        payload = _load_json(body)
        if payload is None:
            return False, ""
        return payload.get("IsTor") is True, str(payload.get("IP") or "")

    if dialect is Dialect.DAN_ME_UK:
        return "yes" in body.lower(), ""

    if dialect is Dialect.IPINFO:
        payload = _load_json(body)
        if payload is None:
            return False, ""
        org = str(payload.get("org") or "")
        return "tor" in org.lower(), str(payload.get("ip") or "")

    return False, ""


@dataclass(frozen=True)
class _ProbeOutcome:
    reachable: bool
    is_tor: bool = False
    ip: str = ""
    error: str = ""


class EgressVerifier:
    """Confirm that outbound traffic leaves through Tor.

    Endpoints are tried in order with up to ``MAX_RETRIES`` retries each and
    exponential backoff between attempts. A reachable endpoint that does not
    identify the request as coming from Tor is not retried. Every outcome is
    returned as a ``VerificationResult``; nothing is raised.
    """

    def __init__(
        self,
        endpoints: Iterable[VerificationEndpoint],
        timeout_seconds: float,
        proxy_url: Optional[str] = None,
        metrics: Optional[MetricsSink] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._endpoints: List[VerificationEndpoint] = list(endpoints)
        self._timeout = timeout_seconds
        self._proxy_url = proxy_url
        self._metrics = metrics or NullMetricsSink()
        self._sleep = sleep
        self._logger = get_logger("egress")

    @classmethod
    def from_settings(
        cls, settings: SidecarSettings, metrics: Optional[MetricsSink] = None
    ) -> "EgressVerifier":
        return cls(
            [VerificationEndpoint.from_url(url) for url in settings.external_endpoints],
            timeout_seconds=settings.external_timeout_seconds,
            proxy_url=settings.socks_proxy_url,
            metrics=metrics,
        )

    @property
    def endpoints(self) -> List[VerificationEndpoint]:
        return list(self._endpoints)

    def _create_session(self) -> aiohttp.ClientSession:
        timeout = ClientTimeout(total=self._timeout)
        headers = {"User-Agent": user_agent()}
        if self._proxy_url:
            connector = ProxyConnector.from_url(self._proxy_url)
            return aiohttp.ClientSession(connector=connector, timeout=timeout, headers=headers)
        return aiohttp.ClientSession(timeout=timeout, headers=headers)

    async def check(self) -> VerificationResult:
        failures: List[str] = []
        try:
            async with self._create_session() as session:
                for endpoint in self._endpoints:
                    result = await self._check_endpoint(session, endpoint)
                    if result.success:
                        return result
                    failures.append(f"{endpoint.url}: {result.error}")
        except (aiohttp.ClientError, ValueError) as error:
            self._logger.error("Unable to create egress check session: %s", error)
            failures.append(str(error))

        message = "all endpoints failed"
        if failures:
            message = f"{message}: {'; '.join(failures)}"
        self._logger.warning("Egress verification failed: %s", message)
        return VerificationResult(success=False, checked_at=_now(), error=message)

    async def _check_endpoint(
        self, session: aiohttp.ClientSession, endpoint: VerificationEndpoint
    ) -> VerificationResult:
        backoff = INITIAL_BACKOFF_SECONDS
        attempts = MAX_RETRIES + 1
        last_error = ""
        for attempt in range(attempts):
            if attempt > 0:
                await self._sleep(backoff)
                backoff *= 2

            outcome = await self._probe_once(session, endpoint)
            self._metrics.observe_external_check(endpoint.url, outcome.reachable, outcome.is_tor)

            if outcome.reachable and outcome.is_tor:
                self._logger.info("Egress verified via %s (exit IP %s)", endpoint.url, outcome.ip or "unknown")
                return VerificationResult(
                    success=True,
                    is_tor=True,
                    ip=outcome.ip,
                    endpoint=endpoint.url,
                    checked_at=_now(),
                )
            if outcome.reachable:
                self._logger.warning("%s reachable but traffic is not identified as Tor", endpoint.url)
                return VerificationResult(
                    success=False,
                    is_tor=False,
                    ip=outcome.ip,
                    endpoint=endpoint.url,
                    checked_at=_now(),
                    error="traffic not identified as Tor",
                )

            last_error = outcome.error
            self._logger.warning(
                "Egress check attempt %s/%s failed for %s: %s",
                attempt + 1,
                attempts,
                endpoint.url,
                outcome.error,
            )

        return VerificationResult(
            success=False,
            endpoint=endpoint.url,
            checked_at=_now(),
            error=f"failed after {MAX_RETRIES} retries: {last_error}",
        )

    async def _probe_once(
        self, session: aiohttp.ClientSession, endpoint: VerificationEndpoint
    ) -> _ProbeOutcome:
        try:
            async with session.get(endpoint.url) as response:
                if not 200 <= response.status < 300:
                    return _ProbeOutcome(reachable=False, error=f"HTTP {response.status}")
                body = await response.text(errors="replace")
        except (aiohttp.ClientError, ProxyError, asyncio.TimeoutError, OSError) as error:
            return _ProbeOutcome(reachable=False, error=str(error) or type(error).__name__)

        is_tor, ip = interpret_response(endpoint.dialect, body)
        return _ProbeOutcome(reachable=True, is_tor=is_tor, ip=ip)
