from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Optional

from .exceptions import TorControlError
from .logging_utils import get_logger
from .tor_control import TorControlLink

STATUS_KEYS = (
    "version",
    "status/bootstrap-phase",
    "status/circuit-established",
    "traffic/read",
    "traffic/written",
    "circuit-status",
)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_INT64_PATTERN = re.compile(r"^[+-]?\d+$")
_LEADING_DIGITS = re.compile(r"^(\d+)")


@dataclass(frozen=True)
class TrafficStats:
    bytes_read: int = 0
    bytes_written: int = 0


@dataclass(frozen=True)
class StatusSnapshot:
    version: str = ""
    bootstrap_phase: int = 0
    circuit_established: bool = False
    num_circuits: int = 0
    traffic: TrafficStats = field(default_factory=TrafficStats)

    @property
    def ready(self) -> bool:
        return self.bootstrap_phase >= 100


def parse_bootstrap_progress(phase: Optional[str]) -> int:
    """Extract PROGRESS=<n> from a bootstrap-phase line, 0 when absent."""

    if not phase:
        return 0
    progress = 0
    for token in phase.split():
        if not token.startswith("PROGRESS="):
            continue
        match = _LEADING_DIGITS.match(token[len("PROGRESS="):])
        if match:
            progress = int(match.group(1))
    return progress


def parse_int64(value: Optional[str]) -> int:
    if value is None:
        return 0
    value = value.strip()
    if not _INT64_PATTERN.match(value):
        return 0
    number = int(value)
    if not (_INT64_MIN <= number <= _INT64_MAX):
        return 0
    return number


def count_built_circuits(circuit_status: Optional[str]) -> int:
    """Count circuit-status entries in the BUILT state."""

    if not circuit_status:
        return 0
    built = 0
    for line in circuit_status.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "BUILT":
            built += 1
    return built


def snapshot_from_info(info: Dict[str, str]) -> StatusSnapshot:
    return StatusSnapshot(
        version=info.get("version", ""),
        bootstrap_phase=parse_bootstrap_progress(info.get("status/bootstrap-phase")),
        circuit_established=info.get("status/circuit-established") == "1",
        num_circuits=count_built_circuits(info.get("circuit-status")),
        traffic=TrafficStats(
            bytes_read=parse_int64(info.get("traffic/read")),
            bytes_written=parse_int64(info.get("traffic/written")),
        ),
    )


class StatusReader:
    """Query Tor's state through the control link."""

    def __init__(self, link: TorControlLink) -> None:
        self._link = link
        self._logger = get_logger("status")

    async def get_status(self) -> StatusSnapshot:
        info = await self._link.get_info(*STATUS_KEYS)
        snapshot = snapshot_from_info(info)
        self._logger.debug(
            "Tor status: bootstrap=%s%% circuit_established=%s circuits=%s",
            snapshot.bootstrap_phase,
            snapshot.circuit_established,
            snapshot.num_circuits,
        )
        return snapshot

    async def is_ready(self) -> bool:
        try:
            snapshot = await self.get_status()
        except TorControlError as error:
            self._logger.debug("Readiness query failed: %s", error)
            return False
        return snapshot.ready
