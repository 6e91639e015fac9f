from __future__ import annotations

import pytest

from fakes import FakeControlPort, getinfo_lines, make_link
from tor_health_sidecar.exceptions import TorConnectionError
from tor_health_sidecar.tor_status import (
    STATUS_KEYS,
    StatusReader,
    StatusSnapshot,
    count_built_circuits,
    parse_bootstrap_progress,
    parse_int64,
    snapshot_from_info,
)


@pytest.mark.parametrize(
    "phase, expected",
    [
        ('NOTICE BOOTSTRAP PROGRESS=100 TAG=done SUMMARY="Done"', 100),
        ('NOTICE BOOTSTRAP PROGRESS=45 TAG=loading_descriptors', 45),
        ("NOTICE BOOTSTRAP PROGRESS=85abc TAG=ap_conn", 85),
        ("NOTICE BOOTSTRAP PROGRESS=abc", 0),
        ("NOTICE BOOTSTRAP TAG=starting", 0),
        ("", 0),
        (None, 0),
    ],
)
def test_parse_bootstrap_progress(phase, expected):
    assert parse_bootstrap_progress(phase) == expected


@pytest.mark.parametrize(
    "value, expected",
    [
        ("1024", 1024),
        ("9223372036854775807", 2**63 - 1),
        ("9223372036854775808", 0),
        ("-5", -5),
        ("12.5", 0),
        ("lots", 0),
        ("", 0),
        (None, 0),
    ],
)
def test_parse_int64(value, expected):
    assert parse_int64(value) == expected


@pytest.mark.parametrize("bootstrap, ready", [(99, False), (100, True), (101, True), (0, False)])
def test_snapshot_ready_threshold(bootstrap, ready):
    assert StatusSnapshot(bootstrap_phase=bootstrap).ready is ready


def test_missing_traffic_keys_default_to_zero():
    snapshot = snapshot_from_info({"version": "0.4.8.10"})
    assert snapshot.traffic.bytes_read == 0
    assert snapshot.traffic.bytes_written == 0
    assert snapshot.bootstrap_phase == 0
    assert snapshot.circuit_established is False
    assert snapshot.num_circuits == 0


@pytest.mark.parametrize("raw, expected", [("1", True), ("0", False), ("true", False), (" 1", False)])
def test_circuit_established_requires_literal_one(raw, expected):
    snapshot = snapshot_from_info({"status/circuit-established": raw})
    assert snapshot.circuit_established is expected


def test_count_built_circuits_ignores_other_states():
    status = "\n".join(
        [
            "1 BUILT $A~a,$B~b PURPOSE=GENERAL",
            "2 EXTENDED $C~c PURPOSE=GENERAL",
            "3 BUILT $D~d PURPOSE=HS_CLIENT_REND",
            "4 FAILED $E~e REASON=TIMEOUT",
        ]
    )
    assert count_built_circuits(status) == 2
    assert count_built_circuits("") == 0


@pytest.mark.asyncio
async def test_get_status_issues_one_combined_query():
    port = FakeControlPort({"GETINFO": getinfo_lines(bootstrap=100, circuits=3)})
    reader = StatusReader(make_link(port))

    snapshot = await reader.get_status()

    assert port.commands == ["GETINFO " + " ".join(STATUS_KEYS)]
    assert snapshot.version == "0.4.8.10"
    assert snapshot.bootstrap_phase == 100
    assert snapshot.circuit_established is True
    assert snapshot.num_circuits == 3
    assert snapshot.traffic.bytes_read == 1024
    assert snapshot.traffic.bytes_written == 2048


@pytest.mark.asyncio
async def test_get_status_tolerates_absent_and_malformed_counters():
    port = FakeControlPort({"GETINFO": getinfo_lines(read=None, written="garbage")})
    reader = StatusReader(make_link(port))

    snapshot = await reader.get_status()

    assert snapshot.traffic.bytes_read == 0
    assert snapshot.traffic.bytes_written == 0


@pytest.mark.asyncio
async def test_get_status_propagates_connection_errors():
    port = FakeControlPort()
    port.refuse = True
    reader = StatusReader(make_link(port))

    with pytest.raises(TorConnectionError):
        await reader.get_status()


@pytest.mark.asyncio
@pytest.mark.parametrize("bootstrap, expected", [(99, False), (100, True), (101, True)])
async def test_is_ready_follows_bootstrap(bootstrap, expected):
    port = FakeControlPort({"GETINFO": getinfo_lines(bootstrap=bootstrap)})
    reader = StatusReader(make_link(port))

    assert await reader.is_ready() is expected


@pytest.mark.asyncio
async def test_is_ready_false_when_link_fails():
    port = FakeControlPort({"GETINFO": None})
    reader = StatusReader(make_link(port))

    assert await reader.is_ready() is False
