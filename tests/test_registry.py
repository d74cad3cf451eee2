"""Tests for registry module: routing, scanning, power and reconnects."""

import asyncio
from unittest.mock import MagicMock

import pytest

from bleak_session_manager.adapter import Adapter, PowerState
from bleak_session_manager.const import (
    BATTERY_SERVICE_UUID,
    BODY_SENSOR_LOCATION_UUID,
    HEART_RATE_MEASUREMENT_UUID,
    HEART_RATE_SERVICE_UUID,
    SessionConfig,
)
from bleak_session_manager.decoder import BodySensorLocation
from bleak_session_manager.errors import (
    CommandTimeoutError,
    ConnectionFailedError,
    DiscoveryTimeoutError,
    LinkDroppedError,
    RadioUnavailableError,
    ScanFailedError,
)
from bleak_session_manager.events import (
    CharacteristicInfo,
    CharacteristicsDiscovered,
    ConnectResult,
    Disconnected,
    ErrorReported,
    PeripheralDiscovered,
    PowerStateChanged,
    ScanFailed,
    ServicesDiscovered,
    StateChanged,
    ValueDecoded,
    ValueUpdated,
    WriteAcknowledged,
)
from bleak_session_manager.registry import SessionRegistry
from bleak_session_manager.scheduler import IssueStatus
from bleak_session_manager.session import ConnectionState
from bleak_session_manager.transport import RadioTransport

ADDR = "AA:BB:CC:DD:EE:FF"
ADDR2 = "11:22:33:44:55:66"

HRM = CharacteristicInfo(HEART_RATE_MEASUREMENT_UUID, frozenset({"notify"}))
BSL = CharacteristicInfo(BODY_SENSOR_LOCATION_UUID, frozenset({"read"}))


def _make(listener=None, **config_kwargs):
    config_kwargs.setdefault("reconnect_initial_delay", 0.01)
    config_kwargs.setdefault("reconnect_jitter", 0.0)
    transport = MagicMock(spec=RadioTransport)
    notes = []
    registry = SessionRegistry(
        transport,
        adapter=Adapter("hci0"),
        config=SessionConfig(**config_kwargs),
        listener=listener or notes.append,
    )
    return registry, transport, notes


def _power(registry, state=PowerState.ON):
    registry.post(PowerStateChanged(state))
    registry.drain()


def _drive_ready(registry, identity=ADDR):
    for event in (
        PeripheralDiscovered(identity, (HEART_RATE_SERVICE_UUID,), -50),
        ConnectResult(identity, True),
        ServicesDiscovered(identity, (HEART_RATE_SERVICE_UUID,)),
        CharacteristicsDiscovered(identity, HEART_RATE_SERVICE_UUID, (HRM, BSL)),
    ):
        registry.post(event)
    registry.drain()


def _errors(notes, cls=Exception):
    return [n.error for n in notes if isinstance(n, ErrorReported) and isinstance(n.error, cls)]


# ── discovery and routing ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_discovery_creates_session_and_connects():
    registry, transport, notes = _make()
    _power(registry)
    registry.post(PeripheralDiscovered("P1", (HEART_RATE_SERVICE_UUID,), -60))
    registry.drain()

    assert "P1" in registry
    states = [n.state for n in notes if isinstance(n, StateChanged)]
    assert states[:2] == [ConnectionState.DISCOVERED, ConnectionState.CONNECTING]
    transport.connect.assert_called_once_with("P1")


@pytest.mark.asyncio
async def test_non_matching_advertisement_ignored():
    registry, transport, _ = _make()
    _power(registry)
    registry.post(PeripheralDiscovered(ADDR, (BATTERY_SERVICE_UUID,)))
    registry.drain()
    assert len(registry) == 0
    transport.connect.assert_not_called()


@pytest.mark.asyncio
async def test_duplicate_discovery_keeps_one_session():
    registry, transport, _ = _make()
    _power(registry)
    registry.post(PeripheralDiscovered(ADDR, ("180d",), -60))
    registry.post(PeripheralDiscovered(ADDR, ("180d",), -55))
    registry.drain()
    assert len(registry) == 1
    assert registry.get(ADDR).rssi == -55
    transport.connect.assert_called_once_with(ADDR)


@pytest.mark.asyncio
async def test_concurrent_sessions_are_independent():
    registry, transport, _ = _make()
    _power(registry)
    _drive_ready(registry, ADDR)
    registry.post(PeripheralDiscovered(ADDR2, (HEART_RATE_SERVICE_UUID,)))
    registry.drain()
    assert registry.get(ADDR).state is ConnectionState.READY
    assert registry.get(ADDR2).state is ConnectionState.CONNECTING


@pytest.mark.asyncio
async def test_events_for_unknown_identity_are_noops():
    registry, transport, notes = _make()
    _power(registry)
    notes.clear()
    for event in (
        ConnectResult("ZZ", True),
        ServicesDiscovered("ZZ", (HEART_RATE_SERVICE_UUID,)),
        ValueUpdated("ZZ", BODY_SENSOR_LOCATION_UUID, b"\x01"),
        WriteAcknowledged("ZZ", BODY_SENSOR_LOCATION_UUID),
        Disconnected("ZZ", "link lost"),
    ):
        registry.post(event)
    assert registry.drain() == 5
    assert notes == []
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_full_pipeline_decodes_values():
    registry, transport, notes = _make()
    _power(registry)
    _drive_ready(registry)
    transport.read_value.assert_called_once_with(ADDR, BODY_SENSOR_LOCATION_UUID)
    transport.subscribe.assert_called_once_with(ADDR, HEART_RATE_MEASUREMENT_UUID)

    registry.post(ValueUpdated(ADDR, BODY_SENSOR_LOCATION_UUID, b"\x02"))
    registry.drain()
    (value,) = [n for n in notes if isinstance(n, ValueDecoded)]
    assert value.identity == ADDR
    assert value.result is BodySensorLocation.WRIST


@pytest.mark.asyncio
async def test_disconnect_is_idempotent():
    registry, _, notes = _make(auto_reconnect=False)
    _power(registry)
    _drive_ready(registry)
    registry.post(Disconnected(ADDR, "link lost"))
    registry.post(Disconnected(ADDR, "link lost"))
    registry.drain()
    assert registry.get(ADDR).state is ConnectionState.DISCONNECTED
    assert len(_errors(notes, LinkDroppedError)) == 1


# ── scanning ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_power_on_starts_scan():
    registry, transport, _ = _make()
    assert not registry.is_scanning
    _power(registry)
    assert registry.is_scanning
    transport.start_scan.assert_called_once_with((HEART_RATE_SERVICE_UUID,))


@pytest.mark.asyncio
async def test_no_auto_scan_when_disabled():
    registry, transport, _ = _make(scan_on_power_on=False)
    _power(registry)
    assert not registry.is_scanning
    registry.start_scan()
    assert registry.is_scanning
    registry.start_scan()
    transport.start_scan.assert_called_once()


def test_start_scan_refused_without_power():
    registry, transport, _ = _make()
    with pytest.raises(RadioUnavailableError):
        registry.start_scan()
    transport.start_scan.assert_not_called()


@pytest.mark.asyncio
async def test_stop_scan():
    registry, transport, _ = _make()
    _power(registry)
    registry.stop_scan()
    assert not registry.is_scanning
    transport.stop_scan.assert_called_once()
    registry.stop_scan()
    transport.stop_scan.assert_called_once()


@pytest.mark.asyncio
async def test_max_sessions_stops_scan():
    registry, transport, _ = _make(max_sessions=1)
    _power(registry)
    registry.post(PeripheralDiscovered(ADDR, (HEART_RATE_SERVICE_UUID,)))
    registry.post(PeripheralDiscovered(ADDR2, (HEART_RATE_SERVICE_UUID,)))
    registry.drain()
    assert not registry.is_scanning
    transport.stop_scan.assert_called_once()
    assert ADDR2 not in registry


@pytest.mark.asyncio
async def test_scan_timeout_reports_discovery_timeout():
    registry, transport, notes = _make(scan_timeout=0.05)
    _power(registry)
    await asyncio.sleep(0.15)
    registry.drain()
    (error,) = _errors(notes, DiscoveryTimeoutError)
    assert error.identity is None
    assert not registry.is_scanning
    transport.stop_scan.assert_called_once()


@pytest.mark.asyncio
async def test_scan_timeout_after_discovery_is_quiet():
    registry, _, notes = _make(scan_timeout=0.05)
    _power(registry)
    registry.post(PeripheralDiscovered(ADDR, (HEART_RATE_SERVICE_UUID,)))
    registry.drain()
    await asyncio.sleep(0.15)
    registry.drain()
    assert _errors(notes, DiscoveryTimeoutError) == []
    assert registry.is_scanning


@pytest.mark.asyncio
async def test_scan_failure_resets_scan_state():
    registry, transport, notes = _make(scan_timeout=0.05)
    _power(registry)
    registry.post(ScanFailed("Bluetooth device is turned off"))
    registry.drain()

    assert not registry.is_scanning
    (error,) = _errors(notes, ScanFailedError)
    assert error.identity is None
    assert "turned off" in str(error)
    transport.stop_scan.assert_not_called()

    await asyncio.sleep(0.1)
    registry.drain()
    assert _errors(notes, DiscoveryTimeoutError) == []

    registry.start_scan()
    assert registry.is_scanning
    assert transport.start_scan.call_count == 2


@pytest.mark.asyncio
async def test_scan_failure_when_not_scanning_is_ignored():
    registry, _, notes = _make(scan_on_power_on=False)
    _power(registry)
    registry.post(ScanFailed("busy"))
    registry.drain()
    assert _errors(notes, ScanFailedError) == []


# ── power state ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_discovery_while_off_defers_connect():
    registry, transport, notes = _make()
    registry.post(PeripheralDiscovered(ADDR, (HEART_RATE_SERVICE_UUID,)))
    registry.drain()
    assert registry.get(ADDR).state is ConnectionState.DISCOVERED
    assert len(_errors(notes, RadioUnavailableError)) == 1
    transport.connect.assert_not_called()

    _power(registry)
    transport.connect.assert_called_once_with(ADDR)
    assert registry.get(ADDR).state is ConnectionState.CONNECTING


@pytest.mark.asyncio
async def test_power_off_drops_sessions_without_reconnect():
    registry, transport, notes = _make()
    _power(registry)
    _drive_ready(registry)
    _power(registry, PowerState.OFF)

    assert registry.get(ADDR).state is ConnectionState.DISCONNECTED
    assert not registry.is_scanning
    assert len(_errors(notes, RadioUnavailableError)) == 1
    await asyncio.sleep(0.05)
    registry.drain()
    transport.connect.assert_called_once()


@pytest.mark.asyncio
async def test_repeated_power_state_is_noop():
    registry, transport, _ = _make()
    _power(registry)
    _power(registry)
    transport.start_scan.assert_called_once()


# ── timeouts and reconnects ────────────────────────────────────────


@pytest.mark.asyncio
async def test_command_timeout_fed_back_through_channel():
    registry, _, notes = _make(command_timeout=0.05)
    _power(registry)
    _drive_ready(registry)
    await asyncio.sleep(0.15)
    assert registry.drain() == 2
    timeouts = _errors(notes, CommandTimeoutError)
    assert len(timeouts) == 2
    assert registry.scheduler.pending_for(ADDR) == []
    assert registry.get(ADDR).state is ConnectionState.READY


@pytest.mark.asyncio
async def test_connect_failure_schedules_reconnect():
    registry, transport, _ = _make()
    _power(registry)
    registry.post(PeripheralDiscovered(ADDR, (HEART_RATE_SERVICE_UUID,)))
    registry.post(ConnectResult(ADDR, False, "br-connection-canceled"))
    registry.drain()
    assert registry.get(ADDR).state is ConnectionState.DISCONNECTED

    await asyncio.sleep(0.1)
    registry.drain()
    assert transport.connect.call_count == 2
    assert registry.get(ADDR).state is ConnectionState.CONNECTING


@pytest.mark.asyncio
async def test_reconnect_budget_exhausted_is_permanent():
    registry, transport, notes = _make(max_reconnect_attempts=1)
    _power(registry)
    registry.post(PeripheralDiscovered(ADDR, (HEART_RATE_SERVICE_UUID,)))
    registry.post(ConnectResult(ADDR, False, "boom"))
    registry.drain()
    await asyncio.sleep(0.1)
    registry.drain()
    registry.post(ConnectResult(ADDR, False, "boom"))
    registry.drain()
    await asyncio.sleep(0.1)
    registry.drain()

    assert transport.connect.call_count == 2
    permanent = [e for e in _errors(notes, ConnectionFailedError) if e.permanent]
    assert len(permanent) == 1
    assert permanent[0].identity == ADDR


@pytest.mark.asyncio
async def test_link_drop_reconnects_and_ready_resets_budget():
    registry, transport, _ = _make(max_reconnect_attempts=1)
    _power(registry)
    _drive_ready(registry)
    registry.post(Disconnected(ADDR, "link lost"))
    registry.drain()
    await asyncio.sleep(0.1)
    registry.drain()
    assert transport.connect.call_count == 2

    for event in (
        ConnectResult(ADDR, True),
        ServicesDiscovered(ADDR, (HEART_RATE_SERVICE_UUID,)),
        CharacteristicsDiscovered(ADDR, HEART_RATE_SERVICE_UUID, (HRM,)),
        Disconnected(ADDR, "link lost"),
    ):
        registry.post(event)
    registry.drain()
    await asyncio.sleep(0.1)
    registry.drain()
    assert transport.connect.call_count == 3


@pytest.mark.asyncio
async def test_requested_disconnect_does_not_reconnect():
    registry, transport, _ = _make()
    _power(registry)
    _drive_ready(registry)
    registry.post(Disconnected(ADDR, None))
    registry.drain()
    await asyncio.sleep(0.1)
    registry.drain()
    transport.connect.assert_called_once()


@pytest.mark.asyncio
async def test_auto_reconnect_disabled():
    registry, transport, _ = _make(auto_reconnect=False)
    _power(registry)
    registry.post(PeripheralDiscovered(ADDR, (HEART_RATE_SERVICE_UUID,)))
    registry.post(ConnectResult(ADDR, False, "boom"))
    registry.drain()
    await asyncio.sleep(0.1)
    registry.drain()
    transport.connect.assert_called_once()


@pytest.mark.asyncio
async def test_stale_connect_result_after_timeout_releases_link():
    registry, transport, notes = _make(connect_timeout=0.05, auto_reconnect=False)
    _power(registry)
    registry.post(PeripheralDiscovered(ADDR, (HEART_RATE_SERVICE_UUID,)))
    registry.drain()
    await asyncio.sleep(0.1)
    registry.drain()
    session = registry.get(ADDR)
    assert session.state is ConnectionState.DISCONNECTED
    transport.disconnect.assert_called_once_with(ADDR)

    registry.post(ConnectResult(ADDR, True))
    registry.drain()
    assert session.state is ConnectionState.DISCONNECTED
    assert transport.disconnect.call_count == 2
    transport.discover_services.assert_not_called()
    assert len(_errors(notes, ConnectionFailedError)) == 1


# ── caller API ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_read_and_write_routing():
    registry, transport, _ = _make()
    _power(registry)
    _drive_ready(registry)
    registry.post(ValueUpdated(ADDR, BODY_SENSOR_LOCATION_UUID, b"\x01"))
    registry.drain()
    assert registry.read(ADDR, "2a38").status is IssueStatus.ACCEPTED
    assert registry.write(ADDR, BODY_SENSOR_LOCATION_UUID, b"\x01").rejected


def test_read_write_unknown_identity_rejected():
    registry, _, _ = _make()
    assert registry.read("ZZ", BODY_SENSOR_LOCATION_UUID).rejected
    assert registry.write("ZZ", BODY_SENSOR_LOCATION_UUID, b"\x00").reason == (
        "unknown peripheral"
    )


@pytest.mark.asyncio
async def test_forget():
    registry, transport, _ = _make()
    _power(registry)
    _drive_ready(registry)
    assert registry.forget(ADDR) is True
    assert ADDR not in registry
    transport.disconnect.assert_called_once_with(ADDR)
    assert registry.forget(ADDR) is False


@pytest.mark.asyncio
async def test_close_releases_everything():
    registry, transport, _ = _make()
    _power(registry)
    _drive_ready(registry)
    registry.close()
    assert len(registry) == 0
    assert not registry.is_scanning
    transport.disconnect.assert_called_once_with(ADDR)
    assert len(registry.scheduler) == 0


@pytest.mark.asyncio
async def test_listener_exception_does_not_break_dispatch():
    listener = MagicMock(side_effect=RuntimeError("ui exploded"))
    registry, transport, _ = _make(listener=listener)
    _power(registry)
    _drive_ready(registry)
    assert registry.get(ADDR).state is ConnectionState.READY
    assert listener.call_count > 0


@pytest.mark.asyncio
async def test_run_and_stop():
    registry, transport, _ = _make()
    task = asyncio.ensure_future(registry.run())
    registry.post(PowerStateChanged(PowerState.ON))
    registry.post(PeripheralDiscovered(ADDR, (HEART_RATE_SERVICE_UUID,)))
    registry.stop()
    await asyncio.wait_for(task, timeout=1.0)
    assert registry.get(ADDR).state is ConnectionState.CONNECTING


def test_sessions_view_is_read_only():
    registry, _, _ = _make()
    with pytest.raises(TypeError):
        registry.sessions[ADDR] = None
