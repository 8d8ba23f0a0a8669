"""Tests for the in-memory SimulatedTransport used in test mode."""

import asyncio

import pytest

from battery_watch_driver.base.constants import BATTERY_SERVICE_UUID
from battery_watch_driver.base.simulation import SimulatedTransport
from battery_watch_driver.base.transport import (
    EventKind,
    PeripheralHandle,
    ServiceHandle,
    TransportEvent,
)
from tests.support.mocks.fake_transport import battery_level


class DummyConfig:
    """Dummy config listing two simulated peripherals."""

    def get_config(self, key: str) -> dict:
        return {
            "bluetooth": {
                "simulated_devices": [
                    {"id": "SIM-01", "name": "Headset", "level": 64},
                    {"id": "SIM-02"},
                ],
                "simulated_notify_interval": 0.01,
            },
        }


@pytest.fixture
def transport() -> SimulatedTransport:
    """Fixture providing a simulated transport built from config."""
    return SimulatedTransport(DummyConfig())


@pytest.fixture
def events(transport: SimulatedTransport) -> list[TransportEvent]:
    """Fixture collecting emitted events."""
    collected: list[TransportEvent] = []
    transport.add_listener(collected.append)
    return collected


@pytest.mark.asyncio
async def test_scan_lists_configured_peripherals(transport: SimulatedTransport) -> None:
    """Configured devices are visible to Battery Service scans only."""
    found = await transport.scan_or_retrieve_connected(BATTERY_SERVICE_UUID)
    assert [(p.device_id, p.name) for p in found] == [("SIM-01", "Headset"), ("SIM-02", "SIM-02")]
    assert await transport.scan_or_retrieve_connected("180A") == []
    assert transport.peripherals["SIM-02"].level == 100


@pytest.mark.asyncio
async def test_events_arrive_after_command_returns(
    transport: SimulatedTransport,
    events: list[TransportEvent],
) -> None:
    """Commands never emit synchronously."""
    transport.connect(PeripheralHandle("SIM-01"))
    assert events == []
    await asyncio.sleep(0)
    assert events == [TransportEvent.connected("SIM-01")]


@pytest.mark.asyncio
async def test_discovery_and_read(
    transport: SimulatedTransport,
    events: list[TransportEvent],
) -> None:
    """Discovery answers only what was asked for, reads report the level."""
    transport.discover_services("SIM-01", [BATTERY_SERVICE_UUID])
    transport.discover_services("SIM-01", ["180A"])
    await asyncio.sleep(0)
    assert [len(e.services) for e in events] == [1, 0]

    transport.discover_characteristics(ServiceHandle("SIM-01", BATTERY_SERVICE_UUID), ["2A19"])
    transport.read_value(battery_level("SIM-01"))
    await asyncio.sleep(0)
    assert events[2].kind is EventKind.CHARACTERISTICS_DISCOVERED
    assert events[3].value == bytes([64])


@pytest.mark.asyncio
async def test_connect_to_missing_peripheral_fails(
    transport: SimulatedTransport,
    events: list[TransportEvent],
) -> None:
    """Connecting to an unknown id reports CONNECT_FAILED."""
    transport.connect(PeripheralHandle("nope"))
    await asyncio.sleep(0)
    assert events[0].kind is EventKind.CONNECT_FAILED


@pytest.mark.asyncio
async def test_notifications_and_level_changes(
    transport: SimulatedTransport,
    events: list[TransportEvent],
) -> None:
    """Subscribed peripherals notify periodically and on level changes."""
    transport.set_notify(battery_level("SIM-01"), True)
    transport.set_level("SIM-01", 42)
    await asyncio.sleep(0)
    assert events[0].value == bytes([42])

    await asyncio.sleep(0.05)
    assert len(events) > 1
    await transport.close()


@pytest.mark.asyncio
async def test_removed_peripheral_disconnects(
    transport: SimulatedTransport,
    events: list[TransportEvent],
) -> None:
    """Taking a connected peripheral away reports a disconnect; release is silent."""
    transport.connect(PeripheralHandle("SIM-01"))
    transport.connect(PeripheralHandle("SIM-02"))
    await asyncio.sleep(0)
    transport.release("SIM-02")
    transport.remove_peripheral("SIM-01")
    transport.remove_peripheral("SIM-02")
    await asyncio.sleep(0)
    assert events[-1] == TransportEvent.disconnected("SIM-01", "out of range")
    assert len(events) == 3
