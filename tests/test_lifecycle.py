"""Tests for the ConnectionLifecycle state machine."""

from unittest.mock import MagicMock

import pytest

from battery_watch.core.lifecycle import ConnectionLifecycle
from battery_watch_driver.base.constants import (
    BATTERY_LEVEL_CHARACTERISTIC_UUID,
    BATTERY_SERVICE_UUID,
)
from battery_watch_driver.base.state import ConnectionState
from battery_watch_driver.base.transport import (
    CharacteristicHandle,
    PeripheralHandle,
    ServiceHandle,
    TransportEvent,
)
from tests.support.mocks.fake_transport import (
    FakeTransport,
    battery_level,
    battery_service,
    level_event,
    subscribe_events,
)

DEVICE = "AA:BB:CC:DD:EE:01"


@pytest.fixture
def transport() -> FakeTransport:
    """Fixture providing an empty recording transport."""
    return FakeTransport()


@pytest.fixture
def lifecycle(transport: FakeTransport) -> ConnectionLifecycle:
    """Fixture providing a lifecycle that has issued its connect command."""
    lc = ConnectionLifecycle(PeripheralHandle(DEVICE, "Keyboard"), transport)
    lc.begin()
    return lc


def test_without_transport_stays_discovered() -> None:
    """A lifecycle with nowhere to send commands does not move."""
    lc = ConnectionLifecycle(PeripheralHandle(DEVICE))
    assert lc.begin() is False
    assert lc.state == ConnectionState.DISCOVERED


def test_begin_connects(lifecycle: ConnectionLifecycle, transport: FakeTransport) -> None:
    """begin() moves to CONNECTING and issues exactly one connect."""
    assert lifecycle.state == ConnectionState.CONNECTING
    assert lifecycle.history[0][0] == ConnectionState.DISCOVERED
    assert transport.commands == [("connect", DEVICE)]
    assert lifecycle.begin() is False
    assert transport.commands == [("connect", DEVICE)]


def test_full_subscription_path(
    lifecycle: ConnectionLifecycle,
    transport: FakeTransport,
) -> None:
    """Each event advances one state and issues the next command."""
    connected, services, characteristics = subscribe_events(DEVICE)

    assert lifecycle.handle(connected)
    assert lifecycle.state == ConnectionState.CONNECTED
    assert transport.commands[-1] == ("discover_services", DEVICE, (BATTERY_SERVICE_UUID,))

    assert lifecycle.handle(services)
    assert lifecycle.state == ConnectionState.SERVICES_DISCOVERED
    assert lifecycle.battery_service == battery_service(DEVICE)
    assert transport.commands[-1] == (
        "discover_characteristics",
        DEVICE,
        (BATTERY_LEVEL_CHARACTERISTIC_UUID,),
    )

    assert lifecycle.handle(characteristics)
    assert lifecycle.state == ConnectionState.SUBSCRIBED
    assert lifecycle.battery_level == battery_level(DEVICE)
    assert transport.names()[-2:] == ["read_value", "set_notify"]
    assert transport.commands[-1] == ("set_notify", DEVICE, True)

    assert [state for state, _ in lifecycle.history] == [
        ConnectionState.DISCOVERED,
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.SERVICES_DISCOVERED,
        ConnectionState.SUBSCRIBED,
    ]


def test_duplicate_events_issue_no_commands(
    lifecycle: ConnectionLifecycle,
    transport: FakeTransport,
) -> None:
    """Replaying the same callbacks never re-issues discovery or subscription."""
    events = subscribe_events(DEVICE)
    for event in events:
        lifecycle.handle(event)
    issued = list(transport.commands)

    for event in events:
        assert lifecycle.handle(event) is False

    assert transport.commands == issued
    assert transport.names().count("set_notify") == 1


def test_out_of_order_event_is_ignored(
    lifecycle: ConnectionLifecycle,
    transport: FakeTransport,
) -> None:
    """Characteristics reported before services do not skip a state."""
    _, _, characteristics = subscribe_events(DEVICE)
    assert lifecycle.handle(characteristics) is False
    assert lifecycle.state == ConnectionState.CONNECTING
    assert transport.names() == ["connect"]


def test_missing_battery_service_stalls(
    lifecycle: ConnectionLifecycle,
    transport: FakeTransport,
) -> None:
    """A peripheral without 180F stays CONNECTED with no further commands."""
    lifecycle.handle(TransportEvent.connected(DEVICE))
    other = ServiceHandle(DEVICE, "0000180a-0000-1000-8000-00805f9b34fb")
    assert lifecycle.handle(TransportEvent.services_discovered(DEVICE, [other])) is False
    assert lifecycle.state == ConnectionState.CONNECTED
    assert transport.names() == ["connect", "discover_services"]


def test_missing_battery_level_stalls(
    lifecycle: ConnectionLifecycle,
    transport: FakeTransport,
) -> None:
    """A Battery Service without 2A19 stays SERVICES_DISCOVERED."""
    connected, services, _ = subscribe_events(DEVICE)
    lifecycle.handle(connected)
    lifecycle.handle(services)
    unrelated = CharacteristicHandle(DEVICE, "00002a1a-0000-1000-8000-00805f9b34fb")
    event = TransportEvent.characteristics_discovered(battery_service(DEVICE), [unrelated])
    assert lifecycle.handle(event) is False
    assert lifecycle.state == ConnectionState.SERVICES_DISCOVERED
    assert "read_value" not in transport.names()


def test_short_uuids_are_recognised(
    lifecycle: ConnectionLifecycle,
    transport: FakeTransport,
) -> None:
    """Services and characteristics reported with 16-bit UUIDs still match."""
    lifecycle.handle(TransportEvent.connected(DEVICE))
    service = ServiceHandle(DEVICE, "180F")
    lifecycle.handle(TransportEvent.services_discovered(DEVICE, [service]))
    char = CharacteristicHandle(DEVICE, "2a19", "180F")
    lifecycle.handle(TransportEvent.characteristics_discovered(service, [char]))
    assert lifecycle.state == ConnectionState.SUBSCRIBED
    assert lifecycle.accepts_value(TransportEvent.value_updated(char, b"\x50"))


@pytest.mark.parametrize(
    ("event", "expected"),
    [
        (TransportEvent.connect_failed(DEVICE, "timeout"), ConnectionState.ERROR),
        (TransportEvent.disconnected(DEVICE, "link lost"), ConnectionState.DISCONNECTED),
        (TransportEvent.error(DEVICE, "GATT failure"), ConnectionState.ERROR),
    ],
)
def test_failures_are_terminal(
    lifecycle: ConnectionLifecycle,
    transport: FakeTransport,
    event: TransportEvent,
    expected: ConnectionState,
) -> None:
    """Failure events end the lifecycle and later events are ignored."""
    assert lifecycle.handle(event)
    assert lifecycle.state == expected
    assert lifecycle.failure_reason == event.reason

    assert lifecycle.handle(TransportEvent.connected(DEVICE)) is False
    assert lifecycle.state == expected
    assert transport.names() == ["connect"]


def test_terminate_requires_terminal_state(lifecycle: ConnectionLifecycle) -> None:
    """Only DISCONNECTED and ERROR can be forced."""
    with pytest.raises(ValueError, match="not a terminal state"):
        lifecycle.terminate(ConnectionState.CONNECTED)
    assert lifecycle.terminate(ConnectionState.DISCONNECTED, "gone")
    assert lifecycle.terminate(ConnectionState.ERROR) is False


def test_accepts_value_only_when_subscribed(lifecycle: ConnectionLifecycle) -> None:
    """Values are only accepted on 2A19 once subscribed."""
    assert lifecycle.accepts_value(level_event(DEVICE, b"\x10")) is False
    for event in subscribe_events(DEVICE):
        lifecycle.handle(event)
    assert lifecycle.accepts_value(level_event(DEVICE, b"\x10"))
    other = CharacteristicHandle(DEVICE, "00002a00-0000-1000-8000-00805f9b34fb")
    assert lifecycle.accepts_value(TransportEvent.value_updated(other, b"\x10")) is False


def test_state_callbacks_fire(lifecycle: ConnectionLifecycle) -> None:
    """on_state callbacks see the state being entered."""
    callback = MagicMock()
    lifecycle.on_state(ConnectionState.CONNECTED, callback)
    lifecycle.handle(TransportEvent.connected(DEVICE))
    callback.assert_called_once_with(ConnectionState.CONNECTED)
