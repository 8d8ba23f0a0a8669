"""
Connection lifecycle state machine for one Battery Service peripheral.

The lifecycle walks a peripheral from discovery to an active Battery Level
subscription:

    DISCOVERED -> CONNECTING -> CONNECTED -> SERVICES_DISCOVERED -> SUBSCRIBED

Each step is triggered by exactly one transport event and issues its
follow-up command once. Events that do not fit the current state are
ignored, so duplicated callbacks never re-issue a command. A peripheral
lacking the Battery Service or the Battery Level characteristic stays where
it is. Connect failures, link loss and transport errors end in the terminal
DISCONNECTED or ERROR state.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from battery_watch_driver.base.constants import (
    BATTERY_LEVEL_CHARACTERISTIC_UUID,
    BATTERY_SERVICE_UUID,
    uuid_matches,
)
from battery_watch_driver.base.state import ConnectionState, ConnectionStateManager
from battery_watch_driver.base.transport import EventKind

if TYPE_CHECKING:
    from collections.abc import Callable

    from battery_watch_driver.base.transport import (
        BLETransport,
        CharacteristicHandle,
        PeripheralHandle,
        ServiceHandle,
        TransportEvent,
    )


class ConnectionLifecycle:
    """Explicit per-device connection state machine."""

    def __init__(
        self,
        peripheral: PeripheralHandle,
        transport: BLETransport | None = None,
    ) -> None:
        """
        Initialize the lifecycle in the DISCOVERED state.

        Args:
            peripheral: Peripheral this lifecycle drives
            transport: Command sink; without one the lifecycle never leaves DISCOVERED
        """
        self.peripheral = peripheral
        self.transport = transport
        self.logger = logging.getLogger("battery_watch.lifecycle")
        self.battery_service: ServiceHandle | None = None
        self.battery_level: CharacteristicHandle | None = None
        self.failure_reason: str | None = None
        self._state = ConnectionStateManager(ConnectionState.DISCOVERED)
        self._handlers: dict[EventKind, Callable[[TransportEvent], bool]] = {
            EventKind.CONNECTED: self._on_connected,
            EventKind.CONNECT_FAILED: self._on_connect_failed,
            EventKind.SERVICES_DISCOVERED: self._on_services_discovered,
            EventKind.CHARACTERISTICS_DISCOVERED: self._on_characteristics_discovered,
            EventKind.DISCONNECTED: self._on_disconnected,
            EventKind.ERROR: self._on_error,
        }

    @property
    def device_id(self) -> str:
        return self.peripheral.device_id

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state.state

    @property
    def history(self) -> list[tuple[ConnectionState, float]]:
        """State transitions as (state, timestamp) tuples."""
        return self._state.history

    def on_state(
        self,
        state: ConnectionState,
        callback: Callable[[ConnectionState], object],
    ) -> None:
        """Register a callback fired when `state` is entered."""
        self._state.on_state(state, callback)

    def begin(self) -> bool:
        """
        Issue the connect command for a freshly discovered peripheral.

        Returns:
            True if the lifecycle moved to CONNECTING
        """
        if self.state != ConnectionState.DISCOVERED:
            self.logger.debug(
                "Ignoring begin for %s in state %s",
                self.device_id,
                self.state.name,
            )
            return False
        if self.transport is None:
            self.logger.debug("No transport attached; %s stays DISCOVERED", self.device_id)
            return False
        self._state.set_state(ConnectionState.CONNECTING)
        self.logger.info("Connecting to %s", self.device_id)
        self.transport.connect(self.peripheral)
        return True

    def handle(self, event: TransportEvent) -> bool:
        """
        Advance the state machine for one transport event.

        Returns:
            True if the event changed the state
        """
        if self.state.is_terminal:
            self.logger.debug(
                "Ignoring %s for %s: lifecycle already ended",
                event.kind.name,
                self.device_id,
            )
            return False
        handler = self._handlers.get(event.kind)
        if handler is None:
            return False
        return handler(event)

    def terminate(self, state: ConnectionState, reason: str | None = None) -> bool:
        """
        Move to a terminal state.

        Returns:
            True if the lifecycle was not already terminal
        """
        if not state.is_terminal:
            raise ValueError(f"{state.name} is not a terminal state")
        if self.state.is_terminal:
            return False
        self.failure_reason = reason
        self._state.set_state(state)
        return True

    def accepts_value(self, event: TransportEvent) -> bool:
        """Return True for a Battery Level value on a subscribed device."""
        if self.state != ConnectionState.SUBSCRIBED or event.characteristic is None:
            return False
        return uuid_matches(event.characteristic.uuid, BATTERY_LEVEL_CHARACTERISTIC_UUID)

    def _ignore(self, event: TransportEvent) -> bool:
        self.logger.debug(
            "Ignoring %s for %s in state %s",
            event.kind.name,
            self.device_id,
            self.state.name,
        )
        return False

    def _on_connected(self, event: TransportEvent) -> bool:
        if self.state != ConnectionState.CONNECTING or self.transport is None:
            return self._ignore(event)
        self._state.set_state(ConnectionState.CONNECTED)
        self.logger.info("Connected to %s, discovering Battery Service", self.device_id)
        self.transport.discover_services(self.device_id, [BATTERY_SERVICE_UUID])
        return True

    def _on_services_discovered(self, event: TransportEvent) -> bool:
        if self.state != ConnectionState.CONNECTED or self.transport is None:
            return self._ignore(event)
        service = next(
            (s for s in event.services if uuid_matches(s.uuid, BATTERY_SERVICE_UUID)),
            None,
        )
        if service is None:
            self.logger.info("%s does not expose the Battery Service", self.device_id)
            return False
        self.battery_service = service
        self._state.set_state(ConnectionState.SERVICES_DISCOVERED)
        self.transport.discover_characteristics(
            service,
            [BATTERY_LEVEL_CHARACTERISTIC_UUID],
        )
        return True

    def _on_characteristics_discovered(self, event: TransportEvent) -> bool:
        if self.state != ConnectionState.SERVICES_DISCOVERED or self.transport is None:
            return self._ignore(event)
        characteristic = next(
            (
                c
                for c in event.characteristics
                if uuid_matches(c.uuid, BATTERY_LEVEL_CHARACTERISTIC_UUID)
            ),
            None,
        )
        if characteristic is None:
            self.logger.info(
                "%s does not expose the Battery Level characteristic",
                self.device_id,
            )
            return False
        self.battery_level = characteristic
        self._state.set_state(ConnectionState.SUBSCRIBED)
        self.logger.info("Subscribing to battery level on %s", self.device_id)
        self.transport.read_value(characteristic)
        self.transport.set_notify(characteristic, True)
        return True

    def _on_connect_failed(self, event: TransportEvent) -> bool:
        self.logger.warning("Connection to %s failed: %s", self.device_id, event.reason)
        return self.terminate(ConnectionState.ERROR, event.reason)

    def _on_disconnected(self, event: TransportEvent) -> bool:
        self.logger.info("%s disconnected: %s", self.device_id, event.reason)
        return self.terminate(ConnectionState.DISCONNECTED, event.reason)

    def _on_error(self, event: TransportEvent) -> bool:
        self.logger.warning("Transport error on %s: %s", self.device_id, event.reason)
        return self.terminate(ConnectionState.ERROR, event.reason)
