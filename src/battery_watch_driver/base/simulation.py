"""In-memory BLE transport used when bluetooth.test_mode is enabled."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .constants import (
    BATTERY_LEVEL_CHARACTERISTIC_UUID,
    BATTERY_SERVICE_UUID,
    uuid_matches,
)
from .transport import (
    BLETransport,
    CharacteristicHandle,
    PeripheralHandle,
    ServiceHandle,
    TransportEvent,
)

if TYPE_CHECKING:
    from collections.abc import Sequence


@dataclass
class SimulatedPeripheral:
    """A fake peripheral exposing Battery Service with a settable level."""

    device_id: str
    name: str
    level: int = 100
    connected: bool = False
    notifying: bool = False


class SimulatedTransport(BLETransport):
    """
    Transport that answers every command from an in-memory peripheral table.

    Events are scheduled with `loop.call_soon` so they arrive after the
    command returns, as they would from a real stack.
    """

    def __init__(self, config_manager: Any | None = None) -> None:
        """
        Initialize SimulatedTransport from bluetooth.simulated_devices.

        Args:
            config_manager: Optional configuration manager instance
        """
        super().__init__()
        self.logger = logging.getLogger("battery_watch.transport.simulated")
        self.peripherals: dict[str, SimulatedPeripheral] = {}
        self.notify_interval = 5.0
        self._notify_task: asyncio.Task[None] | None = None

        bluetooth_config: dict[str, Any] = {}
        if config_manager is not None:
            bluetooth_config = config_manager.get_config("system").get("bluetooth", {})
        self.notify_interval = float(
            bluetooth_config.get("simulated_notify_interval", 5.0),
        )
        for device_config in bluetooth_config.get("simulated_devices", []):
            self.add_peripheral(
                device_config["id"],
                device_config.get("name", device_config["id"]),
                int(device_config.get("level", 100)),
            )

    def add_peripheral(self, device_id: str, name: str, level: int = 100) -> None:
        """Make a peripheral visible to scans."""
        self.peripherals[device_id] = SimulatedPeripheral(device_id, name, level)

    def remove_peripheral(self, device_id: str) -> None:
        """Take a peripheral out of range; a connected one reports a disconnect."""
        peripheral = self.peripherals.pop(device_id, None)
        if peripheral is not None and peripheral.connected:
            self._later(TransportEvent.disconnected(device_id, "out of range"))

    def set_level(self, device_id: str, level: int) -> None:
        """Change a peripheral's battery level, notifying if subscribed."""
        peripheral = self.peripherals[device_id]
        peripheral.level = level
        if peripheral.notifying:
            self._later(self._level_event(peripheral))

    async def scan_or_retrieve_connected(
        self,
        service_uuid: str,
    ) -> list[PeripheralHandle]:
        """Return every simulated peripheral when asked for Battery Service."""
        if not uuid_matches(service_uuid, BATTERY_SERVICE_UUID):
            return []
        return [
            PeripheralHandle(device_id=p.device_id, name=p.name)
            for p in self.peripherals.values()
        ]

    def connect(self, peripheral: PeripheralHandle) -> None:
        """Connect if the peripheral is in range."""
        target = self.peripherals.get(peripheral.device_id)
        if target is None:
            self._later(
                TransportEvent.connect_failed(peripheral.device_id, "not in range"),
            )
            return
        target.connected = True
        self._later(TransportEvent.connected(target.device_id))

    def discover_services(self, device_id: str, service_uuids: Sequence[str]) -> None:
        """Report the Battery Service if it was asked for."""
        services = []
        if any(uuid_matches(u, BATTERY_SERVICE_UUID) for u in service_uuids):
            services.append(ServiceHandle(device_id, BATTERY_SERVICE_UUID))
        self._later(TransportEvent.services_discovered(device_id, services))

    def discover_characteristics(
        self,
        service: ServiceHandle,
        characteristic_uuids: Sequence[str],
    ) -> None:
        """Report the Battery Level characteristic if it was asked for."""
        characteristics = []
        if any(
            uuid_matches(u, BATTERY_LEVEL_CHARACTERISTIC_UUID)
            for u in characteristic_uuids
        ):
            characteristics.append(
                CharacteristicHandle(
                    service.device_id,
                    BATTERY_LEVEL_CHARACTERISTIC_UUID,
                    service.uuid,
                ),
            )
        self._later(TransportEvent.characteristics_discovered(service, characteristics))

    def read_value(self, characteristic: CharacteristicHandle) -> None:
        """Report the current level once."""
        peripheral = self.peripherals.get(characteristic.device_id)
        if peripheral is None:
            self._later(TransportEvent.error(characteristic.device_id, "not in range"))
            return
        self._later(self._level_event(peripheral))

    def set_notify(self, characteristic: CharacteristicHandle, enabled: bool) -> None:
        """Toggle periodic level notifications."""
        peripheral = self.peripherals.get(characteristic.device_id)
        if peripheral is None:
            return
        peripheral.notifying = enabled
        if enabled and (self._notify_task is None or self._notify_task.done()):
            self._notify_task = asyncio.get_running_loop().create_task(
                self._notify_loop(),
            )

    def release(self, device_id: str) -> None:
        """Disconnect a peripheral without reporting it."""
        peripheral = self.peripherals.get(device_id)
        if peripheral is not None:
            peripheral.connected = False
            peripheral.notifying = False

    async def close(self) -> None:
        """Stop the notification loop."""
        if self._notify_task is not None:
            self._notify_task.cancel()
            await asyncio.gather(self._notify_task, return_exceptions=True)
            self._notify_task = None

    async def _notify_loop(self) -> None:
        while True:
            await asyncio.sleep(self.notify_interval)
            for peripheral in list(self.peripherals.values()):
                if peripheral.notifying:
                    self.emit(self._level_event(peripheral))

    def _level_event(self, peripheral: SimulatedPeripheral) -> TransportEvent:
        characteristic = CharacteristicHandle(
            peripheral.device_id,
            BATTERY_LEVEL_CHARACTERISTIC_UUID,
            BATTERY_SERVICE_UUID,
        )
        return TransportEvent.value_updated(characteristic, bytes([peripheral.level]))

    def _later(self, event: TransportEvent) -> None:
        asyncio.get_running_loop().call_soon(self.emit, event)
