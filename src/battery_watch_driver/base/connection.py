"""Bleak-backed BLE transport for Battery Service peripherals."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from bleak import BleakClient
from bleak.exc import BleakError

from .discovery import BLEDiscoveryService, get_ble_scan_semaphore
from .exceptions import BLETransportError
from .transport import (
    BLETransport,
    CharacteristicHandle,
    PeripheralHandle,
    ServiceHandle,
    TransportEvent,
)

if TYPE_CHECKING:
    from collections.abc import Coroutine, Sequence

# Errors bleak surfaces for GATT and link failures
TRANSPORT_ERRORS = (BleakError, TimeoutError, OSError)


class BleakTransport(BLETransport):
    """
    BLE transport built on BleakClient.

    Each command spawns a task on the running event loop and returns
    immediately. Outcomes, including failures, are reported as
    `TransportEvent`s so that the caller never awaits a GATT operation.
    """

    def __init__(
        self,
        config_manager: Any,
        discovery_service: BLEDiscoveryService | None = None,
    ) -> None:
        """
        Initialize BleakTransport.

        Args:
            config_manager: Configuration manager instance
            discovery_service: Optional discovery service (created if omitted)
        """
        super().__init__()
        self.config = config_manager
        self.discovery = discovery_service or BLEDiscoveryService(config_manager)
        self.logger = logging.getLogger("battery_watch.transport.bleak")
        self.clients: dict[str, BleakClient] = {}
        self._names: dict[str, str | None] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._adapter_available: bool | None = None

        bluetooth_config: dict[str, Any] = {}
        try:
            bluetooth_config = self.config.get_config("system").get("bluetooth", {})
        except (AttributeError, TypeError, KeyError):
            bluetooth_config = {}
        self.adapter: str | None = bluetooth_config.get("adapter")
        self.connection_timeout: float = float(
            bluetooth_config.get("connect_timeout", 20.0),
        )

    async def scan_or_retrieve_connected(
        self,
        service_uuid: str,
    ) -> list[PeripheralHandle]:
        """
        Scan for advertising peripherals and add the ones already connected.

        Connected peripherals usually stop advertising, so they are merged
        in from the live client table to keep them in the rescan result.
        Peripherals connected by the OS or another process are not visible.
        """
        peripherals = list(await self.discovery.scan_for_devices(service_uuid))

        available = self.discovery.adapter_available
        if available is not None and available != self._adapter_available:
            self._adapter_available = available
            self.emit(TransportEvent.adapter_state(powered=available))

        seen = {p.device_id for p in peripherals}
        for device_id, client in self.clients.items():
            if device_id not in seen and client.is_connected:
                peripherals.append(
                    PeripheralHandle(device_id=device_id, name=self._names.get(device_id)),
                )
        return peripherals

    def connect(self, peripheral: PeripheralHandle) -> None:
        """Start connecting to a peripheral."""
        self._names[peripheral.device_id] = peripheral.name
        self._spawn(self._connect(peripheral), peripheral.device_id, "connect")

    def discover_services(self, device_id: str, service_uuids: Sequence[str]) -> None:
        """Start service discovery on a connected peripheral."""
        self._spawn(
            self._discover_services(device_id, list(service_uuids)),
            device_id,
            "discover_services",
        )

    def discover_characteristics(
        self,
        service: ServiceHandle,
        characteristic_uuids: Sequence[str],
    ) -> None:
        """Start characteristic discovery within a service."""
        self._spawn(
            self._discover_characteristics(service, list(characteristic_uuids)),
            service.device_id,
            "discover_characteristics",
        )

    def read_value(self, characteristic: CharacteristicHandle) -> None:
        """Read a characteristic value once."""
        self._spawn(
            self._read_value(characteristic),
            characteristic.device_id,
            "read_value",
        )

    def set_notify(self, characteristic: CharacteristicHandle, enabled: bool) -> None:
        """Enable or disable notifications for a characteristic."""
        self._spawn(
            self._set_notify(characteristic, enabled),
            characteristic.device_id,
            "set_notify",
        )

    def release(self, device_id: str) -> None:
        """Drop a peripheral; its disconnect is not reported as an event."""
        self._names.pop(device_id, None)
        client = self.clients.pop(device_id, None)
        if client is None:
            return
        self.logger.info("Releasing BLE device %s", device_id)
        task = asyncio.get_running_loop().create_task(self._quiet_disconnect(client))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def close(self) -> None:
        """Cancel pending operations and disconnect every client."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        clients = list(self.clients.values())
        self.clients.clear()
        for client in clients:
            await self._quiet_disconnect(client)
        self.logger.info("BLE transport closed")

    def _spawn(
        self,
        coro: Coroutine[Any, Any, None],
        device_id: str,
        operation: str,
    ) -> None:
        """Run an operation as a task, reporting transport failures as events."""
        task = asyncio.get_running_loop().create_task(
            self._guard(coro, device_id, operation),
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(
        self,
        coro: Coroutine[Any, Any, None],
        device_id: str,
        operation: str,
    ) -> None:
        try:
            await coro
        except BLETransportError as e:
            self.logger.warning("%s", e)
            self.emit(TransportEvent.error(device_id, e.message))
        except TRANSPORT_ERRORS as e:
            error = BLETransportError(f"{operation} failed: {e}", device_id, operation)
            self.logger.warning("%s", error)
            self.emit(TransportEvent.error(device_id, error.message))

    def _client(self, device_id: str, operation: str) -> BleakClient:
        client = self.clients.get(device_id)
        if client is None or not client.is_connected:
            raise BLETransportError(
                f"{operation} failed: not connected",
                device_id,
                operation,
            )
        return client

    async def _connect(self, peripheral: PeripheralHandle) -> None:
        device_id = peripheral.device_id
        existing = self.clients.get(device_id)
        if existing is not None and existing.is_connected:
            self.logger.info("Already connected to %s", device_id)
            self.emit(TransportEvent.connected(device_id))
            return

        target = peripheral.native if peripheral.native is not None else device_id
        kwargs: dict[str, Any] = {
            "disconnected_callback": self._on_disconnected,
            "timeout": self.connection_timeout,
        }
        if self.adapter:
            kwargs["adapter"] = self.adapter
        client = BleakClient(target, **kwargs)
        self.clients[device_id] = client

        try:
            async with get_ble_scan_semaphore():
                self.logger.debug(
                    "Acquired BLE scan semaphore for connection to %s",
                    device_id,
                )
                await client.connect()
        except TRANSPORT_ERRORS as e:
            if self.clients.get(device_id) is client:
                del self.clients[device_id]
            self.logger.warning("BLE connection failed for %s: %s", device_id, e)
            self.emit(TransportEvent.connect_failed(device_id, str(e)))
            return

        if self.clients.get(device_id) is not client:
            # Released while connecting
            await self._quiet_disconnect(client)
            return

        self.logger.info("Successfully connected to BLE device %s", device_id)
        self.emit(TransportEvent.connected(device_id))

    async def _discover_services(self, device_id: str, service_uuids: list[str]) -> None:
        client = self._client(device_id, "discover_services")
        # Bleak resolves the full GATT table during connect
        wanted = {s.lower() for s in service_uuids}
        services = [
            ServiceHandle(device_id=device_id, uuid=service.uuid, native=service)
            for service in client.services
            if not wanted or service.uuid.lower() in wanted
        ]
        self.logger.debug("Discovered %d service(s) on %s", len(services), device_id)
        self.emit(TransportEvent.services_discovered(device_id, services))

    async def _discover_characteristics(
        self,
        service: ServiceHandle,
        characteristic_uuids: list[str],
    ) -> None:
        self._client(service.device_id, "discover_characteristics")
        native = service.native
        if native is None:
            raise BLETransportError(
                "discover_characteristics failed: unresolved service",
                service.device_id,
                "discover_characteristics",
            )
        wanted = {c.lower() for c in characteristic_uuids}
        characteristics = [
            CharacteristicHandle(
                device_id=service.device_id,
                uuid=char.uuid,
                service_uuid=service.uuid,
                native=char,
            )
            for char in native.characteristics
            if not wanted or char.uuid.lower() in wanted
        ]
        self.emit(TransportEvent.characteristics_discovered(service, characteristics))

    async def _read_value(self, characteristic: CharacteristicHandle) -> None:
        client = self._client(characteristic.device_id, "read_value")
        specifier = characteristic.native or characteristic.uuid
        data = await client.read_gatt_char(specifier)
        self.emit(TransportEvent.value_updated(characteristic, bytes(data)))

    async def _set_notify(
        self,
        characteristic: CharacteristicHandle,
        enabled: bool,
    ) -> None:
        client = self._client(characteristic.device_id, "set_notify")
        specifier = characteristic.native or characteristic.uuid
        if not enabled:
            await client.stop_notify(specifier)
            return

        def on_notify(_sender: object, data: bytearray) -> None:
            self.emit(TransportEvent.value_updated(characteristic, bytes(data)))

        await client.start_notify(specifier, on_notify)
        self.logger.debug("Notifications enabled on %s", characteristic.device_id)

    def _on_disconnected(self, client: BleakClient) -> None:
        device_id = client.address
        if self.clients.get(device_id) is not client:
            return
        del self.clients[device_id]
        self.logger.info("BLE device %s disconnected", device_id)
        self.emit(TransportEvent.disconnected(device_id, "link lost"))

    async def _quiet_disconnect(self, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except TRANSPORT_ERRORS as e:
            self.logger.warning("Failed to disconnect %s: %s", client.address, e)
