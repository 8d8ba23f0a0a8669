"""BLE discovery service for peripherals exposing the Battery Service."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from bleak import BleakScanner
from bleak.exc import BleakError

from .constants import BATTERY_SERVICE_UUID, uuid_matches
from .transport import PeripheralHandle

# Global semaphore to coordinate BLE scanning and connecting.
# BlueZ rejects overlapping operations with "Operation already in progress".
_ble_scan_semaphore: asyncio.Semaphore | None = None


def get_ble_scan_semaphore() -> asyncio.Semaphore:
    """Get or create the global BLE scan coordination semaphore."""
    global _ble_scan_semaphore  # noqa: PLW0603
    if _ble_scan_semaphore is None:
        _ble_scan_semaphore = asyncio.Semaphore(1)
    return _ble_scan_semaphore


class BLEDiscoveryService:
    """Async BLE discovery service for battery peripherals using Bleak."""

    def __init__(self, config_manager: Any) -> None:
        """
        Initialize BLEDiscoveryService with a config manager.

        Args:
            config_manager: Configuration manager instance
        """
        self.config = config_manager
        self.discovered_devices: dict[str, dict[str, Any]] = {}
        self.logger = logging.getLogger("battery_watch.discovery")
        self.adapter_available: bool | None = None
        # Optional adapter selection from config (e.g., 'hci0')
        try:
            self.adapter: str | None = (
                self.config.get_config("system").get("bluetooth", {}).get("adapter")
            )
        except (AttributeError, TypeError, KeyError):
            self.adapter = None

    def _scan_duration(self) -> float:
        try:
            return float(
                self.config.get_config("system")
                .get("discovery", {})
                .get("scan_duration", 5),
            )
        except (AttributeError, TypeError, KeyError, ValueError):
            return 5.0

    async def scan_for_devices(
        self,
        service_uuid: str = BATTERY_SERVICE_UUID,
        duration: float | None = None,
    ) -> list[PeripheralHandle]:
        """
        Scan for peripherals advertising `service_uuid`.

        An unavailable or powered-off adapter is not an error: it is logged
        and an empty list is returned. `discovered_devices` only describes
        the latest scan.

        Args:
            service_uuid: Service the peripheral must advertise
            duration: Scan duration in seconds (defaults to discovery.scan_duration)

        Returns:
            Peripherals found, in scanner order
        """
        timeout = duration if duration is not None else self._scan_duration()
        self.discovered_devices = {}
        try:
            devices = await self._discover(service_uuid, timeout)
        except (BleakError, OSError) as e:
            self.logger.info("Bluetooth not available: %s", e)
            self.adapter_available = False
            return []
        self.adapter_available = True

        self.logger.debug(
            "Device discovery returned %d item(s)",
            len(devices) if hasattr(devices, "__len__") else -1,
        )

        found: list[PeripheralHandle] = []
        for device, advertisement_data in devices.values():
            if not self._advertises_service(advertisement_data, service_uuid):
                continue
            name = (
                getattr(device, "name", None)
                or getattr(advertisement_data, "local_name", None)
                or None
            )
            rssi = getattr(advertisement_data, "rssi", None)
            if not isinstance(rssi, int):
                rssi = None
            found.append(
                PeripheralHandle(
                    device_id=device.address,
                    name=name,
                    rssi=rssi,
                    native=device,
                ),
            )
            self.discovered_devices[device.address] = {
                "device_id": device.address,
                "name": name or "Unknown Device",
                "rssi": rssi,
                "discovered_at": datetime.now(UTC).isoformat(),
                "advertisement_data": self._extract_advertisement_data(
                    advertisement_data,
                ),
            }

        self.logger.debug("Matched %d battery peripheral(s)", len(found))
        return found

    async def _discover(self, service_uuid: str, timeout: float) -> dict:
        """Run one BleakScanner.discover call under the scan semaphore."""
        scan_semaphore = get_ble_scan_semaphore()
        async with scan_semaphore:
            self.logger.debug("Acquired BLE scan semaphore for device discovery")
            if self.adapter:
                try:
                    return await BleakScanner.discover(
                        timeout=timeout,
                        return_adv=True,
                        service_uuids=[service_uuid],
                        adapter=self.adapter,  # type: ignore[call-arg]
                    )
                except TypeError:
                    # Backends without the adapter kwarg
                    pass
            return await BleakScanner.discover(
                timeout=timeout,
                return_adv=True,
                service_uuids=[service_uuid],
            )

    def _advertises_service(self, advertisement_data: object, service_uuid: str) -> bool:
        """Return True if the advertisement lists `service_uuid`."""
        uuids = getattr(advertisement_data, "service_uuids", None) or []
        return any(uuid_matches(str(uuid), service_uuid) for uuid in uuids)

    def _extract_advertisement_data(
        self,
        advertisement_data: object,
    ) -> dict[str, Any]:
        """Extract JSON-friendly advertisement fields from a Bleak object."""
        if advertisement_data is None:
            return {}

        adv_data: dict[str, Any] = {}
        try:
            service_uuids = getattr(advertisement_data, "service_uuids", None)
            if service_uuids:
                adv_data["service_uuids"] = list(service_uuids)

            service_data = getattr(advertisement_data, "service_data", None)
            if service_data:
                adv_data["service_data"] = {
                    str(uuid): data.hex() if isinstance(data, bytes) else str(data)
                    for uuid, data in service_data.items()
                }

            local_name = getattr(advertisement_data, "local_name", None)
            if local_name:
                adv_data["local_name"] = local_name

            tx_power = getattr(advertisement_data, "tx_power", None)
            if isinstance(tx_power, int):
                adv_data["tx_power"] = tx_power
        except (AttributeError, TypeError, ValueError) as e:
            self.logger.warning("Failed to extract advertisement data: %s", e)
            return {"error": str(e)}
        return adv_data

    def get_discovered_devices(self) -> dict[str, dict[str, Any]]:
        """Return metadata for the peripherals found by the latest scan."""
        return self.discovered_devices
