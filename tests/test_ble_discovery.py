"""Tests for BLEDiscoveryService and Battery Service peripheral discovery."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from bleak.exc import BleakError

from battery_watch_driver.base.constants import BATTERY_SERVICE_UUID
from battery_watch_driver.base.discovery import BLEDiscoveryService


class DummyConfig:
    """Dummy config for BLEDiscoveryService tests."""

    def __init__(self, adapter: str | None = None) -> None:
        self.system = {
            "bluetooth": {"adapter": adapter},
            "discovery": {"scan_duration": 2},
        }

    def get_config(self, key: str) -> dict:
        return self.system


def fake_result(
    address: str,
    name: str | None,
    service_uuids: list[str],
    rssi: int = -60,
) -> tuple[MagicMock, MagicMock]:
    """Build a (BLEDevice, AdvertisementData) pair as returned by BleakScanner."""
    device = MagicMock()
    device.address = address
    device.name = name
    advertisement = MagicMock()
    advertisement.service_uuids = service_uuids
    advertisement.service_data = {BATTERY_SERVICE_UUID: b"\x50"}
    advertisement.local_name = name
    advertisement.tx_power = -12
    advertisement.rssi = rssi
    return device, advertisement


@pytest.mark.asyncio
async def test_scan_returns_battery_peripherals() -> None:
    """Only peripherals advertising 180F are returned."""
    battery = fake_result("AA:BB:CC:DD:EE:01", "Keyboard", ["0000180f-0000-1000-8000-00805f9b34fb"])
    other = fake_result("AA:BB:CC:DD:EE:02", "Lamp", ["0000ffe0-0000-1000-8000-00805f9b34fb"])
    results = {"AA:BB:CC:DD:EE:01": battery, "AA:BB:CC:DD:EE:02": other}

    with patch("battery_watch_driver.base.discovery.BleakScanner") as mock_scanner:
        mock_scanner.discover = AsyncMock(return_value=results)
        service = BLEDiscoveryService(DummyConfig())
        peripherals = await service.scan_for_devices()

    assert [p.device_id for p in peripherals] == ["AA:BB:CC:DD:EE:01"]
    assert peripherals[0].name == "Keyboard"
    assert peripherals[0].rssi == -60
    assert peripherals[0].native is battery[0]
    assert service.adapter_available is True

    kwargs = mock_scanner.discover.call_args.kwargs
    assert kwargs["timeout"] == 2.0
    assert kwargs["service_uuids"] == [BATTERY_SERVICE_UUID]
    assert kwargs["return_adv"] is True

    info = service.get_discovered_devices()["AA:BB:CC:DD:EE:01"]
    assert info["advertisement_data"]["local_name"] == "Keyboard"
    assert info["advertisement_data"]["service_data"] == {BATTERY_SERVICE_UUID: "50"}
    assert "AA:BB:CC:DD:EE:02" not in service.get_discovered_devices()


@pytest.mark.asyncio
async def test_short_service_uuid_in_advertisement() -> None:
    """Advertisements listing the 16-bit form still match."""
    result = fake_result("AA:BB:CC:DD:EE:03", None, ["180f"])
    with patch("battery_watch_driver.base.discovery.BleakScanner") as mock_scanner:
        mock_scanner.discover = AsyncMock(return_value={"AA:BB:CC:DD:EE:03": result})
        service = BLEDiscoveryService(DummyConfig())
        peripherals = await service.scan_for_devices(duration=1)

    assert len(peripherals) == 1
    assert peripherals[0].display_name == "Unknown Device"
    assert mock_scanner.discover.call_args.kwargs["timeout"] == 1


@pytest.mark.asyncio
async def test_adapter_passed_when_configured() -> None:
    """The configured adapter is forwarded to BleakScanner."""
    with patch("battery_watch_driver.base.discovery.BleakScanner") as mock_scanner:
        mock_scanner.discover = AsyncMock(return_value={})
        service = BLEDiscoveryService(DummyConfig(adapter="hci1"))
        await service.scan_for_devices()

    assert mock_scanner.discover.call_args.kwargs["adapter"] == "hci1"


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [BleakError("Bluetooth device is turned off"), OSError("no adapter")])
async def test_unavailable_adapter_yields_empty_result(error: Exception) -> None:
    """A powered-off or missing adapter is reported, not raised."""
    with patch("battery_watch_driver.base.discovery.BleakScanner") as mock_scanner:
        mock_scanner.discover = AsyncMock(side_effect=error)
        service = BLEDiscoveryService(DummyConfig())
        peripherals = await service.scan_for_devices()

    assert peripherals == []
    assert service.adapter_available is False


@pytest.mark.asyncio
async def test_discovered_devices_reflect_latest_scan() -> None:
    """Peripherals that stop advertising drop out of the metadata map."""
    first = fake_result("AA:BB:CC:DD:EE:01", "Keyboard", ["180f"])
    second = fake_result("AA:BB:CC:DD:EE:04", "Mouse", ["180f"])
    with patch("battery_watch_driver.base.discovery.BleakScanner") as mock_scanner:
        mock_scanner.discover = AsyncMock(
            side_effect=[
                {"AA:BB:CC:DD:EE:01": first},
                {"AA:BB:CC:DD:EE:04": second},
                OSError("no adapter"),
            ],
        )
        service = BLEDiscoveryService(DummyConfig())
        await service.scan_for_devices()
        assert list(service.get_discovered_devices()) == ["AA:BB:CC:DD:EE:01"]

        await service.scan_for_devices()
        assert list(service.get_discovered_devices()) == ["AA:BB:CC:DD:EE:04"]

        await service.scan_for_devices()
        assert service.get_discovered_devices() == {}
