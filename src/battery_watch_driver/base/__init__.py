"""Battery Service transport, discovery and connection state for Battery Watch."""

from .connection import BleakTransport
from .constants import (
    BATTERY_LEVEL_CHARACTERISTIC_UUID,
    BATTERY_SERVICE_UUID,
    uuid_matches,
)
from .discovery import BLEDiscoveryService
from .exceptions import (
    BatteryWatchError,
    BLETransportError,
    InvalidReadingError,
    UnknownDeviceError,
)
from .simulation import SimulatedTransport
from .state import ConnectionState, ConnectionStateManager
from .transport import (
    BLETransport,
    CharacteristicHandle,
    EventKind,
    PeripheralHandle,
    ServiceHandle,
    TransportEvent,
)

__all__ = [
    "BATTERY_LEVEL_CHARACTERISTIC_UUID",
    "BATTERY_SERVICE_UUID",
    "BLEDiscoveryService",
    "BLETransport",
    "BLETransportError",
    "BatteryWatchError",
    "BleakTransport",
    "CharacteristicHandle",
    "ConnectionState",
    "ConnectionStateManager",
    "EventKind",
    "InvalidReadingError",
    "PeripheralHandle",
    "ServiceHandle",
    "SimulatedTransport",
    "TransportEvent",
    "UnknownDeviceError",
    "uuid_matches",
]
