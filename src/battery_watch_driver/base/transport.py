"""
Transport abstraction for BLE centrals reporting battery levels.

The core never talks to a Bluetooth stack directly. It sees a transport as
two things: a command sink (connect, discover services, discover
characteristics, read, enable notifications) and an event source. Commands
return immediately; their outcome arrives later as a `TransportEvent`
delivered to every registered listener on the event loop.

Extension:
    - Subclass `BLETransport` and implement the abstract methods.
    - Report every outcome through `emit()` using the `TransportEvent`
      constructors (`TransportEvent.connected(...)` and friends).
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence


@dataclass(frozen=True)
class PeripheralHandle:
    """A peripheral reported by a scan."""

    device_id: str
    name: str | None = None
    rssi: int | None = None
    native: Any = field(default=None, compare=False, repr=False)

    @property
    def display_name(self) -> str:
        """Name to show in a UI; falls back like the platform does."""
        return self.name or "Unknown Device"


@dataclass(frozen=True)
class ServiceHandle:
    """A GATT service discovered on a peripheral."""

    device_id: str
    uuid: str
    native: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class CharacteristicHandle:
    """A GATT characteristic discovered within a service."""

    device_id: str
    uuid: str
    service_uuid: str | None = None
    native: Any = field(default=None, compare=False, repr=False)


class EventKind(Enum):
    """Kinds of events a transport reports."""

    ADAPTER_STATE = auto()
    CONNECTED = auto()
    CONNECT_FAILED = auto()
    SERVICES_DISCOVERED = auto()
    CHARACTERISTICS_DISCOVERED = auto()
    VALUE_UPDATED = auto()
    DISCONNECTED = auto()
    ERROR = auto()


@dataclass(frozen=True)
class TransportEvent:
    """Tagged event emitted by a transport; fields used depend on `kind`."""

    kind: EventKind
    device_id: str | None = None
    services: tuple[ServiceHandle, ...] = ()
    service: ServiceHandle | None = None
    characteristics: tuple[CharacteristicHandle, ...] = ()
    characteristic: CharacteristicHandle | None = None
    value: bytes | None = None
    reason: str | None = None
    powered: bool | None = None

    @classmethod
    def adapter_state(cls, *, powered: bool, reason: str | None = None) -> TransportEvent:
        return cls(EventKind.ADAPTER_STATE, powered=powered, reason=reason)

    @classmethod
    def connected(cls, device_id: str) -> TransportEvent:
        return cls(EventKind.CONNECTED, device_id=device_id)

    @classmethod
    def connect_failed(cls, device_id: str, reason: str) -> TransportEvent:
        return cls(EventKind.CONNECT_FAILED, device_id=device_id, reason=reason)

    @classmethod
    def services_discovered(
        cls,
        device_id: str,
        services: Sequence[ServiceHandle],
    ) -> TransportEvent:
        return cls(
            EventKind.SERVICES_DISCOVERED,
            device_id=device_id,
            services=tuple(services),
        )

    @classmethod
    def characteristics_discovered(
        cls,
        service: ServiceHandle,
        characteristics: Sequence[CharacteristicHandle],
    ) -> TransportEvent:
        return cls(
            EventKind.CHARACTERISTICS_DISCOVERED,
            device_id=service.device_id,
            service=service,
            characteristics=tuple(characteristics),
        )

    @classmethod
    def value_updated(
        cls,
        characteristic: CharacteristicHandle,
        value: bytes,
    ) -> TransportEvent:
        return cls(
            EventKind.VALUE_UPDATED,
            device_id=characteristic.device_id,
            characteristic=characteristic,
            value=bytes(value),
        )

    @classmethod
    def disconnected(cls, device_id: str, reason: str | None = None) -> TransportEvent:
        return cls(EventKind.DISCONNECTED, device_id=device_id, reason=reason)

    @classmethod
    def error(cls, device_id: str, reason: str) -> TransportEvent:
        return cls(EventKind.ERROR, device_id=device_id, reason=reason)


class BLETransport(abc.ABC):
    """
    Abstract base class for BLE central transports.

    Every command is fire-and-forget. Implementations must deliver results
    through `emit()` on the event loop thread, in the order the underlying
    stack produced them for a given device.
    """

    def __init__(self) -> None:
        """Initialize the transport with an empty listener list."""
        self._listeners: list[Callable[[TransportEvent], None]] = []
        self.logger = logging.getLogger("battery_watch.transport")

    def add_listener(self, callback: Callable[[TransportEvent], None]) -> None:
        """Register a callback for every emitted event."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[TransportEvent], None]) -> bool:
        """Remove a previously registered callback."""
        try:
            self._listeners.remove(callback)
        except ValueError:
            return False
        return True

    def emit(self, event: TransportEvent) -> None:
        """Deliver an event to all listeners; listener failures are logged."""
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                self.logger.exception(
                    "Transport listener failed for %s event",
                    event.kind.name,
                )

    @abc.abstractmethod
    async def scan_or_retrieve_connected(
        self,
        service_uuid: str,
    ) -> list[PeripheralHandle]:
        """Return peripherals currently reachable that expose `service_uuid`."""

    @abc.abstractmethod
    def connect(self, peripheral: PeripheralHandle) -> None:
        """Start connecting; emits CONNECTED or CONNECT_FAILED."""

    @abc.abstractmethod
    def discover_services(self, device_id: str, service_uuids: Sequence[str]) -> None:
        """Start service discovery; emits SERVICES_DISCOVERED."""

    @abc.abstractmethod
    def discover_characteristics(
        self,
        service: ServiceHandle,
        characteristic_uuids: Sequence[str],
    ) -> None:
        """Start characteristic discovery; emits CHARACTERISTICS_DISCOVERED."""

    @abc.abstractmethod
    def read_value(self, characteristic: CharacteristicHandle) -> None:
        """Read a characteristic once; emits VALUE_UPDATED."""

    @abc.abstractmethod
    def set_notify(self, characteristic: CharacteristicHandle, enabled: bool) -> None:
        """Enable or disable notifications; each notification emits VALUE_UPDATED."""

    @abc.abstractmethod
    def release(self, device_id: str) -> None:
        """Forget a device the registry dropped, disconnecting if needed."""

    async def close(self) -> None:  # noqa: B027
        """Release all resources held by the transport."""
