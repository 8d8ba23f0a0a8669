"""
Device registry for Battery Watch.

This module provides the DeviceRegistry class, the single owner of every
per-device piece of state: display name, connection lifecycle and reading
log. UIs read immutable snapshots and subscribe to change notifications.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from battery_watch_driver.base.exceptions import InvalidReadingError, UnknownDeviceError
from battery_watch_driver.base.state import ConnectionState
from battery_watch_driver.base.transport import EventKind, PeripheralHandle

from .lifecycle import ConnectionLifecycle
from .readings import (
    DEFAULT_WINDOW_MS,
    OUT_OF_RANGE_CLAMP,
    DeviceReadingLog,
    Reading,
    RecordOutcome,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from battery_watch_driver.base.transport import BLETransport, TransportEvent

# Change kinds passed to observers
CHANGE_ADDED = "added"
CHANGE_REMOVED = "removed"
CHANGE_STATE = "state"
CHANGE_READING = "reading"


def monotonic_ms() -> int:
    """Milliseconds from a clock that never goes backwards."""
    return time.monotonic_ns() // 1_000_000


@dataclass
class DeviceEntry:
    """Mutable per-device record owned by the registry."""

    device_id: str
    display_name: str
    lifecycle: ConnectionLifecycle
    log: DeviceReadingLog | None = None
    discovered_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def state(self) -> ConnectionState:
        return self.lifecycle.state


@dataclass(frozen=True)
class DeviceSnapshot:
    """Read-only view of one device for display."""

    device_id: str
    display_name: str
    state: ConnectionState
    label: str
    latest_level: int | None
    readings: tuple[Reading, ...]
    discovered_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert snapshot to a dictionary for serialization."""
        return {
            "device_id": self.device_id,
            "display_name": self.display_name,
            "state": self.state.name.lower(),
            "label": self.label,
            "latest_level": self.latest_level,
            "readings": [
                {"level": r.level, "timestamp": r.timestamp} for r in self.readings
            ],
            "discovered_at": self.discovered_at.isoformat(),
        }


class DeviceRegistry:
    """
    Registry of known Battery Service peripherals.

    A device id appears at most once. All mutations go through the methods
    below, which hold one re-entrant lock, so the registry can be read from
    an API thread while the event loop updates it. Observers are called
    after the lock is released with `(change, device_id)`.
    """

    def __init__(
        self,
        transport: BLETransport | None = None,
        window_ms: int = DEFAULT_WINDOW_MS,
        out_of_range: str = OUT_OF_RANGE_CLAMP,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize an empty DeviceRegistry.

        Args:
            transport: Command sink for device lifecycles (optional)
            window_ms: Recency window for logs created by this registry
            out_of_range: Out-of-range policy for logs created by this registry
            clock: Millisecond clock used when `record` gets no timestamp
        """
        self.transport = transport
        self.window_ms = window_ms
        self.out_of_range = out_of_range
        self.clock = clock or monotonic_ms
        self.logger = logging.getLogger("battery_watch.registry")
        self.devices: dict[str, DeviceEntry] = {}
        self._lock = threading.RLock()
        self._observers: list[Callable[[str, str], None]] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self.devices)

    def __contains__(self, device_id: object) -> bool:
        with self._lock:
            return device_id in self.devices

    def device_ids(self) -> list[str]:
        """Ids of all tracked devices in discovery order."""
        with self._lock:
            return list(self.devices)

    def get_device(self, device_id: str) -> DeviceEntry | None:
        """
        Get the live entry for a device.

        Args:
            device_id: Device identifier

        Returns:
            DeviceEntry or None if not tracked
        """
        with self._lock:
            return self.devices.get(device_id)

    def upsert_discovered(
        self,
        device_id: str,
        display_name: str | None = None,
        peripheral: PeripheralHandle | None = None,
    ) -> bool:
        """
        Track a newly discovered peripheral; a known id is left untouched.

        Args:
            device_id: Device identifier
            display_name: Human-readable name
            peripheral: Scan handle to connect with (built from the id if omitted)

        Returns:
            True if the device was added
        """
        handle = peripheral or PeripheralHandle(device_id=device_id, name=display_name)
        changes: list[tuple[str, str]] = []
        with self._lock:
            if device_id in self.devices:
                return False
            self._add_locked(handle, display_name, changes)
        self._notify(changes)
        return True

    def replace_with_rescan(
        self,
        new_ids: Iterable[str | PeripheralHandle],
        names: Mapping[str, str] | None = None,
    ) -> tuple[list[str], list[str]]:
        """
        Make the tracked set exactly the devices reported by a rescan.

        Devices missing from `new_ids` are dropped together with their log
        and state. New ids start in DISCOVERED and their lifecycle begins.
        Devices present before and after are not touched.

        Args:
            new_ids: Device ids or scan handles reported by the rescan
            names: Display names for plain ids

        Returns:
            (added_ids, removed_ids)
        """
        names = names or {}
        reported: dict[str, PeripheralHandle] = {}
        for item in new_ids:
            if isinstance(item, PeripheralHandle):
                reported.setdefault(item.device_id, item)
            else:
                reported.setdefault(
                    item,
                    PeripheralHandle(device_id=item, name=names.get(item)),
                )

        changes: list[tuple[str, str]] = []
        with self._lock:
            removed = [d for d in self.devices if d not in reported]
            for device_id in removed:
                entry = self.devices[device_id]
                entry.lifecycle.terminate(
                    ConnectionState.DISCONNECTED,
                    "absent from rescan",
                )
                self._remove_locked(device_id, changes)

            added = [d for d in reported if d not in self.devices]
            for device_id in added:
                handle = reported[device_id]
                self._add_locked(handle, names.get(device_id), changes)

        if added or removed:
            self.logger.info(
                "Rescan: %d added, %d removed, %d tracked",
                len(added),
                len(removed),
                len(self),
            )
        self._notify(changes)
        return added, removed

    def remove_device(self, device_id: str) -> bool:
        """
        Drop a device with its log and state.

        Returns:
            True if the device was tracked
        """
        changes: list[tuple[str, str]] = []
        with self._lock:
            entry = self.devices.get(device_id)
            if entry is None:
                self.logger.warning("Attempted to remove unknown device: %s", device_id)
                return False
            entry.lifecycle.terminate(ConnectionState.DISCONNECTED, "removed")
            self._remove_locked(device_id, changes)
        self._notify(changes)
        return True

    def on_transport_event(self, event: TransportEvent) -> None:
        """
        Dispatch one transport event to the owning device.

        Events for devices that are no longer tracked are ignored; they
        belong to commands issued before a rescan removed the device.
        """
        if event.kind is EventKind.ADAPTER_STATE:
            if event.powered:
                self.logger.info("Bluetooth adapter available")
            else:
                self.logger.info("Bluetooth not available: %s", event.reason or "off")
            return

        changes: list[tuple[str, str]] = []
        with self._lock:
            entry = self.devices.get(event.device_id) if event.device_id else None
            if entry is None:
                self.logger.debug(
                    "Ignoring %s for untracked device %s",
                    event.kind.name,
                    event.device_id,
                )
                return

            if event.kind is EventKind.VALUE_UPDATED:
                self._handle_value_locked(entry, event, changes)
            else:
                if entry.lifecycle.handle(event):
                    changes.append((CHANGE_STATE, entry.device_id))
                if entry.lifecycle.state.is_terminal:
                    self._remove_locked(entry.device_id, changes)
        self._notify(changes)

    def record(
        self,
        device_id: str,
        raw_byte: int,
        now: int | None = None,
    ) -> RecordOutcome:
        """
        Fold a raw battery level into a device's log, creating the log lazily.

        Args:
            device_id: Device identifier
            raw_byte: Raw Battery Level value (0-255)
            now: Timestamp in milliseconds (defaults to the registry clock)

        Returns:
            What the log did with the value

        Raises:
            UnknownDeviceError: If the device is not tracked
            InvalidReadingError: If the log rejects the value
        """
        changes: list[tuple[str, str]] = []
        with self._lock:
            entry = self.devices.get(device_id)
            if entry is None:
                raise UnknownDeviceError(
                    "Cannot record a reading for an untracked device",
                    device_id,
                )
            outcome = self._record_locked(entry, raw_byte, now, changes)
        self._notify(changes)
        return outcome

    def snapshot(self) -> tuple[DeviceSnapshot, ...]:
        """Immutable view of every device in discovery order."""
        with self._lock:
            return tuple(self._snapshot_entry(e) for e in self.devices.values())

    def get_snapshot(self, device_id: str) -> DeviceSnapshot | None:
        """Immutable view of one device, or None if not tracked."""
        with self._lock:
            entry = self.devices.get(device_id)
            return self._snapshot_entry(entry) if entry else None

    def get_summary(self) -> dict[str, Any]:
        """
        Get a summary of all tracked devices.

        Returns:
            Dictionary with device counts per connection state
        """
        with self._lock:
            states: dict[str, int] = {}
            for entry in self.devices.values():
                name = entry.state.name.lower()
                states[name] = states.get(name, 0) + 1
            return {
                "total_devices": len(self.devices),
                "subscribed_devices": states.get("subscribed", 0),
                "states": states,
                "last_updated": datetime.now(UTC).isoformat(),
            }

    def subscribe(self, callback: Callable[[str, str], None]) -> None:
        """
        Subscribe to registry changes.

        Args:
            callback: Called with (change, device_id), change being one of
                'added', 'removed', 'state' or 'reading'
        """
        self._observers.append(callback)

    def unsubscribe(self, callback: Callable[[str, str], None]) -> bool:
        """
        Unsubscribe from registry changes.

        Returns:
            True if callback was removed, False if not found
        """
        try:
            self._observers.remove(callback)
        except ValueError:
            return False
        return True

    def configure_readings(
        self,
        window_ms: int | None = None,
        out_of_range: str | None = None,
    ) -> None:
        """
        Change the settings used for reading logs created from now on.

        Existing logs keep the window and policy they were created with.
        None leaves a setting unchanged.
        """
        with self._lock:
            if window_ms is not None:
                self.window_ms = int(window_ms)
            if out_of_range is not None:
                self.out_of_range = out_of_range

    def _add_locked(
        self,
        handle: PeripheralHandle,
        display_name: str | None,
        changes: list[tuple[str, str]],
    ) -> None:
        lifecycle = ConnectionLifecycle(handle, self.transport)
        entry = DeviceEntry(
            device_id=handle.device_id,
            display_name=display_name or handle.display_name,
            lifecycle=lifecycle,
        )
        self.devices[handle.device_id] = entry
        changes.append((CHANGE_ADDED, handle.device_id))
        self.logger.info(
            "Registered discovered device: %s (%s)",
            handle.device_id,
            entry.display_name,
        )
        if lifecycle.begin():
            changes.append((CHANGE_STATE, handle.device_id))

    def _remove_locked(self, device_id: str, changes: list[tuple[str, str]]) -> None:
        del self.devices[device_id]
        if self.transport is not None:
            self.transport.release(device_id)
        changes.append((CHANGE_REMOVED, device_id))
        self.logger.info("Removed device: %s", device_id)

    def _handle_value_locked(
        self,
        entry: DeviceEntry,
        event: TransportEvent,
        changes: list[tuple[str, str]],
    ) -> None:
        if not entry.lifecycle.accepts_value(event):
            self.logger.debug(
                "Ignoring value for %s in state %s",
                entry.device_id,
                entry.state.name,
            )
            return
        if not event.value:
            self.logger.debug("Discarding empty battery payload from %s", entry.device_id)
            return
        try:
            self._record_locked(entry, event.value[0], None, changes)
        except InvalidReadingError as e:
            self.logger.warning("Discarding battery reading: %s", e)

    def _record_locked(
        self,
        entry: DeviceEntry,
        raw_byte: int,
        now: int | None,
        changes: list[tuple[str, str]],
    ) -> RecordOutcome:
        if entry.log is None:
            entry.log = DeviceReadingLog(
                window_ms=self.window_ms,
                out_of_range=self.out_of_range,
                device_id=entry.device_id,
            )
        timestamp = self.clock() if now is None else now
        outcome = entry.log.record(raw_byte, timestamp)
        if outcome is not RecordOutcome.DISCARDED:
            changes.append((CHANGE_READING, entry.device_id))
            self.logger.debug(
                "Battery level %s for %s: %s",
                outcome.name.lower(),
                entry.device_id,
                entry.log.label(),
            )
        return outcome

    def _snapshot_entry(self, entry: DeviceEntry) -> DeviceSnapshot:
        log = entry.log
        latest = log.latest if log else None
        return DeviceSnapshot(
            device_id=entry.device_id,
            display_name=entry.display_name,
            state=entry.state,
            label=log.label() if log else "",
            latest_level=latest.level if latest else None,
            readings=log.entries if log else (),
            discovered_at=entry.discovered_at,
        )

    def _notify(self, changes: list[tuple[str, str]]) -> None:
        for change, device_id in changes:
            for callback in list(self._observers):
                try:
                    callback(change, device_id)
                except Exception:
                    self.logger.exception("Error in registry observer callback")
