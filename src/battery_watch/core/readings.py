"""
Battery level readings and the per-device compacted reading log.

A peripheral with notifications enabled may report the same level many
times a second. `DeviceReadingLog.record` keeps the history short: a steady
value collapses into one entry that is refreshed in place, while a level
that changes during a burst of notifications is kept as a separate point.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto

from battery_watch_driver.base.constants import (
    BATTERY_LEVEL_MAX,
    BATTERY_LEVEL_MIN,
    RAW_BYTE_MAX,
)
from battery_watch_driver.base.exceptions import InvalidReadingError

DEFAULT_WINDOW_MS = 200

OUT_OF_RANGE_CLAMP = "clamp"
OUT_OF_RANGE_REJECT = "reject"
OUT_OF_RANGE_POLICIES = (OUT_OF_RANGE_CLAMP, OUT_OF_RANGE_REJECT)


@dataclass(frozen=True)
class Reading:
    """One battery sample."""

    level: int  # Percentage (0-100)
    timestamp: int  # Milliseconds since an arbitrary epoch


class RecordOutcome(Enum):
    """What `DeviceReadingLog.record` did with a sample."""

    APPENDED = auto()
    REFRESHED = auto()
    DISCARDED = auto()


class DeviceReadingLog:
    """
    Ordered battery history for one device.

    Entries are chronological and only ever produced by `record`. The log
    never shrinks: each call appends one entry, rewrites one entry, or
    leaves the log untouched.
    """

    def __init__(
        self,
        window_ms: int = DEFAULT_WINDOW_MS,
        out_of_range: str = OUT_OF_RANGE_CLAMP,
        device_id: str | None = None,
    ) -> None:
        """
        Initialize an empty log.

        Args:
            window_ms: Interval in which an entry still counts as recent
            out_of_range: Policy for raw bytes above 100 ('clamp' or 'reject')
            device_id: Owning device, used in errors and log messages
        """
        if window_ms < 0:
            raise ValueError(f"window_ms must be non-negative, got {window_ms}")
        if out_of_range not in OUT_OF_RANGE_POLICIES:
            raise ValueError(f"Unknown out_of_range policy: {out_of_range}")
        self.window_ms = window_ms
        self.out_of_range = out_of_range
        self.device_id = device_id
        self._entries: list[Reading] = []
        self._last_written: int | None = None
        self.logger = logging.getLogger("battery_watch.readings")

    @property
    def entries(self) -> tuple[Reading, ...]:
        """Entries in chronological order."""
        return tuple(self._entries)

    @property
    def latest(self) -> Reading | None:
        """
        Most recently written entry, or None for an empty log.

        After an in-place refresh this is not necessarily the last entry.
        """
        if self._last_written is None:
            return None
        return self._entries[self._last_written]

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def label(self) -> str:
        """Levels joined for display, e.g. '81%, 80%'."""
        return ", ".join(f"{entry.level}%" for entry in self._entries)

    def normalize_level(self, raw: int) -> int:
        """
        Map a raw Battery Level byte onto 0-100.

        Raises:
            InvalidReadingError: If `raw` is not a byte, or is above 100
                under the 'reject' policy
        """
        if raw < 0 or raw > RAW_BYTE_MAX:
            raise InvalidReadingError(
                f"Battery level {raw} is not a byte value",
                self.device_id,
                raw,
            )
        if raw <= BATTERY_LEVEL_MAX:
            return raw
        if self.out_of_range == OUT_OF_RANGE_REJECT:
            raise InvalidReadingError(
                f"Battery level {raw} is above {BATTERY_LEVEL_MAX}",
                self.device_id,
                raw,
            )
        self.logger.debug(
            "Clamping battery level %d to %d for %s",
            raw,
            BATTERY_LEVEL_MAX,
            self.device_id,
        )
        return max(BATTERY_LEVEL_MIN, min(raw, BATTERY_LEVEL_MAX))

    def record(self, new_level: int, now: int) -> RecordOutcome:
        """
        Fold one battery notification into the log.

        Only the first stale entry found is rewritten. Stale entries after
        it are left as they are, even when they will never be visited again.

        Args:
            new_level: Raw Battery Level value (0-255)
            now: Current time in milliseconds

        Returns:
            The mutation performed

        Raises:
            InvalidReadingError: If the raw value is not acceptable
        """
        level = self.normalize_level(new_level)

        if not self._entries:
            self._entries.append(Reading(level, now))
            self._last_written = 0
            return RecordOutcome.APPENDED

        all_recent = True
        for index, entry in enumerate(self._entries):
            if entry.timestamp + self.window_ms > now:
                continue
            self._entries[index] = Reading(level, now)
            self._last_written = index
            all_recent = False
            break

        if not all_recent:
            return RecordOutcome.REFRESHED

        if self._entries[-1].level != level:
            self._entries.append(Reading(level, now))
            self._last_written = len(self._entries) - 1
            return RecordOutcome.APPENDED
        return RecordOutcome.DISCARDED
