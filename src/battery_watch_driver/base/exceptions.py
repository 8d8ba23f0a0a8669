"""Exception classes for Battery Watch BLE and reading errors."""

from __future__ import annotations

from typing import Any


class BatteryWatchError(Exception):
    """Base exception class for Battery Watch errors."""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize BatteryWatchError with message, device id, and context."""
        super().__init__(message)
        self.message = message
        self.device_id = device_id
        self.context = context or {}
        self.error_code = getattr(self, "ERROR_CODE", 0)

    def __str__(self) -> str:
        """Return string representation with device id if available."""
        if self.device_id:
            return f"Battery Watch Error ({self.device_id}): {self.message}"
        return f"Battery Watch Error: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/diagnostics."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "device_id": self.device_id,
            "error_code": self.error_code,
            "context": self.context,
        }


class BLETransportError(BatteryWatchError):
    """Raised when a BLE transport operation fails."""

    ERROR_CODE = 1001

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        """Initialize BLETransportError with the failed operation name."""
        super().__init__(message, device_id, {"operation": operation})
        self.operation = operation


class InvalidReadingError(BatteryWatchError):
    """Raised when a raw battery level cannot be accepted."""

    ERROR_CODE = 1002

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        raw_value: int | None = None,
    ) -> None:
        """Initialize InvalidReadingError with the offending raw value."""
        super().__init__(message, device_id, {"raw_value": raw_value})
        self.raw_value = raw_value


class UnknownDeviceError(BatteryWatchError):
    """Raised when an operation names a device the registry does not track."""

    ERROR_CODE = 1003
