"""BLE driver layer for Battery Watch."""

__version__ = "0.1.0"
