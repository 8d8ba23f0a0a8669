"""Core monitoring module for Battery Watch."""

from .engine import BatteryWatchCore
from .lifecycle import ConnectionLifecycle
from .readings import DeviceReadingLog, Reading, RecordOutcome
from .registry import DeviceRegistry, DeviceSnapshot

__version__ = "0.1.0"

__all__ = [
    "BatteryWatchCore",
    "ConnectionLifecycle",
    "DeviceReadingLog",
    "DeviceRegistry",
    "DeviceSnapshot",
    "Reading",
    "RecordOutcome",
]
