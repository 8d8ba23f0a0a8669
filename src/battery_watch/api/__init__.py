"""Flask REST API implementation for Battery Watch."""

from . import devices
from .api import BatteryWatchAPI

__version__ = "0.1.0"

__all__ = [
    "BatteryWatchAPI",
    "devices",
]
