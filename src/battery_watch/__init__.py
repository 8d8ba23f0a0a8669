"""Battery Watch: live battery levels for nearby Bluetooth LE devices."""

__version__ = "0.1.0"
