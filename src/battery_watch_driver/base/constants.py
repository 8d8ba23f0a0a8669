"""Bluetooth SIG GATT identifiers for the standard Battery Service."""

from bleak.uuids import normalize_uuid_str

# 16-bit SIG assigned numbers
BATTERY_SERVICE_SHORT_UUID = "180F"
BATTERY_LEVEL_CHARACTERISTIC_SHORT_UUID = "2A19"

# Full 128-bit forms (SIG base UUID), as reported by bleak
BATTERY_SERVICE_UUID = normalize_uuid_str(BATTERY_SERVICE_SHORT_UUID)
BATTERY_LEVEL_CHARACTERISTIC_UUID = normalize_uuid_str(
    BATTERY_LEVEL_CHARACTERISTIC_SHORT_UUID,
)

# Battery Level is a single uint8 percentage
BATTERY_LEVEL_MIN = 0
BATTERY_LEVEL_MAX = 100
RAW_BYTE_MAX = 255


def uuid_matches(candidate: str, expected: str) -> bool:
    """Return True if two UUIDs (16, 32 or 128 bit, any case) are the same."""
    try:
        return normalize_uuid_str(candidate) == normalize_uuid_str(expected)
    except ValueError:
        return False
