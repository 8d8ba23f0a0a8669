"""
Marshmallow schemas for Battery Watch API validation and serialization.

Device documents follow the JSON-API resource layout.
"""

from __future__ import annotations

from marshmallow import Schema, fields, validate

from battery_watch_driver.base.state import ConnectionState

STATE_NAMES = [state.name.lower() for state in ConnectionState]


class ReadingSchema(Schema):
    """Schema for one entry of a device reading log."""

    level = fields.Int(metadata={"description": "Battery level percentage (0-100)"})
    timestamp = fields.Int(metadata={"description": "Milliseconds, monotonic clock"})


class DeviceAttributesSchema(Schema):
    """Schema for device attributes serialization."""

    display_name = fields.Str(metadata={"description": "Human-readable device name"})
    state = fields.Str(
        validate=validate.OneOf(STATE_NAMES),
        metadata={"description": "Connection lifecycle state"},
    )
    label = fields.Str(metadata={"description": "Reading levels, e.g. '81%, 80%'"})
    latest_level = fields.Int(
        allow_none=True,
        metadata={"description": "Level of the most recent sample"},
    )
    readings = fields.List(fields.Nested(ReadingSchema))
    discovered_at = fields.Str(metadata={"description": "ISO-8601 discovery time"})


class DeviceResourceSchema(Schema):
    """Schema for device resource in JSON-API format."""

    id = fields.Str(metadata={"description": "Device identifier"})
    type = fields.Str(dump_default="devices", metadata={"description": "Resource type"})
    attributes = fields.Nested(DeviceAttributesSchema)
    links = fields.Dict(keys=fields.Str(), values=fields.Str())


class DeviceQuerySchema(Schema):
    """Schema for device list query parameters."""

    state = fields.Str(
        validate=validate.OneOf(STATE_NAMES),
        metadata={"description": "Only return devices in this state"},
    )
