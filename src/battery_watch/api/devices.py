"""
Device-related API endpoints for Battery Watch.

This module implements the device endpoints following the JSON-API
document layout. Handlers only read registry snapshots; a rescan is
handed to the engine loop.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from flask import Flask

    from battery_watch.core.engine import BatteryWatchCore
    from battery_watch.core.registry import DeviceSnapshot

from .schemas import DeviceQuerySchema, DeviceResourceSchema
from .validation import (
    APIError,
    format_error_response,
    handle_api_errors,
    validate_query_params,
)

logger = logging.getLogger("battery_watch.api.devices")

device_resource_schema = DeviceResourceSchema()


def format_device_resource(snapshot: DeviceSnapshot) -> dict[str, Any]:
    """
    Format a device snapshot as JSON-API resource object.

    Args:
        snapshot: Snapshot from the device registry

    Returns:
        JSON-API formatted resource object
    """
    data = snapshot.to_dict()
    device_id = data.pop("device_id")
    return device_resource_schema.dump(
        {
            "id": device_id,
            "type": "devices",
            "attributes": data,
            "links": {"self": f"/api/devices/{device_id}"},
        },
    )


def setup_device_routes(app: Flask, core_engine: BatteryWatchCore) -> None:
    """
    Set up device-related API routes.

    Args:
        app: Flask application instance
        core_engine: Core engine instance
    """

    @app.route("/api/devices", methods=["GET"])
    @validate_query_params(DeviceQuerySchema)
    @handle_api_errors
    def get_devices(validated_params: dict[str, Any]) -> tuple[dict[str, Any], int]:
        """
        Get all tracked devices, optionally filtered by state.

        Args:
            validated_params: Validated query parameters

        Returns:
            JSON-API formatted response with all devices
        """
        wanted_state = validated_params.get("state")
        data = [
            format_device_resource(snapshot)
            for snapshot in core_engine.registry.snapshot()
            if wanted_state is None or snapshot.state.name.lower() == wanted_state
        ]
        logger.debug("Retrieved %d devices", len(data))
        return {
            "data": data,
            "meta": {"total": len(data)},
            "links": {"self": "/api/devices"},
        }, 200

    @app.route("/api/devices/<device_id>", methods=["GET"])
    @handle_api_errors
    def get_device(device_id: str) -> tuple[dict[str, Any], int]:
        """
        Get specific device by identifier.

        Args:
            device_id: Device identifier

        Returns:
            JSON-API formatted response with device data
        """
        snapshot = core_engine.registry.get_snapshot(device_id)
        if snapshot is None:
            return format_error_response(
                f"Device {device_id} not found",
                404,
                "DEVICE_NOT_FOUND",
            )
        return {
            "data": format_device_resource(snapshot),
            "links": {"self": f"/api/devices/{device_id}"},
        }, 200

    @app.route("/api/devices/rescan", methods=["POST"])
    @handle_api_errors
    def rescan_devices() -> tuple[dict[str, Any], int]:
        """
        Ask the engine for an on-demand rescan.

        Returns:
            202 response; results appear in later device listings
        """
        try:
            core_engine.request_rescan()
        except RuntimeError as e:
            raise APIError(str(e), 503, "ENGINE_NOT_RUNNING") from e
        logger.info("On-demand rescan requested")
        return {
            "meta": {
                "status": "accepted",
                "last_rescan": core_engine.last_rescan,
            },
        }, 202
