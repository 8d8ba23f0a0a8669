"""
Sample Data Fixtures for Testing.

This module provides peripherals, configuration and notification sequences
shared by the Battery Watch tests.
"""

from __future__ import annotations

from typing import Any

import pytest

from battery_watch_driver.base.transport import PeripheralHandle
from tests.support.mocks.fake_transport import FakeTransport

SAMPLE_PERIPHERALS = [
    {"device_id": "AA:BB:CC:DD:EE:01", "name": "Keyboard", "rssi": -52},
    {"device_id": "AA:BB:CC:DD:EE:02", "name": "Mouse", "rssi": -61},
    {"device_id": "AA:BB:CC:DD:EE:03", "name": None, "rssi": -80},
]

# (raw level, timestamp ms, expected (level, timestamp) entries afterwards)
NOTIFICATION_SCENARIO = [
    (90, 0, [(90, 0)]),
    (90, 50, [(90, 0)]),
    (85, 100, [(90, 0), (85, 100)]),
    (85, 400, [(85, 400), (85, 100)]),
]

SIMULATED_DEVICES = [
    {"id": "SIM-01", "name": "Simulated Headset", "level": 64},
    {"id": "SIM-02", "name": "Simulated Pen", "level": 12},
]


@pytest.fixture
def sample_peripherals() -> list[PeripheralHandle]:
    """Fixture providing scan results."""
    return [PeripheralHandle(**p) for p in SAMPLE_PERIPHERALS]


@pytest.fixture
def fake_transport(sample_peripherals: list[PeripheralHandle]) -> FakeTransport:
    """Fixture providing a recording transport that reports the sample peripherals."""
    return FakeTransport(sample_peripherals)


@pytest.fixture
def notification_scenario() -> list[tuple[int, int, list[tuple[int, int]]]]:
    """Fixture providing a notification burst and the expected log after each step."""
    return NOTIFICATION_SCENARIO


@pytest.fixture
def simulated_system_config() -> dict[str, Any]:
    """Fixture providing a system config section for simulated test mode."""
    return {
        "bluetooth": {
            "test_mode": True,
            "simulated_devices": SIMULATED_DEVICES,
            "simulated_notify_interval": 0.05,
        },
        "discovery": {
            "initial_scan": True,
            "scan_duration": 1,
            "rescan_interval": 3600,
        },
    }
