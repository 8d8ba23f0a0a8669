"""
Pytest configuration and shared fixtures for Battery Watch tests.

This file imports and exposes fixtures from the fixtures module
to make them available to all test files.
"""

from tests.support.fixtures.sample_data import (
    fake_transport,
    notification_scenario,
    sample_peripherals,
    simulated_system_config,
)

# Re-export all fixtures to make them available to all test files
__all__ = [
    "fake_transport",
    "notification_scenario",
    "sample_peripherals",
    "simulated_system_config",
]
