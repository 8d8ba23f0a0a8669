# Why does this file exist, and why not put this in `__main__`?
#
# You might be tempted to import things from `__main__` later,
# but that will cause problems: the code will get executed twice:
#
# - When you run `python -m battery_watch` python will execute
#   `__main__.py` as a script. That means there won't be any
#   `battery_watch.__main__` in `sys.modules`.
# - When you import `__main__` it will get executed again (as a module) because
#   there's no `battery_watch.__main__` in `sys.modules`.
"""Module that contains the command line application."""
# ruff: noqa: T201, BLE001

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import TYPE_CHECKING, Any

from battery_watch.config.config_manager import DEFAULT_CONFIG_DIR, ConfigManager
from battery_watch_driver.base.constants import BATTERY_SERVICE_UUID
from battery_watch_driver.base.discovery import BLEDiscoveryService
from battery_watch_driver.base.simulation import SimulatedTransport

if TYPE_CHECKING:
    from collections.abc import Iterable

    from battery_watch.core.registry import DeviceSnapshot


def setup_logging(config_manager: ConfigManager) -> None:
    """Set up basic logging configuration."""
    log_level = (
        config_manager.get_config("system").get("logging", {}).get("level", "INFO")
    )

    if not isinstance(getattr(logging, str(log_level), None), int):
        print(f"Warning: Invalid log level '{log_level}', using INFO", file=sys.stderr)
        log_level = "INFO"

    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
        force=True,
    )

    # Reduce noise from external libraries
    logging.getLogger("bleak").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    logger = logging.getLogger("battery_watch.setup")
    logger.info("Logging configured at %s level", log_level)


def get_parser() -> argparse.ArgumentParser:
    """
    Return the CLI argument parser with subcommands for all Battery Watch functionality.

    Returns:
        An argparse parser.
    """
    parser = argparse.ArgumentParser(prog="battery-watch")
    _ = parser.add_argument(
        "--config-dir",
        type=str,
        default=os.environ.get("BATTERYWATCH_CONFIG_DIR", DEFAULT_CONFIG_DIR),
        help="Directory for configuration files "
        "(default: ~/.config/battery-watch or $BATTERYWATCH_CONFIG_DIR)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # show
    show_parser = subparsers.add_parser("show", help="Show a config section or key")
    _ = show_parser.add_argument("section", type=str, help="Config section (system)")
    _ = show_parser.add_argument(
        "key",
        type=str,
        nargs="*",
        help="Optional nested key(s)",
    )

    # set
    set_parser = subparsers.add_parser("set", help="Set a config value")
    _ = set_parser.add_argument("section", type=str, help="Config section (system)")
    _ = set_parser.add_argument(
        "key",
        type=str,
        nargs="+",
        help="Nested key(s) to set (e.g. readings window_ms)",
    )
    _ = set_parser.add_argument("value", type=str, help="Value to set (JSON or string)")

    # save
    save_parser = subparsers.add_parser("save", help="Save a config section to disk")
    _ = save_parser.add_argument("section", type=str, help="Config section to save")

    # list
    _list_parser = subparsers.add_parser("list", help="List all config sections")

    # scan
    scan_parser = subparsers.add_parser(
        "scan",
        help="Scan for peripherals advertising the Battery Service",
        description="Scan for peripherals advertising the Battery Service",
    )
    _ = scan_parser.add_argument(
        "--duration",
        type=int,
        default=None,
        help="Scan duration in seconds (default: discovery.scan_duration)",
    )
    _ = scan_parser.add_argument(
        "--format",
        choices=["json", "table"],
        default="table",
        help="Output format (default: table)",
    )

    # monitor
    monitor_parser = subparsers.add_parser(
        "monitor",
        help="Track battery levels of nearby devices until interrupted",
    )
    _ = monitor_parser.add_argument(
        "--api",
        action="store_true",
        help="Also serve the REST API (overrides api.enabled)",
    )

    return parser


async def scan_devices(
    config_manager: ConfigManager,
    duration: int | None,
    output_format: str,
) -> int:
    """
    Run one scan for Battery Service peripherals and print the result.

    Args:
        config_manager: Configuration manager instance
        duration: Scan duration in seconds, or None for the configured value
        output_format: Output format ('json' or 'table')

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    try:
        devices = await _perform_scan(config_manager, duration)
    except Exception as e:
        print(f"Error during device scan: {e}", file=sys.stderr)
        return 1

    if output_format == "json":
        result = {
            "scan_duration": duration,
            "devices_found": len(devices),
            "devices": devices,
        }
        sys.stdout.write(json.dumps(result, indent=2) + "\n")
        return 0

    if not devices:
        print("No devices found.")
        return 0
    _print_device_table(devices)
    return 0


async def _perform_scan(
    config_manager: ConfigManager,
    duration: int | None,
) -> dict[str, dict[str, Any]]:
    """Scan with the simulated transport in test mode, otherwise with Bleak."""
    bluetooth = config_manager.get_config("system").get("bluetooth", {})
    if bluetooth.get("test_mode", False):
        transport = SimulatedTransport(config_manager)
        peripherals = await transport.scan_or_retrieve_connected(BATTERY_SERVICE_UUID)
        return {
            p.device_id: {"device_id": p.device_id, "name": p.display_name, "rssi": None}
            for p in peripherals
        }

    discovery_service = BLEDiscoveryService(config_manager)
    await discovery_service.scan_for_devices(BATTERY_SERVICE_UUID, duration)
    if discovery_service.adapter_available is False:
        print("Bluetooth not available.", file=sys.stderr)
    return discovery_service.get_discovered_devices()


def _print_device_table(devices: dict[str, dict[str, Any]]) -> None:
    """Print the device table."""
    print(f"\nFound {len(devices)} device(s):")
    print("-" * 72)
    print(f"{'Device ID':<38} {'Name':<24} {'RSSI'}")
    print("-" * 72)
    for device_id, info in devices.items():
        rssi = info.get("rssi")
        print(
            f"{device_id:<38} {info.get('name', 'Unknown Device'):<24} "
            f"{'N/A' if rssi is None else rssi}",
        )


def format_snapshot_table(snapshots: Iterable[DeviceSnapshot]) -> str:
    """Render registry snapshots as the monitor's text table."""
    lines = [
        f"{'Device':<24} {'State':<20} Battery",
        "-" * 72,
    ]
    for snapshot in snapshots:
        lines.append(
            f"{snapshot.display_name:<24} {snapshot.state.name.lower():<20} "
            f"{snapshot.label or '-'}",
        )
    if len(lines) == 2:
        lines.append("(no devices)")
    return "\n".join(lines)


async def monitor_devices(config_manager: ConfigManager, enable_api: bool) -> int:
    """
    Run the monitoring engine, printing the device table on every change.

    Args:
        config_manager: Configuration manager instance
        enable_api: Start the REST API even if api.enabled is false

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    from battery_watch.core.engine import BatteryWatchCore

    logger = logging.getLogger("battery_watch.monitor")
    try:
        core_engine = BatteryWatchCore(config_manager)
    except Exception:
        logger.exception("Failed to initialize monitoring engine")
        return 1

    def print_table(change: str, device_id: str) -> None:  # noqa: ARG001
        print(format_snapshot_table(core_engine.registry.snapshot()) + "\n", flush=True)

    core_engine.registry.subscribe(print_table)

    api_server = None
    api_config = config_manager.get_config("system").get("api", {})
    if enable_api or api_config.get("enabled", False):
        from battery_watch.api.api import BatteryWatchAPI

        api_server = BatteryWatchAPI(config_manager, core_engine)

    try:
        if api_server:
            api_server.start()
        await core_engine.start()
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")
    except Exception:
        logger.exception("Monitoring error")
        return 1
    finally:
        if api_server:
            api_server.stop()
        await core_engine.stop()

    logger.info("Battery Watch stopped")
    return 0


def main(args: list[str] | None = None) -> int:
    """
    Run the main program.

    This function is executed when you type `battery-watch` or `python -m battery_watch`.

    Arguments:
        args: Arguments passed from the command line.

    Returns:
        An exit code.
    """
    parser = get_parser()
    opts = parser.parse_args(args=args)
    try:
        os.makedirs(opts.config_dir, exist_ok=True)
    except OSError as e:
        print(
            f"Error: Could not create config directory '{opts.config_dir}': {e}",
            file=sys.stderr,
        )
        return 1
    try:
        config_manager = ConfigManager(
            config_dir=opts.config_dir,
            enable_watchers=opts.command == "monitor",
        )
        setup_logging(config_manager)
    except Exception as e:
        print(f"Error: Failed to initialize config manager: {e}", file=sys.stderr)
        return 1

    try:
        return _handle_command(opts, config_manager)
    finally:
        config_manager.cleanup()


def _handle_command(opts: argparse.Namespace, config_manager: ConfigManager) -> int:  # noqa: PLR0911
    """Handle the CLI command with proper error handling."""
    if opts.command == "show":
        try:
            val: Any = config_manager.get_config(opts.section)
            for k in opts.key:
                if not isinstance(val, dict) or k not in val:
                    print(
                        f"Error: Key '{k}' not found in config section '{opts.section}'",
                        file=sys.stderr,
                    )
                    return 1
                val = val[k]
            print(json.dumps(val, indent=2) if isinstance(val, dict) else val)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    if opts.command == "set":
        try:
            d = config_manager.get_config(opts.section)
            for k in opts.key[:-1]:
                d = d.setdefault(k, {})
            try:
                value = json.loads(opts.value)
            except json.JSONDecodeError:
                value = opts.value
            d[opts.key[-1]] = value
            config_manager.save_config(opts.section)
            print(f"Set {opts.section} {'.'.join(opts.key)} = {value}")
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    if opts.command == "save":
        try:
            config_manager.save_config(opts.section)
            print(f"Saved config section '{opts.section}' to disk.")
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    if opts.command == "list":
        print("Available config sections:")
        for section in config_manager.configs:
            print(f"- {section}")
        return 0

    if opts.command == "scan":
        return asyncio.run(scan_devices(config_manager, opts.duration, opts.format))

    if opts.command == "monitor":
        try:
            return asyncio.run(monitor_devices(config_manager, opts.api))
        except KeyboardInterrupt:
            return 0

    print(f"Unknown command: {opts.command}", file=sys.stderr)
    return 1
