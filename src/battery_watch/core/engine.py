"""
Core monitoring engine for Battery Watch.

This module provides the BatteryWatchCore class, the AsyncIO-based engine
that owns the BLE transport and the device registry, runs the initial and
periodic rescans, and feeds transport events into the registry on the
event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import TYPE_CHECKING, Any

from battery_watch_driver.base.connection import BleakTransport
from battery_watch_driver.base.constants import BATTERY_SERVICE_UUID
from battery_watch_driver.base.simulation import SimulatedTransport
from battery_watch_driver.base.transport import EventKind

from .readings import DEFAULT_WINDOW_MS, OUT_OF_RANGE_CLAMP
from .registry import DeviceRegistry

if TYPE_CHECKING:
    from concurrent.futures import Future

    from battery_watch.config.config_manager import ConfigManager
    from battery_watch_driver.base.transport import BLETransport, TransportEvent

DEFAULT_RESCAN_INTERVAL = 120


class BatteryWatchCore:
    """
    Core monitoring engine for Battery Watch.

    All registry mutations happen on the loop that runs `start()`. Other
    threads ask for a rescan through `request_rescan()`.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        transport: BLETransport | None = None,
    ) -> None:
        """
        Initialize BatteryWatchCore with all required components.

        Args:
            config_manager: Configuration manager instance
            transport: BLE transport (built from configuration if omitted)
        """
        self.config = config_manager
        self.logger = logging.getLogger("battery_watch.core")

        self.transport = transport or self._create_transport()
        readings_config = self._system_section("readings")
        self.registry = DeviceRegistry(
            transport=self.transport,
            window_ms=int(readings_config.get("window_ms", DEFAULT_WINDOW_MS)),
            out_of_range=readings_config.get("out_of_range", OUT_OF_RANGE_CLAMP),
        )
        self.transport.add_listener(self._on_transport_event)
        self.config.register_listener(self._on_config_change)

        self.running = False
        self.tasks: list[asyncio.Task[Any]] = []
        self.shutdown_event = asyncio.Event()
        self.loop: asyncio.AbstractEventLoop | None = None
        self._rescan_lock = asyncio.Lock()
        self.last_rescan: dict[str, Any] | None = None
        self.adapter_powered: bool | None = None

        self.logger.info(
            "BatteryWatchCore initialized with %s",
            type(self.transport).__name__,
        )

    def _system_section(self, name: str) -> dict[str, Any]:
        try:
            return self.config.get_config("system").get(name, {}) or {}
        except (KeyError, AttributeError, TypeError):
            return {}

    def _create_transport(self) -> BLETransport:
        """Build the transport selected by bluetooth.test_mode."""
        if self._system_section("bluetooth").get("test_mode", False):
            self.logger.info("Bluetooth test mode enabled, using simulated devices")
            return SimulatedTransport(self.config)
        return BleakTransport(self.config)

    async def start(self, *, install_signal_handlers: bool = True) -> None:
        """
        Start the engine and block until `stop()` or a shutdown signal.

        Runs the initial scan (when enabled) and the periodic rescan task.

        Args:
            install_signal_handlers: Stop on SIGINT/SIGTERM (main thread only)
        """
        try:
            self.logger.info("Starting BatteryWatchCore")
            self.running = True
            self.loop = asyncio.get_running_loop()
            if install_signal_handlers:
                self._setup_signal_handlers()

            self.tasks.append(asyncio.create_task(self._run_initial_discovery()))
            self.tasks.append(asyncio.create_task(self._run_periodic_discovery()))

            await self.shutdown_event.wait()
        except Exception:
            self.logger.exception("Error starting BatteryWatchCore")
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop rescans, close the transport and release devices."""
        if not self.running and not self.tasks:
            return
        self.logger.info("Stopping BatteryWatchCore")
        self.running = False
        self.shutdown_event.set()

        for task in self.tasks:
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()

        await self.transport.close()
        self.logger.info("BatteryWatchCore stopped")

    async def rescan(self) -> tuple[list[str], list[str]]:
        """
        Scan for Battery Service peripherals and replace the registry's device set.

        Returns:
            (added_ids, removed_ids)
        """
        async with self._rescan_lock:
            peripherals = await self.transport.scan_or_retrieve_connected(
                BATTERY_SERVICE_UUID,
            )
            added, removed = self.registry.replace_with_rescan(peripherals)
            self.last_rescan = {
                "found": len(peripherals),
                "added": added,
                "removed": removed,
            }
            return added, removed

    def request_rescan(self) -> Future[tuple[list[str], list[str]]]:
        """
        Schedule a rescan on the engine loop from any thread.

        Raises:
            RuntimeError: If the engine is not running
        """
        if self.loop is None or not self.running:
            raise RuntimeError("BatteryWatchCore is not running")
        return asyncio.run_coroutine_threadsafe(self.rescan(), self.loop)

    def _on_transport_event(self, event: TransportEvent) -> None:
        self.registry.on_transport_event(event)
        if event.kind is not EventKind.ADAPTER_STATE:
            return
        was_powered = self.adapter_powered
        self.adapter_powered = bool(event.powered)
        if (
            was_powered is False
            and self.adapter_powered
            and self.running
            and self.loop is not None
        ):
            # Adapter came back: pick up peripherals without waiting a full interval
            task = self.loop.create_task(self._safe_rescan("adapter on"))
            self.tasks.append(task)
            task.add_done_callback(self._forget_task)

    def _forget_task(self, task: asyncio.Task[Any]) -> None:
        if task in self.tasks:
            self.tasks.remove(task)

    def _on_config_change(self, key: str, config: dict) -> None:
        """Apply reloaded reading settings; called from the watchdog thread."""
        if key != "system":
            return
        readings = dict(config.get("readings", {}))
        if self.loop is not None and self.loop.is_running():
            self.loop.call_soon_threadsafe(self._apply_reading_settings, readings)
        else:
            self._apply_reading_settings(readings)

    def _apply_reading_settings(self, readings: dict[str, Any]) -> None:
        self.registry.configure_readings(
            window_ms=readings.get("window_ms"),
            out_of_range=readings.get("out_of_range"),
        )
        self.logger.info(
            "Reading settings updated: window=%dms, out_of_range=%s",
            self.registry.window_ms,
            self.registry.out_of_range,
        )

    async def _safe_rescan(self, reason: str) -> None:
        try:
            self.logger.info("Running device rescan (%s)", reason)
            await self.rescan()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Error during device rescan")

    async def _run_initial_discovery(self) -> None:
        """Run the first scan on startup if discovery.initial_scan is set."""
        if not self._system_section("discovery").get("initial_scan", True):
            self.logger.info("Initial discovery disabled, skipping")
            return
        await self._safe_rescan("startup")

    def _rescan_interval(self) -> float:
        value = self._system_section("discovery").get(
            "rescan_interval",
            DEFAULT_RESCAN_INTERVAL,
        )
        try:
            interval = float(value)
        except (TypeError, ValueError):
            self.logger.warning(
                "Invalid discovery.rescan_interval %r, using %ds",
                value,
                DEFAULT_RESCAN_INTERVAL,
            )
            return float(DEFAULT_RESCAN_INTERVAL)
        if interval <= 0:
            return float(DEFAULT_RESCAN_INTERVAL)
        return interval

    async def _run_periodic_discovery(self) -> None:
        """Rescan every discovery.rescan_interval seconds."""
        while self.running and not self.shutdown_event.is_set():
            interval = self._rescan_interval()
            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval)
            except TimeoutError:
                await self._safe_rescan("periodic")
            else:
                break

    def _setup_signal_handlers(self) -> None:
        """Stop the engine on SIGINT/SIGTERM where the loop supports it."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.ensure_future(self.stop()),
                )
