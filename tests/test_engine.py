"""Tests for BatteryWatchCore wiring transport, registry and rescans."""

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from battery_watch.config.config_manager import ConfigManager, merge_defaults
from battery_watch.core.engine import DEFAULT_RESCAN_INTERVAL, BatteryWatchCore
from battery_watch_driver.base.simulation import SimulatedTransport
from battery_watch_driver.base.state import ConnectionState
from battery_watch_driver.base.transport import PeripheralHandle, TransportEvent
from tests.support.mocks.fake_transport import FakeTransport


@pytest.fixture
def config_manager(tmp_path: Any, simulated_system_config: dict[str, Any]) -> ConfigManager:
    """Fixture providing a config manager in simulated test mode."""
    cm = ConfigManager(str(tmp_path), enable_watchers=False)
    system = cm.get_config("system")
    for section, values in simulated_system_config.items():
        system[section].update(values)
    return cm


async def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until `condition` holds or fail after `timeout` seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(0.01)


def all_subscribed(core: BatteryWatchCore, count: int) -> bool:
    snapshots = core.registry.snapshot()
    return len(snapshots) == count and all(
        s.state == ConnectionState.SUBSCRIBED and s.latest_level is not None
        for s in snapshots
    )


@pytest.mark.asyncio
async def test_builds_simulated_transport(config_manager: ConfigManager) -> None:
    """Test mode selects the simulated transport and reading settings apply."""
    config_manager.get_config("system")["readings"]["window_ms"] = 150
    core = BatteryWatchCore(config_manager)
    assert isinstance(core.transport, SimulatedTransport)
    assert core.registry.window_ms == 150
    assert core.registry.transport is core.transport


@pytest.mark.asyncio
async def test_end_to_end_with_simulated_devices(config_manager: ConfigManager) -> None:
    """Initial scan connects, subscribes and records levels for every device."""
    core = BatteryWatchCore(config_manager)
    runner = asyncio.create_task(core.start(install_signal_handlers=False))
    try:
        await wait_until(lambda: all_subscribed(core, 2))
        levels = {s.device_id: s.latest_level for s in core.registry.snapshot()}
        assert levels == {"SIM-01": 64, "SIM-02": 12}
        assert core.last_rescan["added"] == ["SIM-01", "SIM-02"]

        core.transport.set_level("SIM-01", 63)
        await wait_until(lambda: core.registry.get_snapshot("SIM-01").latest_level == 63)

        core.transport.remove_peripheral("SIM-02")
        await wait_until(lambda: "SIM-02" not in core.registry)

        added, removed = await core.rescan()
        assert (added, removed) == ([], [])
        assert core.registry.device_ids() == ["SIM-01"]
    finally:
        await core.stop()
        await asyncio.wait_for(runner, timeout=2)
    assert core.running is False


@pytest.mark.asyncio
async def test_request_rescan_from_another_thread(config_manager: ConfigManager) -> None:
    """request_rescan() schedules a rescan on the engine loop."""
    config_manager.get_config("system")["discovery"]["initial_scan"] = False
    core = BatteryWatchCore(config_manager)

    with pytest.raises(RuntimeError, match="not running"):
        core.request_rescan()

    runner = asyncio.create_task(core.start(install_signal_handlers=False))
    try:
        await wait_until(lambda: core.running)
        assert len(core.registry) == 0

        def from_thread() -> tuple[list[str], list[str]]:
            return core.request_rescan().result(timeout=2)

        added, _ = await asyncio.to_thread(from_thread)
        assert sorted(added) == ["SIM-01", "SIM-02"]
    finally:
        await core.stop()
        await asyncio.wait_for(runner, timeout=2)


@pytest.mark.asyncio
async def test_adapter_recovery_triggers_rescan(config_manager: ConfigManager) -> None:
    """An adapter coming back on triggers an immediate rescan."""
    config_manager.get_config("system")["discovery"]["initial_scan"] = False
    transport = FakeTransport([PeripheralHandle("A", "Keyboard")])
    core = BatteryWatchCore(config_manager, transport=transport)
    runner = asyncio.create_task(core.start(install_signal_handlers=False))
    try:
        await wait_until(lambda: core.running)
        transport.emit(TransportEvent.adapter_state(powered=True))
        await asyncio.sleep(0.05)
        assert "scan" not in transport.names()

        transport.emit(TransportEvent.adapter_state(powered=False, reason="off"))
        transport.emit(TransportEvent.adapter_state(powered=True))
        await wait_until(lambda: "A" in core.registry)
        assert transport.names().count("scan") == 1
    finally:
        await core.stop()
        await asyncio.wait_for(runner, timeout=2)
    assert transport.closed


@pytest.mark.asyncio
async def test_periodic_rescan(config_manager: ConfigManager) -> None:
    """The rescan interval drives repeated scans."""
    system = config_manager.get_config("system")
    system["discovery"]["initial_scan"] = False
    system["discovery"]["rescan_interval"] = 0.02
    transport = FakeTransport()
    core = BatteryWatchCore(config_manager, transport=transport)
    runner = asyncio.create_task(core.start(install_signal_handlers=False))
    try:
        await wait_until(lambda: transport.names().count("scan") >= 2)
    finally:
        await core.stop()
        await asyncio.wait_for(runner, timeout=2)


@pytest.mark.asyncio
async def test_config_change_updates_registry(config_manager: ConfigManager) -> None:
    """Reloaded reading settings reach the registry."""
    core = BatteryWatchCore(config_manager, transport=FakeTransport())
    updated = merge_defaults(
        {"readings": {"window_ms": 75, "out_of_range": "reject"}},
        config_manager.get_config("system"),
    )
    config_manager._notify_listeners("system", updated)
    assert core.registry.window_ms == 75
    assert core.registry.out_of_range == "reject"


@pytest.mark.asyncio
async def test_invalid_rescan_interval_keeps_periodic_task_alive(
    config_manager: ConfigManager,
) -> None:
    """A non-numeric rescan interval falls back to the default."""
    system = config_manager.get_config("system")
    system["discovery"]["initial_scan"] = False
    system["discovery"]["rescan_interval"] = "soon"
    core = BatteryWatchCore(config_manager, transport=FakeTransport())
    assert core._rescan_interval() == DEFAULT_RESCAN_INTERVAL

    runner = asyncio.create_task(core.start(install_signal_handlers=False))
    try:
        await wait_until(lambda: core.running and len(core.tasks) == 2)
        await asyncio.sleep(0.05)
        periodic = core.tasks[1]
        assert not periodic.done()
    finally:
        await core.stop()
        await asyncio.wait_for(runner, timeout=2)


@pytest.mark.asyncio
async def test_adapter_rescan_tasks_are_dropped_when_done(
    config_manager: ConfigManager,
) -> None:
    """Rescans started by adapter recovery leave the task list once finished."""
    config_manager.get_config("system")["discovery"]["initial_scan"] = False
    transport = FakeTransport([PeripheralHandle("A", "Keyboard")])
    core = BatteryWatchCore(config_manager, transport=transport)
    runner = asyncio.create_task(core.start(install_signal_handlers=False))
    try:
        await wait_until(lambda: core.running and len(core.tasks) == 2)
        for _ in range(3):
            transport.emit(TransportEvent.adapter_state(powered=False, reason="off"))
            transport.emit(TransportEvent.adapter_state(powered=True))
        await wait_until(lambda: transport.names().count("scan") == 3)
        await wait_until(lambda: len(core.tasks) == 2)
    finally:
        await core.stop()
        await asyncio.wait_for(runner, timeout=2)


@pytest.mark.asyncio
async def test_config_change_from_watcher_thread(config_manager: ConfigManager) -> None:
    """Settings reloaded on another thread are applied on the engine loop."""
    config_manager.get_config("system")["discovery"]["initial_scan"] = False
    core = BatteryWatchCore(config_manager, transport=FakeTransport())
    runner = asyncio.create_task(core.start(install_signal_handlers=False))
    try:
        await wait_until(lambda: core.running)
        updated = merge_defaults(
            {"readings": {"window_ms": 40}},
            config_manager.get_config("system"),
        )
        await asyncio.to_thread(config_manager._notify_listeners, "system", updated)
        await wait_until(lambda: core.registry.window_ms == 40)
        assert core.registry.out_of_range == "clamp"
    finally:
        await core.stop()
        await asyncio.wait_for(runner, timeout=2)
