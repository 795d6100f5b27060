import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.helpers import FakeStateSource
from ha_printer_bridge.config import NotificationSettings
from ha_printer_bridge.errors import Unauthorized
from ha_printer_bridge.models import DiscoveredFeederUnit, EventKind, PrintStatus
from ha_printer_bridge.notifiers import LoggingSessionBackend
from ha_printer_bridge.scheduler import PollScheduler, PrinterMonitor
from ha_printer_bridge.state_machine import LiveSessionManager, PrintStateMachine
from ha_printer_bridge.sync import PrinterContext, SyncEngine


class TestPollScheduler:
    @pytest.mark.asyncio
    async def test_first_tick_is_immediate(self):
        tick = AsyncMock()
        scheduler = PollScheduler(tick, interval=60, name="x1c")
        scheduler.start()
        await asyncio.sleep(0.01)
        assert tick.await_count == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_ticks_repeat_until_stopped(self):
        tick = AsyncMock()
        scheduler = PollScheduler(tick, interval=0.01)
        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()
        count = tick.await_count
        assert count >= 3
        await asyncio.sleep(0.05)
        assert tick.await_count == count
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_tick_errors_do_not_kill_the_loop(self):
        tick = AsyncMock(side_effect=[RuntimeError("boom"), None, None, None, None, None, None, None])
        scheduler = PollScheduler(tick, interval=0.01)
        scheduler.start()
        await asyncio.sleep(0.05)
        assert scheduler.running is True
        await scheduler.stop()
        assert tick.await_count >= 2

    @pytest.mark.asyncio
    async def test_restart_replaces_the_task(self):
        tick = AsyncMock()
        scheduler = PollScheduler(tick, interval=60)
        scheduler.start()
        first_task = scheduler._task
        await scheduler.restart(30)
        assert first_task.cancelled() or first_task.done()
        assert scheduler.interval == 30
        assert scheduler.running is True
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self):
        scheduler = PollScheduler(AsyncMock(), interval=60)
        scheduler.start()
        task = scheduler._task
        scheduler.start()
        assert scheduler._task is task
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await PollScheduler(AsyncMock(), interval=60).stop()


def running_source() -> FakeStateSource:
    source = FakeStateSource()
    source.set_printer("x1c", print_status="running", print_progress="30", subtask_name="cube.3mf")
    source.set("sensor.ams_1_tray_1", "PLA", remain=80)
    return source


def make_monitor(source, **kwargs) -> PrinterMonitor:
    ctx = PrinterContext(
        "x1c",
        feeder_units=[DiscoveredFeederUnit("ams_1", "AMS 1", ("sensor.ams_1_tray_1",))],
    )
    return PrinterMonitor(ctx, SyncEngine(source), **kwargs)


class TestPrinterMonitor:
    @pytest.mark.asyncio
    async def test_tick_publishes_to_sinks(self):
        sink = MagicMock()
        monitor = make_monitor(running_source(), snapshot_sinks=[sink])
        snapshot = await monitor.tick()
        assert snapshot.status is PrintStatus.RUNNING
        published, feeders = sink.call_args.args
        assert published is snapshot
        assert feeders[0].slots[0].material_type == "PLA"

    @pytest.mark.asyncio
    async def test_feeders_skipped_when_disabled(self):
        source = running_source()
        monitor = make_monitor(source, monitor_feeders=False)
        await monitor.tick()
        assert monitor.ctx.feeders == ()
        assert "sensor.ams_1_tray_1" not in source.reads

    @pytest.mark.asyncio
    async def test_events_reach_event_sinks(self):
        source = running_source()
        event_sink = MagicMock()
        machine = PrintStateMachine(NotificationSettings(milestone_interval=25))
        monitor = make_monitor(source, state_machine=machine, event_sinks=[event_sink])
        monitor.ctx.previous_status = PrintStatus.IDLE
        await monitor.tick()
        emitted = [c.args[0].kind for c in event_sink.call_args_list]
        assert emitted == [EventKind.STARTED, EventKind.MILESTONE]

    @pytest.mark.asyncio
    async def test_degraded_tick_skips_state_machine(self):
        source = running_source()
        source.errors["sensor.x1c_print_status"] = Unauthorized()
        machine = AsyncMock()
        sink = MagicMock()
        monitor = make_monitor(source, state_machine=machine, snapshot_sinks=[sink])
        snapshot = await monitor.tick()
        assert snapshot.connected is False
        sink.assert_called_once()
        machine.process.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_feeder_failure_keeps_previous_reading(self):
        source = running_source()
        monitor = make_monitor(source)
        await monitor.tick()
        before = monitor.ctx.feeders
        source.errors["sensor.ams_1_tray_1"] = Unauthorized()
        await monitor.tick()
        assert monitor.ctx.feeders == before

    @pytest.mark.asyncio
    async def test_sink_failure_is_contained(self):
        bad_sink = MagicMock(side_effect=ValueError("bad"))
        good_sink = MagicMock()
        monitor = make_monitor(running_source(), snapshot_sinks=[bad_sink, good_sink])
        await monitor.tick()
        good_sink.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_prevents_further_publication(self):
        source = running_source()
        source.delay = 0.02
        sink = MagicMock()
        monitor = make_monitor(source, snapshot_sinks=[sink], poll_interval=0.01)
        monitor.start()
        await asyncio.sleep(0.005)
        await monitor.stop()
        calls = sink.call_count
        await asyncio.sleep(0.1)
        assert sink.call_count == calls
        assert monitor.scheduler.running is False

    @pytest.mark.asyncio
    async def test_stop_ends_live_session(self):
        backend = LoggingSessionBackend()
        machine = PrintStateMachine(NotificationSettings(), None, LiveSessionManager(backend))
        monitor = make_monitor(running_source(), state_machine=machine, poll_interval=60)
        monitor.ctx.previous_status = PrintStatus.IDLE
        await monitor.tick()
        assert backend.active == {monitor.ctx.session_handle}

        await monitor.stop()
        assert backend.active == set()
        assert monitor.ctx.session_handle is None
