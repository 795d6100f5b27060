import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from .errors import StateSourceError
from .models import FeederUnitReading, NotificationEvent, PrinterSnapshot
from .state_machine import PrintStateMachine
from .sync import PrinterContext, SyncEngine

logger = logging.getLogger(__name__)

SnapshotSink = Callable[[PrinterSnapshot, Iterable[FeederUnitReading]], None]
EventSink = Callable[[NotificationEvent], None]


class PollScheduler:
    """Runs ``tick`` immediately and then every ``interval`` seconds.

    One task at most: ``start`` on a running scheduler is a no-op, ``restart``
    stops the old task before launching the new one.
    """

    def __init__(self, tick: Callable[[], Awaitable[object]], interval: float, name: str = "") -> None:
        self._tick = tick
        self.interval = interval
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("[%s] Polling every %ss", self.name, self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("[%s] Polling stopped", self.name)

    async def restart(self, interval: Optional[float] = None) -> None:
        await self.stop()
        if interval is not None:
            self.interval = interval
        self.start()

    async def _run(self) -> None:
        while True:
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("[%s] Poll tick failed: %s", self.name, e)
            await asyncio.sleep(self.interval)


class PrinterMonitor:
    """Wires one printer's context through sync, sinks and the state machine."""

    def __init__(
        self,
        ctx: PrinterContext,
        engine: SyncEngine,
        state_machine: Optional[PrintStateMachine] = None,
        snapshot_sinks: Iterable[SnapshotSink] = (),
        event_sinks: Iterable[EventSink] = (),
        poll_interval: float = 30,
        monitor_feeders: bool = True,
    ) -> None:
        self.ctx = ctx
        self.engine = engine
        self.state_machine = state_machine
        self.snapshot_sinks: List[SnapshotSink] = list(snapshot_sinks)
        self.event_sinks: List[EventSink] = list(event_sinks)
        self.monitor_feeders = monitor_feeders
        self.scheduler = PollScheduler(self.tick, poll_interval, name=ctx.prefix)
        self._stopped = False

    @property
    def prefix(self) -> str:
        return self.ctx.prefix

    def start(self) -> None:
        self._stopped = False
        self.scheduler.start()

    async def stop(self) -> None:
        self._stopped = True
        await self.scheduler.stop()
        if self.state_machine is not None:
            await self.state_machine.stop(self.ctx)

    async def restart(self, interval: float) -> None:
        self._stopped = False
        await self.scheduler.restart(interval)

    async def refresh_feeders(self) -> None:
        readings: Dict[str, FeederUnitReading] = {u.prefix: u for u in self.ctx.feeders}
        for unit in self.ctx.feeder_units:
            try:
                readings[unit.prefix] = await self.engine.read_feeder_unit(unit)
            except StateSourceError as e:
                logger.warning("[%s] Feeder %s read failed: %s", self.prefix, unit.prefix, e)
        self.ctx.feeders = tuple(readings[u.prefix] for u in self.ctx.feeder_units if u.prefix in readings)

    async def tick(self) -> Optional[PrinterSnapshot]:
        snapshot = await self.engine.sync(self.ctx)
        if self._stopped:
            return None
        if self.monitor_feeders and self.ctx.feeder_units and snapshot.connected:
            await self.refresh_feeders()

        for sink in self.snapshot_sinks:
            try:
                sink(snapshot, self.ctx.feeders)
            except Exception as e:
                logger.warning("[%s] Snapshot sink failed: %s", self.prefix, e)

        if self.state_machine is not None and snapshot.connected:
            events = await self.state_machine.process(self.ctx, snapshot)
            for event in events:
                for sink in self.event_sinks:
                    sink(event)
        return snapshot
