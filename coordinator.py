# coordinator.py
"""
Poll loop for pingwatch.

The Coordinator owns one TargetAggregate and one ProbeTask per target. Every tick
it drains the probe queues into the aggregates, builds a Snapshot and hands it to
the renderer. Aggregates are written only here, from the loop's own coroutine.

SIGINT is intercepted once per run: the first interrupt cancels the run, any
later one gets default handling. The handler is always removed before run()
returns.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

from aggregate import Snapshot, TargetAggregate
from probe import (
    DEFAULT_COUNT,
    DEFAULT_PAUSE_SECS,
    Pinger,
    ProbeTask,
    TaskStartupFailure,
    make_pinger,
)

logger = logging.getLogger("pingwatch.coordinator")


class Renderer(Protocol):
    def render(self, snapshot: Snapshot) -> None:
        ...


@dataclass
class TargetFailure:
    index: int
    name: str
    error: BaseException

    @property
    def startup(self) -> bool:
        return isinstance(self.error, TaskStartupFailure)

    @property
    def message(self) -> str:
        reason = getattr(self.error, "reason", None)
        return reason or str(self.error) or type(self.error).__name__


@dataclass
class RunReport:
    snapshot: Snapshot = ()
    failures: List[TargetFailure] = field(default_factory=list)
    cancelled: bool = False
    ticks: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures


class Coordinator:
    def __init__(
        self,
        targets: Sequence[str],
        renderer: Renderer,
        count: int = DEFAULT_COUNT,
        continuous: bool = False,
        tick_secs: float = 1.0,
        pinger: Optional[Pinger] = None,
        pause_secs: float = DEFAULT_PAUSE_SECS,
        handle_signals: bool = True,
    ) -> None:
        if not targets:
            raise ValueError("at least one target is required")
        if tick_secs <= 0:
            raise ValueError("tick interval must be positive")
        if not continuous and count <= 0:
            raise ValueError("count must be positive")
        self.targets = list(targets)
        self.renderer = renderer
        self.count = count
        self.continuous = continuous
        self.tick_secs = tick_secs
        self.pinger = pinger or make_pinger()
        self.pause_secs = pause_secs
        self.handle_signals = handle_signals
        self.aggregates = [TargetAggregate(name) for name in self.targets]
        self.probes: List[ProbeTask] = []
        self._tasks: List[asyncio.Task] = []
        self._failures: Dict[int, TargetFailure] = {}
        self._cancel_event: Optional[asyncio.Event] = None
        self._cancel_requested = False
        self._signal_installed = False
        self.ticks = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    @property
    def active_tasks(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def cancel(self) -> None:
        """Request shutdown. Safe to call more than once, from the loop thread."""
        if self._cancel_requested:
            return
        self._cancel_requested = True
        logger.info("cancel_requested")
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def run(self) -> RunReport:
        loop = asyncio.get_running_loop()
        self._cancel_event = asyncio.Event()
        if self._cancel_requested:
            self._cancel_event.set()
        if self.handle_signals:
            self._install_interrupt(loop)
        report = RunReport()
        try:
            self._start_tasks()
            while not self._cancel_event.is_set():
                finished = self.active_tasks == 0
                report.snapshot = self._tick()
                if finished:
                    break
                if await self._wait_tick():
                    break
        finally:
            if self.handle_signals:
                self._remove_interrupt(loop)
            await self._stop_tasks()
        report.failures = [self._failures[i] for i in sorted(self._failures)]
        report.cancelled = self._cancel_requested
        report.ticks = self.ticks
        logger.info("run_complete", extra={"sequence": self.ticks})
        return report

    # --------------------
    # Tick
    # --------------------

    def _start_tasks(self) -> None:
        count = None if self.continuous else self.count
        for name in self.targets:
            probe = ProbeTask(name, count, self.pinger, pause_secs=self.pause_secs)
            self.probes.append(probe)
            self._tasks.append(asyncio.create_task(probe.run(), name=f"probe:{name}"))

    def _tick(self) -> Snapshot:
        started = time.perf_counter()
        for index, (probe, agg) in enumerate(zip(self.probes, self.aggregates)):
            self._drain(probe, agg)
            self._collect_failure(index)
        snapshot = self.snapshot()
        self.renderer.render(snapshot)
        self.ticks += 1
        logger.debug(
            "tick_complete",
            extra={"sequence": self.ticks},
        )
        if time.perf_counter() - started > self.tick_secs:
            logger.warning("tick_overrun", extra={"sequence": self.ticks})
        return snapshot

    def _drain(self, probe: ProbeTask, agg: TargetAggregate) -> int:
        applied = 0
        while True:
            try:
                result = probe.results.get_nowait()
            except asyncio.QueueEmpty:
                break
            if agg.apply(result):
                applied += 1
            else:
                logger.debug("stale_result", extra={"target": agg.name, "sequence": result.sequence})
        return applied

    def _collect_failure(self, index: int) -> None:
        task = self._tasks[index]
        if index in self._failures or not task.done() or task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        name = self.targets[index]
        self._failures[index] = TargetFailure(index, name, exc)
        logger.error("task_failed", extra={"target": name}, exc_info=exc)

    def snapshot(self) -> Snapshot:
        views = []
        for index, agg in enumerate(self.aggregates):
            failure = self._failures.get(index)
            views.append(agg.snapshot(error=failure.message if failure else None))
        return tuple(views)

    async def _wait_tick(self) -> bool:
        """Sleep one tick. Returns True if cancellation arrived meanwhile."""
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=self.tick_secs)
        except asyncio.TimeoutError:
            return False
        return True

    async def _stop_tasks(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        # errors raised after the last tick still belong in the report
        for index in range(len(self._tasks)):
            self._collect_failure(index)

    # --------------------
    # Interrupt handling
    # --------------------

    def _install_interrupt(self, loop: asyncio.AbstractEventLoop) -> None:
        try:
            loop.add_signal_handler(signal.SIGINT, self._on_interrupt, loop)
            self._signal_installed = True
        except (NotImplementedError, RuntimeError):
            # not the main thread, or no signal support on this platform
            self._signal_installed = False

    def _remove_interrupt(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._signal_installed:
            loop.remove_signal_handler(signal.SIGINT)
            self._signal_installed = False

    def _on_interrupt(self, loop: asyncio.AbstractEventLoop) -> None:
        logger.info("interrupt_received")
        self._remove_interrupt(loop)
        self.cancel()
