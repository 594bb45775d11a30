"""Poll cycle: sample, aggregate, refresh tracked processes, publish.

One cycle runs the top-N sample, the metrics read and the tracked-set
refresh concurrently and publishes a Snapshot once all three finish (or hit
cycle_timeout). Cycles never overlap: a timer tick that finds a cycle in
flight is dropped, a refresh request waits for it, and concurrent refresh
requests coalesce into one queued cycle. Snapshots are published inside the
guard, so they leave in cycle order.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, replace
from typing import Any, TypeVar

import structlog

from taskwarden.collector import Process, PsSampler, select_top
from taskwarden.metrics import MetricsStrategy, ProcessSample, SystemMetrics
from taskwarden.tracker import TrackedSet

log = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class Snapshot:
    """Everything published for one cycle. Replaces the previous snapshot."""

    cycle: int
    top_processes: list[Process]
    metrics: SystemMetrics
    tracked_processes: list[Process]

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "cycle": self.cycle,
            "top_processes": [p.to_dict() for p in self.top_processes],
            "metrics": self.metrics.to_dict(),
            "tracked_processes": [p.to_dict() for p in self.tracked_processes],
        }

    @classmethod
    def from_dict(cls, data: dict) -> Snapshot:
        """Deserialize from a dictionary."""
        return cls(
            cycle=data["cycle"],
            top_processes=[Process.from_dict(p) for p in data["top_processes"]],
            metrics=SystemMetrics.from_dict(data["metrics"]),
            tracked_processes=[Process.from_dict(p) for p in data["tracked_processes"]],
        )


Publisher = Callable[[Snapshot], Awaitable[None]]


class Poller:
    """Runs poll cycles behind a single-flight guard."""

    def __init__(
        self,
        sampler: PsSampler,
        metrics: MetricsStrategy,
        tracked: TrackedSet,
        *,
        top_n: int = 20,
        cycle_timeout: float = 5.0,
        publish: Publisher | None = None,
    ) -> None:
        self.sampler = sampler
        self.metrics = metrics
        self.tracked = tracked
        self.top_n = top_n
        self.cycle_timeout = cycle_timeout
        self._publish = publish
        self._guard = asyncio.Lock()
        self._refresh_pending = False
        self._cycle = 0
        self.latest: Snapshot | None = None
        self.skipped_ticks = 0

    @property
    def in_flight(self) -> bool:
        """True while a cycle holds the guard."""
        return self._guard.locked()

    async def tick(self) -> Snapshot | None:
        """Timer entry point. Returns None if a cycle was already in flight."""
        if self._guard.locked():
            self.skipped_ticks += 1
            log.info("cycle_skipped", reason="in_flight", skipped=self.skipped_ticks)
            return None
        async with self._guard:
            return await self._run_cycle("timer")

    async def refresh(self) -> Snapshot | None:
        """On-demand entry point.

        Waits behind an in-flight cycle. Returns None if another refresh is
        already queued, since that queued cycle will serve both requests.
        """
        if self._refresh_pending:
            log.debug("refresh_coalesced")
            return None

        self._refresh_pending = True
        try:
            await self._guard.acquire()
        finally:
            self._refresh_pending = False
        try:
            return await self._run_cycle("refresh")
        finally:
            self._guard.release()

    async def run(self, stop_event: asyncio.Event, interval: float) -> None:
        """Fire tick() every interval seconds until stop_event is set.

        Ticks are started as tasks so a slow cycle makes the next tick hit
        the guard instead of delaying the schedule.
        """
        pending: set[asyncio.Task] = set()
        loop = asyncio.get_running_loop()
        next_fire = loop.time()

        while not stop_event.is_set():
            task = asyncio.create_task(self.tick())
            pending.add(task)
            task.add_done_callback(pending.discard)

            next_fire += interval
            delay = next_fire - loop.time()
            if delay <= 0:
                # Fell behind; realign instead of bursting
                next_fire = loop.time() + interval
                delay = interval
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _bounded(self, name: str, coro: Coroutine[Any, Any, T], default: T) -> T:
        """Await one sub-task, degrading to default on timeout or error."""
        try:
            return await asyncio.wait_for(coro, timeout=self.cycle_timeout)
        except asyncio.TimeoutError:
            log.warning("cycle_subtask_timeout", task=name, timeout=self.cycle_timeout)
        except Exception as e:
            log.error("cycle_subtask_failed", task=name, error=str(e))
        return default

    async def _sample_top(self) -> list[Process]:
        return select_top(await self.sampler.sample(), self.top_n)

    async def _collect_metrics(self) -> SystemMetrics | None:
        return await self.metrics.collect()

    async def _run_cycle(self, trigger: str) -> Snapshot:
        self._cycle += 1
        cycle = self._cycle
        started = asyncio.get_running_loop().time()

        top, metrics, tracked = await asyncio.gather(
            self._bounded("sample", self._sample_top(), []),
            self._bounded("metrics", self._collect_metrics(), None),
            self._bounded("tracked", self.tracked.refresh(self.sampler.sample_pid), []),
        )

        metrics = replace(
            metrics or SystemMetrics.empty(),
            process_samples=[
                ProcessSample(name=p.name, cpu=p.cpu_percent, memory=p.memory_bytes) for p in top
            ],
        )
        snapshot = Snapshot(
            cycle=cycle,
            top_processes=top,
            metrics=metrics,
            tracked_processes=tracked,
        )
        self.latest = snapshot

        if self._publish is not None:
            try:
                await self._publish(snapshot)
            except Exception as e:
                log.error("snapshot_publish_failed", cycle=cycle, error=str(e))

        elapsed_ms = int((asyncio.get_running_loop().time() - started) * 1000)
        log.debug(
            "cycle_completed",
            cycle=cycle,
            trigger=trigger,
            processes=len(top),
            tracked=len(tracked),
            elapsed_ms=elapsed_ms,
        )
        return snapshot
