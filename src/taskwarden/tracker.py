"""Pinned-process tracking."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from taskwarden.collector import Process
from taskwarden.commands import CommandError

log = structlog.get_logger()

PidQuery = Callable[[int], Awaitable[Process | None]]


class TrackedSet:
    """Set of pids pinned by the operator.

    The only writer of the pinned-pid state: explicit add/remove calls and
    the pruning step at the end of refresh().
    """

    def __init__(self, pids: set[int] | None = None) -> None:
        self._pids: set[int] = set(pids or ())

    def __contains__(self, pid: object) -> bool:
        return pid in self._pids

    def __len__(self) -> int:
        return len(self._pids)

    @property
    def pids(self) -> frozenset[int]:
        """Copy of the current membership."""
        return frozenset(self._pids)

    def add(self, pid: int) -> None:
        """Pin a pid. Adding a pinned pid is a no-op."""
        if pid not in self._pids:
            self._pids.add(pid)
            log.info("process_tracked", pid=pid, tracked=len(self._pids))

    def remove(self, pid: int) -> None:
        """Unpin a pid. Removing an absent pid is a no-op."""
        if pid in self._pids:
            self._pids.discard(pid)
            log.info("process_untracked", pid=pid, tracked=len(self._pids))

    async def refresh(self, query: PidQuery) -> list[Process]:
        """Re-query every pinned pid and prune the ones that have exited.

        Membership is copied before the scan. Pids whose query returns None
        are removed after all queries finish; a query that fails outright
        (CommandError) keeps its pid for the next cycle.

        Returns:
            Fresh records for the pinned processes still alive, in pid order.
        """
        pids = sorted(self._pids)
        if not pids:
            return []

        results = await asyncio.gather(
            *(query(pid) for pid in pids),
            return_exceptions=True,
        )

        alive: list[Process] = []
        vanished: list[int] = []
        for pid, result in zip(pids, results):
            if isinstance(result, CommandError):
                log.warning("tracked_query_failed", pid=pid, error=str(result))
            elif isinstance(result, BaseException):
                raise result
            elif result is None:
                vanished.append(pid)
            else:
                alive.append(result)

        for pid in vanished:
            self._pids.discard(pid)
        if vanished:
            log.info("tracked_pruned", pids=vanished, tracked=len(self._pids))

        return alive
