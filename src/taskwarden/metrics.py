"""Host-wide memory and CPU metrics.

Two strategies, chosen once at startup from the platform:

- PageMetricsStrategy (macOS): vm_stat page counts and ``top -l 1`` user%.
- TableMetricsStrategy (Linux and others): ``free -b`` and ``top -b -n 1`` us+sy.

Collection is best-effort: a failed memory or CPU read is logged and that
field falls back to 0. Nothing here raises into the poll cycle.
"""

from __future__ import annotations

import asyncio
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from taskwarden.commands import CommandError, run_command

log = structlog.get_logger()

PAGE_SIZE = 4096  # vm_stat page size assumed by the page-based strategy

_VM_STAT_COUNTERS = {
    "free": "Pages free",
    "active": "Pages active",
    "inactive": "Pages inactive",
    "wired": "Pages wired down",
}

_TOP_USER_RE = re.compile(r"CPU usage:\s*([\d.]+)%\s*user", re.IGNORECASE)
_TOP_CPU_SUMMARY_RE = re.compile(
    r"Cpu\(s\):\s*([\d.]+)\s*%?\s*us,\s*([\d.]+)\s*%?\s*sy", re.IGNORECASE
)

# Tools print decimal points and English labels under the C locale
_C_LOCALE = {"LC_ALL": "C"}


@dataclass(frozen=True)
class ProcessSample:
    """Per-process point for charting, taken from the cycle's top-N."""

    name: str
    cpu: float
    memory: int

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {"name": self.name, "cpu": self.cpu, "memory": self.memory}


@dataclass(frozen=True)
class SystemMetrics:
    """Host-wide usage for one cycle. Zero values mean "unavailable"."""

    total_memory_bytes: int
    used_memory_bytes: int
    cpu_usage_percent: float
    timestamp: datetime
    process_samples: list[ProcessSample] = field(default_factory=list)

    @classmethod
    def empty(cls) -> SystemMetrics:
        """Metrics with every field at its default, stamped now."""
        return cls(
            total_memory_bytes=0,
            used_memory_bytes=0,
            cpu_usage_percent=0.0,
            timestamp=datetime.now(),
        )

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "total_memory_bytes": self.total_memory_bytes,
            "used_memory_bytes": self.used_memory_bytes,
            "cpu_usage_percent": self.cpu_usage_percent,
            "timestamp": self.timestamp.isoformat(),
            "process_samples": [s.to_dict() for s in self.process_samples],
        }

    @classmethod
    def from_dict(cls, data: dict) -> SystemMetrics:
        """Deserialize from a dictionary."""
        return cls(
            total_memory_bytes=data["total_memory_bytes"],
            used_memory_bytes=data["used_memory_bytes"],
            cpu_usage_percent=data["cpu_usage_percent"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            process_samples=[ProcessSample(**s) for s in data.get("process_samples", [])],
        )


# --- Parsers ---


def parse_vm_stat(text: str) -> dict[str, int]:
    """Extract free/active/inactive/wired page counts from vm_stat output.

    Raises:
        ValueError: If any of the four counters is missing.
    """
    counts: dict[str, int] = {}
    for line in text.splitlines():
        label, sep, value = line.partition(":")
        if not sep:
            continue
        for key, expected in _VM_STAT_COUNTERS.items():
            if label.strip() == expected:
                counts[key] = int(value.strip().rstrip("."))

    missing = [k for k in _VM_STAT_COUNTERS if k not in counts]
    if missing:
        raise ValueError(f"vm_stat output missing counters: {', '.join(missing)}")
    return counts


def page_memory(counts: dict[str, int], page_size: int = PAGE_SIZE) -> tuple[int, int]:
    """Return (total, used) bytes from vm_stat page counts.

    total = free + active + inactive + wired; used = total - free.
    """
    total_pages = counts["free"] + counts["active"] + counts["inactive"] + counts["wired"]
    total = total_pages * page_size
    used = total - counts["free"] * page_size
    return total, used


def parse_top_user_percent(text: str) -> float:
    """Return the user% figure from macOS ``top -l 1`` output.

    Raises:
        ValueError: If no ``CPU usage: X% user`` line is present.
    """
    match = _TOP_USER_RE.search(text)
    if not match:
        raise ValueError("top output has no 'CPU usage' line")
    return float(match.group(1))


def parse_free_table(text: str) -> tuple[int, int]:
    """Return (total, used) bytes from the first data row of ``free -b``.

    Raises:
        ValueError: If there is no data row or its columns are not numeric.
    """
    rows = [line.split() for line in text.splitlines()[1:] if line.strip()]
    if not rows:
        raise ValueError("free output has no data rows")
    fields_ = rows[0]
    if len(fields_) < 3:
        raise ValueError(f"free data row too short: {fields_!r}")
    return int(fields_[1]), int(fields_[2])


def parse_top_cpu_summary(text: str) -> float:
    """Return user + system percent from the ``%Cpu(s)`` line of ``top -b``.

    Raises:
        ValueError: If no CPU summary line is present.
    """
    match = _TOP_CPU_SUMMARY_RE.search(text)
    if not match:
        raise ValueError("top output has no 'Cpu(s)' line")
    return float(match.group(1)) + float(match.group(2))


# --- Strategies ---


class MetricsStrategy:
    """Reads memory and CPU for one platform family."""

    name = "base"

    def __init__(self, command_timeout: float = 3.0) -> None:
        self.command_timeout = command_timeout

    async def _run(self, *argv: str) -> str:
        return await run_command(argv, timeout=self.command_timeout, env=_C_LOCALE)

    async def read_memory(self) -> tuple[int, int]:
        """Return (total, used) memory in bytes."""
        raise NotImplementedError

    async def read_cpu(self) -> float:
        """Return CPU usage percent."""
        raise NotImplementedError

    async def _memory_or_default(self) -> tuple[int, int]:
        try:
            return await self.read_memory()
        except (CommandError, ValueError) as e:
            log.warning("memory_metrics_failed", strategy=self.name, error=str(e))
            return 0, 0

    async def _cpu_or_default(self) -> float:
        try:
            cpu = await self.read_cpu()
        except (CommandError, ValueError) as e:
            log.warning("cpu_metrics_failed", strategy=self.name, error=str(e))
            return 0.0
        return min(max(cpu, 0.0), 100.0)

    async def collect(self) -> SystemMetrics:
        """Read memory and CPU concurrently. Never raises."""
        (total, used), cpu = await asyncio.gather(
            self._memory_or_default(),
            self._cpu_or_default(),
        )
        return SystemMetrics(
            total_memory_bytes=total,
            used_memory_bytes=used,
            cpu_usage_percent=cpu,
            timestamp=datetime.now(),
        )


class PageMetricsStrategy(MetricsStrategy):
    """macOS: page statistics from vm_stat, user% from top."""

    name = "page"

    async def read_memory(self) -> tuple[int, int]:
        return page_memory(parse_vm_stat(await self._run("vm_stat")))

    async def read_cpu(self) -> float:
        return parse_top_user_percent(await self._run("top", "-l", "1", "-n", "0"))


class TableMetricsStrategy(MetricsStrategy):
    """Linux: memory table from free, user+system from top."""

    name = "table"

    async def read_memory(self) -> tuple[int, int]:
        return parse_free_table(await self._run("free", "-b"))

    async def read_cpu(self) -> float:
        return parse_top_cpu_summary(await self._run("top", "-b", "-n", "1"))


def select_strategy(platform: str | None = None, command_timeout: float = 3.0) -> MetricsStrategy:
    """Pick the metrics strategy for this host. Called once at startup."""
    platform = platform or sys.platform
    strategy: MetricsStrategy
    if platform == "darwin":
        strategy = PageMetricsStrategy(command_timeout)
    else:
        strategy = TableMetricsStrategy(command_timeout)
    log.info("metrics_strategy_selected", platform=platform, strategy=strategy.name)
    return strategy
