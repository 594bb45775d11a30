"""Process table sampling via ps(1).

Each ps row is normalized into a Process independently; a row that cannot be
normalized is skipped without affecting its siblings, and a failed ps call
yields an empty sample rather than an error.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

import psutil
import structlog

from taskwarden.commands import CommandError, run_command
from taskwarden.states import ProcessState, decode_state

if TYPE_CHECKING:
    from taskwarden.icons import IconResolver

log = structlog.get_logger()

PS_COLUMNS = "pid,ppid,pcpu,pmem,comm,stat,command"

# pid ppid %cpu %mem comm stat
MIN_COLUMNS = 6

# Base letter (Linux and BSD) followed by modifier letters
_STATE_CODE_RE = re.compile(r"^[RSDZTtXxKWPIU][slNLEVWX+<]*$")

# comm is at most a few words even on macOS, where it may contain spaces
_MAX_COMM_WORDS = 4

UNKNOWN_NAME = "Unknown"


class NormalizationError(ValueError):
    """A process table row could not be turned into a Process."""


@dataclass(frozen=True)
class Process:
    """One sampled process.

    memory_bytes is %MEM of total physical memory converted to bytes. It is an
    approximation and not the process's resident set size.
    """

    pid: int
    ppid: int | None
    cpu_percent: float
    memory_bytes: int
    name: str
    state: ProcessState
    command: str
    icon_path: str | None = None

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "pid": self.pid,
            "ppid": self.ppid,
            "cpu_percent": self.cpu_percent,
            "memory_bytes": self.memory_bytes,
            "name": self.name,
            "state": self.state.to_dict(),
            "command": self.command,
            "icon_path": self.icon_path,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Process:
        """Deserialize from a dictionary."""
        return cls(
            pid=data["pid"],
            ppid=data.get("ppid"),
            cpu_percent=data["cpu_percent"],
            memory_bytes=data["memory_bytes"],
            name=data["name"],
            state=ProcessState.from_dict(data["state"]),
            command=data.get("command", ""),
            icon_path=data.get("icon_path"),
        )


def coerce_float(value: str) -> float:
    """Parse a numeric column, returning 0.0 for anything unparsable or negative."""
    try:
        number = float(value.replace(",", "."))
    except ValueError:
        return 0.0
    if number != number or number < 0:  # NaN or negative
        return 0.0
    return number


def derive_name(command: str, comm: str, tool_name: str = "ps") -> str:
    """Pick a display name for a process.

    Order: last path segment of the command line, then raw comm if the
    result is empty, "." or the listing tool itself, then "Unknown". The
    segment is cut at the first space, so "python3 /opt/app/main.py" names
    "main.py". On macOS comm is the full executable path (spaces included),
    so its basename is used directly.
    """
    command = command.strip()
    # Kernel threads report "[kworker/0:1]" with no executable path
    is_kernel_thread = command.startswith("[") and command.endswith("]")
    if is_kernel_thread:
        name = comm
    elif "/" in comm:
        name = comm.rsplit("/", 1)[-1]
    elif "/" in command:
        name = command.rsplit("/", 1)[-1].split(" ", 1)[0]
    else:
        name = comm

    if name in ("", ".", tool_name):
        name = comm
    return name or UNKNOWN_NAME


def normalize_line(line: str, total_memory: int, *, tool_name: str = "ps") -> Process:
    """Parse one ps row (``pid ppid %cpu %mem comm stat command...``).

    Raises:
        NormalizationError: If required columns are missing or pid is not a number.
    """
    tokens = list(re.finditer(r"\S+", line))
    if len(tokens) < MIN_COLUMNS:
        raise NormalizationError(f"Expected at least {MIN_COLUMNS} columns, got {len(tokens)}")

    words = [t.group() for t in tokens]
    try:
        pid = int(words[0])
    except ValueError as e:
        raise NormalizationError(f"Invalid pid: {words[0]!r}") from e
    try:
        ppid: int | None = int(words[1])
    except ValueError:
        ppid = None

    cpu = coerce_float(words[2])
    mem_pct = coerce_float(words[3])

    # Locate the state column after a comm that may span several words
    state_idx = 5
    for idx in range(5, min(len(words), 4 + 1 + _MAX_COMM_WORDS)):
        if _STATE_CODE_RE.match(words[idx]):
            state_idx = idx
            break

    comm = " ".join(words[4:state_idx])
    state = decode_state(words[state_idx])
    command = line[tokens[state_idx + 1].start() :].rstrip() if len(tokens) > state_idx + 1 else ""

    return Process(
        pid=pid,
        ppid=ppid,
        cpu_percent=cpu,
        memory_bytes=int(mem_pct / 100.0 * total_memory),
        name=derive_name(command, comm, tool_name),
        state=state,
        command=command,
    )


def select_top(processes: list[Process], limit: int) -> list[Process]:
    """Return the limit busiest processes by CPU, highest first.

    sorted() is stable with reverse=True, so equal-CPU processes keep their
    enumeration order.
    """
    return sorted(processes, key=lambda p: p.cpu_percent, reverse=True)[:limit]


def get_total_memory() -> int:
    """Total physical memory in bytes."""
    return psutil.virtual_memory().total


class PsSampler:
    """Samples the process table with ps and normalizes each row."""

    TOOL = "ps"

    def __init__(
        self,
        total_memory: int | None = None,
        icon_resolver: IconResolver | None = None,
        command_timeout: float = 3.0,
    ) -> None:
        self.total_memory = total_memory if total_memory is not None else get_total_memory()
        self.icon_resolver = icon_resolver
        self.command_timeout = command_timeout

    def _argv(self, pid: int | None = None) -> list[str]:
        if pid is None:
            return [self.TOOL, "-ww", "-eo", PS_COLUMNS]
        return [self.TOOL, "-ww", "-o", PS_COLUMNS, "-p", str(pid)]

    def parse(self, raw: str) -> list[Process]:
        """Normalize every data row of ps output, skipping rows that fail."""
        lines = raw.splitlines()
        if lines and lines[0].strip().upper().startswith("PID"):
            lines = lines[1:]

        processes: list[Process] = []
        skipped = 0
        for line in lines:
            if not line.strip():
                continue
            try:
                proc = normalize_line(line, self.total_memory, tool_name=self.TOOL)
            except NormalizationError as e:
                skipped += 1
                log.debug("ps_row_skipped", row=line[:120], error=str(e))
                continue
            processes.append(self._with_icon(proc))

        if skipped:
            log.debug("ps_rows_skipped", count=skipped, kept=len(processes))
        return processes

    def _with_icon(self, proc: Process) -> Process:
        if self.icon_resolver is None:
            return proc
        try:
            icon_path = self.icon_resolver.resolve(proc.name, proc.command)
        except Exception as e:
            log.debug("icon_lookup_failed", pid=proc.pid, name=proc.name, error=str(e))
            return proc
        return replace(proc, icon_path=icon_path) if icon_path else proc

    async def sample(self) -> list[Process]:
        """Return all normalized processes, or [] if ps could not run."""
        try:
            raw = await run_command(self._argv(), timeout=self.command_timeout)
        except CommandError as e:
            log.warning("process_sample_failed", error=str(e))
            return []
        return self.parse(raw)

    async def sample_pid(self, pid: int) -> Process | None:
        """Re-query one process.

        Returns None when ps reports no such process.

        Raises:
            CommandError: If ps itself failed, so callers can tell a vanished
                process from a failed lookup.
        """
        # ps exits 1 when the pid matches nothing
        raw = await run_command(self._argv(pid), timeout=self.command_timeout, ok_codes=(0, 1))
        for proc in self.parse(raw):
            if proc.pid == pid:
                return proc
        return None
