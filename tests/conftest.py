"""Shared test fixtures for taskwarden."""

import asyncio
import tempfile
from collections.abc import Iterator
from contextlib import ExitStack
from pathlib import Path
from unittest.mock import patch

import pytest

from taskwarden.collector import Process
from taskwarden.config import Config
from taskwarden.states import decode_state


def make_process(
    pid: int = 123,
    cpu: float = 1.0,
    memory: int = 1024,
    name: str = "test_proc",
    state: str = "S",
    command: str | None = None,
    ppid: int | None = 1,
    icon_path: str | None = None,
) -> Process:
    """Create a Process for testing."""
    return Process(
        pid=pid,
        ppid=ppid,
        cpu_percent=cpu,
        memory_bytes=memory,
        name=name,
        state=decode_state(state),
        command=command if command is not None else f"/usr/bin/{name}",
        icon_path=icon_path,
    )


async def wait_until(condition, timeout=1.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Create a short temporary path for Unix sockets.

    macOS has a 104-character limit for Unix socket paths.
    pytest's tmp_path is too long, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="tw_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def patched_config_paths(short_tmp_path: Path) -> Iterator[Path]:
    """Point every Config directory at a temporary location.

    The remaining paths (config file, log, pid, socket) derive from these.
    """
    # fmt: off
    with ExitStack() as stack:
        stack.enter_context(patch.object(
            Config, "config_dir",
            new_callable=lambda: property(lambda self: short_tmp_path / "config")
        ))
        stack.enter_context(patch.object(
            Config, "state_dir",
            new_callable=lambda: property(lambda self: short_tmp_path / "state")
        ))
        stack.enter_context(patch.object(
            Config, "runtime_dir",
            new_callable=lambda: property(lambda self: short_tmp_path / "run")
        ))
        yield short_tmp_path
    # fmt: on
