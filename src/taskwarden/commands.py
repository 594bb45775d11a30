"""Async invocation of external OS tools (ps, vm_stat, top, free, sudo)."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence

import structlog

log = structlog.get_logger()


class CommandError(Exception):
    """An external tool could not run or exited with an unexpected status."""

    def __init__(self, argv: Sequence[str], message: str, returncode: int | None = None):
        self.argv = list(argv)
        self.returncode = returncode
        super().__init__(f"{argv[0]}: {message}")


async def run_command(
    argv: Sequence[str],
    *,
    timeout: float = 3.0,
    ok_codes: Sequence[int] = (0,),
    env: Mapping[str, str] | None = None,
) -> str:
    """Run a command and return its decoded stdout.

    Args:
        argv: Program and arguments (no shell)
        timeout: Seconds to wait before killing the process
        ok_codes: Exit statuses treated as success
        env: Extra environment variables layered over the current environment

    Raises:
        CommandError: If the tool is missing, cannot be executed, times out,
            or exits with a status outside ok_codes.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            env={**os.environ, **env} if env else None,
        )
    except FileNotFoundError as e:
        raise CommandError(argv, "not found") from e
    except PermissionError as e:
        raise CommandError(argv, "permission denied") from e
    except OSError as e:
        raise CommandError(argv, str(e)) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        try:
            process.kill()
        except ProcessLookupError:
            pass  # Already exited
        await process.wait()
        raise CommandError(argv, f"timed out after {timeout}s") from e

    if process.returncode not in ok_codes:
        err = stderr.decode("utf-8", errors="replace").strip()
        raise CommandError(
            argv,
            f"exit status {process.returncode}" + (f": {err}" if err else ""),
            returncode=process.returncode,
        )

    log.debug("command_completed", argv=argv[0], returncode=process.returncode)
    return stdout.decode("utf-8", errors="replace")
