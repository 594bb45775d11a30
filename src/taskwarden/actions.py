"""Process control actions: terminate, suspend, resume, set priority.

Every action returns an ActionResult. Failures are reported in the result,
never raised, so a bad request cannot take down the daemon.
"""

from __future__ import annotations

import os
import signal
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

import structlog

from taskwarden.commands import CommandError, run_command

log = structlog.get_logger()


class Action(Enum):
    """Control actions accepted by the dispatcher."""

    TERMINATE = "terminate"
    SUSPEND = "suspend"
    RESUME = "resume"
    SET_PRIORITY = "setPriority"

    @classmethod
    def parse(cls, tag: str) -> Action:
        """Parse an action tag, accepting the older kill/pause/priority names.

        Raises:
            ValueError: If the tag names no known action.
        """
        if not isinstance(tag, str):
            raise ValueError(f"Unknown action: {tag!r}")
        try:
            return cls(tag)
        except ValueError:
            pass
        if tag in ACTION_ALIASES:
            return ACTION_ALIASES[tag]
        raise ValueError(f"Unknown action: {tag!r}")


# pid_t is a signed 32-bit integer on Linux and macOS
MAX_PID = 2**31 - 1

ACTION_ALIASES = {
    "kill": Action.TERMINATE,
    "pause": Action.SUSPEND,
    "priority": Action.SET_PRIORITY,
}


class ActionErrorKind(Enum):
    """Why an action failed."""

    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    UNSUPPORTED = "unsupported"
    FAILED = "failed"


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one action request."""

    success: bool
    action: str
    pid: int
    error_message: str | None = None
    error_kind: ActionErrorKind | None = None

    @classmethod
    def ok(cls, action: Action, pid: int) -> ActionResult:
        return cls(success=True, action=action.value, pid=pid)

    @classmethod
    def failed(
        cls,
        action: Action | str,
        pid: int,
        kind: ActionErrorKind,
        reason: str,
    ) -> ActionResult:
        tag = action.value if isinstance(action, Action) else action
        return cls(
            success=False,
            action=tag,
            pid=pid,
            error_message=f"{tag} failed for process {pid}: {reason}",
            error_kind=kind,
        )

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "success": self.success,
            "action": self.action,
            "pid": self.pid,
            "error_message": self.error_message,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


def _classify(error: OSError) -> ActionErrorKind:
    if isinstance(error, ProcessLookupError):
        return ActionErrorKind.NOT_FOUND
    if isinstance(error, PermissionError):
        return ActionErrorKind.PERMISSION_DENIED
    return ActionErrorKind.FAILED


class ActionDispatcher:
    """Sends control signals to processes.

    Termination is a fixed ladder: SIGKILL as the current user, then one
    retry through the escalation command, then a permission failure.
    Suspend and resume send SIGSTOP/SIGCONT once with no retry.
    """

    def __init__(
        self,
        escalation_command: Sequence[str] = ("sudo", "-n"),
        escalate: bool = True,
        command_timeout: float = 3.0,
    ) -> None:
        self.escalation_command = list(escalation_command)
        self.escalate = escalate
        self.command_timeout = command_timeout

    async def dispatch(self, action: Action | str, pid: int) -> ActionResult:
        """Run an action against a pid and report the outcome."""
        if not isinstance(action, Action):
            try:
                action = Action.parse(action)
            except ValueError as e:
                tag = action if isinstance(action, str) else repr(action)
                result = ActionResult.failed(tag, pid, ActionErrorKind.UNSUPPORTED, str(e))
                self._log_result(result)
                return result

        if isinstance(pid, bool) or not isinstance(pid, int) or not 0 < pid <= MAX_PID:
            result = ActionResult.failed(
                action, pid, ActionErrorKind.FAILED, f"invalid pid {pid!r}"
            )
        elif action is Action.TERMINATE:
            result = await self.terminate(pid)
        elif action is Action.SUSPEND:
            result = self._send_once(action, pid, signal.SIGSTOP)
        elif action is Action.RESUME:
            result = self._send_once(action, pid, signal.SIGCONT)
        else:
            result = self.set_priority(pid)

        self._log_result(result)
        return result

    async def terminate(self, pid: int) -> ActionResult:
        """Force-kill a process, escalating once on failure."""
        error = self._send_signal(pid, signal.SIGKILL)
        if error is None:
            return ActionResult.ok(Action.TERMINATE, pid)
        if isinstance(error, ProcessLookupError):
            return ActionResult.failed(
                Action.TERMINATE, pid, ActionErrorKind.NOT_FOUND, "no such process"
            )
        if not self.escalate:
            return ActionResult.failed(
                Action.TERMINATE, pid, ActionErrorKind.PERMISSION_DENIED, str(error)
            )

        log.info("terminate_escalating", pid=pid, error=str(error))
        escalation_error = await self._escalated_kill(pid)
        if escalation_error is None:
            return ActionResult.ok(Action.TERMINATE, pid)
        return ActionResult.failed(
            Action.TERMINATE,
            pid,
            ActionErrorKind.PERMISSION_DENIED,
            f"permission denied, escalated retry failed ({escalation_error})",
        )

    def set_priority(self, pid: int) -> ActionResult:
        """Priority control is not implemented; always fails."""
        return ActionResult.failed(
            Action.SET_PRIORITY, pid, ActionErrorKind.UNSUPPORTED, "not implemented"
        )

    def _send_once(self, action: Action, pid: int, sig: signal.Signals) -> ActionResult:
        error = self._send_signal(pid, sig)
        if error is None:
            return ActionResult.ok(action, pid)
        reason = "no such process" if isinstance(error, ProcessLookupError) else str(error)
        return ActionResult.failed(action, pid, _classify(error), reason)

    def _send_signal(self, pid: int, sig: signal.Signals) -> OSError | None:
        """Send a signal, returning the OSError instead of raising it."""
        try:
            os.kill(pid, sig)
        except OSError as e:
            return e
        return None

    async def _escalated_kill(self, pid: int) -> CommandError | None:
        argv = [*self.escalation_command, "kill", "-KILL", str(pid)]
        try:
            await run_command(argv, timeout=self.command_timeout)
        except CommandError as e:
            return e
        return None

    def _log_result(self, result: ActionResult) -> None:
        if result.success:
            log.info("action_completed", action=result.action, pid=result.pid)
        else:
            log.warning(
                "action_failed",
                action=result.action,
                pid=result.pid,
                kind=result.error_kind.value if result.error_kind else None,
                error=result.error_message,
            )
