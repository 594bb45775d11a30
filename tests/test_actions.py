"""Tests for process control actions."""

import signal
from unittest.mock import AsyncMock, patch

import pytest

from taskwarden.actions import (
    MAX_PID,
    Action,
    ActionDispatcher,
    ActionErrorKind,
    ActionResult,
)
from taskwarden.commands import CommandError


class TestActionParse:
    """Tests for Action.parse."""

    def test_canonical_tags(self) -> None:
        """Canonical tags parse to their action."""
        assert Action.parse("terminate") is Action.TERMINATE
        assert Action.parse("suspend") is Action.SUSPEND
        assert Action.parse("resume") is Action.RESUME
        assert Action.parse("setPriority") is Action.SET_PRIORITY

    def test_aliases(self) -> None:
        """Older names are accepted."""
        assert Action.parse("kill") is Action.TERMINATE
        assert Action.parse("pause") is Action.SUSPEND
        assert Action.parse("priority") is Action.SET_PRIORITY

    def test_unknown(self) -> None:
        """Anything else is rejected."""
        with pytest.raises(ValueError):
            Action.parse("explode")

    @pytest.mark.parametrize("tag", [["terminate"], {"kill": 1}, None, 3])
    def test_non_string_tag(self, tag) -> None:
        """Non-string tags are rejected as unknown, including unhashable ones."""
        with pytest.raises(ValueError):
            Action.parse(tag)


class TestTerminate:
    """Tests for the terminate ladder."""

    @pytest.mark.asyncio
    async def test_direct_kill_succeeds(self) -> None:
        """SIGKILL as the current user is tried first."""
        dispatcher = ActionDispatcher()
        with (
            patch("taskwarden.actions.os.kill") as mock_kill,
            patch("taskwarden.actions.run_command", new=AsyncMock()) as mock_run,
        ):
            result = await dispatcher.dispatch(Action.TERMINATE, 4242)

        assert result == ActionResult(success=True, action="terminate", pid=4242)
        mock_kill.assert_called_once_with(4242, signal.SIGKILL)
        mock_run.assert_not_called()

    @pytest.mark.asyncio
    async def test_escalates_on_permission_error(self) -> None:
        """A permission failure is retried once through the escalation command."""
        dispatcher = ActionDispatcher(escalation_command=["sudo", "-n"])
        with (
            patch("taskwarden.actions.os.kill", side_effect=PermissionError(1, "EPERM")),
            patch("taskwarden.actions.run_command", new=AsyncMock(return_value="")) as mock_run,
        ):
            result = await dispatcher.dispatch("terminate", 4242)

        assert result.success
        mock_run.assert_awaited_once()
        assert mock_run.call_args.args[0] == ["sudo", "-n", "kill", "-KILL", "4242"]

    @pytest.mark.asyncio
    async def test_escalation_failure_is_permission_denied(self) -> None:
        """Both attempts failing reports a permission failure."""
        dispatcher = ActionDispatcher()
        with (
            patch("taskwarden.actions.os.kill", side_effect=PermissionError(1, "EPERM")),
            patch(
                "taskwarden.actions.run_command",
                new=AsyncMock(side_effect=CommandError(["sudo"], "exit status 1")),
            ),
        ):
            result = await dispatcher.dispatch(Action.TERMINATE, 4242)

        assert not result.success
        assert result.error_kind is ActionErrorKind.PERMISSION_DENIED
        assert result.error_message.startswith("terminate failed for process 4242:")

    @pytest.mark.asyncio
    async def test_missing_process_not_escalated(self) -> None:
        """A vanished process fails as not-found with no privileged retry."""
        dispatcher = ActionDispatcher()
        with (
            patch("taskwarden.actions.os.kill", side_effect=ProcessLookupError(3, "ESRCH")),
            patch("taskwarden.actions.run_command", new=AsyncMock()) as mock_run,
        ):
            result = await dispatcher.dispatch(Action.TERMINATE, 4242)

        assert result.error_kind is ActionErrorKind.NOT_FOUND
        mock_run.assert_not_called()

    @pytest.mark.asyncio
    async def test_escalation_disabled(self) -> None:
        """With escalation off, a permission error fails immediately."""
        dispatcher = ActionDispatcher(escalate=False)
        with (
            patch("taskwarden.actions.os.kill", side_effect=PermissionError(1, "EPERM")),
            patch("taskwarden.actions.run_command", new=AsyncMock()) as mock_run,
        ):
            result = await dispatcher.dispatch(Action.TERMINATE, 4242)

        assert result.error_kind is ActionErrorKind.PERMISSION_DENIED
        mock_run.assert_not_called()


class TestSuspendResume:
    """Tests for suspend and resume."""

    @pytest.mark.asyncio
    async def test_suspend_sends_sigstop(self) -> None:
        """suspend sends SIGSTOP once."""
        with patch("taskwarden.actions.os.kill") as mock_kill:
            result = await ActionDispatcher().dispatch("suspend", 77)
        assert result.success
        mock_kill.assert_called_once_with(77, signal.SIGSTOP)

    @pytest.mark.asyncio
    async def test_resume_sends_sigcont(self) -> None:
        """resume sends SIGCONT once."""
        with patch("taskwarden.actions.os.kill") as mock_kill:
            result = await ActionDispatcher().dispatch(Action.RESUME, 77)
        assert result.success
        mock_kill.assert_called_once_with(77, signal.SIGCONT)

    @pytest.mark.asyncio
    async def test_suspend_permission_failure_not_retried(self) -> None:
        """suspend never escalates."""
        with (
            patch("taskwarden.actions.os.kill", side_effect=PermissionError(1, "EPERM")),
            patch("taskwarden.actions.run_command", new=AsyncMock()) as mock_run,
        ):
            result = await ActionDispatcher().dispatch(Action.SUSPEND, 77)

        assert result.error_kind is ActionErrorKind.PERMISSION_DENIED
        mock_run.assert_not_called()


class TestDispatchErrors:
    """Tests for requests that fail before any signal is sent."""

    @pytest.mark.asyncio
    async def test_set_priority_unsupported(self) -> None:
        """Priority changes always fail as unsupported."""
        with patch("taskwarden.actions.os.kill") as mock_kill:
            result = await ActionDispatcher().dispatch("setPriority", 77)
        assert result.error_kind is ActionErrorKind.UNSUPPORTED
        mock_kill.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_action(self) -> None:
        """Unknown tags fail as unsupported and keep the tag in the result."""
        result = await ActionDispatcher().dispatch("explode", 77)
        assert result.error_kind is ActionErrorKind.UNSUPPORTED
        assert result.action == "explode"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tag", [["terminate"], {"action": "kill"}])
    async def test_unhashable_action_tag(self, tag) -> None:
        """Unhashable tags come back as a typed failure instead of raising."""
        with patch("taskwarden.actions.os.kill") as mock_kill:
            result = await ActionDispatcher(escalate=False).dispatch(tag, 12345)
        assert not result.success
        assert result.error_kind is ActionErrorKind.UNSUPPORTED
        assert result.action == repr(tag)
        mock_kill.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["terminate", "suspend", "resume"])
    async def test_pid_beyond_pid_range(self, action: str) -> None:
        """Pids too large for the OS are rejected before os.kill."""
        with patch("taskwarden.actions.os.kill") as mock_kill:
            result = await ActionDispatcher(escalate=False).dispatch(action, 2**70)
        assert result.error_kind is ActionErrorKind.FAILED
        assert "invalid pid" in result.error_message
        mock_kill.assert_not_called()

    @pytest.mark.asyncio
    async def test_largest_valid_pid_reaches_kill(self) -> None:
        """The top of the pid range is still a real attempt."""
        with patch("taskwarden.actions.os.kill", side_effect=ProcessLookupError(3, "ESRCH")):
            result = await ActionDispatcher().dispatch("suspend", MAX_PID)
        assert result.error_kind is ActionErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pid", [0, -1, True, "12"])
    async def test_invalid_pid(self, pid) -> None:
        """Non-positive or non-integer pids never reach os.kill."""
        with patch("taskwarden.actions.os.kill") as mock_kill:
            result = await ActionDispatcher().dispatch(Action.TERMINATE, pid)
        assert result.error_kind is ActionErrorKind.FAILED
        mock_kill.assert_not_called()


def test_result_to_dict() -> None:
    """Failures serialize their kind by value."""
    result = ActionResult.failed(Action.SUSPEND, 5, ActionErrorKind.NOT_FOUND, "no such process")
    assert result.to_dict() == {
        "success": False,
        "action": "suspend",
        "pid": 5,
        "error_message": "suspend failed for process 5: no such process",
        "error_kind": "not_found",
    }
