"""Tests for CLI commands."""

import csv
import json
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from taskwarden.actions import ActionResult
from taskwarden.cli import main
from taskwarden.config import Config
from taskwarden.metrics import SystemMetrics
from tests.conftest import make_process


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


def make_metrics() -> SystemMetrics:
    return SystemMetrics(
        total_memory_bytes=8 * 1024 * 1024 * 1024,
        used_memory_bytes=2 * 1024 * 1024 * 1024,
        cpu_usage_percent=37.5,
        timestamp=datetime.now(),
    )


@pytest.fixture
def fake_sampling():
    """Patch the sampler and metrics strategy used by one-shot commands."""
    procs = [
        make_process(pid=1, cpu=0.5, name="launchd", state="Ss"),
        make_process(pid=2, cpu=80.0, name="compiler", state="R+", memory=3 * 1024 * 1024),
        make_process(pid=3, cpu=20.0, name="editor", state="S"),
    ]
    strategy = MagicMock()
    strategy.name = "table"
    strategy.collect = AsyncMock(return_value=make_metrics())
    with (
        patch("taskwarden.collector.PsSampler.sample", new=AsyncMock(return_value=procs)),
        patch("taskwarden.metrics.select_strategy", return_value=strategy),
    ):
        yield procs


class TestTop:
    """Tests for the top command."""

    def test_table(self, runner: CliRunner, fake_sampling, patched_config_paths) -> None:
        """Rows are ranked by CPU with human-readable state labels."""
        result = runner.invoke(main, ["top", "-n", "2"])

        assert result.exit_code == 0, result.output
        assert "CPU 37.5%" in result.output
        lines = result.output.splitlines()
        rows = [line for line in lines if "compiler" in line or "editor" in line]
        assert "compiler" in rows[0]
        assert "Running (Foreground)" in rows[0]
        assert "launchd" not in result.output

    def test_json(self, runner: CliRunner, fake_sampling, patched_config_paths) -> None:
        """--json prints metrics and the ranked processes."""
        result = runner.invoke(main, ["top", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert [p["pid"] for p in data["processes"]] == [2, 3, 1]
        assert data["metrics"]["cpu_usage_percent"] == 37.5


class TestExport:
    """Tests for the export command."""

    def test_writes_csv(
        self, runner: CliRunner, fake_sampling, patched_config_paths, tmp_path: Path
    ) -> None:
        """Every sampled process becomes one CSV row under the fixed header."""
        out = tmp_path / "procs.csv"
        result = runner.invoke(main, ["export", str(out)])

        assert result.exit_code == 0, result.output
        with out.open(newline="") as f:
            rows = list(csv.reader(f))
        assert rows[0] == ["PID", "Process Name", "CPU (%)", "Memory (bytes)", "Status"]
        assert rows[2] == ["2", "compiler", "80.0", str(3 * 1024 * 1024), "Running (Foreground)"]
        assert len(rows) == 4

    def test_rejects_non_csv(self, runner: CliRunner, tmp_path: Path) -> None:
        """Output paths without a .csv extension are refused."""
        out = tmp_path / "procs.txt"
        result = runner.invoke(main, ["export", str(out)])

        assert result.exit_code != 0
        assert ".csv" in result.output
        assert not out.exists()


def test_os_command(runner: CliRunner) -> None:
    """os prints the platform and metrics strategy."""
    result = runner.invoke(main, ["os"])
    assert result.exit_code == 0
    assert "Platform:" in result.output
    assert "Metrics:" in result.output


class TestActions:
    """Tests for the local action commands."""

    @pytest.mark.parametrize(
        "command,action",
        [("kill", "terminate"), ("stop", "suspend"), ("cont", "resume")],
    )
    def test_success(
        self, runner: CliRunner, patched_config_paths, command: str, action: str
    ) -> None:
        """Each command dispatches its action and reports success."""
        dispatch = AsyncMock(return_value=ActionResult(success=True, action=action, pid=42))
        with patch("taskwarden.actions.ActionDispatcher.dispatch", new=dispatch):
            result = runner.invoke(main, [command, "42"])

        assert result.exit_code == 0, result.output
        dispatch.assert_awaited_once_with(action, 42)
        assert f"{action} succeeded for process 42" in result.output

    def test_failure_exits_nonzero(self, runner: CliRunner, patched_config_paths) -> None:
        """A failed action prints the error and exits 1."""
        with patch("taskwarden.actions.os.kill", side_effect=ProcessLookupError(3, "ESRCH")):
            result = runner.invoke(main, ["kill", "42"])

        assert result.exit_code == 1
        assert "terminate failed for process 42: no such process" in result.output

    def test_renice_unsupported(self, runner: CliRunner, patched_config_paths) -> None:
        """renice always fails as not implemented."""
        result = runner.invoke(main, ["renice", "42"])
        assert result.exit_code == 1
        assert "not implemented" in result.output

    def test_rejects_bad_pid(self, runner: CliRunner) -> None:
        """pid arguments must be positive integers."""
        assert runner.invoke(main, ["kill", "0"]).exit_code == 2
        assert runner.invoke(main, ["stop", "abc"]).exit_code == 2
        assert runner.invoke(main, ["kill", "99999999999999999999"]).exit_code == 2


class TestDaemonCommands:
    """Tests for commands that talk to the running daemon."""

    def test_daemon_not_running(self, runner: CliRunner, patched_config_paths) -> None:
        """With no socket, the user is told to start the daemon."""
        result = runner.invoke(main, ["track", "42"])
        assert result.exit_code == 1
        assert "Daemon not running" in result.output

    @pytest.mark.parametrize(
        "args,method,call_args",
        [
            (["track", "42"], "track", (42,)),
            (["untrack", "42"], "untrack", (42,)),
            (["refresh"], "refresh", ()),
        ],
    )
    def test_requests_sent(
        self, runner: CliRunner, patched_config_paths, args, method, call_args
    ) -> None:
        """Each command sends its request over the client."""
        with (
            patch("taskwarden.socket_client.SocketClient.connect", new=AsyncMock()),
            patch("taskwarden.socket_client.SocketClient.disconnect", new=AsyncMock()),
            patch(f"taskwarden.socket_client.SocketClient.{method}", new=AsyncMock()) as sent,
        ):
            result = runner.invoke(main, args)

        assert result.exit_code == 0, result.output
        sent.assert_awaited_once_with(*call_args)

    def test_watch_prints_snapshots(self, runner: CliRunner, patched_config_paths) -> None:
        """watch prints one line per snapshot and stops after --count."""
        from taskwarden.poller import Snapshot

        snapshot = Snapshot(
            cycle=3,
            top_processes=[make_process(name="compiler", cpu=80.0)],
            metrics=make_metrics(),
            tracked_processes=[],
        )
        messages = [
            {"type": "initial_state", "snapshot": None},
            {"type": "snapshot", "snapshot": snapshot.to_dict()},
        ]
        with (
            patch("taskwarden.socket_client.SocketClient.connect", new=AsyncMock()),
            patch("taskwarden.socket_client.SocketClient.disconnect", new=AsyncMock()),
            patch(
                "taskwarden.socket_client.SocketClient.read_message",
                new=AsyncMock(side_effect=messages),
            ),
        ):
            result = runner.invoke(main, ["watch", "--count", "1"])

        assert result.exit_code == 0, result.output
        assert "#3" in result.output
        assert "compiler" in result.output


class TestConfigCommands:
    """Tests for config show/init."""

    def test_init_then_show(self, runner: CliRunner, patched_config_paths) -> None:
        """init writes defaults; show reports them."""
        result = runner.invoke(main, ["config", "init"])
        assert result.exit_code == 0
        assert Config().config_path.exists()

        result = runner.invoke(main, ["config", "show"])
        assert result.exit_code == 0
        assert "Exists: True" in result.output
        assert "top_n = 20" in result.output

    def test_init_does_not_overwrite(self, runner: CliRunner, patched_config_paths) -> None:
        """An existing file is kept unless --force is given."""
        path = Config().config_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("[system]\ntop_n = 5\n")

        result = runner.invoke(main, ["config", "init"])
        assert "already exists" in result.output
        assert "top_n = 5" in path.read_text()

        runner.invoke(main, ["config", "init", "--force"])
        assert Config.load(path).system.top_n == 20

