"""Background daemon for taskwarden."""

import asyncio
import os
import signal
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import psutil
import structlog

from taskwarden import __version__
from taskwarden import logging as rlog
from taskwarden.actions import MAX_PID, ActionDispatcher
from taskwarden.collector import PsSampler
from taskwarden.config import Config
from taskwarden.icons import default_icon_resolver
from taskwarden.metrics import select_strategy
from taskwarden.poller import Poller, Snapshot
from taskwarden.socket_server import SocketServer
from taskwarden.tracker import TrackedSet

log = structlog.get_logger()


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    cycle_count: int = 0
    last_cycle_time: datetime | None = None
    last_cpu_percent: float = 0.0

    def update_cycle(self, snapshot: Snapshot) -> None:
        """Update state after a published snapshot."""
        self.cycle_count += 1
        self.last_cpu_percent = snapshot.metrics.cpu_usage_percent
        self.last_cycle_time = datetime.now()


class Daemon:
    """Main daemon class: owns the tracked set and runs the poll loop."""

    def __init__(self, config: Config):
        self.config = config
        self.state = DaemonState()

        system = config.system
        self.tracked = TrackedSet()
        self.sampler = PsSampler(
            icon_resolver=default_icon_resolver() if config.icons.enabled else None,
            command_timeout=system.command_timeout,
        )
        self.metrics = select_strategy(command_timeout=system.command_timeout)
        self.dispatcher = ActionDispatcher(
            escalation_command=config.actions.escalation_command,
            escalate=config.actions.escalate,
            command_timeout=system.command_timeout,
        )
        self.poller = Poller(
            self.sampler,
            self.metrics,
            self.tracked,
            top_n=system.top_n,
            cycle_timeout=system.cycle_timeout,
            publish=self._publish,
        )

        self._shutdown_event = asyncio.Event()
        self._socket_server: SocketServer | None = None
        self._request_tasks: set[asyncio.Task] = set()
        self._cycles_since_heartbeat = 0

    async def start(self) -> None:
        """Start the daemon and run until shutdown is requested."""
        log.info("daemon_starting", version=__version__)
        rlog.version_info("taskwarden", __version__)

        system = self.config.system
        log.info(
            "daemon_config",
            sample_interval=system.sample_interval,
            top_n=system.top_n,
            cycle_timeout=system.cycle_timeout,
            metrics_strategy=self.metrics.name,
        )
        rlog.config_summary(system.sample_interval, system.top_n, self.metrics.name)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        if self._check_already_running():
            log.error("daemon_already_running")
            raise RuntimeError("Daemon is already running")

        self._write_pid_file()

        if self.sampler.icon_resolver is not None:
            await asyncio.to_thread(self.sampler.icon_resolver.warm)

        self._socket_server = SocketServer(
            socket_path=self.config.socket_path,
            on_request=self.handle_request,
            latest_snapshot=lambda: self.poller.latest,
        )
        await self._socket_server.start()
        rlog.socket_listening(str(self.config.socket_path))

        self.state.running = True
        log.info("daemon_started")
        rlog.daemon_started()

        await self.poller.run(self._shutdown_event, system.sample_interval)

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")
        rlog.daemon_stopping()
        self.state.running = False
        self._shutdown_event.set()

        if self._request_tasks:
            await asyncio.gather(*self._request_tasks, return_exceptions=True)

        if self._socket_server:
            await self._socket_server.stop()
            self._socket_server = None

        self._remove_pid_file()

        log.info("daemon_stopped", cycles=self.state.cycle_count)
        rlog.daemon_stopped()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        rlog.signal_received(sig.name)
        self._shutdown_event.set()

    async def _publish(self, snapshot: Snapshot) -> None:
        """Poller callback: broadcast the snapshot and keep heartbeat stats."""
        self.state.update_cycle(snapshot)

        if self._socket_server and self._socket_server.has_clients:
            await self._socket_server.broadcast(snapshot)

        self._cycles_since_heartbeat += 1
        if self._cycles_since_heartbeat >= self.config.system.heartbeat_cycles:
            self._cycles_since_heartbeat = 0
            self._heartbeat()

    def _heartbeat(self) -> None:
        rss_mb = psutil.Process().memory_info().rss / 1024 / 1024
        clients = self._socket_server.client_count if self._socket_server else 0
        log.info(
            "daemon_heartbeat",
            cycles=self.state.cycle_count,
            skipped=self.poller.skipped_ticks,
            tracked=len(self.tracked),
            clients=clients,
            cpu_percent=self.state.last_cpu_percent,
            rss_mb=round(rss_mb, 1),
        )
        rlog.heartbeat(
            cycles=self.state.cycle_count,
            skipped=self.poller.skipped_ticks,
            tracked_count=len(self.tracked),
            client_count=clients,
            cpu_percent=self.state.last_cpu_percent,
            rss_mb=rss_mb,
        )

    async def handle_request(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Answer one client request.

        Returns the reply to send back, or None for fire-and-forget requests.
        """
        kind = message.get("type")

        if kind == "refresh":
            task = asyncio.create_task(self.poller.refresh())
            self._request_tasks.add(task)
            task.add_done_callback(self._request_tasks.discard)
            return None

        if kind == "action":
            result = await self.dispatcher.dispatch(
                message.get("action", ""), message.get("pid")  # type: ignore[arg-type]
            )
            rlog.action_reported(result)
            return {"type": "action_result", **result.to_dict()}

        if kind in ("track", "untrack"):
            pid = message.get("pid")
            if isinstance(pid, bool) or not isinstance(pid, int) or not 0 < pid <= MAX_PID:
                log.warning("invalid_client_message", type=kind, pid=pid)
                return {"type": "error", "message": f"{kind} requires a valid process id"}
            if kind == "track":
                self.tracked.add(pid)
            else:
                self.tracked.remove(pid)
            rlog.tracking_changed(pid, tracked=kind == "track")
            return None

        log.warning("invalid_client_message", type=kind)
        return {"type": "error", "message": f"unknown request type {kind!r}"}

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file if it is ours."""
        path = self.config.pid_path
        if path.exists() and path.read_text().strip() == str(os.getpid()):
            path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if another taskwarden daemon owns the PID file.

        Verifies the PID belongs to a taskwarden process, not just any
        process that reused the number after a reboot.
        """
        path = self.config.pid_path
        if not path.exists():
            return False

        try:
            pid = int(path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            path.unlink()
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline = " ".join(proc.cmdline()).lower()
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            path.unlink()
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            rlog.already_running(pid)
            return True

        if "taskwarden" in cmdline:
            log.info("daemon_already_running_verified", pid=pid)
            rlog.already_running(pid)
            return True

        log.warning("pid_file_stale", reason="different process", pid=pid)
        path.unlink()
        return False


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    rlog.configure(config)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        rlog.error(f"Daemon crashed: {e}")
        raise
    finally:
        await daemon.stop()
