"""CLI commands for taskwarden."""

from pathlib import Path

import click

from taskwarden.actions import MAX_PID

_OS_NAMES = {"darwin": "macOS", "linux": "Linux", "win32": "Windows"}
_PID = click.IntRange(min=1, max=MAX_PID)


@click.group()
@click.version_option(package_name="taskwarden")
def main() -> None:
    """Watch and control the processes on this machine."""
    pass


@main.command()
def daemon() -> None:
    """Run the background poller and socket server."""
    import asyncio

    from taskwarden.daemon import run_daemon

    asyncio.run(run_daemon())


def _make_sampler(config):
    from taskwarden.collector import PsSampler
    from taskwarden.icons import default_icon_resolver

    return PsSampler(
        icon_resolver=default_icon_resolver() if config.icons.enabled else None,
        command_timeout=config.system.command_timeout,
    )


@main.command()
@click.option("--limit", "-n", default=None, type=click.IntRange(min=1), help="Rows to show")
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON")
def top(limit: int | None, as_json: bool) -> None:
    """Show the busiest processes once and exit."""
    import asyncio
    import json

    from taskwarden.collector import select_top
    from taskwarden.config import Config
    from taskwarden.formatting import format_bytes, format_percent, memory_usage_percent
    from taskwarden.metrics import select_strategy

    config = Config.load()
    limit = limit or config.system.top_n
    sampler = _make_sampler(config)
    strategy = select_strategy(command_timeout=config.system.command_timeout)

    async def collect():
        return await asyncio.gather(sampler.sample(), strategy.collect())

    processes, metrics = asyncio.run(collect())
    processes = select_top(processes, limit)

    if as_json:
        data = {
            "metrics": metrics.to_dict(),
            "processes": [p.to_dict() for p in processes],
        }
        click.echo(json.dumps(data, indent=2))
        return

    mem_pct = memory_usage_percent(metrics.used_memory_bytes, metrics.total_memory_bytes)
    click.echo(
        f"CPU {format_percent(metrics.cpu_usage_percent)}  "
        f"Memory {format_bytes(metrics.used_memory_bytes)} / "
        f"{format_bytes(metrics.total_memory_bytes)} ({format_percent(mem_pct)})"
    )
    click.echo()

    if not processes:
        click.echo("No processes sampled.")
        return

    click.echo(f"{'PID':>7}  {'Name':24}  {'CPU':>7}  {'Memory':>8}  Status")
    click.echo("-" * 75)
    for proc in processes:
        click.echo(
            f"{proc.pid:>7}  {proc.name[:24]:24}  {format_percent(proc.cpu_percent):>7}  "
            f"{format_bytes(proc.memory_bytes):>8}  {proc.state.label}"
        )


@main.command()
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
def export(path: Path) -> None:
    """Write the full process table to a CSV file."""
    import asyncio
    import csv

    from taskwarden.collector import PsSampler
    from taskwarden.config import Config
    from taskwarden.formatting import CSV_HEADER, process_csv_row

    if path.suffix.lower() != ".csv":
        raise click.BadParameter("output file must have a .csv extension", param_hint="PATH")

    config = Config.load()
    sampler = PsSampler(command_timeout=config.system.command_timeout)
    processes = asyncio.run(sampler.sample())

    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        for proc in processes:
            writer.writerow(process_csv_row(proc))

    click.echo(f"Wrote {len(processes)} processes to {path}")


@main.command("os")
def os_info() -> None:
    """Show the detected platform and metrics source."""
    import sys

    from taskwarden.metrics import select_strategy

    strategy = select_strategy()
    click.echo(f"Platform: {_OS_NAMES.get(sys.platform, sys.platform)}")
    click.echo(f"Metrics: {strategy.name}")


def _run_action(action: str, pid: int) -> None:
    import asyncio

    from taskwarden.actions import ActionDispatcher
    from taskwarden.config import Config

    config = Config.load()
    dispatcher = ActionDispatcher(
        escalation_command=config.actions.escalation_command,
        escalate=config.actions.escalate,
        command_timeout=config.system.command_timeout,
    )
    result = asyncio.run(dispatcher.dispatch(action, pid))

    if result.success:
        click.echo(f"{result.action} succeeded for process {pid}")
        return
    click.echo(f"Error: {result.error_message}", err=True)
    raise SystemExit(1)


@main.command()
@click.argument("pid", type=_PID)
def kill(pid: int) -> None:
    """Terminate a process (SIGKILL)."""
    _run_action("terminate", pid)


@main.command()
@click.argument("pid", type=_PID)
def stop(pid: int) -> None:
    """Suspend a process (SIGSTOP)."""
    _run_action("suspend", pid)


@main.command("cont")
@click.argument("pid", type=_PID)
def cont(pid: int) -> None:
    """Resume a suspended process (SIGCONT)."""
    _run_action("resume", pid)


@main.command()
@click.argument("pid", type=_PID)
def renice(pid: int) -> None:
    """Change a process's priority."""
    _run_action("setPriority", pid)


def _with_daemon(request) -> None:
    """Connect to the running daemon and run one request coroutine."""
    import asyncio

    from taskwarden.config import Config
    from taskwarden.socket_client import SocketClient

    config = Config.load()

    async def run() -> None:
        client = SocketClient(socket_path=config.socket_path)
        await client.connect()
        try:
            await request(client)
        finally:
            await client.disconnect()

    try:
        asyncio.run(run())
    except (FileNotFoundError, ConnectionError):
        click.echo("Daemon not running. Start it with 'taskwarden daemon'.", err=True)
        raise SystemExit(1)


@main.command()
@click.argument("pid", type=_PID)
def track(pid: int) -> None:
    """Pin a process so it is reported every cycle."""

    async def request(client) -> None:
        await client.track(pid)

    _with_daemon(request)
    click.echo(f"Tracking PID {pid}")


@main.command()
@click.argument("pid", type=_PID)
def untrack(pid: int) -> None:
    """Unpin a tracked process."""

    async def request(client) -> None:
        await client.untrack(pid)

    _with_daemon(request)
    click.echo(f"Stopped tracking PID {pid}")


@main.command()
def refresh() -> None:
    """Ask the daemon for an immediate cycle."""

    async def request(client) -> None:
        await client.refresh()

    _with_daemon(request)
    click.echo("Refresh requested")


@main.command()
@click.option("--count", "-c", default=None, type=click.IntRange(min=1), help="Stop after N")
def watch(count: int | None) -> None:
    """Stream snapshots from the daemon, one line per cycle."""
    from taskwarden.formatting import format_bytes, format_percent
    from taskwarden.poller import Snapshot

    async def request(client) -> None:
        seen = 0
        while count is None or seen < count:
            try:
                message = await client.read_message(timeout=30.0)
            except TimeoutError:
                continue
            if message.get("type") not in ("initial_state", "snapshot"):
                continue
            if message.get("snapshot") is None:
                continue
            snap = Snapshot.from_dict(message["snapshot"])
            busiest = snap.top_processes[0].name if snap.top_processes else "-"
            click.echo(
                f"#{snap.cycle:<6} cpu {format_percent(snap.metrics.cpu_usage_percent):>7}  "
                f"mem {format_bytes(snap.metrics.used_memory_bytes):>7}  "
                f"top {busiest}  tracked {len(snap.tracked_processes)}"
            )
            seen += 1

    try:
        _with_daemon(request)
    except KeyboardInterrupt:
        pass


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from taskwarden.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  sample_interval = {cfg.system.sample_interval}")
    click.echo(f"  top_n = {cfg.system.top_n}")
    click.echo(f"  cycle_timeout = {cfg.system.cycle_timeout}")
    click.echo(f"  command_timeout = {cfg.system.command_timeout}")
    click.echo(f"  heartbeat_cycles = {cfg.system.heartbeat_cycles}")
    click.echo()
    click.echo("[actions]")
    click.echo(f"  escalate = {cfg.actions.escalate}")
    click.echo(f"  escalation_command = {cfg.actions.escalation_command}")
    click.echo()
    click.echo("[icons]")
    click.echo(f"  enabled = {cfg.icons.enabled}")


@config.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def config_init(force: bool) -> None:
    """Write the default configuration file."""
    from taskwarden.config import Config

    cfg = Config()
    if cfg.config_path.exists() and not force:
        click.echo(f"Config already exists at {cfg.config_path} (use --force to overwrite)")
        return
    cfg.save()
    click.echo(f"Wrote default config to {cfg.config_path}")
