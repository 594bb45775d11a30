"""Configuration system for taskwarden."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class SystemConfig:
    """Sampling and daemon configuration."""

    sample_interval: float = 2.0  # Seconds between poll cycles
    top_n: int = 20  # Processes kept in the ranked view
    cycle_timeout: float = 5.0  # Max seconds for each sub-task of a cycle
    command_timeout: float = 3.0  # Max seconds for a single external tool call
    heartbeat_cycles: int = 30  # Log heartbeat every N cycles (~1 min at 2s)
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class ActionsConfig:
    """Process control configuration.

    escalation_command is prefixed to ``kill -KILL <pid>`` for the single
    privileged retry. ``sudo -n`` never prompts, so a missing sudoers rule
    fails fast instead of hanging the daemon.
    """

    escalate: bool = True
    escalation_command: list[str] = field(default_factory=lambda: ["sudo", "-n"])


@dataclass
class IconsConfig:
    """Best-effort icon lookup configuration."""

    enabled: bool = True


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    system: SystemConfig = field(default_factory=SystemConfig)
    actions: ActionsConfig = field(default_factory=ActionsConfig)
    icons: IconsConfig = field(default_factory=IconsConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "taskwarden"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "taskwarden"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for ephemeral files (PID, socket).

        Stored in /tmp/ so it's cleared on reboot, avoiding stale file issues.
        """
        return Path("/tmp/taskwarden")

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    @property
    def socket_path(self) -> Path:
        """Unix socket path for daemon IPC."""
        return self.runtime_dir / "daemon.sock"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("system", "actions", "icons"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() on a missing file are identical.

        Raises:
            ValueError: If the file cannot be parsed or a value is out of range.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            system=_load_system_config(data.get("system", {})),
            actions=_load_actions_config(data.get("actions", {})),
            icons=IconsConfig(
                enabled=data.get("icons", {}).get("enabled", defaults.icons.enabled),
            ),
        )


def _number(data: dict, key: str, default, kind: type):
    """Read one numeric key, raising ValueError for values of the wrong type."""
    value = data.get(key, default)
    if isinstance(value, bool):
        raise ValueError(f"{key} must be a number, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be a number, got {value!r}") from e


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data, validating ranges."""
    d = SystemConfig()
    config = SystemConfig(
        sample_interval=_number(data, "sample_interval", d.sample_interval, float),
        top_n=_number(data, "top_n", d.top_n, int),
        cycle_timeout=_number(data, "cycle_timeout", d.cycle_timeout, float),
        command_timeout=_number(data, "command_timeout", d.command_timeout, float),
        heartbeat_cycles=_number(data, "heartbeat_cycles", d.heartbeat_cycles, int),
        log_max_bytes=_number(data, "log_max_bytes", d.log_max_bytes, int),
        log_backup_count=_number(data, "log_backup_count", d.log_backup_count, int),
    )

    if config.sample_interval <= 0:
        raise ValueError(f"sample_interval must be > 0, got {config.sample_interval}")
    if config.cycle_timeout <= 0:
        raise ValueError(f"cycle_timeout must be > 0, got {config.cycle_timeout}")
    if config.command_timeout <= 0:
        raise ValueError(f"command_timeout must be > 0, got {config.command_timeout}")
    if config.top_n < 1:
        raise ValueError(f"top_n must be >= 1, got {config.top_n}")
    if config.heartbeat_cycles < 1:
        raise ValueError(f"heartbeat_cycles must be >= 1, got {config.heartbeat_cycles}")

    return config


def _load_actions_config(data: dict) -> ActionsConfig:
    """Load actions config from TOML data."""
    d = ActionsConfig()
    escalation_command = list(data.get("escalation_command", d.escalation_command))
    if not escalation_command:
        raise ValueError("escalation_command must not be empty")
    return ActionsConfig(
        escalate=data.get("escalate", d.escalate),
        escalation_command=[str(part) for part in escalation_command],
    )
