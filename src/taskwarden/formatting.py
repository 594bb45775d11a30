"""Formatting utilities for consistent output across CLI commands."""

from taskwarden.collector import Process

CSV_HEADER = ["PID", "Process Name", "CPU (%)", "Memory (bytes)", "Status"]


def format_bytes(bytes_val: int) -> str:
    """Format bytes as human-readable string."""
    if bytes_val < 1024:
        return f"{bytes_val}B"
    elif bytes_val < 1024 * 1024:
        return f"{bytes_val / 1024:.0f}K"
    elif bytes_val < 1024 * 1024 * 1024:
        return f"{bytes_val / (1024 * 1024):.1f}M"
    else:
        return f"{bytes_val / (1024 * 1024 * 1024):.1f}G"


def format_percent(value: float) -> str:
    """Format a percentage with one decimal."""
    return f"{value:.1f}%"


def memory_usage_percent(used: int, total: int) -> float:
    """Used memory as a percentage of total. 0.0 when total is unknown."""
    if total <= 0:
        return 0.0
    return used / total * 100


def process_csv_row(proc: Process) -> list[str]:
    """One CSV row matching CSV_HEADER."""
    return [
        str(proc.pid),
        proc.name,
        f"{proc.cpu_percent:.1f}",
        str(proc.memory_bytes),
        proc.state.label,
    ]
