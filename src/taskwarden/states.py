"""Process state codes as reported by ps(1).

The STAT column is a base letter followed by zero or more modifier letters,
e.g. ``Ss``, ``R+``, ``Sl<``. The base letter picks the state; every later
letter is checked for membership in the modifier table, so order does not
matter and flags can combine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class BaseState(Enum):
    """Scheduler state selected by the first letter of a state code."""

    RUNNING = "Running"
    SLEEPING = "Sleeping"
    UNINTERRUPTIBLE_SLEEP = "Uninterruptible Sleep"
    ZOMBIE = "Zombie"
    STOPPED = "Stopped"
    TRACING_STOP = "Tracing Stop"
    DEAD = "Dead"
    WAKE_KILL = "Wakekill"
    WAKING = "Waking"
    PARKED = "Parked"
    IDLE = "Idle"
    UNKNOWN = "Unknown"


class StateFlag(Enum):
    """Modifier letters that may follow the base letter."""

    SESSION_LEADER = "Session Leader"
    MULTI_THREADED = "Multi-threaded"
    FOREGROUND = "Foreground"
    HIGH_PRIORITY = "High Priority"
    LOW_PRIORITY = "Low Priority"


BASE_STATES: dict[str, BaseState] = {
    "R": BaseState.RUNNING,
    "S": BaseState.SLEEPING,
    "D": BaseState.UNINTERRUPTIBLE_SLEEP,
    "Z": BaseState.ZOMBIE,
    "T": BaseState.STOPPED,
    "t": BaseState.TRACING_STOP,
    "X": BaseState.DEAD,
    "x": BaseState.DEAD,
    "K": BaseState.WAKE_KILL,
    "W": BaseState.WAKING,
    "P": BaseState.PARKED,
    "I": BaseState.IDLE,
}

# Ordered: labels render flags in this order
STATE_FLAGS: dict[str, StateFlag] = {
    "s": StateFlag.SESSION_LEADER,
    "l": StateFlag.MULTI_THREADED,
    "+": StateFlag.FOREGROUND,
    "<": StateFlag.HIGH_PRIORITY,
    "N": StateFlag.LOW_PRIORITY,
}


@dataclass(frozen=True)
class ProcessState:
    """Normalized process state.

    ``code`` keeps the raw state code so an UNKNOWN base still carries the
    letter the OS reported.
    """

    base: BaseState
    code: str
    flags: frozenset[StateFlag] = field(default_factory=frozenset)

    @property
    def is_unknown(self) -> bool:
        """True when the base letter was not in the table."""
        return self.base is BaseState.UNKNOWN

    @property
    def label(self) -> str:
        """Human-readable label, e.g. ``Sleeping (Session Leader) (Foreground)``."""
        text = self.code[0] if self.is_unknown else self.base.value
        for flag in STATE_FLAGS.values():
            if flag in self.flags:
                text += f" ({flag.value})"
        return text

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "base": self.base.name,
            "code": self.code,
            "flags": sorted(f.name for f in self.flags),
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ProcessState:
        """Deserialize from a dictionary."""
        return cls(
            base=BaseState[data["base"]],
            code=data["code"],
            flags=frozenset(StateFlag[f] for f in data.get("flags", [])),
        )


def decode_state(code: str) -> ProcessState:
    """Decode a ps state code into a ProcessState.

    Raises:
        ValueError: If code is empty. Callers filter empty codes before decoding.
    """
    if not code:
        raise ValueError("Empty process state code")

    base = BASE_STATES.get(code[0], BaseState.UNKNOWN)
    modifiers = code[1:]
    flags = frozenset(flag for letter, flag in STATE_FLAGS.items() if letter in modifiers)
    return ProcessState(base=base, code=code, flags=flags)
