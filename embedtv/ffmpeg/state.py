"""FFmpeg process lifecycle states."""

from enum import Enum


class ProcessState(str, Enum):
    """
    State of a managed FFmpeg process.

    initializing -> running -> healthy <-> degraded -> crashed | killed
    """
    INITIALIZING = "initializing"
    RUNNING = "running"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRASHED = "crashed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({ProcessState.CRASHED, ProcessState.KILLED})
