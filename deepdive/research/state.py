from __future__ import annotations

from enum import Enum


class Phase(Enum):
    """Resumable phase of a single research invocation."""

    CONSULT = "consult"
    FAN_OUT = "fan_out"
    AWAIT = "await"


class TaskStatus:
    QUEUED = "queued"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    ACTIVE = frozenset({QUEUED, RUNNING, WAITING})
    TERMINAL = frozenset({COMPLETED, FAILED, CANCELED})
