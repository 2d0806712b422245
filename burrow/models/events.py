"""Supervisor event models — everything that flows through the event queue."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    START_REQUESTED = "start_requested"
    STOP_REQUESTED = "stop_requested"
    CONFIG_CHANGED = "config_changed"
    PROCESS_EXITED = "process_exited"
    RESTART_DUE = "restart_due"


class SupervisorEvent(BaseModel):
    """Base event. ``kind`` is the discriminator the loop dispatches on."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class StartRequested(SupervisorEvent):
    kind: EventKind = EventKind.START_REQUESTED


class StopRequested(SupervisorEvent):
    kind: EventKind = EventKind.STOP_REQUESTED


class ConfigChanged(SupervisorEvent):
    """A normalized snapshot from any backend variant."""

    kind: EventKind = EventKind.CONFIG_CHANGED
    snapshot: dict[str, str] = Field(default_factory=dict)
    origin: str = ""


class ProcessExited(SupervisorEvent):
    """Posted by a process watcher; ``generation`` identifies which spawn."""

    kind: EventKind = EventKind.PROCESS_EXITED
    generation: int
    pid: int
    returncode: int | None = None


class RestartDue(SupervisorEvent):
    kind: EventKind = EventKind.RESTART_DUE
    attempt: int
