"""Service supervision models — states, transitions, policy, status."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ServiceState(str, Enum):
    """Lifecycle states of a supervised process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RECONFIGURING = "reconfiguring"
    FAILED = "failed"


# Valid state transitions, enforced by ServiceSupervisor.
# RUNNING only reaches STOPPED through an explicit stop request.
VALID_TRANSITIONS: dict[ServiceState, set[ServiceState]] = {
    ServiceState.STOPPED: {ServiceState.STARTING},
    ServiceState.STARTING: {ServiceState.RUNNING, ServiceState.FAILED, ServiceState.STOPPED},
    ServiceState.RUNNING: {ServiceState.RECONFIGURING, ServiceState.FAILED, ServiceState.STOPPED},
    ServiceState.RECONFIGURING: {ServiceState.RUNNING, ServiceState.STARTING},
    ServiceState.FAILED: {ServiceState.STARTING, ServiceState.STOPPED},
}


class StateTransition(BaseModel):
    """One recorded transition, kept in the supervisor's history."""

    model_config = ConfigDict(frozen=True)

    from_state: ServiceState
    to_state: ServiceState
    reason: str = ""
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ServiceSpec(BaseModel):
    """What to run for a service slot.

    When ``command`` is empty the package's ``hooks/run`` script is used.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    command: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class SupervisorPolicy(BaseModel):
    """Restart, backoff and shutdown tunables."""

    model_config = ConfigDict(frozen=True)

    max_restart_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0
    backoff_max_seconds: float = 60.0
    reset_after_seconds: float = 30.0
    grace_timeout_seconds: float = 10.0
    strict_render: bool = False

    def backoff_delay(self, attempt: int) -> float:
        """Delay before restart *attempt* (1-based)."""
        delay = self.backoff_base_seconds * (self.backoff_factor ** max(attempt - 1, 0))
        return min(delay, self.backoff_max_seconds)

    @classmethod
    def from_settings(cls, settings: Any) -> SupervisorPolicy:
        return cls(
            max_restart_attempts=settings.restart_max_attempts,
            backoff_base_seconds=settings.restart_backoff_base_seconds,
            backoff_factor=settings.restart_backoff_factor,
            backoff_max_seconds=settings.restart_backoff_max_seconds,
            reset_after_seconds=settings.restart_reset_after_seconds,
            grace_timeout_seconds=settings.grace_timeout_seconds,
            strict_render=settings.strict_render,
        )


class SupervisorStatus(BaseModel):
    """Point-in-time view of a supervisor, safe to hand to readers."""

    model_config = ConfigDict(frozen=True)

    service: str
    state: ServiceState
    pid: int | None = None
    restart_attempts: int = 0
    fatal_error: str | None = None
    config_revision: int = 0
    history: list[StateTransition] = Field(default_factory=list)
