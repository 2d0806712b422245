"""Burrow data models — all Pydantic v2, all frozen (immutable)."""

from burrow.models.config import BackendKind, ConfigSource, EffectiveConfig
from burrow.models.events import (
    ConfigChanged,
    EventKind,
    ProcessExited,
    RestartDue,
    StartRequested,
    StopRequested,
    SupervisorEvent,
)
from burrow.models.package import (
    BuildInputs,
    Manifest,
    PackageArtifact,
    PackageIdent,
    PackageSpec,
    StoreEntry,
)
from burrow.models.service import (
    VALID_TRANSITIONS,
    ServiceSpec,
    ServiceState,
    StateTransition,
    SupervisorPolicy,
    SupervisorStatus,
)

__all__ = [
    # package
    "PackageSpec",
    "BuildInputs",
    "PackageIdent",
    "Manifest",
    "PackageArtifact",
    "StoreEntry",
    # config
    "BackendKind",
    "ConfigSource",
    "EffectiveConfig",
    # service
    "ServiceState",
    "ServiceSpec",
    "StateTransition",
    "SupervisorPolicy",
    "SupervisorStatus",
    "VALID_TRANSITIONS",
    # events
    "EventKind",
    "SupervisorEvent",
    "StartRequested",
    "StopRequested",
    "ConfigChanged",
    "ProcessExited",
    "RestartDue",
]
