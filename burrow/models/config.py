"""Configuration models — effective config, sources, backend kinds."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ConfigSource(str, Enum):
    """Which override tier sits on top of the package defaults."""

    DEFAULTS = "defaults"
    ENVIRONMENT = "environment"
    BACKEND = "backend"


class BackendKind(str, Enum):
    """Tag for the three configuration backend variants."""

    STATIC_ENV = "static_env"
    PUSH_WATCH = "push_watch"
    POLL_SNAPSHOT = "poll_snapshot"


class EffectiveConfig(BaseModel):
    """The merged key/value mapping currently in force for a service.

    Keys are flat, dot-namespaced (``server.port``) and kept in insertion
    order: defaults first, then overrides that introduce new keys.
    """

    model_config = ConfigDict(frozen=True)

    values: dict[str, Any] = Field(default_factory=dict)
    source: ConfigSource = ConfigSource.DEFAULTS
    revision: int = 0

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self.values

    def __len__(self) -> int:
        return len(self.values)
