"""Layered configuration merging.

Two tiers: the package's ``default.toml`` (lowest precedence) and exactly one
override tier, either the environment or the config service. Keys are flat
and dot-namespaced. An override that matches a default keeps the default's
position in the ordering; new keys are appended.
"""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from burrow.core.kv import flatten
from burrow.errors import RenderError
from burrow.models.config import ConfigSource, EffectiveConfig

logger = logging.getLogger(__name__)

DEFAULTS_FILENAME = "default.toml"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def load_defaults(package_dir: Path) -> dict[str, Any]:
    """Flattened ``default.toml`` of an installed package (empty if absent)."""
    path = Path(package_dir) / DEFAULTS_FILENAME
    if not path.is_file():
        return {}
    try:
        return flatten(tomllib.loads(path.read_text(encoding="utf-8")))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise RenderError(f"Cannot read {path}: {exc}") from exc


def coerce(value: str, like: Any) -> Any:
    """Convert a string override to the type of the default it replaces."""
    if not isinstance(value, str):
        return value
    try:
        if isinstance(like, bool):
            lowered = value.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(value)
        if isinstance(like, int):
            return int(value)
        if isinstance(like, float):
            return float(value)
    except ValueError:
        logger.warning(
            "Override %r does not fit the default type %s; keeping it as text",
            value,
            type(like).__name__,
        )
    return value


def merge_config(
    defaults: Mapping[str, Any],
    overrides: Mapping[str, Any],
    *,
    source: ConfigSource,
    revision: int = 0,
) -> EffectiveConfig:
    """Merge *overrides* on top of *defaults*; the override tier wins per key."""
    values: dict[str, Any] = dict(defaults)
    for key, value in overrides.items():
        if key in defaults:
            values[key] = coerce(value, defaults[key])
        else:
            values[key] = value
    return EffectiveConfig(
        values=values,
        source=source if overrides else ConfigSource.DEFAULTS,
        revision=revision,
    )
