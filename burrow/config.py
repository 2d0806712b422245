"""Runtime settings — env-driven, read once at process start.

Centralized settings using pydantic-settings. Reads from a .env file and
BURROW_* environment variables. Core components never read these globals;
callers build policies from a settings instance and pass them in.
"""

from __future__ import annotations

import platform as _platform
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_platform() -> str:
    return _platform.system().lower() or "linux"


def _default_arch() -> str:
    return _platform.machine().lower() or "x86_64"


class BurrowSettings(BaseSettings):
    """Settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export BURROW_ROOT=/hab
        export BURROW_LOG_LEVEL=DEBUG
        export BURROW_CONFIG_TARGET=memory://shared

    Or via .env file::

        BURROW_GRACE_TIMEOUT_SECONDS=5
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BURROW_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime
    log_level: str = "INFO"

    # On-disk layout root (cache/, store/, srvc/)
    root: Path = Path(".burrow")

    # Target platform for packed and installed artifacts
    platform: str = _default_platform()
    arch: str = _default_arch()

    # Configuration backend. Unset means environment-variable overrides.
    config_target: str | None = None
    poll_interval_seconds: float = 5.0
    backend_retry_seconds: float = 2.0

    # Artifact fetch. ``depot`` is the default upstream when -u is not given.
    depot: Path | None = None
    fetch_timeout_seconds: float = 60.0
    fetch_retries: int = 3

    # Dependency resolution
    resolver_max_depth: int = 64

    # Supervision
    restart_max_attempts: int = 5
    restart_backoff_base_seconds: float = 1.0
    restart_backoff_factor: float = 2.0
    restart_backoff_max_seconds: float = 60.0
    restart_reset_after_seconds: float = 30.0
    grace_timeout_seconds: float = 10.0
    strict_render: bool = False

    # Usage events written under cache/analytics (opt-in)
    analytics_enabled: bool = False

    @property
    def uses_config_service(self) -> bool:
        """Whether a config backend target is configured."""
        return bool(self.config_target)
