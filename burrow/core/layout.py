"""On-disk layout under the burrow root.

    {root}/
        cache/                               compressed artifacts
        cache/analytics/                     opt-in usage events
        store/{name!version!release!identity}/
        srvc/{service}/current               symlink to the active store entry
        srvc/{service}/config                symlink to the live rendered config
        srvc/{service}/data                  service-owned mutable state
        srvc/{service}/effective-config.json published EffectiveConfig
"""

from __future__ import annotations

from pathlib import Path


class FsLayout:
    """Resolves every well-known path below *root*."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def cache_dir(self) -> Path:
        return self.root / "cache"

    @property
    def analytics_dir(self) -> Path:
        return self.cache_dir / "analytics"

    @property
    def store_dir(self) -> Path:
        return self.root / "store"

    @property
    def srvc_root(self) -> Path:
        return self.root / "srvc"

    def service_dir(self, service: str) -> Path:
        if not service or "/" in service or service.startswith("."):
            raise ValueError(f"Invalid service name: {service!r}")
        return self.srvc_root / service

    def current_link(self, service: str) -> Path:
        return self.service_dir(service) / "current"

    def config_dir(self, service: str) -> Path:
        return self.service_dir(service) / "config"

    def config_generations_dir(self, service: str) -> Path:
        return self.service_dir(service) / ".config-generations"

    def data_dir(self, service: str) -> Path:
        return self.service_dir(service) / "data"

    def effective_config_file(self, service: str) -> Path:
        return self.service_dir(service) / "effective-config.json"

    def ensure_service(self, service: str) -> Path:
        """Create the service directory and its data dir."""
        self.data_dir(service).mkdir(parents=True, exist_ok=True)
        return self.service_dir(service)
