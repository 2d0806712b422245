"""Installer — resolve, fetch and extract a package closure, then activate it.

The Installer wires together the ArtifactCache, PackageStore,
DependencyResolver and per-service CurrentPointers. Resolution happens in
full before anything is fetched, so cycles and conflicts fail fast with no
partial install. Fetch and extract then run leaves first; every step is
idempotent, so a failed or cancelled install can simply be retried.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from burrow.config import BurrowSettings
from burrow.core.cache import ArtifactCache, Depot, DirectoryDepot
from burrow.core.events import EVENT_PACKAGE_INSTALL, EventRecorder
from burrow.core.layout import FsLayout
from burrow.core.pointer import CurrentPointer
from burrow.core.resolver import DependencyResolver, PackagePin, ResolvedPlan
from burrow.core.store import PackageStore
from burrow.errors import InstallCancelledError, PointerError
from burrow.models.package import Manifest, PackageSpec, StoreEntry

logger = logging.getLogger(__name__)


class InstallResult(BaseModel):
    """What an install produced."""

    model_config = ConfigDict(frozen=True)

    root: StoreEntry
    entries: list[StoreEntry] = Field(default_factory=list)
    newly_installed: list[str] = Field(default_factory=list)


class Installer:
    """Package installation workflow.

    Parameters
    ----------
    settings:
        Runtime settings. Defaults are used if not provided.
    recorder:
        Usage event recorder. Built from settings if not provided.
    """

    def __init__(
        self,
        settings: BurrowSettings | None = None,
        *,
        recorder: EventRecorder | None = None,
    ) -> None:
        self.settings = settings or BurrowSettings()
        self.layout = FsLayout(self.settings.root)
        self.cache = ArtifactCache(
            self.layout.cache_dir,
            fetch_timeout=self.settings.fetch_timeout_seconds,
            fetch_retries=self.settings.fetch_retries,
        )
        self.store = PackageStore(self.layout.store_dir)
        self.resolver = DependencyResolver(max_depth=self.settings.resolver_max_depth)
        self.recorder = recorder or EventRecorder(
            self.layout.analytics_dir, enabled=self.settings.analytics_enabled
        )

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def _depot_for(self, upstream: Path | None) -> Depot | None:
        location = upstream or self.settings.depot
        return DirectoryDepot(location) if location is not None else None

    def available_manifests(self, depot: Depot | None = None) -> list[Manifest]:
        """Installed first, then cached, then whatever the depot offers."""
        manifests = self.store.manifests() + self.cache.manifests()
        if depot is not None:
            manifests += depot.manifests()
        return manifests

    def plan(
        self,
        name: str,
        *,
        version: str | None = None,
        identity: str | None = None,
        derivation: str | None = None,
        depot: Depot | None = None,
        pins: dict[str, PackagePin] | None = None,
    ) -> ResolvedPlan:
        spec = PackageSpec(
            name=name,
            version=version,
            derivation=derivation,
            platform=self.settings.platform,
            arch=self.settings.arch,
        )
        return self.resolver.resolve(
            spec, self.available_manifests(depot), identity=identity, pins=pins
        )

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    def install(
        self,
        name: str,
        *,
        version: str | None = None,
        identity: str | None = None,
        derivation: str | None = None,
        upstream: Path | None = None,
        depot: Depot | None = None,
        pins: dict[str, PackagePin] | None = None,
        cancel: threading.Event | None = None,
    ) -> InstallResult:
        """Install *name* and its dependencies, leaves first.

        Raises ``ResolutionError`` subclasses before anything is fetched,
        ``IntegrityError``/``ExtractionError`` for a bad artifact, and
        ``InstallCancelledError`` when *cancel* is set mid-install.
        """
        depot = depot or self._depot_for(upstream)
        plan = self.plan(
            name,
            version=version,
            identity=identity,
            derivation=derivation,
            depot=depot,
            pins=pins,
        )

        entries: list[StoreEntry] = []
        newly: list[str] = []
        for manifest in plan.order:
            if cancel is not None and cancel.is_set():
                raise InstallCancelledError(f"Install of {name} cancelled")
            entry = self.store.specific(manifest.ident.name, manifest.identity)
            if entry is None:
                artifact = self.cache.fetch(manifest.identity, depot)
                entry = self.store.extract(artifact, cancel=cancel)
                newly.append(manifest.identity)
                self.recorder.record(
                    EVENT_PACKAGE_INSTALL,
                    package=manifest.ident.name,
                    version=manifest.ident.version,
                    identity=manifest.identity,
                )
            entries.append(entry)

        logger.info(
            "Installed %s (%d packages, %d new)", plan.root.ident, len(entries), len(newly)
        )
        return InstallResult(root=entries[-1], entries=entries, newly_installed=newly)

    def install_artifact(
        self, artifact_path: Path, *, upstream: Path | None = None
    ) -> InstallResult:
        """Install a local artifact file, pulling dependencies from the depot."""
        artifact = self.cache.add(Path(artifact_path))
        return self.install(
            artifact.ident.name,
            version=artifact.ident.version,
            identity=artifact.ident.identity,
            upstream=upstream,
        )

    # ------------------------------------------------------------------
    # Service slots
    # ------------------------------------------------------------------

    def pointer(self, service: str) -> CurrentPointer:
        return CurrentPointer(self.layout.current_link(service), self.store)

    def activate(self, service: str, entry: StoreEntry) -> StoreEntry | None:
        """Point *service* at *entry*. Returns the previously active entry."""
        self.layout.ensure_service(service)
        return self.pointer(service).repoint_to(entry)

    def rollback(self, service: str) -> StoreEntry:
        """Repoint *service* to the newest installed build older than the current one."""
        pointer = self.pointer(service)
        current = pointer.read()
        older = [
            e for e in self.store.entries(current.ident.name)
            if e.ident.sort_key < current.ident.sort_key
        ]
        if not older:
            raise PointerError(f"No older build of {current.ident.name} to roll back to")
        target = max(older, key=lambda e: e.ident.sort_key)
        pointer.repoint_to(target)
        return target
