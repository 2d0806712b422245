"""Artifact cache — verified, immutable compressed artifacts keyed by identity.

Storage layout: {cache_dir}/{name!version!release!identity!platform!arch}
No delete method — artifacts are immutable once verified and committed.
Bytes that fail verification are never committed.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Protocol, runtime_checkable

from burrow.core.artifact import (
    manifest_identity_matches,
    manifest_is_sealed,
    member_digests,
    read_manifest,
)
from burrow.core.hasher import sha256_file
from burrow.errors import ExtractionError, IntegrityError
from burrow.models.package import Manifest, PackageArtifact, PackageIdent

logger = logging.getLogger(__name__)

CHECKSUM_SUFFIX = ".sha256"


# ---------------------------------------------------------------------------
# Depot protocol (transport is an external collaborator)
# ---------------------------------------------------------------------------


@runtime_checkable
class Depot(Protocol):
    """Where artifacts come from when they are not cached.

    ``download`` raises ``KeyError`` for an unknown identity and
    ``TimeoutError`` / ``ConnectionError`` for transport failures.
    """

    def manifests(self) -> list[Manifest]:
        """Manifests of every artifact the depot can serve."""
        ...

    def checksum(self, identity: str) -> str | None:
        """Published SHA-256 of the artifact blob, if the depot has one."""
        ...

    def download(self, identity: str, *, timeout: float) -> bytes:
        """Return the artifact bytes for *identity*."""
        ...


class DirectoryDepot:
    """A depot backed by a local directory of artifacts.

    ``publish`` copies an artifact in and writes its ``.sha256`` sidecar.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def publish(self, artifact_path: Path) -> Path:
        self._path.mkdir(parents=True, exist_ok=True)
        dest = self._path / artifact_path.name
        shutil.copyfile(artifact_path, dest)
        dest.with_name(dest.name + CHECKSUM_SUFFIX).write_text(
            sha256_file(dest) + "\n", encoding="utf-8"
        )
        return dest

    def _artifacts(self) -> dict[str, Path]:
        found: dict[str, Path] = {}
        if not self._path.is_dir():
            return found
        for path in sorted(self._path.iterdir()):
            if not path.is_file() or path.name.endswith(CHECKSUM_SUFFIX):
                continue
            try:
                ident = PackageIdent.from_artifact_name(path.name)
            except ValueError:
                continue
            found[ident.identity] = path
        return found

    def manifests(self) -> list[Manifest]:
        result = []
        for path in self._artifacts().values():
            try:
                result.append(read_manifest(path))
            except ExtractionError as exc:
                logger.warning("Skipping unreadable depot artifact %s: %s", path.name, exc)
        return result

    def checksum(self, identity: str) -> str | None:
        path = self._artifacts().get(identity)
        if path is None:
            return None
        sidecar = path.with_name(path.name + CHECKSUM_SUFFIX)
        if not sidecar.exists():
            return None
        return sidecar.read_text(encoding="utf-8").strip()

    def download(self, identity: str, *, timeout: float) -> bytes:
        path = self._artifacts().get(identity)
        if path is None:
            raise KeyError(f"Depot {self._path} has no artifact for {identity}")
        return path.read_bytes()


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class ArtifactCache:
    """Identity-keyed artifact cache.

    Parameters
    ----------
    cache_dir:
        Root directory for cached artifacts.
    fetch_timeout:
        Seconds handed to the depot for each download.
    fetch_retries:
        Attempts per fetch before an integrity or transport error surfaces.
    retry_delay:
        Base delay between attempts; doubles each time.
    """

    def __init__(
        self,
        cache_dir: Path,
        *,
        fetch_timeout: float = 60.0,
        fetch_retries: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        self._base = Path(cache_dir)
        self._base.mkdir(parents=True, exist_ok=True)
        self._fetch_timeout = fetch_timeout
        self._fetch_retries = max(1, fetch_retries)
        self._retry_delay = retry_delay

    @property
    def path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _cached_paths(self) -> dict[str, Path]:
        found: dict[str, Path] = {}
        for path in sorted(self._base.iterdir()):
            if not path.is_file() or path.name.startswith("."):
                continue
            try:
                ident = PackageIdent.from_artifact_name(path.name)
            except ValueError:
                continue
            found[ident.identity] = path
        return found

    def find(self, identity: str) -> PackageArtifact | None:
        """Return the cached artifact for *identity*, or ``None``."""
        path = self._cached_paths().get(identity)
        if path is None:
            return None
        manifest = read_manifest(path)
        return PackageArtifact(
            ident=manifest.ident,
            path=path,
            checksum=sha256_file(path),
            manifest=manifest,
        )

    def exists(self, identity: str) -> bool:
        return identity in self._cached_paths()

    def manifests(self) -> list[Manifest]:
        """Manifests of every cached artifact."""
        result = []
        for path in self._cached_paths().values():
            try:
                result.append(read_manifest(path))
            except ExtractionError as exc:
                logger.warning("Skipping unreadable cached artifact %s: %s", path.name, exc)
        return result

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def fetch(self, identity: str, depot: Depot | None = None) -> PackageArtifact:
        """Return a verified artifact for *identity*, downloading on a miss.

        Raises
        ------
        IntegrityError
            When every attempt produced bytes that do not match *identity*.
        KeyError
            When the artifact is neither cached nor served by *depot*.
        """
        cached = self.find(identity)
        if cached is not None:
            logger.debug("Cache hit for %s", identity[:12])
            return cached
        if depot is None:
            raise KeyError(f"Artifact {identity} is not cached and no depot was given")

        last_error: Exception | None = None
        for attempt in range(1, self._fetch_retries + 1):
            try:
                data = depot.download(identity, timeout=self._fetch_timeout)
                return self._commit(identity, data, depot.checksum(identity))
            except (IntegrityError, TimeoutError, ConnectionError) as exc:
                last_error = exc
                logger.warning(
                    "Fetch of %s failed (attempt %d/%d): %s",
                    identity[:12],
                    attempt,
                    self._fetch_retries,
                    exc,
                )
                if attempt < self._fetch_retries:
                    time.sleep(self._retry_delay * (2 ** (attempt - 1)))
        assert last_error is not None
        raise last_error

    def add(self, artifact_path: Path) -> PackageArtifact:
        """Verify a local artifact file and commit it to the cache."""
        ident = PackageIdent.from_artifact_name(Path(artifact_path).name)
        existing = self.find(ident.identity)
        if existing is not None:
            return existing
        return self._commit(ident.identity, Path(artifact_path).read_bytes(), None)

    # ------------------------------------------------------------------
    # Verify and commit
    # ------------------------------------------------------------------

    def _commit(
        self, identity: str, data: bytes, expected_checksum: str | None
    ) -> PackageArtifact:
        fd, tmp_name = tempfile.mkstemp(dir=self._base, prefix=".incoming-")
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            checksum = sha256_file(tmp)
            if expected_checksum is not None and checksum != expected_checksum.lower():
                raise IntegrityError(
                    f"Checksum mismatch for {identity}: "
                    f"expected {expected_checksum}, got {checksum}"
                )
            try:
                manifest = read_manifest(tmp)
            except ExtractionError as exc:
                raise IntegrityError(f"Unreadable artifact for {identity}: {exc}") from exc
            if manifest.ident.identity != identity:
                raise IntegrityError(
                    f"Artifact declares identity {manifest.ident.identity}, "
                    f"requested {identity}"
                )
            if not manifest_is_sealed(manifest):
                raise IntegrityError(f"Manifest seal broken for {identity}")
            if not manifest_identity_matches(manifest):
                raise IntegrityError(
                    f"Build inputs of {manifest.ident} do not hash to {identity}"
                )
            try:
                contents = member_digests(tmp)
            except ExtractionError as exc:
                raise IntegrityError(f"Unreadable artifact for {identity}: {exc}") from exc
            if contents != manifest.files:
                raise IntegrityError(
                    f"Contents of {manifest.ident} disagree with its manifest"
                )

            dest = self._base / manifest.ident.artifact_name
            os.replace(tmp, dest)
            logger.info("Cached %s (%d bytes)", manifest.ident, len(data))
            return PackageArtifact(
                ident=manifest.ident, path=dest, checksum=checksum, manifest=manifest
            )
        finally:
            tmp.unlink(missing_ok=True)
