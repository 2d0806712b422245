"""Package store — installed, immutable trees keyed by ident.

Storage layout: {store_dir}/{name!version!release!identity}/
Each entry carries its ``MANIFEST.json``. Entries appear only through an
atomic rename of a fully extracted and verified temporary directory, so a
partially extracted tree is never visible at its final path. Entries are
never edited in place.
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
import tempfile
import threading
import zlib
from pathlib import Path

from burrow.core.artifact import MANIFEST_FILENAME, iter_members, load_manifest_file
from burrow.core.hasher import sha256_file
from burrow.core.locks import IdentityLocks
from burrow.errors import ExtractionError, InstallCancelledError
from burrow.models.package import Manifest, PackageArtifact, PackageIdent, StoreEntry

logger = logging.getLogger(__name__)

_COPY_CHUNK = 1 << 16


def _newest(entries: list[StoreEntry]) -> StoreEntry | None:
    """Maximum release date; equal dates go to the greater identity."""
    if not entries:
        return None
    return max(entries, key=lambda e: e.ident.sort_key)


class PackageStore:
    """Installed package trees.

    Parameters
    ----------
    store_dir:
        Root directory of the store. Created if missing.
    """

    def __init__(self, store_dir: Path) -> None:
        self._base = Path(store_dir)
        self._base.mkdir(parents=True, exist_ok=True)
        self._locks = IdentityLocks(self._base / ".locks")

    @property
    def path(self) -> Path:
        return self._base

    def entry_path(self, ident: PackageIdent) -> Path:
        return self._base / ident.store_name

    # ------------------------------------------------------------------
    # Reading entries
    # ------------------------------------------------------------------

    def load_entry(self, path: Path) -> StoreEntry | None:
        """Load the entry at *path*, or ``None`` if it is not a valid entry."""
        manifest_path = path / MANIFEST_FILENAME
        if not manifest_path.is_file():
            return None
        try:
            manifest = load_manifest_file(manifest_path)
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable manifest in %s: %s", path.name, exc)
            return None
        if manifest.ident.store_name != path.name:
            logger.warning(
                "Store entry %s does not match its manifest ident %s",
                path.name,
                manifest.ident.store_name,
            )
            return None
        return StoreEntry(ident=manifest.ident, path=path, manifest=manifest)

    def entries(self, name: str | None = None) -> list[StoreEntry]:
        """All valid entries, optionally filtered by package name."""
        result: list[StoreEntry] = []
        for path in sorted(self._base.iterdir()):
            if path.name.startswith(".") or not path.is_dir():
                continue
            if name is not None and not path.name.startswith(f"{name}!"):
                continue
            entry = self.load_entry(path)
            if entry is not None:
                result.append(entry)
        return result

    def find(self, identity: str) -> StoreEntry | None:
        for entry in self.entries():
            if entry.identity == identity:
                return entry
        return None

    def manifests(self) -> list[Manifest]:
        return [entry.manifest for entry in self.entries()]

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def latest_package(self, name: str, version: str | None = None) -> StoreEntry | None:
        """Newest entry for *name* (and *version*, if given)."""
        return _newest([
            e for e in self.entries(name)
            if version is None or e.ident.version == version
        ])

    def latest_derivation(
        self, name: str, version: str | None, derivation: str
    ) -> StoreEntry | None:
        """Newest entry for *name*/*version* built by *derivation*."""
        return _newest([
            e for e in self.entries(name)
            if (version is None or e.ident.version == version)
            and e.derivation == derivation
        ])

    def specific(self, name: str, identity: str) -> StoreEntry | None:
        """Exact match on name and identity."""
        for entry in self.entries(name):
            if entry.identity == identity:
                return entry
        return None

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, entry: StoreEntry) -> bool:
        """Re-hash every file of *entry* against its manifest."""
        problems = self._tree_problems(entry.path, entry.manifest.files)
        for problem in problems:
            logger.warning("Store entry %s: %s", entry.ident, problem)
        return not problems

    @staticmethod
    def _tree_problems(root: Path, expected: dict[str, str]) -> list[str]:
        problems: list[str] = []
        present: set[str] = set()
        for path in root.rglob("*"):
            if path.is_file() and not path.is_symlink():
                rel = path.relative_to(root).as_posix()
                if rel != MANIFEST_FILENAME:
                    present.add(rel)
        for rel in sorted(present - expected.keys()):
            problems.append(f"unexpected file {rel}")
        for rel, digest in sorted(expected.items()):
            if rel not in present:
                problems.append(f"missing file {rel}")
            elif sha256_file(root / rel) != digest:
                problems.append(f"hash mismatch for {rel}")
        return problems

    # ------------------------------------------------------------------
    # Extract
    # ------------------------------------------------------------------

    def extract(
        self,
        artifact: PackageArtifact,
        *,
        cancel: threading.Event | None = None,
    ) -> StoreEntry:
        """Install *artifact* into the store.

        Idempotent: an existing entry whose manifest hash matches is returned
        untouched, as is an intact entry of the same identity from another
        release. Serialized per identity.

        Raises
        ------
        ExtractionError
            Corrupt archive, unsafe member, or content that disagrees with
            the manifest.
        InstallCancelledError
            *cancel* was set before the entry was committed.
        """
        identity = artifact.ident.identity
        with self._locks.hold(identity):
            final = self.entry_path(artifact.ident)
            existing = self.load_entry(final)
            if (
                existing is not None
                and existing.manifest.manifest_hash == artifact.manifest.manifest_hash
            ):
                logger.debug("Store already holds %s", artifact.ident)
                return existing

            # The release date is not part of the identity, so a rebuild of
            # the same inputs may already be present under another name.
            for other in self.entries(artifact.ident.name):
                if other.identity != identity or other.path == final:
                    continue
                if self.verify(other):
                    logger.debug(
                        "Store already holds %s as %s", artifact.ident, other.path.name
                    )
                    return other
                self._retire(other.path)

            tmp = Path(tempfile.mkdtemp(dir=self._base, prefix=f".tmp-{identity[:12]}-"))
            try:
                self._unpack(artifact.path, tmp, cancel)
                problems = self._tree_problems(tmp, artifact.manifest.files)
                if problems:
                    raise ExtractionError(
                        f"Extracted tree of {artifact.ident} disagrees with its "
                        f"manifest: {'; '.join(problems)}"
                    )
                if cancel is not None and cancel.is_set():
                    raise InstallCancelledError(f"Install of {artifact.ident} cancelled")
                if final.exists():
                    self._retire(final)
                os.rename(tmp, final)
            except BaseException:
                shutil.rmtree(tmp, ignore_errors=True)
                raise

        logger.info("Installed %s into %s", artifact.ident, final)
        return StoreEntry(ident=artifact.ident, path=final, manifest=artifact.manifest)

    def _retire(self, path: Path) -> None:
        """Move a broken entry out of the way before its replacement lands."""
        logger.warning("Replacing damaged store entry %s", path.name)
        trash = Path(tempfile.mkdtemp(dir=self._base, prefix=".trash-"))
        os.rename(path, trash / path.name)
        shutil.rmtree(trash, ignore_errors=True)

    @staticmethod
    def _unpack(archive: Path, dest: Path, cancel: threading.Event | None) -> None:
        try:
            with tarfile.open(archive, mode="r:gz") as tar:
                for member, rel in iter_members(tar):
                    if cancel is not None and cancel.is_set():
                        raise InstallCancelledError(f"Install of {archive.name} cancelled")
                    target = dest.joinpath(*rel.parts)
                    if member.isdir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    src = tar.extractfile(member)
                    if src is None:
                        raise ExtractionError(f"Unreadable member {member.name!r}")
                    with src, open(target, "wb") as out:
                        shutil.copyfileobj(src, out, _COPY_CHUNK)
                    os.chmod(target, member.mode & 0o755 or 0o644)
        except (tarfile.TarError, EOFError, zlib.error, OSError) as exc:
            raise ExtractionError(f"Cannot extract {archive.name}: {exc}") from exc
