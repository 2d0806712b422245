"""Artifact format — a gzip'd tarball with an embedded ``MANIFEST.json``.

Artifacts are named ``name!version!release!identity!platform!arch``. The
manifest records the ident, the build inputs the identity was computed
from, and the SHA-256 of every file in the tree.

Packing is deterministic: members are sorted, owners and mtimes are zeroed,
so the same tree and inputs always produce the same bytes.
"""

from __future__ import annotations

import gzip
import io
import json
import logging
import os
import tarfile
import tempfile
import zlib
from collections.abc import Iterator
from pathlib import Path, PurePosixPath

from burrow.core.hasher import (
    canonical_json_bytes,
    compute_identity,
    compute_manifest_hash,
    sha256_file,
    sha256_fileobj,
)
from burrow.errors import ExtractionError
from burrow.models.package import (
    BuildInputs,
    Manifest,
    PackageIdent,
    PackageSpec,
    make_release,
)

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "MANIFEST.json"


# ---------------------------------------------------------------------------
# Manifest helpers
# ---------------------------------------------------------------------------


def seal_manifest(manifest: Manifest) -> Manifest:
    """Return *manifest* with ``manifest_hash`` computed."""
    digest = compute_manifest_hash(manifest.model_dump(mode="json"))
    return manifest.model_copy(update={"manifest_hash": digest})


def manifest_is_sealed(manifest: Manifest) -> bool:
    """Whether the manifest's seal matches its content."""
    return manifest.manifest_hash == compute_manifest_hash(manifest.model_dump(mode="json"))


def manifest_identity_matches(manifest: Manifest) -> bool:
    """Recompute the identity from the manifest's build inputs."""
    spec = PackageSpec(name=manifest.ident.name, version=manifest.ident.version)
    return compute_identity(spec, manifest.build_inputs) == manifest.ident.identity


def manifest_bytes(manifest: Manifest) -> bytes:
    return canonical_json_bytes(manifest.model_dump(mode="json"))


def load_manifest_file(path: Path) -> Manifest:
    return Manifest.model_validate(json.loads(path.read_text(encoding="utf-8")))


# ---------------------------------------------------------------------------
# Packing
# ---------------------------------------------------------------------------


def _tree_files(source_dir: Path) -> list[Path]:
    files = []
    for path in sorted(source_dir.rglob("*")):
        if path.is_symlink():
            raise ValueError(f"Symlinks are not allowed in packages: {path}")
        if path.is_file():
            if path.relative_to(source_dir).as_posix() == MANIFEST_FILENAME:
                continue
            files.append(path)
    return files


def pack_artifact(
    source_dir: Path,
    spec: PackageSpec,
    build_inputs: BuildInputs,
    out_dir: Path,
    *,
    release: str | None = None,
) -> Path:
    """Pack *source_dir* into an artifact under *out_dir*.

    Returns the path of the written artifact.
    """
    if not spec.version:
        raise ValueError("Packing requires an exact version")
    source_dir = Path(source_dir)
    if not source_dir.is_dir():
        raise FileNotFoundError(f"Package source directory not found: {source_dir}")

    ident = PackageIdent(
        name=spec.name,
        version=spec.version,
        release=release or make_release(),
        identity=compute_identity(spec, build_inputs),
        platform=spec.platform,
        arch=spec.arch,
    )
    files = _tree_files(source_dir)
    manifest = seal_manifest(
        Manifest(
            ident=ident,
            derivation=spec.derivation,
            build_inputs=build_inputs,
            files={f.relative_to(source_dir).as_posix(): sha256_file(f) for f in files},
        )
    )

    buf = io.BytesIO()
    # mtime=0 keeps the gzip header reproducible
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            _add_bytes(tar, MANIFEST_FILENAME, manifest_bytes(manifest), 0o644)
            for path in files:
                mode = 0o755 if os.access(path, os.X_OK) else 0o644
                _add_bytes(
                    tar, path.relative_to(source_dir).as_posix(), path.read_bytes(), mode
                )

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    dest = out_dir / ident.artifact_name
    fd, tmp = tempfile.mkstemp(dir=out_dir, prefix=".pack-")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(buf.getvalue())
        os.replace(tmp, dest)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    logger.info("Packed %s (%d files) to %s", ident, len(files), dest)
    return dest


def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes, mode: int) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mode = mode
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    tar.addfile(info, io.BytesIO(data))


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def _safe_name(name: str) -> PurePosixPath:
    path = PurePosixPath(name)
    if path.is_absolute() or ".." in path.parts or not path.parts:
        raise ExtractionError(f"Unsafe path in artifact: {name!r}")
    return path


def iter_members(tar: tarfile.TarFile) -> Iterator[tuple[tarfile.TarInfo, PurePosixPath]]:
    """Yield validated members. Only regular files and directories are allowed."""
    for member in tar:
        path = _safe_name(member.name)
        if not (member.isfile() or member.isdir()):
            raise ExtractionError(
                f"Unsupported member type in artifact: {member.name!r}"
            )
        yield member, path


def read_manifest(artifact_path: Path) -> Manifest:
    """Read the embedded manifest of an artifact.

    Raises ``ExtractionError`` if the archive or the manifest is unreadable.
    """
    try:
        with tarfile.open(artifact_path, mode="r:gz") as tar:
            try:
                member = tar.getmember(MANIFEST_FILENAME)
            except KeyError as exc:
                raise ExtractionError(
                    f"Artifact has no {MANIFEST_FILENAME}: {artifact_path.name}"
                ) from exc
            fh = tar.extractfile(member)
            if fh is None:
                raise ExtractionError(f"Unreadable manifest in {artifact_path.name}")
            data = json.loads(fh.read().decode("utf-8"))
    except (tarfile.TarError, OSError, EOFError, ValueError) as exc:
        raise ExtractionError(f"Corrupt artifact {artifact_path.name}: {exc}") from exc
    try:
        return Manifest.model_validate(data)
    except ValueError as exc:
        raise ExtractionError(f"Invalid manifest in {artifact_path.name}: {exc}") from exc


def member_digests(artifact_path: Path) -> dict[str, str]:
    """SHA-256 of every regular file in an artifact, manifest excluded.

    Raises ``ExtractionError`` for unsafe members or an unreadable archive.
    """
    digests: dict[str, str] = {}
    try:
        with tarfile.open(artifact_path, mode="r:gz") as tar:
            for member, rel in iter_members(tar):
                if member.isdir() or rel.as_posix() == MANIFEST_FILENAME:
                    continue
                fh = tar.extractfile(member)
                if fh is None:
                    raise ExtractionError(f"Unreadable member {member.name!r}")
                with fh:
                    digests[rel.as_posix()] = sha256_fileobj(fh)
    except (tarfile.TarError, OSError, EOFError, zlib.error) as exc:
        raise ExtractionError(f"Corrupt artifact {artifact_path.name}: {exc}") from exc
    return digests
