"""Canonical hashing helpers for package identities and manifests.

``compute_identity`` is the Identity Engine: a pure function from a package
spec and its build inputs to a SHA-256 digest. Fields are length-prefixed so
that ``("foo", "bar")`` and ``("foob", "ar")`` never collide.
"""

from __future__ import annotations

import hashlib
import json
import struct
from collections.abc import Iterable
from pathlib import Path
from typing import Any, BinaryIO

from burrow.models.package import BuildInputs, PackageSpec

_CHUNK_SIZE = 1 << 16


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_fileobj(fh: BinaryIO) -> str:
    """SHA-256 hex digest of an open binary stream, read in chunks."""
    digest = hashlib.sha256()
    for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
        digest.update(chunk)
    return digest.hexdigest()


def sha256_file(path: Path) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    with open(path, "rb") as fh:
        return sha256_fileobj(fh)


# ---------------------------------------------------------------------------
# Length-prefixed encoding
# ---------------------------------------------------------------------------


def _encode_bytes(data: bytes) -> bytes:
    return struct.pack(">Q", len(data)) + data


def _encode_str(value: str) -> bytes:
    return _encode_bytes(value.encode("utf-8"))


def _encode_list(items: Iterable[bytes]) -> bytes:
    encoded = list(items)
    return struct.pack(">Q", len(encoded)) + b"".join(encoded)


def encode_identity_fields(spec: PackageSpec, build_inputs: BuildInputs) -> bytes:
    """Serialize the identity tuple unambiguously.

    Layout: name, version, source location, source revision, sorted flag
    pairs, build script, sorted dependency identities. Every string and
    every list count carries an 8-byte big-endian length prefix.
    """
    flags = sorted((str(k), str(v)) for k, v in build_inputs.build_flags)
    deps = sorted(build_inputs.dependencies)
    return b"".join([
        _encode_str(spec.name),
        _encode_str(spec.version or ""),
        _encode_str(build_inputs.source_location),
        _encode_str(build_inputs.source_revision),
        _encode_list(_encode_str(k) + _encode_str(v) for k, v in flags),
        _encode_str(build_inputs.build_script),
        _encode_list(_encode_str(d) for d in deps),
    ])


def compute_identity(spec: PackageSpec, build_inputs: BuildInputs) -> str:
    """Compute the Identity of a build.

    Equal inputs give equal identities regardless of dependency order,
    machine, or wall-clock time.
    """
    return sha256_hex(encode_identity_fields(spec, build_inputs))


def compute_manifest_hash(manifest_dict: dict[str, Any]) -> str:
    """SHA-256 of a manifest (excluding the manifest_hash field itself)."""
    d = {k: v for k, v in manifest_dict.items() if k != "manifest_hash"}
    return sha256_hex(canonical_json_bytes(d))
