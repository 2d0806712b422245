"""Package identity models — specs, build inputs, idents, manifests.

An Identity is the SHA-256 hex digest of a package's build inputs. The build
timestamp (``release``) rides along in artifact and store names so humans
can sort builds, but it never participates in the Identity.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Field separator in artifact and store names.
IDENT_DELIMITER = "!"

RELEASE_FORMAT = "%Y%m%d%H%M%S"

_IDENTITY_RE = re.compile(r"^[0-9a-f]{64}$")


def make_release(moment: datetime | None = None) -> str:
    """Return a build timestamp in ``YYYYMMDDHHMMSS`` form (UTC)."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime(RELEASE_FORMAT)


def is_identity(value: str) -> bool:
    """Whether *value* looks like a full Identity digest."""
    return bool(_IDENTITY_RE.match(value))


class PackageSpec(BaseModel):
    """What a user or a declaration asks for.

    ``version`` is an exact version or ``None`` for "any version".
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str | None = None
    derivation: str | None = None
    platform: str = "linux"
    arch: str = "x86_64"

    @field_validator("name")
    @classmethod
    def _name_has_no_delimiter(cls, value: str) -> str:
        if not value or IDENT_DELIMITER in value or "/" in value:
            raise ValueError(f"Invalid package name: {value!r}")
        return value


class BuildInputs(BaseModel):
    """Everything that determines the content of a build."""

    model_config = ConfigDict(frozen=True)

    source_location: str = ""
    source_revision: str = ""
    build_flags: list[tuple[str, str]] = Field(default_factory=list)
    build_script: str = ""
    dependencies: list[str] = Field(default_factory=list)


class PackageIdent(BaseModel):
    """A fully qualified build: name, version, release, identity, target."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    release: str
    identity: str
    platform: str = "linux"
    arch: str = "x86_64"

    @field_validator("identity")
    @classmethod
    def _identity_is_digest(cls, value: str) -> str:
        if not is_identity(value):
            raise ValueError(f"Not a SHA-256 identity: {value!r}")
        return value

    @field_validator("name", "version", "release", "platform", "arch")
    @classmethod
    def _no_delimiter(cls, value: str) -> str:
        if not value or IDENT_DELIMITER in value or "/" in value:
            raise ValueError(f"Invalid ident field: {value!r}")
        return value

    @property
    def artifact_name(self) -> str:
        """``name!version!release!identity!platform!arch``"""
        return IDENT_DELIMITER.join(
            [self.name, self.version, self.release, self.identity, self.platform, self.arch]
        )

    @property
    def store_name(self) -> str:
        """``name!version!release!identity``"""
        return IDENT_DELIMITER.join([self.name, self.version, self.release, self.identity])

    @property
    def sort_key(self) -> tuple[str, str]:
        """Newest release first when sorted in reverse; ties go to the greater identity."""
        return (self.release, self.identity)

    @classmethod
    def from_artifact_name(cls, filename: str) -> PackageIdent:
        parts = filename.split(IDENT_DELIMITER)
        if len(parts) != 6:
            raise ValueError(f"Not an artifact name: {filename!r}")
        name, version, release, identity, platform, arch = parts
        return cls(
            name=name,
            version=version,
            release=release,
            identity=identity,
            platform=platform,
            arch=arch,
        )

    @classmethod
    def from_store_name(
        cls, dirname: str, *, platform: str = "linux", arch: str = "x86_64"
    ) -> PackageIdent:
        parts = dirname.split(IDENT_DELIMITER)
        if len(parts) != 4:
            raise ValueError(f"Not a store entry name: {dirname!r}")
        name, version, release, identity = parts
        return cls(
            name=name,
            version=version,
            release=release,
            identity=identity,
            platform=platform,
            arch=arch,
        )

    def __str__(self) -> str:
        return f"{self.name}/{self.version}/{self.release}/{self.identity[:12]}"


class Manifest(BaseModel):
    """Metadata shipped inside every artifact and installed tree.

    ``files`` maps each relative path to the SHA-256 of its bytes.
    ``manifest_hash`` seals everything else in the record.
    """

    model_config = ConfigDict(frozen=True)

    ident: PackageIdent
    derivation: str | None = None
    build_inputs: BuildInputs = BuildInputs()
    files: dict[str, str] = Field(default_factory=dict)
    manifest_hash: str = ""

    @property
    def identity(self) -> str:
        return self.ident.identity

    @property
    def dependencies(self) -> list[str]:
        return list(self.build_inputs.dependencies)


class PackageArtifact(BaseModel):
    """A verified, compressed artifact sitting in the cache."""

    model_config = ConfigDict(frozen=True)

    ident: PackageIdent
    path: Path
    checksum: str
    manifest: Manifest


class StoreEntry(BaseModel):
    """An installed, immutable tree under ``store/``."""

    model_config = ConfigDict(frozen=True)

    ident: PackageIdent
    path: Path
    manifest: Manifest

    @property
    def identity(self) -> str:
        return self.ident.identity

    @property
    def derivation(self) -> str | None:
        return self.manifest.derivation
