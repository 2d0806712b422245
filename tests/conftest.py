"""Shared test fixtures for Burrow."""

from __future__ import annotations

import itertools
import os
import subprocess
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from burrow.config import BurrowSettings
from burrow.core.artifact import pack_artifact
from burrow.core.cache import ArtifactCache, DirectoryDepot
from burrow.core.installer import Installer
from burrow.core.layout import FsLayout
from burrow.core.store import PackageStore
from burrow.models.package import BuildInputs, PackageSpec

_counter = itertools.count()


@pytest.fixture
def settings(tmp_path: Path) -> BurrowSettings:
    """Settings rooted in a temp directory, pinned to the artifact target."""
    return BurrowSettings(
        _env_file=None,
        root=tmp_path / "burrow",
        platform="linux",
        arch="x86_64",
        config_target=None,
        fetch_retries=2,
        analytics_enabled=False,
    )


@pytest.fixture
def layout(settings: BurrowSettings) -> FsLayout:
    return FsLayout(settings.root)


@pytest.fixture
def store(layout: FsLayout) -> PackageStore:
    """Provide a fresh PackageStore in a temp directory."""
    return PackageStore(layout.store_dir)


@pytest.fixture
def cache(layout: FsLayout) -> ArtifactCache:
    """Provide an ArtifactCache that retries without sleeping."""
    return ArtifactCache(layout.cache_dir, fetch_retries=3, retry_delay=0.0)


@pytest.fixture
def depot(tmp_path: Path) -> DirectoryDepot:
    return DirectoryDepot(tmp_path / "depot")


@pytest.fixture
def installer(settings: BurrowSettings) -> Installer:
    """Provide an Installer wired to the temp root."""
    return Installer(settings)


# ---------------------------------------------------------------------------
# Artifact factory — shared across test modules
# ---------------------------------------------------------------------------


@pytest.fixture
def make_artifact(tmp_path: Path, depot: DirectoryDepot) -> Callable[..., Path]:
    """Factory fixture: pack a small package tree and return the artifact path.

    Files under ``hooks/`` are made executable. The artifact is published to
    the ``depot`` fixture unless ``publish=False``.
    """

    def _factory(
        name: str = "redis",
        version: str = "3.0.0",
        *,
        files: dict[str, str | bytes] | None = None,
        deps: list[str] | tuple[str, ...] = (),
        release: str = "20240101000000",
        revision: str = "r1",
        flags: list[tuple[str, str]] | None = None,
        derivation: str | None = None,
        build_script: str | None = None,
        publish: bool = True,
    ) -> Path:
        source = tmp_path / "src" / f"{name}-{next(_counter)}"
        for rel, content in (files or {"README": f"{name} {version}\n"}).items():
            path = source / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8")
            if rel.startswith("hooks/"):
                path.chmod(0o755)
        spec = PackageSpec(name=name, version=version, derivation=derivation)
        build_inputs = BuildInputs(
            source_location=f"https://example.invalid/{name}.tar.gz",
            source_revision=revision,
            build_flags=flags or [],
            build_script=build_script if build_script is not None else f"make {name}",
            dependencies=list(deps),
        )
        artifact = pack_artifact(
            source, spec, build_inputs, tmp_path / "artifacts", release=release
        )
        if publish:
            depot.publish(artifact)
        return artifact

    return _factory


# ---------------------------------------------------------------------------
# Fake processes for supervisor tests
# ---------------------------------------------------------------------------


class FakeProcess:
    """Stands in for ``subprocess.Popen``; exits when told to."""

    _pids = itertools.count(4000)

    def __init__(
        self,
        command: list[str],
        *,
        env: dict[str, str],
        ignore_term: bool = False,
        exit_code: int | None = None,
    ) -> None:
        self.pid = next(self._pids)
        self.command = command
        self.env = env
        self.ignore_term = ignore_term
        self.returncode: int | None = None
        self.terminated = False
        self.killed = False
        self._exited = threading.Event()
        if exit_code is not None:
            self.exit(exit_code)

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.command, timeout)
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_term:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeLauncher:
    """Records every launch. ``exit_code`` makes processes die immediately."""

    def __init__(self, *, ignore_term: bool = False, exit_code: int | None = None) -> None:
        self.ignore_term = ignore_term
        self.exit_code = exit_code
        self.processes: list[FakeProcess] = []

    def launch(self, command: list[str], *, cwd: Path, env: dict[str, str]) -> FakeProcess:
        assert cwd.is_dir()
        process = FakeProcess(
            command, env=env, ignore_term=self.ignore_term, exit_code=self.exit_code
        )
        self.processes.append(process)
        return process


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def fake_launcher_cls() -> type[FakeLauncher]:
    return FakeLauncher


REDIS_FILES: dict[str, str | bytes] = {
    "default.toml": 'timeout = 30\nport = 6379\n\n[server]\nbind = "127.0.0.1"\n',
    "config/redis.conf": (
        "bind {{ cfg.server.bind }}\nport {{ cfg.port }}\ntimeout {{ cfg.timeout }}\n"
    ),
    "hooks/run": "#!/bin/sh\nexec sleep 60\n",
}


@pytest.fixture
def redis_files() -> dict[str, str | bytes]:
    """Package tree with defaults, one template and a run hook."""
    return dict(REDIS_FILES)


@pytest.fixture
def active_redis(installer: Installer, make_artifact, redis_files):
    """Install the redis fixture package and point the ``redis`` service at it."""
    artifact = make_artifact("redis", files=redis_files, publish=False)
    result = installer.install_artifact(artifact)
    installer.activate("redis", result.root)
    return result.root


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop BURROW_* variables that could leak into settings."""
    for name in list(os.environ):
        if name.startswith("BURROW_"):
            monkeypatch.delenv(name)
    yield
