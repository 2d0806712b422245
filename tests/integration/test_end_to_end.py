"""End-to-end integration tests — pack, install, activate, supervise, reconfigure.

These tests exercise the hasher, ArtifactCache, PackageStore, resolver,
Installer, config backends, TemplateRenderer and ServiceSupervisor working
together on a real temporary root.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from burrow.core.hasher import compute_identity
from burrow.core.kv import memory_store
from burrow.core.supervisor import ServiceSupervisor, SubprocessLauncher
from burrow.models.package import BuildInputs, PackageSpec
from burrow.models.service import ServiceSpec, ServiceState

TIMEOUT = 5.0


def _store_dirs(installer, name: str) -> list[Path]:
    return sorted(p for p in installer.store.path.iterdir() if p.name.startswith(f"{name}!"))


class TestPackageIdentity:
    """Identity depends on build inputs only, never on ordering or time."""

    def test_dependency_order_does_not_change_identity(self, make_artifact, installer, tmp_path):
        h1 = installer.cache.add(make_artifact("openssl", "3.1.0")).ident.identity
        h2 = installer.cache.add(make_artifact("jemalloc", "5.3.0")).ident.identity

        spec = PackageSpec(name="redis", version="3.0.0")
        forward = BuildInputs(dependencies=[h2, h1])
        backward = BuildInputs(dependencies=[h1, h2])
        assert compute_identity(spec, forward) == compute_identity(spec, backward)

        first = make_artifact("redis", deps=[h2, h1], release="20240101000000")
        second = make_artifact("redis", deps=[h1, h2], release="20240202000000")
        first_id = installer.cache.add(first).ident.identity
        second_id = installer.cache.add(second).ident.identity
        assert first_id == second_id

    def test_dependencies_install_leaves_first(self, make_artifact, installer, tmp_path):
        h1 = installer.cache.add(make_artifact("openssl", "3.1.0")).ident.identity
        h2 = installer.cache.add(make_artifact("jemalloc", "5.3.0")).ident.identity
        make_artifact("redis", deps=[h2, h1])

        result = installer.install("redis", upstream=tmp_path / "depot")
        names = [entry.ident.name for entry in result.entries]
        assert names[-1] == "redis"
        assert set(names[:2]) == {"openssl", "jemalloc"}
        assert len(result.newly_installed) == 3


class TestInstallIdempotency:
    def test_installing_twice_leaves_one_store_entry(self, make_artifact, installer, tmp_path):
        make_artifact("redis", "3.0.0")
        depot = tmp_path / "depot"

        first = installer.install("redis", upstream=depot)
        second = installer.install("redis", upstream=depot)

        assert first.root.identity == second.root.identity
        assert second.newly_installed == []
        assert len(_store_dirs(installer, "redis")) == 1

    def test_rebuild_with_new_release_is_not_reinstalled(self, make_artifact, installer, tmp_path):
        make_artifact("redis", release="20240101000000")
        installer.install("redis", upstream=tmp_path / "depot")
        make_artifact("redis", release="20250101000000")
        result = installer.install("redis", upstream=tmp_path / "depot")
        assert result.newly_installed == []
        assert len(_store_dirs(installer, "redis")) == 1


class TestLiveReconfiguration:
    """A pushed change flows through EffectiveConfig into the rendered file."""

    @pytest.fixture
    def supervisor(self, active_redis, settings, launcher):
        target = "memory://e2e-reconfigure"
        kv = memory_store("e2e-reconfigure")
        kv.put("redis/timeout", "30")
        tuned = settings.model_copy(
            update={
                "config_target": target,
                "backend_retry_seconds": 0.01,
                "grace_timeout_seconds": 0.2,
            }
        )
        supervisor = ServiceSupervisor.from_settings(
            ServiceSpec(name="redis", command=["redis-server"]),
            tuned,
            launcher=launcher,
            environ={},
        )
        yield supervisor
        supervisor.stop(timeout=TIMEOUT)

    def test_push_change_reconfigures(self, supervisor, installer, launcher):
        kv = memory_store("e2e-reconfigure")
        rendered = installer.layout.config_dir("redis") / "redis.conf"
        supervisor.start()
        assert supervisor.wait_for_state(ServiceState.RUNNING, TIMEOUT)
        assert "timeout 30\n" in rendered.read_text()

        kv.put("redis/timeout", "45")
        assert supervisor.wait_until(
            lambda s: len(s.history) >= 5 and s.state == ServiceState.RUNNING, TIMEOUT
        )

        assert supervisor.effective_config.get("timeout") == 45
        assert "timeout 45\n" in rendered.read_text()
        states = [t.to_state for t in supervisor.status().history]
        assert states[:3] == [ServiceState.STARTING, ServiceState.RUNNING, ServiceState.RECONFIGURING]
        assert states[-1] == ServiceState.RUNNING
        assert len(launcher.processes) == 2


class TestRealProcess:
    """The default launcher runs a real OS process and stops it gracefully."""

    def test_subprocess_lifecycle(self, active_redis, settings):
        tuned = settings.model_copy(update={"grace_timeout_seconds": 2.0})
        supervisor = ServiceSupervisor.from_settings(
            ServiceSpec(
                name="redis",
                command=[sys.executable, "-c", "import time; time.sleep(30)"],
            ),
            tuned,
            launcher=SubprocessLauncher(),
        )
        try:
            supervisor.start()
            assert supervisor.wait_for_state(ServiceState.RUNNING, TIMEOUT)
            assert supervisor.status().pid is not None
        finally:
            status = supervisor.stop(timeout=TIMEOUT)
        assert status.state == ServiceState.STOPPED
        assert status.fatal_error is None
