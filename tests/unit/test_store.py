"""Tests for PackageStore — atomic extraction, idempotency, lookups."""

from __future__ import annotations

import threading

import pytest

from burrow.core.cache import ArtifactCache
from burrow.core.store import PackageStore
from burrow.errors import ExtractionError, InstallCancelledError
from burrow.models.package import PackageArtifact, PackageIdent


@pytest.fixture
def add(cache: ArtifactCache, make_artifact):
    """Pack and cache an artifact in one step."""

    def _add(*args, **kwargs) -> PackageArtifact:
        return cache.add(make_artifact(*args, publish=False, **kwargs))

    return _add


def _snapshot(root):
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


class TestExtract:
    def test_extract_creates_named_entry(self, store: PackageStore, add):
        artifact = add("redis", files={"bin/redis": "binary", "README": "r"})
        entry = store.extract(artifact)
        assert entry.path == store.path / artifact.ident.store_name
        assert (entry.path / "bin" / "redis").read_text() == "binary"
        assert (entry.path / "MANIFEST.json").is_file()
        assert store.verify(entry)

    def test_extract_is_idempotent(self, store: PackageStore, add, monkeypatch):
        artifact = add("redis")
        first = store.extract(artifact)
        before = _snapshot(first.path)
        inode = first.path.stat().st_ino

        def _no_unpack(*args, **kwargs):
            raise AssertionError("second extract must not unpack")

        monkeypatch.setattr(PackageStore, "_unpack", staticmethod(_no_unpack))
        second = store.extract(artifact)

        assert second.path == first.path
        assert second.path.stat().st_ino == inode
        assert _snapshot(second.path) == before
        assert len(store.entries("redis")) == 1

    def test_no_temporary_dirs_left(self, store, add):
        store.extract(add("redis"))
        assert [p.name for p in store.path.iterdir() if p.name.startswith(".tmp-")] == []

    def test_cancelled_extract_leaves_nothing(self, store, add):
        artifact = add("redis")
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(InstallCancelledError):
            store.extract(artifact, cancel=cancel)
        assert store.entries() == []
        assert [p for p in store.path.iterdir() if p.name.startswith(".tmp-")] == []

    def test_damaged_entry_is_replaced(self, store, add):
        artifact = add("redis", files={"data": "original"})
        entry = store.extract(artifact)
        (entry.path / "MANIFEST.json").write_text("{not json", encoding="utf-8")
        repaired = store.extract(artifact)
        assert (repaired.path / "data").read_text() == "original"
        assert store.verify(repaired)

    def test_rebuild_with_new_release_reuses_entry(self, store, add, monkeypatch):
        older = add("redis", release="20240101000000")
        newer = add("redis", release="20250101000000")
        assert older.ident.identity == newer.ident.identity
        first = store.extract(older)

        def _no_unpack(*args, **kwargs):
            raise AssertionError("same identity must not unpack again")

        monkeypatch.setattr(PackageStore, "_unpack", staticmethod(_no_unpack))
        second = store.extract(newer)

        assert second.path == first.path
        assert [p.name for p in store.path.iterdir() if p.name.startswith("redis!")] == [
            first.path.name
        ]
        assert store.find(newer.ident.identity) == first

    def test_damaged_entry_from_other_release_is_replaced(self, store, add):
        older = add("redis", files={"data": "original"}, release="20240101000000")
        newer = add("redis", files={"data": "original"}, release="20250101000000")
        stale = store.extract(older)
        (stale.path / "data").write_text("patched")

        entry = store.extract(newer)

        assert entry.ident.release == "20250101000000"
        assert not stale.path.exists()
        assert [e.path for e in store.entries("redis")] == [entry.path]
        assert store.verify(entry)

    def test_corrupt_archive_raises(self, store, add):
        artifact = add("redis")
        artifact.path.write_bytes(artifact.path.read_bytes()[:100])
        with pytest.raises(ExtractionError):
            store.extract(artifact)
        assert store.entries() == []


class TestVerify:
    def test_modified_file_detected(self, store, add):
        entry = store.extract(add("redis", files={"conf": "a"}))
        (entry.path / "conf").write_text("b")
        assert store.verify(entry) is False

    def test_extra_file_detected(self, store, add):
        entry = store.extract(add("redis", files={"conf": "a"}))
        (entry.path / "intruder").write_text("x")
        assert store.verify(entry) is False

    def test_missing_file_detected(self, store, add):
        entry = store.extract(add("redis", files={"conf": "a"}))
        (entry.path / "conf").unlink()
        assert store.verify(entry) is False


class TestLookups:
    def test_latest_package_by_release(self, store, add):
        store.extract(add("redis", release="20240101000000", revision="a"))
        newest = store.extract(add("redis", release="20240301000000", revision="b"))
        store.extract(add("redis", release="20240201000000", revision="c"))
        assert store.latest_package("redis").identity == newest.identity

    def test_release_tie_goes_to_greater_identity(self, store, add):
        entries = [
            store.extract(add("redis", release="20240101000000", revision=r))
            for r in ("a", "b", "c")
        ]
        expected = max(e.identity for e in entries)
        assert store.latest_package("redis", "3.0.0").identity == expected

    def test_latest_package_filters_version(self, store, add):
        old = store.extract(add("redis", "2.8.0", release="20240101000000"))
        store.extract(add("redis", "3.0.0", release="20240601000000"))
        assert store.latest_package("redis", "2.8.0").identity == old.identity
        assert store.latest_package("redis", "9.9.9") is None
        assert store.latest_package("memcached") is None

    def test_latest_derivation(self, store, add):
        core = store.extract(add("redis", derivation="core", release="20240101000000"))
        store.extract(
            add("redis", derivation="acme", release="20240601000000", revision="x")
        )
        found = store.latest_derivation("redis", "3.0.0", "core")
        assert found is not None and found.identity == core.identity
        assert store.latest_derivation("redis", "3.0.0", "nobody") is None

    def test_specific(self, store, add):
        entry = store.extract(add("redis"))
        assert store.specific("redis", entry.identity) == entry
        assert store.specific("memcached", entry.identity) is None
        assert store.specific("redis", "0" * 64) is None

    def test_name_prefix_does_not_leak(self, store, add):
        store.extract(add("redis"))
        store.extract(add("redis-sentinel"))
        assert {e.ident.name for e in store.entries("redis")} == {"redis"}

    def test_store_name_round_trip(self, store, add):
        entry = store.extract(add("redis"))
        assert PackageIdent.from_store_name(entry.path.name) == entry.ident
