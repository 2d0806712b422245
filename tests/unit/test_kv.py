"""Tests for the key/value clients and target resolution."""

from __future__ import annotations

import threading

import pytest

from burrow.core.kv import (
    InMemoryKeyValueStore,
    KeyValueClient,
    TomlFileClient,
    WatchableKeyValueClient,
    connect,
    flatten,
    memory_store,
)
from burrow.errors import BackendUnavailableError


class TestFlatten:
    def test_nested_tables(self):
        assert flatten({"a": 1, "b": {"c": 2, "d": {"e": 3}}}) == {"a": 1, "b.c": 2, "b.d.e": 3}


class TestInMemoryStore:
    def test_get_prefix_is_namespaced(self):
        kv = InMemoryKeyValueStore()
        kv.put("redis/timeout", "5")
        kv.put("redis/server/port", "6380")
        kv.put("memcached/timeout", "9")
        assert kv.get_prefix("redis") == {"timeout": "5", "server.port": "6380"}

    def test_key_needs_namespace(self):
        with pytest.raises(ValueError):
            InMemoryKeyValueStore().put("timeout", "5")

    def test_unavailable(self):
        kv = InMemoryKeyValueStore()
        kv.set_available(False)
        with pytest.raises(BackendUnavailableError):
            kv.get_prefix("redis")

    def test_watch_delivers_changes(self):
        kv = InMemoryKeyValueStore()
        seen: list[tuple[str, str | None]] = []
        stop = threading.Event()
        subscribed = threading.Event()
        got_two = threading.Event()

        def on_change(key, value):
            seen.append((key, value))
            if len(seen) == 2:
                got_two.set()

        thread = threading.Thread(
            target=kv.watch_prefix,
            args=("redis", on_change, stop),
            kwargs={"on_subscribed": subscribed.set},
        )
        thread.start()
        assert subscribed.wait(2)
        kv.put("redis/timeout", "5")
        kv.put("memcached/timeout", "9")
        kv.delete("redis/timeout")
        assert got_two.wait(2)
        stop.set()
        thread.join(2)
        assert seen == [("timeout", "5"), ("timeout", None)]

    def test_disconnect_raises_in_watcher(self):
        kv = InMemoryKeyValueStore()
        errors: list[Exception] = []
        subscribed = threading.Event()

        def watch():
            try:
                kv.watch_prefix("redis", lambda k, v: None, threading.Event(), subscribed.set)
            except BackendUnavailableError as exc:
                errors.append(exc)

        thread = threading.Thread(target=watch)
        thread.start()
        assert subscribed.wait(2)
        kv.disconnect_watchers()
        thread.join(2)
        assert len(errors) == 1

    def test_is_watchable(self):
        assert isinstance(InMemoryKeyValueStore(), WatchableKeyValueClient)


class TestTomlFileClient:
    def test_reads_service_table(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[redis]\ntimeout = 5\nverbose = true\n[redis.server]\nport = 6380\n')
        client = TomlFileClient(path)
        assert client.get_prefix("redis") == {
            "timeout": "5",
            "verbose": "true",
            "server.port": "6380",
        }
        assert client.get_prefix("memcached") == {}

    def test_missing_file_is_unavailable(self, tmp_path):
        with pytest.raises(BackendUnavailableError):
            TomlFileClient(tmp_path / "nope.toml").get_prefix("redis")

    def test_is_poll_only(self, tmp_path):
        client = TomlFileClient(tmp_path / "c.toml")
        assert isinstance(client, KeyValueClient)
        assert not isinstance(client, WatchableKeyValueClient)


class TestConnect:
    def test_memory_targets_are_shared(self):
        assert connect("memory://kv-test-shared") is memory_store("kv-test-shared")

    def test_file_target(self, tmp_path):
        assert isinstance(connect(f"file://{tmp_path}/c.toml"), TomlFileClient)

    @pytest.mark.parametrize("target", ["redis", "etcd://localhost:2379"])
    def test_bad_targets(self, target):
        with pytest.raises(ValueError):
            connect(target)
