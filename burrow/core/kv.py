"""Key/value client contract required by the configuration backends.

Burrow does not ship a key/value store; it specifies what it needs from a
client. Keys live under a per-service namespace (``redis/server/port``) and
are reported relative to it in dotted form (``server.port``).

Two clients are provided:

- ``InMemoryKeyValueStore``: watchable, process-local. ``memory://<name>``
  targets share one named instance, which lets several supervisors in one
  process see the same store.
- ``TomlFileClient``: poll-only. ``file://<path>`` targets read one TOML
  document whose top-level tables are service namespaces.
"""

from __future__ import annotations

import logging
import queue
import threading
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from burrow.errors import BackendUnavailableError

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, str | None], None]


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class KeyValueClient(Protocol):
    """Anything that can return a full snapshot of a namespace."""

    def get_prefix(self, namespace: str) -> dict[str, str]:
        """Return ``{dotted_key: value}`` for every key in *namespace*.

        Raises ``BackendUnavailableError`` when the store cannot be reached.
        """
        ...


@runtime_checkable
class WatchableKeyValueClient(KeyValueClient, Protocol):
    """A client that can push changes as they happen."""

    def watch_prefix(
        self,
        namespace: str,
        on_change: ChangeCallback,
        stop: threading.Event,
        on_subscribed: Callable[[], None] | None = None,
    ) -> None:
        """Block, calling ``on_change(key, value)`` per change until *stop* is set.

        A deleted key is reported with ``value=None``. ``on_subscribed`` runs
        once the subscription is live, so a snapshot read there cannot miss
        a change. Raises ``BackendUnavailableError`` when the subscription
        drops.
        """
        ...


def flatten(data: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested tables into dotted keys, preserving order."""
    flat: dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(flatten(value, dotted))
        else:
            flat[dotted] = value
    return flat


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

_DISCONNECT = object()


class InMemoryKeyValueStore:
    """Process-local watchable key/value store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, str] = {}
        self._watchers: list[tuple[str, queue.Queue]] = []
        self._available = True

    @staticmethod
    def _split(key: str) -> tuple[str, str]:
        namespace, _, rest = key.strip("/").partition("/")
        return namespace, rest.replace("/", ".")

    def put(self, key: str, value: str) -> None:
        """Set ``namespace/path/to/key``."""
        namespace, rel = self._split(key)
        if not rel:
            raise ValueError(f"Key needs a namespace and a name: {key!r}")
        with self._lock:
            self._data[f"{namespace}/{rel}"] = str(value)
            watchers = [q for ns, q in self._watchers if ns == namespace]
        for q in watchers:
            q.put((rel, str(value)))

    def delete(self, key: str) -> None:
        namespace, rel = self._split(key)
        with self._lock:
            removed = self._data.pop(f"{namespace}/{rel}", None)
            watchers = [q for ns, q in self._watchers if ns == namespace]
        if removed is not None:
            for q in watchers:
                q.put((rel, None))

    def set_available(self, available: bool) -> None:
        """Simulate the store going away (``get_prefix`` fails while unavailable)."""
        with self._lock:
            self._available = available

    def disconnect_watchers(self) -> None:
        """Drop every active subscription."""
        with self._lock:
            watchers = [q for _, q in self._watchers]
        for q in watchers:
            q.put(_DISCONNECT)

    def get_prefix(self, namespace: str) -> dict[str, str]:
        with self._lock:
            if not self._available:
                raise BackendUnavailableError("in-memory store is unavailable")
            head = f"{namespace}/"
            return {
                key[len(head):]: value
                for key, value in self._data.items()
                if key.startswith(head)
            }

    def watch_prefix(
        self,
        namespace: str,
        on_change: ChangeCallback,
        stop: threading.Event,
        on_subscribed: Callable[[], None] | None = None,
    ) -> None:
        q: queue.Queue = queue.Queue()
        with self._lock:
            if not self._available:
                raise BackendUnavailableError("in-memory store is unavailable")
            self._watchers.append((namespace, q))
        try:
            if on_subscribed is not None:
                on_subscribed()
            while not stop.is_set():
                try:
                    item = q.get(timeout=0.05)
                except queue.Empty:
                    continue
                if item is _DISCONNECT:
                    raise BackendUnavailableError(f"watch on {namespace!r} disconnected")
                key, value = item
                on_change(key, value)
        finally:
            with self._lock:
                self._watchers = [(ns, w) for ns, w in self._watchers if w is not q]


# ---------------------------------------------------------------------------
# TOML file client
# ---------------------------------------------------------------------------


class TomlFileClient:
    """Poll-only client over a TOML document of ``[service]`` tables."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    def get_prefix(self, namespace: str) -> dict[str, str]:
        try:
            data = tomllib.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise BackendUnavailableError(f"Cannot read {self._path}: {exc}") from exc
        table = data.get(namespace, {})
        if not isinstance(table, Mapping):
            return {}
        return {key: _to_text(value) for key, value in flatten(table).items()}


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ---------------------------------------------------------------------------
# Target resolution
# ---------------------------------------------------------------------------

_NAMED_STORES: dict[str, InMemoryKeyValueStore] = {}
_NAMED_LOCK = threading.Lock()


def memory_store(name: str) -> InMemoryKeyValueStore:
    """Return the shared in-memory store called *name*."""
    with _NAMED_LOCK:
        store = _NAMED_STORES.get(name)
        if store is None:
            store = _NAMED_STORES[name] = InMemoryKeyValueStore()
        return store


def connect(target: str) -> KeyValueClient:
    """Build a client for a config target URI."""
    scheme, sep, rest = target.partition("://")
    if not sep:
        raise ValueError(f"Config target must be a URI, got {target!r}")
    if scheme == "memory":
        return memory_store(rest or "default")
    if scheme == "file":
        return TomlFileClient(Path(rest))
    raise ValueError(f"Unsupported config target scheme {scheme!r} in {target!r}")
