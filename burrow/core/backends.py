"""Configuration backends — one snapshot-stream capability, three variants.

Every backend produces full ``{dotted_key: value}`` snapshots over time:

- ``StaticEnvBackend``: one snapshot from ``<SERVICE>_<KEY>`` environment
  variables, no events afterwards.
- ``PushWatchBackend``: subscribes through a watchable client and emits a
  snapshot as soon as any key changes.
- ``PollSnapshotBackend``: fetches a snapshot every interval and emits only
  when it differs from the last one seen.

Listener threads call ``emit`` from their own thread; the supervisor turns
each call into a queued event, so ordering and serialization are its job.
Backend outages are logged and retried with backoff, never raised to the
supervisor, which keeps serving the last good configuration.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from collections.abc import Callable, Mapping
from typing import Protocol, runtime_checkable

from burrow.core.kv import KeyValueClient, WatchableKeyValueClient, connect
from burrow.errors import BackendUnavailableError
from burrow.models.config import BackendKind, ConfigSource

logger = logging.getLogger(__name__)

Emit = Callable[[dict[str, str]], None]


@runtime_checkable
class ConfigBackend(Protocol):
    """The capability the supervisor is written against."""

    kind: BackendKind

    @property
    def source(self) -> ConfigSource:
        """Override tier this backend feeds."""
        ...

    def snapshot(self) -> dict[str, str]:
        """Current snapshot, used once at startup."""
        ...

    def start(self, emit: Emit) -> None:
        """Begin delivering later snapshots to *emit*."""
        ...

    def stop(self) -> None:
        """Stop delivering snapshots. Idempotent."""
        ...


def env_prefix(service: str) -> str:
    """``my-app`` -> ``MY_APP_``"""
    return re.sub(r"[^A-Za-z0-9]", "_", service).upper() + "_"


# ---------------------------------------------------------------------------
# StaticEnv
# ---------------------------------------------------------------------------


class StaticEnvBackend:
    """One-shot snapshot of per-service environment variables.

    ``REDIS_TIMEOUT=5`` becomes ``timeout``; ``REDIS_SERVER__PORT=6380``
    becomes ``server.port``.
    """

    kind = BackendKind.STATIC_ENV

    def __init__(self, service: str, environ: Mapping[str, str] | None = None) -> None:
        self._service = service
        self._environ = dict(os.environ if environ is None else environ)

    @property
    def source(self) -> ConfigSource:
        return ConfigSource.ENVIRONMENT

    def snapshot(self) -> dict[str, str]:
        prefix = env_prefix(self._service)
        values: dict[str, str] = {}
        for name in sorted(self._environ):
            if not name.startswith(prefix) or len(name) == len(prefix):
                continue
            key = name[len(prefix):].lower().replace("__", ".")
            values[key] = self._environ[name]
        return values

    def start(self, emit: Emit) -> None:
        logger.debug("Static environment backend for %s emits no events", self._service)

    def stop(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Threaded base for the two service-backed variants
# ---------------------------------------------------------------------------


class _ListenerBackend:
    """Shared thread handling, last-seen snapshot, and retry delay."""

    kind: BackendKind

    def __init__(
        self,
        service: str,
        client: KeyValueClient,
        *,
        retry_seconds: float = 2.0,
        max_retry_seconds: float = 30.0,
    ) -> None:
        self._service = service
        self._client = client
        self._retry_seconds = retry_seconds
        self._max_retry_seconds = max_retry_seconds
        self._lock = threading.Lock()
        self._last: dict[str, str] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._emit: Emit | None = None

    @property
    def source(self) -> ConfigSource:
        return ConfigSource.BACKEND

    def snapshot(self) -> dict[str, str]:
        try:
            fresh = self._client.get_prefix(self._service)
        except BackendUnavailableError as exc:
            logger.warning(
                "Config backend unavailable for %s, using last known values: %s",
                self._service,
                exc,
            )
            with self._lock:
                return dict(self._last)
        with self._lock:
            self._last = dict(fresh)
        return dict(fresh)

    def start(self, emit: Emit) -> None:
        if self._thread is not None:
            return
        self._emit = emit
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"burrow-{self.kind.value}-{self._service}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)

    def _retry_delay(self, failures: int) -> float:
        return min(self._retry_seconds * (2 ** max(failures - 1, 0)), self._max_retry_seconds)

    def _publish_if_changed(self, fresh: dict[str, str]) -> bool:
        with self._lock:
            if fresh == self._last:
                return False
            self._last = dict(fresh)
        if self._emit is not None:
            self._emit(dict(fresh))
        return True

    def _run(self) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# PushWatch
# ---------------------------------------------------------------------------


class PushWatchBackend(_ListenerBackend):
    """Subscription-driven backend."""

    kind = BackendKind.PUSH_WATCH

    def __init__(self, service: str, client: WatchableKeyValueClient, **kwargs: float) -> None:
        super().__init__(service, client, **kwargs)
        self._watch_client = client
        self._failures = 0

    def _on_change(self, key: str, value: str | None) -> None:
        with self._lock:
            updated = dict(self._last)
        if value is None:
            updated.pop(key, None)
        else:
            updated[key] = value
        self._publish_if_changed(updated)

    def _resync(self) -> None:
        snapshot = self._client.get_prefix(self._service)
        self._failures = 0
        self._publish_if_changed(snapshot)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                # Re-read on every (re)connect so nothing missed while
                # disconnected is lost.
                self._watch_client.watch_prefix(
                    self._service, self._on_change, self._stop, on_subscribed=self._resync
                )
            except BackendUnavailableError as exc:
                self._failures += 1
                delay = self._retry_delay(self._failures)
                logger.warning(
                    "Watch for %s lost (%s); retrying in %.1fs", self._service, exc, delay
                )
                self._stop.wait(delay)


# ---------------------------------------------------------------------------
# PollSnapshot
# ---------------------------------------------------------------------------


class PollSnapshotBackend(_ListenerBackend):
    """Interval-driven backend; silent when nothing changed."""

    kind = BackendKind.POLL_SNAPSHOT

    def __init__(
        self,
        service: str,
        client: KeyValueClient,
        *,
        interval_seconds: float = 5.0,
        **kwargs: float,
    ) -> None:
        super().__init__(service, client, **kwargs)
        self._interval = interval_seconds

    def poll_once(self) -> bool:
        """Fetch one snapshot. Returns whether it was emitted."""
        return self._publish_if_changed(self._client.get_prefix(self._service))

    def _run(self) -> None:
        failures = 0
        while not self._stop.wait(self._interval):
            try:
                self.poll_once()
                failures = 0
            except BackendUnavailableError as exc:
                failures += 1
                delay = self._retry_delay(failures)
                logger.warning(
                    "Poll for %s failed (%s); backing off %.1fs", self._service, exc, delay
                )
                self._stop.wait(delay)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def select_backend(
    service: str,
    target: str | None,
    *,
    environ: Mapping[str, str] | None = None,
    client_factory: Callable[[str], KeyValueClient] = connect,
    poll_interval_seconds: float = 5.0,
    retry_seconds: float = 2.0,
) -> ConfigBackend:
    """Pick the backend for one supervisor.

    With a target the config service overrides defaults (push when the
    client can watch, poll otherwise) and the environment is ignored.
    Without one the environment overrides defaults.
    """
    if not target:
        logger.info("No config target for %s; using environment overrides", service)
        return StaticEnvBackend(service, environ)
    client = client_factory(target)
    if isinstance(client, WatchableKeyValueClient):
        logger.info("Watching %s for %s", target, service)
        return PushWatchBackend(service, client, retry_seconds=retry_seconds)
    logger.info("Polling %s every %.1fs for %s", target, poll_interval_seconds, service)
    return PollSnapshotBackend(
        service,
        client,
        interval_seconds=poll_interval_seconds,
        retry_seconds=retry_seconds,
    )
