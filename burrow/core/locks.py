"""Per-identity mutual exclusion for installer operations.

Two layers: an in-process ``threading.Lock`` per identity, and an ``fcntl``
lock file under ``{store}/.locks/`` so installers in separate processes on
the same host serialize too. Different identities never contend.
"""

from __future__ import annotations

import fcntl
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class IdentityLocks:
    """Keyed lock registry.

    Parameters
    ----------
    lock_dir:
        Directory for cross-process lock files. Created on first use.
    """

    def __init__(self, lock_dir: Path) -> None:
        self._lock_dir = Path(lock_dir)
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _thread_lock(self, identity: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(identity)
            if lock is None:
                lock = self._locks[identity] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, identity: str) -> Iterator[None]:
        """Hold the lock for *identity* for the duration of the block."""
        lock = self._thread_lock(identity)
        with lock:
            self._lock_dir.mkdir(parents=True, exist_ok=True)
            path = self._lock_dir / f"{identity}.lock"
            with open(path, "a+b") as fh:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
                logger.debug("Acquired install lock for %s", identity[:12])
                try:
                    yield
                finally:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
