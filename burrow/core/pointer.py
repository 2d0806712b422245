"""Current pointer — which installed tree a service slot runs.

The pointer is a symlink at ``srvc/{service}/current``. It is only ever
repointed by creating a fresh symlink beside it and renaming it over the
old one, so readers see either the old target or the new one.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

from burrow.core.store import PackageStore
from burrow.errors import PointerError
from burrow.models.package import StoreEntry

logger = logging.getLogger(__name__)


def atomic_symlink(target: Path, link: Path) -> None:
    """Point *link* at *target* with a single rename."""
    link.parent.mkdir(parents=True, exist_ok=True)
    tmp = link.with_name(f".{link.name}.{uuid.uuid4().hex[:8]}")
    os.symlink(target, tmp)
    try:
        os.replace(tmp, link)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class CurrentPointer:
    """The mutable reference from a service name to one store entry.

    Parameters
    ----------
    link:
        Path of the ``current`` symlink.
    store:
        Store used to load the entry the link points at.
    """

    def __init__(self, link: Path, store: PackageStore) -> None:
        self._link = Path(link)
        self._store = store

    @property
    def link(self) -> Path:
        return self._link

    def is_set(self) -> bool:
        return self._link.is_symlink()

    def repoint_to(self, entry: StoreEntry) -> StoreEntry | None:
        """Activate *entry*. Returns the entry that was active before, if any."""
        if not entry.path.is_dir():
            raise PointerError(f"Store entry {entry.ident} does not exist at {entry.path}")
        previous = self.read() if self.is_set() else None
        atomic_symlink(entry.path.resolve(), self._link)
        logger.info(
            "Repointed %s to %s (was %s)",
            self._link,
            entry.ident,
            previous.ident if previous else "unset",
        )
        return previous

    def read(self) -> StoreEntry:
        """Return the entry currently pointed at.

        Raises ``PointerError`` when unset or dangling.
        """
        if not self._link.is_symlink():
            raise PointerError(f"No current pointer at {self._link}")
        target = Path(os.readlink(self._link))
        if not target.is_absolute():
            target = self._link.parent / target
        entry = self._store.load_entry(target)
        if entry is None:
            raise PointerError(f"Current pointer {self._link} is dangling ({target})")
        return entry
