"""Usage event recorder.

Events are written as one JSON file each under ``cache/analytics`` so a
separate uploader can ship them later. Payloads follow the Segment ``track``
shape::

    {
      "type": "track",
      "event": "package-install",
      "properties": {
        "clientid": "0a5c0882-ade5-46cf-821d-8d3853cd0d41",
        "timestamp": "1479330000.134424040",
        ...
      }
    }

The client id is generated once and persisted in ``CLIENT_ID``.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from burrow.core.hasher import canonical_json_bytes

logger = logging.getLogger(__name__)

CLIENT_ID_METAFILE = "CLIENT_ID"

EVENT_PACKAGE_INSTALL = "package-install"
EVENT_SERVICE_START = "service-start"
EVENT_SERVICE_RESTART = "service-restart"
EVENT_SERVICE_FATAL = "service-fatal"


def _timestamp() -> str:
    ns = time.time_ns()
    return f"{ns // 1_000_000_000}.{ns % 1_000_000_000:09d}"


class UsageEvent(BaseModel):
    """One recorded event."""

    model_config = ConfigDict(frozen=True)

    name: str
    clientid: str
    timestamp: str
    properties: dict[str, str] = Field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        props = dict(self.properties)
        props["clientid"] = self.clientid
        props["timestamp"] = self.timestamp
        return {"type": "track", "event": self.name, "properties": props}


class EventRecorder:
    """Writes usage events when enabled; does nothing otherwise.

    Recording never raises: a failure to write an event is logged and
    dropped so it cannot break an install or a supervisor.
    """

    def __init__(self, analytics_dir: Path, *, enabled: bool = True) -> None:
        self._dir = Path(analytics_dir)
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def client_id(self) -> str:
        path = self._dir / CLIENT_ID_METAFILE
        if path.exists():
            return path.read_text(encoding="utf-8").strip()
        self._dir.mkdir(parents=True, exist_ok=True)
        client_id = str(uuid.uuid4())
        path.write_text(client_id, encoding="utf-8")
        return client_id

    def record(self, name: str, **properties: str) -> Path | None:
        """Record event *name*. Returns the written file, or ``None``."""
        if not self._enabled:
            return None
        try:
            event = UsageEvent(
                name=name,
                clientid=self.client_id(),
                timestamp=_timestamp(),
                properties={k: str(v) for k, v in properties.items()},
            )
            self._dir.mkdir(parents=True, exist_ok=True)
            dest = self._dir / f"event-{event.timestamp}.json"
            fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=".event-")
            with os.fdopen(fd, "wb") as fh:
                fh.write(canonical_json_bytes(event.to_payload()))
            os.replace(tmp, dest)
            return dest
        except OSError as exc:
            logger.warning("Could not record usage event %s: %s", name, exc)
            return None
