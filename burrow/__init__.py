"""Burrow: content-addressed package store and configuration supervisor.

  - Identity: SHA-256 over length-prefixed build inputs (date excluded)
  - Artifact cache with integrity verification and bounded retries
  - Immutable store entries committed by atomic rename
  - Single-pass dependency resolution with cycle and conflict detection
  - Per-service supervisors with restart backoff and live reconfiguration
  - Three configuration backends: environment, push watch, poll snapshot
"""

__version__ = "0.1.0"
__description__ = "Content-addressed package store and configuration supervisor"

from burrow.core.hasher import compute_identity
from burrow.core.installer import Installer
from burrow.core.supervisor import ServiceSupervisor

__all__ = ["Installer", "ServiceSupervisor", "compute_identity", "__version__"]
