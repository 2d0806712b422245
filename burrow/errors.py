"""Burrow error taxonomy.

Installation errors propagate to the caller. Supervision errors are absorbed
by the supervisor state machine and only surface once recovery is exhausted.
"""

from __future__ import annotations


class BurrowError(Exception):
    """Base for every error raised by burrow."""


class IntegrityError(BurrowError, RuntimeError):
    """Raised when artifact bytes do not match the requested identity."""


class ExtractionError(BurrowError, RuntimeError):
    """Raised when an artifact cannot be extracted into the store."""


class InstallCancelledError(BurrowError, RuntimeError):
    """Raised when an install is cancelled before its store entry commits."""


class ResolutionError(BurrowError, ValueError):
    """Raised when a package spec cannot be resolved to a closure."""


class CyclicDependencyError(ResolutionError):
    """Raised when the dependency walk revisits a node on the current path."""


class UnsatisfiableError(ResolutionError):
    """Raised when one package name resolves to two unpinned identities."""


class MissingDependencyError(ResolutionError):
    """Raised when a dependency identity is not present in any manifest."""


class BackendUnavailableError(BurrowError, ConnectionError):
    """Raised when a configuration backend cannot be reached."""


class RenderError(BurrowError, ValueError):
    """Raised when a template cannot be rendered."""


class ProcessExitError(BurrowError, RuntimeError):
    """Raised (or recorded) when a supervised process exits unexpectedly."""


class InvalidTransitionError(BurrowError, RuntimeError):
    """Raised when a requested service state transition is not valid."""


class PointerError(BurrowError, RuntimeError):
    """Raised when a service's current pointer is missing or dangling."""
