"""Dependency resolver — a topological walk over fully resolved identities.

Every dependency reference in a manifest already names an exact identity, so
resolution is not a constraint search: it is a depth-first walk that

- rejects cycles (a node revisited while still on the current path),
- rejects unknown identities,
- rejects two different identities for one package name unless a pin
  selects one of them (first conflict wins, no backtracking),

and emits the closure leaves first. Nothing is fetched or written here.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field

from burrow.errors import (
    CyclicDependencyError,
    MissingDependencyError,
    ResolutionError,
    UnsatisfiableError,
)
from burrow.models.package import Manifest, PackageSpec

logger = logging.getLogger(__name__)


class PackagePin(BaseModel):
    """An explicit disambiguation for one package name."""

    model_config = ConfigDict(frozen=True)

    version: str | None = None
    identity: str | None = None

    def accepts(self, manifest: Manifest) -> bool:
        if self.identity is not None and manifest.identity != self.identity:
            return False
        if self.version is not None and manifest.ident.version != self.version:
            return False
        return True


class ResolvedPlan(BaseModel):
    """A cycle-free closure, ordered leaves first (root last)."""

    model_config = ConfigDict(frozen=True)

    root: Manifest
    order: list[Manifest] = Field(default_factory=list)

    @property
    def identities(self) -> list[str]:
        return [m.identity for m in self.order]


def _newest(candidates: Iterable[Manifest]) -> Manifest | None:
    pool = list(candidates)
    if not pool:
        return None
    return max(pool, key=lambda m: m.ident.sort_key)


class DependencyResolver:
    """Resolves a package spec to its full dependency closure.

    Parameters
    ----------
    max_depth:
        Upper bound on dependency chain length.
    """

    def __init__(self, max_depth: int = 64) -> None:
        self._max_depth = max_depth

    # ------------------------------------------------------------------
    # Root selection
    # ------------------------------------------------------------------

    def select_root(
        self,
        spec: PackageSpec,
        manifests: Mapping[str, Manifest],
        identity: str | None = None,
    ) -> Manifest:
        """Pick the manifest *spec* refers to.

        An explicit *identity* must match exactly; otherwise the newest
        candidate for name/version/derivation/target wins.
        """
        candidates = [
            m for m in manifests.values()
            if m.ident.name == spec.name
            and (spec.version is None or m.ident.version == spec.version)
            and (spec.derivation is None or m.derivation == spec.derivation)
            and m.ident.platform == spec.platform
            and m.ident.arch == spec.arch
        ]
        if identity is not None:
            candidates = [m for m in candidates if m.identity == identity]
        root = _newest(candidates)
        if root is None:
            wanted = spec.name
            if spec.version:
                wanted += f"/{spec.version}"
            if identity:
                wanted += f" ({identity[:12]})"
            raise ResolutionError(
                f"No package matches {wanted} for {spec.platform}/{spec.arch}"
            )
        return root

    # ------------------------------------------------------------------
    # Closure
    # ------------------------------------------------------------------

    def resolve(
        self,
        spec: PackageSpec,
        available: Iterable[Manifest],
        *,
        identity: str | None = None,
        pins: Mapping[str, PackagePin] | None = None,
    ) -> ResolvedPlan:
        """Resolve *spec* against *available* manifests.

        ``identity`` and ``spec.version`` act as pins for the root name.
        """
        manifests: dict[str, Manifest] = {}
        for manifest in available:
            manifests.setdefault(manifest.identity, manifest)

        all_pins = dict(pins or {})
        if identity is not None or spec.version is not None:
            all_pins.setdefault(spec.name, PackagePin(version=spec.version, identity=identity))

        root = self.select_root(spec, manifests, identity)

        chosen: dict[str, Manifest] = {}  # package name -> selected manifest
        done: set[str] = set()
        on_path: list[str] = []
        order: list[Manifest] = []

        def visit(node: Manifest, depth: int) -> None:
            if depth > self._max_depth:
                raise ResolutionError(
                    f"Dependency chain deeper than {self._max_depth} at {node.ident}"
                )
            if node.identity in on_path:
                cycle = on_path[on_path.index(node.identity):] + [node.identity]
                names = " -> ".join(manifests[i].ident.name for i in cycle)
                raise CyclicDependencyError(f"Dependency cycle: {names}")
            if node.identity in done:
                return

            name = node.ident.name
            previous = chosen.get(name)
            if previous is not None and previous.identity != node.identity:
                node = self._disambiguate(previous, node, all_pins.get(name))
                if node.identity in done:
                    return
            chosen[name] = node

            on_path.append(node.identity)
            for dep_identity in sorted(node.dependencies):
                dep = manifests.get(dep_identity)
                if dep is None:
                    raise MissingDependencyError(
                        f"{node.ident} depends on unknown identity {dep_identity}"
                    )
                pinned = self._apply_pin(dep, manifests, all_pins.get(dep.ident.name))
                visit(pinned, depth + 1)
            on_path.pop()

            done.add(node.identity)
            order.append(node)

        visit(root, 0)

        # A pin may have replaced an identity after it was emitted; keep the
        # selected manifest per name only.
        final = [m for m in order if chosen[m.ident.name].identity == m.identity]
        logger.debug(
            "Resolved %s to %d packages: %s",
            root.ident,
            len(final),
            ", ".join(m.ident.name for m in final),
        )
        return ResolvedPlan(root=root, order=final)

    @staticmethod
    def _apply_pin(
        dep: Manifest, manifests: Mapping[str, Manifest], pin: PackagePin | None
    ) -> Manifest:
        """Swap *dep* for the pinned build of the same name, if one is pinned."""
        if pin is None or pin.accepts(dep):
            return dep
        replacement = _newest(
            m for m in manifests.values()
            if m.ident.name == dep.ident.name and pin.accepts(m)
        )
        if replacement is None:
            raise UnsatisfiableError(
                f"Pin for {dep.ident.name} matches no available build"
            )
        return replacement

    @staticmethod
    def _disambiguate(
        previous: Manifest, current: Manifest, pin: PackagePin | None
    ) -> Manifest:
        if pin is not None:
            matches = [m for m in (previous, current) if pin.accepts(m)]
            if len(matches) == 1:
                return matches[0]
        raise UnsatisfiableError(
            f"Conflicting builds of {current.ident.name}: "
            f"{previous.ident} and {current.ident}; pin a version or identity"
        )
