"""Template rendering and the atomically swapped live configuration directory.

Templates are Jinja2 files under a package's ``config/`` directory. The flat
EffectiveConfig is exposed as nested ``cfg`` so ``{{ cfg.server.port }}``
reads key ``server.port``. A missing key renders empty and logs a warning;
strict mode turns it into a ``RenderError``.

Rendered files are published as a complete generation: every output is
written into a fresh directory under ``.config-generations/`` and then the
``config`` symlink is renamed onto it. Readers see the whole old set or the
whole new set, never a mix.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import uuid
from collections.abc import Mapping
from pathlib import Path, PurePosixPath
from typing import Any

import jinja2
from jinja2.exceptions import TemplateError

from burrow.core.hasher import canonical_json_bytes, sha256_hex
from burrow.core.pointer import atomic_symlink
from burrow.errors import RenderError
from burrow.models.config import EffectiveConfig

logger = logging.getLogger(__name__)

TEMPLATE_DIRNAME = "config"

_WarningUndefined = jinja2.make_logging_undefined(logger, base=jinja2.ChainableUndefined)


def unflatten(values: Mapping[str, Any]) -> dict[str, Any]:
    """Turn dotted keys into nested dicts. Namespaces shadow scalars."""
    root: dict[str, Any] = {}
    for key, value in values.items():
        parts = key.split(".")
        node = root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if child is not None:
                    logger.warning("Config key %r is shadowed by namespace %r", part, key)
                child = node[part] = {}
            node = child
        leaf = parts[-1]
        if isinstance(node.get(leaf), dict):
            logger.warning("Config key %r is shadowed by a namespace of the same name", key)
            continue
        node[leaf] = value
    return root


def load_templates(package_dir: Path) -> dict[str, str]:
    """Every file under ``{package_dir}/config`` keyed by relative path.

    Raises ``RenderError`` for a template that is not UTF-8 text.
    """
    root = Path(package_dir) / TEMPLATE_DIRNAME
    if not root.is_dir():
        return {}
    templates: dict[str, str] = {}
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        rel = path.relative_to(root).as_posix()
        try:
            templates[rel] = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise RenderError(f"Template {rel} is not UTF-8 text: {exc}") from exc
    return templates


class TemplateRenderer:
    """Renders templates against an EffectiveConfig.

    Parameters
    ----------
    strict:
        Treat references to missing keys as errors instead of empty strings.
    """

    def __init__(self, *, strict: bool = False) -> None:
        self.strict = strict
        self._env = jinja2.Environment(
            undefined=jinja2.StrictUndefined if strict else _WarningUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )

    def render(
        self,
        text: str,
        config: EffectiveConfig,
        *,
        name: str = "<template>",
        extra: Mapping[str, Any] | None = None,
    ) -> str:
        """Render one template. Raises ``RenderError`` on any template failure."""
        context: dict[str, Any] = dict(extra or {})
        context["cfg"] = unflatten(config.values)
        try:
            return self._env.from_string(text).render(context)
        except (TemplateError, TypeError, ValueError, ArithmeticError, LookupError) as exc:
            raise RenderError(f"Cannot render {name}: {exc}") from exc

    def render_all(
        self,
        templates: Mapping[str, str],
        config: EffectiveConfig,
        *,
        extra: Mapping[str, Any] | None = None,
    ) -> dict[str, str]:
        """Render every template or none: the first failure raises."""
        return {
            rel: self.render(text, config, name=rel, extra=extra)
            for rel, text in templates.items()
        }


def rendered_digest(rendered: Mapping[str, str]) -> str:
    return sha256_hex(canonical_json_bytes(dict(rendered)))


class LiveConfigDirectory:
    """The ``srvc/{service}/config`` symlink and its generations.

    Parameters
    ----------
    link:
        Path of the live ``config`` symlink.
    generations_dir:
        Where complete generations are written.
    """

    def __init__(self, link: Path, generations_dir: Path) -> None:
        self._link = Path(link)
        self._generations = Path(generations_dir)

    @property
    def link(self) -> Path:
        return self._link

    def current_generation(self) -> Path | None:
        if not self._link.is_symlink():
            return None
        return self._link.resolve()

    def read(self) -> dict[str, str]:
        """The live rendered files, keyed by relative path."""
        generation = self.current_generation()
        if generation is None or not generation.is_dir():
            return {}
        return {
            path.relative_to(generation).as_posix(): path.read_text(encoding="utf-8")
            for path in sorted(generation.rglob("*"))
            if path.is_file()
        }

    def swap_in(self, rendered: Mapping[str, str]) -> bool:
        """Publish *rendered* as the live set. Returns ``False`` when unchanged.

        Raises ``RenderError`` if the new generation cannot be written; the
        previous generation stays live in that case.
        """
        if self.current_generation() is not None and rendered_digest(
            self.read()
        ) == rendered_digest(rendered):
            return False
        if self._link.exists() and not self._link.is_symlink():
            raise RenderError(f"{self._link} exists and is not managed by burrow")

        self._generations.mkdir(parents=True, exist_ok=True)
        partial = Path(tempfile.mkdtemp(dir=self._generations, prefix=".partial-"))
        try:
            for rel, text in rendered.items():
                path = PurePosixPath(rel)
                if path.is_absolute() or ".." in path.parts:
                    raise RenderError(f"Refusing to write outside the config dir: {rel!r}")
                dest = partial.joinpath(*path.parts)
                dest.parent.mkdir(parents=True, exist_ok=True)
                dest.write_text(text, encoding="utf-8")
            generation = self._generations / f"gen-{uuid.uuid4().hex[:12]}"
            partial.rename(generation)
        except OSError as exc:
            shutil.rmtree(partial, ignore_errors=True)
            raise RenderError(f"Cannot write rendered config: {exc}") from exc
        except BaseException:
            shutil.rmtree(partial, ignore_errors=True)
            raise

        try:
            atomic_symlink(generation, self._link)
        except OSError as exc:
            shutil.rmtree(generation, ignore_errors=True)
            raise RenderError(f"Cannot activate rendered config: {exc}") from exc
        self._prune(keep=generation)
        logger.info("Published %d config files to %s", len(rendered), self._link)
        return True

    def _prune(self, keep: Path) -> None:
        for path in self._generations.iterdir():
            if path.is_dir() and path.resolve() != keep.resolve():
                shutil.rmtree(path, ignore_errors=True)
