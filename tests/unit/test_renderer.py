"""Tests for TemplateRenderer and LiveConfigDirectory."""

from __future__ import annotations

import logging

import pytest

from burrow.core.renderer import (
    LiveConfigDirectory,
    TemplateRenderer,
    load_templates,
    rendered_digest,
    unflatten,
)
from burrow.errors import RenderError
from burrow.models.config import EffectiveConfig

CONFIG = EffectiveConfig(values={"timeout": 30, "server.port": 6379, "server.bind": "0.0.0.0"})


@pytest.fixture
def live(tmp_path) -> LiveConfigDirectory:
    return LiveConfigDirectory(tmp_path / "svc" / "config", tmp_path / "svc" / ".gens")


class TestUnflatten:
    def test_dotted_keys_nest(self):
        assert unflatten({"a": 1, "b.c": 2, "b.d.e": 3}) == {"a": 1, "b": {"c": 2, "d": {"e": 3}}}

    def test_namespace_shadows_scalar(self):
        assert unflatten({"server": "x", "server.port": 1}) == {"server": {"port": 1}}
        assert unflatten({"server.port": 1, "server": "x"}) == {"server": {"port": 1}}


class TestTemplateRenderer:
    def test_renders_dotted_lookups(self):
        text = "port {{ cfg.server.port }}\ntimeout {{ cfg.timeout }}\n"
        assert TemplateRenderer().render(text, CONFIG) == "port 6379\ntimeout 30\n"

    def test_extra_context(self):
        out = TemplateRenderer().render("{{ pkg.name }}", CONFIG, extra={"pkg": {"name": "redis"}})
        assert out == "redis"

    def test_missing_key_renders_empty_and_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="burrow.core.renderer"):
            out = TemplateRenderer().render("x={{ cfg.nope.deeper }}.", CONFIG)
        assert out == "x=."
        assert caplog.records

    def test_strict_missing_key_raises(self):
        with pytest.raises(RenderError, match="redis.conf"):
            TemplateRenderer(strict=True).render("{{ cfg.nope }}", CONFIG, name="redis.conf")

    def test_syntax_error_raises(self):
        with pytest.raises(RenderError):
            TemplateRenderer().render("{% if %}", CONFIG)

    def test_runtime_error_raises(self):
        config = EffectiveConfig(values={"divisor": 0})
        with pytest.raises(RenderError):
            TemplateRenderer().render("{{ 100 // cfg.divisor }}", config)

    def test_render_all_is_all_or_nothing(self):
        with pytest.raises(RenderError, match="b.conf"):
            TemplateRenderer().render_all({"a.conf": "ok", "b.conf": "{% broken"}, CONFIG)

    def test_load_templates(self, tmp_path):
        (tmp_path / "config" / "sub").mkdir(parents=True)
        (tmp_path / "config" / "a.conf").write_text("a")
        (tmp_path / "config" / "sub" / "b.conf").write_text("b")
        assert load_templates(tmp_path) == {"a.conf": "a", "sub/b.conf": "b"}
        assert load_templates(tmp_path / "missing") == {}

    def test_binary_template_is_render_error(self, tmp_path):
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "blob.bin").write_bytes(b"\xff\xfe\x00binary")
        with pytest.raises(RenderError, match="blob.bin"):
            load_templates(tmp_path)


class TestLiveConfigDirectory:
    def test_first_swap_publishes(self, live):
        assert live.current_generation() is None
        assert live.swap_in({"redis.conf": "port 1\n", "sub/x.conf": "x"}) is True
        assert live.link.is_symlink()
        assert live.read() == {"redis.conf": "port 1\n", "sub/x.conf": "x"}
        assert (live.link / "redis.conf").read_text() == "port 1\n"

    def test_unchanged_output_is_skipped(self, live):
        live.swap_in({"a": "1"})
        generation = live.current_generation()
        assert live.swap_in({"a": "1"}) is False
        assert live.current_generation() == generation

    def test_swap_replaces_whole_set(self, live):
        live.swap_in({"a": "1", "b": "2"})
        live.swap_in({"a": "3"})
        assert live.read() == {"a": "3"}

    def test_old_generations_pruned(self, live, tmp_path):
        for i in range(3):
            live.swap_in({"a": str(i)})
        assert len(list((tmp_path / "svc" / ".gens").iterdir())) == 1

    def test_failed_render_leaves_files_byte_identical(self, live):
        renderer = TemplateRenderer()
        live.swap_in(renderer.render_all({"redis.conf": "timeout {{ cfg.timeout }}\n"}, CONFIG))
        before = (live.link / "redis.conf").read_bytes()
        generation = live.current_generation()

        with pytest.raises(RenderError):
            live.swap_in(renderer.render_all({"redis.conf": "timeout {{ 1 // 0 }}\n"}, CONFIG))

        assert (live.link / "redis.conf").read_bytes() == before
        assert live.current_generation() == generation

    def test_failed_write_leaves_previous_generation(self, live):
        live.swap_in({"a": "1"})
        generation = live.current_generation()
        with pytest.raises(RenderError, match="outside"):
            live.swap_in({"a": "2", "../escape": "x"})
        assert live.current_generation() == generation
        assert live.read() == {"a": "1"}

    def test_refuses_unmanaged_directory(self, live):
        live.link.mkdir(parents=True)
        with pytest.raises(RenderError, match="not managed"):
            live.swap_in({"a": "1"})

    def test_digest_is_order_independent(self):
        assert rendered_digest({"a": "1", "b": "2"}) == rendered_digest({"b": "2", "a": "1"})
