"""Burrow CLI — Typer-based command-line interface.

Provides the ``burrow`` command with subcommands for packing artifacts,
installing packages into the store, inspecting and verifying installed
trees, and supervising services.

All output uses Rich for formatted terminal display.
"""
