"""Command line interface."""

from __future__ import annotations

from worldkit.cli.main import main

__all__ = ["main"]
