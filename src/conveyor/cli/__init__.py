"""Command-line interface for conveyor.

Entry point: ``conveyor`` (conveyor.cli.main:main).
"""

from __future__ import annotations

from conveyor.cli.main import cli, main

__all__: list[str] = ["cli", "main"]
