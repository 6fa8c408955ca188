"""CLI utility functions and error handling.

Shared helpers for the conveyor CLI:
- Exit code constants
- Output helpers (results on stdout, diagnostics on stderr)
- Manifest loading and operator resolution

Example:
    from conveyor.cli.utils import error_exit, ExitCode

    if config.store_path is None:
        error_exit("store_path is not configured", exit_code=ExitCode.USAGE_ERROR)
"""

from __future__ import annotations

import os
import sys
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING

import click

from conveyor import errors
from conveyor.errors import ConfigurationError, ConveyorError
from conveyor.schemas.config import load_config

if TYPE_CHECKING:
    from typing import NoReturn

    from conveyor.schemas.config import ConveyorConfig


class ExitCode(IntEnum):
    """Exit codes not tied to a ConveyorError subclass.

    Errors raised by conveyor carry their own ``exit_code``; see
    conveyor.errors for the full table.
    """

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    USAGE_ERROR = 2
    """Invalid usage or configuration."""


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Environment not found", env="qa")
        # Output: Error: Environment not found (env=qa)
    """
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Error: {message} ({context_str})"
    else:
        full_message = f"Error: {message}"

    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code."""
    error(message, **context)
    sys.exit(exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Warning: {message} ({context_str})"
    else:
        full_message = f"Warning: {message}"

    click.echo(full_message, err=True)


def success(message: str) -> None:
    """Print a result line to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print progress or status information to stderr.

    Kept off stdout so that redirected output contains only results.
    """
    click.echo(message, err=True)


def get_operator() -> str:
    """Operator identity from the environment, or 'unknown'."""
    return os.environ.get("CONVEYOR_OPERATOR") or os.environ.get("USER") or "unknown"


def load_config_or_exit(path: Path) -> ConveyorConfig:
    """Load the manifest, exiting with the configuration error code on failure."""
    try:
        return load_config(path)
    except ConfigurationError as e:
        error_exit(str(e), exit_code=e.exit_code)


def exit_code_for(error_type: str | None) -> int:
    """Map an error class name recorded on a run or attempt to its exit code.

    Example:
        >>> exit_code_for("BuildFailedError")
        8
    """
    if error_type is None:
        return ExitCode.GENERAL_ERROR
    cls = getattr(errors, error_type, None)
    if isinstance(cls, type) and issubclass(cls, ConveyorError):
        return cls.exit_code
    return ExitCode.GENERAL_ERROR


__all__: list[str] = [
    "ExitCode",
    "error",
    "error_exit",
    "exit_code_for",
    "get_operator",
    "info",
    "load_config_or_exit",
    "success",
    "warn",
]
