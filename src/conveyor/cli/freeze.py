"""``conveyor freeze`` / ``conveyor unfreeze``: operator environment freezes.

A frozen environment refuses new rollouts until it is unfrozen. Rollouts
already running finish; the freeze is checked when the next one starts.

Example:
    $ conveyor freeze -c conveyor.yaml --env production --reason "Incident #123"
    $ conveyor unfreeze -c conveyor.yaml --env production
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
import structlog

from conveyor.arena import EnvironmentArena
from conveyor.cli.utils import (
    ExitCode,
    error,
    error_exit,
    get_operator,
    load_config_or_exit,
    success,
)
from conveyor.errors import ConveyorError
from conveyor.schemas.models import Environment
from conveyor.store import open_store
from conveyor.webhooks import WebhookNotifier

logger = structlog.get_logger(__name__)

_config_option = click.option(
    "--config",
    "-c",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, resolve_path=True, path_type=Path),
    help="Path to conveyor.yaml.",
    metavar="PATH",
)
_env_option = click.option(
    "--env",
    "-e",
    required=True,
    help="Environment name.",
    metavar="ENV",
)
_operator_option = click.option(
    "--operator",
    "-o",
    default=None,
    help="Operator identity. Defaults to $CONVEYOR_OPERATOR, $USER or 'unknown'.",
    metavar="IDENTITY",
)
_output_option = click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)


@click.command(
    name="freeze",
    help="Freeze an environment so no new rollouts start.",
    epilog="""
Exit Codes:
    0  - Success
    2  - Invalid manifest or no store_path configured
    3  - Environment not found
""",
)
@_config_option
@_env_option
@click.option(
    "--reason",
    "-r",
    required=True,
    help="Reason for the freeze.",
    metavar="REASON",
)
@_operator_option
@_output_option
def freeze_command(
    config_path: Path,
    env: str,
    reason: str,
    operator: str | None,
    output: str,
) -> None:
    """Freeze an environment."""
    resolved_operator = operator or get_operator()
    logger.info("freeze_command_started", environment=env, operator=resolved_operator)
    _apply(config_path, env, output, resolved_operator, reason=reason)


@click.command(
    name="unfreeze",
    help="Lift a freeze so rollouts can start again.",
    epilog="""
Exit Codes:
    0  - Success
    2  - Invalid manifest or no store_path configured
    3  - Environment not found
""",
)
@_config_option
@_env_option
@_operator_option
@_output_option
def unfreeze_command(
    config_path: Path,
    env: str,
    operator: str | None,
    output: str,
) -> None:
    """Unfreeze an environment."""
    resolved_operator = operator or get_operator()
    logger.info("unfreeze_command_started", environment=env, operator=resolved_operator)
    _apply(config_path, env, output, resolved_operator, reason=None)


def _apply(
    config_path: Path,
    env: str,
    output: str,
    operator: str,
    *,
    reason: str | None,
) -> None:
    """Freeze (reason given) or unfreeze (reason None) and report the new record."""
    config = load_config_or_exit(config_path)
    if config.store_path is None:
        error_exit(
            "store_path is not configured; a freeze would not outlive this command",
            ExitCode.USAGE_ERROR,
        )

    try:
        store = open_store(config.store_path)
        arena = EnvironmentArena([e.name for e in config.environments], store)
        if reason is not None:
            record = arena.freeze(env, reason, operator)
            event_type = "environment_frozen"
        else:
            record = arena.unfreeze(env, operator)
            event_type = "environment_unfrozen"
    except ConveyorError as e:
        logger.exception("freeze_command_failed", environment=env)
        error(str(e), env=env)
        sys.exit(e.exit_code)

    if config.webhooks:
        WebhookNotifier(config.webhooks).notify_all(
            event_type,
            {"environment": env, "operator": operator, "reason": reason},
        )

    _print_record(record, output)


def _print_record(record: Environment, output: str) -> None:
    if output == "json":
        click.echo(json.dumps(record.model_dump(mode="json"), indent=2))
        return
    if record.freeze.frozen:
        success(f"Environment '{record.name}' frozen by {record.freeze.frozen_by}")
        success(f"  Reason: {record.freeze.reason}")
    else:
        success(f"Environment '{record.name}' unfrozen")


__all__: list[str] = ["freeze_command", "unfreeze_command"]
