"""``conveyor status``: environment records and recent rollout attempts."""

from __future__ import annotations

import json
from pathlib import Path

import click
import structlog

from conveyor.arena import EnvironmentArena
from conveyor.cli.utils import ExitCode, error_exit, load_config_or_exit, success
from conveyor.errors import EnvironmentNotFoundError
from conveyor.store import open_store

logger = structlog.get_logger(__name__)


@click.command(
    name="status",
    help="Show environment versions, health, freezes and recent rollouts.",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, resolve_path=True, path_type=Path),
    help="Path to conveyor.yaml.",
    metavar="PATH",
)
@click.option(
    "--env",
    "-e",
    default=None,
    help="Only show this environment.",
    metavar="ENV",
)
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    default=5,
    show_default=True,
    help="Recent rollout attempts to show per environment.",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def status_command(config_path: Path, env: str | None, limit: int, output: str) -> None:
    """Print the persisted control-plane state."""
    config = load_config_or_exit(config_path)
    if config.store_path is None:
        error_exit("store_path is not configured; nothing is persisted", ExitCode.USAGE_ERROR)

    store = open_store(config.store_path)
    arena = EnvironmentArena([e.name for e in config.environments], store)
    try:
        records = [arena.get(env)] if env else arena.snapshot()
    except EnvironmentNotFoundError as e:
        error_exit(str(e), e.exit_code)

    attempts = {
        record.name: store.list_attempts(record.name)[-limit:] if limit else []
        for record in records
    }

    if output == "json":
        payload = [
            {
                **record.model_dump(mode="json"),
                "attempts": [a.model_dump(mode="json") for a in attempts[record.name]],
            }
            for record in records
        ]
        click.echo(json.dumps({"environments": payload}, indent=2))
        return

    success(f"{'ENVIRONMENT':<14} {'CURRENT':<20} {'PREVIOUS':<20} {'HEALTH':<10} FROZEN")
    for record in records:
        frozen = "-"
        if record.freeze.frozen:
            frozen = f"yes ({record.freeze.frozen_by}: {record.freeze.reason})"
        success(
            f"{record.name:<14} {record.current_version or '-':<20} "
            f"{record.previous_version or '-':<20} {record.health.value:<10} {frozen}"
        )
        for attempt in reversed(attempts[record.name]):
            line = (
                f"    {attempt.started_at:%Y-%m-%d %H:%M:%S}  {attempt.release_id:<20} "
                f"{attempt.status.value:<12} batches={attempt.batches_completed}"
            )
            if attempt.error_type:
                line += f"  {attempt.error_type}"
            success(line)


__all__: list[str] = ["status_command"]
