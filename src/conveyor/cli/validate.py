"""``conveyor validate``: check a manifest without running anything."""

from __future__ import annotations

import json
from pathlib import Path

import click
import structlog

from conveyor.cli.utils import load_config_or_exit, success

logger = structlog.get_logger(__name__)


@click.command(
    name="validate",
    help="Validate a conveyor.yaml manifest.",
    epilog="""
Exit Codes:
    0  - Manifest is valid
    2  - Manifest could not be read or validated
""",
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
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def validate_command(config_path: Path, output: str) -> None:
    """Load and validate a manifest, then print a summary."""
    config = load_config_or_exit(config_path)
    logger.info("config_validated", path=str(config_path))

    if output == "json":
        click.echo(json.dumps(config.model_dump(mode="json"), indent=2))
        return

    success(f"Manifest valid: {config_path}")
    success(f"  CI steps:     {', '.join(s.name for s in config.ci_steps) or '(none)'}")
    success(f"  Deploy:       {', '.join(config.deploy_branches)}")
    success(f"  Prod tags:    {config.production_tag_pattern}")
    for env in config.environments:
        flags = []
        if env.requires_approval:
            flags.append("approval")
        if env.migration_command:
            flags.append("migrations")
        if env.rollout.rollback_on_failure:
            flags.append("rollback")
        success(
            f"  {env.name:<12}  units={env.desired_count} "
            f"batch={env.rollout.batch_size} "
            f"health_timeout={env.rollout.health_timeout_seconds:g}s"
            + (f" [{', '.join(flags)}]" if flags else "")
        )


__all__: list[str] = ["validate_command"]
