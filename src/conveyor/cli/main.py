"""Main entry point for the conveyor CLI.

Commands:
    conveyor validate   Validate a conveyor.yaml manifest
    conveyor run        Run the pipeline for one source event (local mode)
    conveyor status     Show environment records and recent rollout attempts
    conveyor freeze     Freeze an environment
    conveyor unfreeze   Lift an environment freeze

Example:
    $ conveyor --help
    $ conveyor run --config conveyor.yaml --event tag --revision abc1234 --ref refs/tags/v1.0.0
"""

from __future__ import annotations

import sys
from importlib.metadata import version as get_version

import click

from conveyor.cli.freeze import freeze_command, unfreeze_command
from conveyor.cli.run import run_command
from conveyor.cli.status import status_command
from conveyor.cli.validate import validate_command
from conveyor.telemetry.logging import configure_logging


def _get_version() -> str:
    try:
        return get_version("conveyor-core")
    except Exception:
        return "unknown"


@click.group(
    name="conveyor",
    help="conveyor - Release promotion from commit to production.",
    epilog="Use 'conveyor <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="conveyor",
    message="%(prog)s %(version)s",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    envvar="CONVEYOR_LOG_LEVEL",
    help="Minimum log level written to stderr.",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "console"], case_sensitive=False),
    default="console",
    show_default=True,
    envvar="CONVEYOR_LOG_FORMAT",
    help="Log line format.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, log_format: str) -> None:
    """Root command group for the conveyor CLI."""
    ctx.ensure_object(dict)
    configure_logging(log_level, json_output=log_format.lower() == "json")


cli.add_command(validate_command)
cli.add_command(run_command)
cli.add_command(status_command)
cli.add_command(freeze_command)
cli.add_command(unfreeze_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the conveyor CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(getattr(e, "exit_code", 1))


if __name__ == "__main__":
    main()
