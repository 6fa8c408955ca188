"""``conveyor run``: drive one source event through the pipeline locally.

Providers are the local-mode defaults (in-memory registry, scheduler and
health probe; shell-command migrations). Environment records and rollout
attempts persist in ``store_path`` when configured, so consecutive runs see
each other's deployments.

Example:
    $ conveyor run -c conveyor.yaml --event push --revision 3f2a9c1 --ref refs/heads/main
    $ conveyor run -c conveyor.yaml --event tag --revision 3f2a9c1 \\
        --ref refs/tags/v1.0.0 --auto-approve
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
import structlog
from pydantic import ValidationError

from conveyor.cli.utils import (
    ExitCode,
    error,
    error_exit,
    exit_code_for,
    get_operator,
    info,
    load_config_or_exit,
    success,
    warn,
)
from conveyor.orchestrator import Orchestrator
from conveyor.pipeline import FAILURE_STATES
from conveyor.schemas.models import (
    ApprovalState,
    PipelineRun,
    PipelineState,
    SourceEvent,
    SourceEventKind,
)

if TYPE_CHECKING:
    from conveyor.approvals import ApprovalRegistry
    from conveyor.pipeline import PipelineDispatcher

logger = structlog.get_logger(__name__)

_POLL_SECONDS = 0.2


@click.command(
    name="run",
    help="Run the pipeline for one source event.",
    epilog="""
Exit Codes:
    0  - Pipeline reached a healthy terminal state
    2  - Invalid manifest or event
    8  - CI failed
    10 - Migration failed
    11 - Health check timed out
    12 - Approval rejected or timed out
    13 - Environment locked or frozen
    14 - Cancelled
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
    "--event",
    "event_kind",
    required=True,
    type=click.Choice([k.value for k in SourceEventKind]),
    help="Source event kind.",
)
@click.option("--revision", required=True, help="Commit SHA.", metavar="SHA")
@click.option(
    "--ref",
    required=True,
    help="Git ref, e.g. refs/heads/main or refs/tags/v1.0.0.",
    metavar="REF",
)
@click.option(
    "--auto-approve",
    is_flag=True,
    default=False,
    help="Approve the production gate without prompting.",
)
@click.option(
    "--reject",
    "reject_reason",
    default=None,
    help="Reject the production gate with this reason.",
    metavar="REASON",
)
@click.option(
    "--operator",
    "-o",
    default=None,
    help="Approver identity. Defaults to $CONVEYOR_OPERATOR, $USER or 'unknown'.",
    metavar="IDENTITY",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def run_command(
    config_path: Path,
    event_kind: str,
    revision: str,
    ref: str,
    auto_approve: bool,
    reject_reason: str | None,
    operator: str | None,
    output: str,
) -> None:
    """Execute a pipeline run and report its final state."""
    if auto_approve and reject_reason is not None:
        error_exit("--auto-approve and --reject are mutually exclusive", ExitCode.USAGE_ERROR)

    config = load_config_or_exit(config_path)
    try:
        event = SourceEvent(kind=SourceEventKind(event_kind), revision=revision, ref=ref)
    except ValidationError as e:
        error_exit(f"Invalid source event: {e.errors()[0]['msg']}", ExitCode.USAGE_ERROR)

    resolved_operator = operator or get_operator()
    logger.info(
        "run_command_started",
        kind=event_kind,
        ref=ref,
        revision=revision,
        operator=resolved_operator,
    )

    orchestrator = Orchestrator.from_config(config)
    with orchestrator.dispatcher() as dispatcher:
        run_id = dispatcher.submit(event)
        info(f"Pipeline {run_id} queued for {ref}")
        try:
            run = _drive(
                dispatcher,
                orchestrator.approvals,
                run_id,
                config.production_environment,
                auto_approve=auto_approve,
                reject_reason=reject_reason,
                operator=resolved_operator,
            )
        except (KeyboardInterrupt, click.Abort):
            dispatcher.cancel(run_id)
            raise

    _report(run, output)
    if run.state in FAILURE_STATES:
        sys.exit(exit_code_for(run.error_type))


def _drive(
    dispatcher: PipelineDispatcher,
    approvals: ApprovalRegistry,
    run_id: str,
    production: str,
    *,
    auto_approve: bool,
    reject_reason: str | None,
    operator: str,
) -> PipelineRun:
    """Wait for the run, answering its production approval gate when it opens."""
    while True:
        try:
            return dispatcher.wait(run_id, timeout=_POLL_SECONDS)
        except TimeoutError:
            pass

        current = dispatcher.get_run(run_id)
        if current is None or current.state is not PipelineState.AWAITING_APPROVAL:
            continue
        if current.release is None:
            continue
        release_id = current.release.release_id
        gate = approvals.get(production, release_id)
        if gate is None or gate.state is not ApprovalState.PENDING:
            continue

        if reject_reason is not None:
            approve = False
        elif auto_approve:
            approve = True
        else:
            approve = click.confirm(
                f"Promote {release_id} to {production}?", default=False, err=True
            )

        try:
            if approve:
                approvals.approve(production, release_id, operator=operator)
            else:
                approvals.reject(
                    production, release_id, operator=operator, reason=reject_reason
                )
        except ValueError as e:
            warn(str(e))


def _report(run: PipelineRun, output: str) -> None:
    if output == "json":
        payload = run.model_dump(mode="json")
        payload["visited"] = [s.value for s in run.visited]
        click.echo(json.dumps(payload, indent=2))
        return

    success(f"Run:      {run.run_id}")
    success(f"State:    {run.state.value}")
    if run.release is not None:
        success(f"Release:  {run.release.release_id} ({run.release.digest})")
    success(f"Path:     {' -> '.join(s.value for s in run.visited) or '(none)'}")
    for result in run.ci_results:
        status = "passed" if result.passed else "failed"
        success(f"  ci {result.name:<16} {status:<7} {result.duration_ms}ms")
    if run.error:
        error(run.error, type=run.error_type)


__all__: list[str] = ["run_command"]
