"""Unit tests for control-plane record models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from conveyor.errors import HealthCheckTimeoutError
from conveyor.schemas.models import (
    Environment,
    PipelineRun,
    PipelineState,
    Release,
    RolloutAttempt,
    RolloutStatus,
    SourceEvent,
    SourceEventKind,
    StateTransition,
    TaskAction,
)

SHA = "3f2a9c1b7d4e5f60718293a4b5c6d7e8f9012345"


class TestRelease:
    def test_tag_becomes_release_id(self) -> None:
        release = Release.build(revision=SHA, ref="refs/tags/v1.0.0", tag="v1.0.0")
        assert release.release_id == "v1.0.0"

    def test_untagged_release_id_uses_short_revision(self) -> None:
        release = Release.build(revision=SHA, ref="refs/heads/main")
        assert release.release_id == f"rev-{SHA[:12]}"

    def test_digest_is_deterministic(self) -> None:
        a = Release.build(revision=SHA, ref="refs/heads/main", outputs={"build": "passed"})
        b = Release.build(revision=SHA, ref="refs/heads/main", outputs={"build": "passed"})
        c = Release.build(revision=SHA, ref="refs/heads/main", outputs={"build": "other"})

        assert a.digest == b.digest
        assert a.digest != c.digest
        assert a.digest.startswith("sha256:")

    def test_release_is_immutable(self) -> None:
        release = Release.build(revision=SHA)
        with pytest.raises(ValidationError):
            release.release_id = "other"  # type: ignore[misc]


class TestSourceEvent:
    def test_tag_and_branch_properties(self) -> None:
        tag = SourceEvent(kind=SourceEventKind.TAG, revision=SHA, ref="refs/tags/v1.0.0")
        push = SourceEvent(kind=SourceEventKind.PUSH, revision=SHA, ref="refs/heads/main")

        assert tag.tag == "v1.0.0"
        assert tag.branch is None
        assert push.branch == "main"
        assert push.tag is None

    @pytest.mark.parametrize("ref", ["refs/heads/main; rm -rf /", "refs/heads/$(id)", "a b"])
    def test_rejects_unsafe_refs(self, ref: str) -> None:
        with pytest.raises(ValidationError, match="Invalid ref"):
            SourceEvent(kind=SourceEventKind.PUSH, revision=SHA, ref=ref)

    def test_rejects_non_hex_revision(self) -> None:
        with pytest.raises(ValidationError):
            SourceEvent(kind=SourceEventKind.PUSH, revision="not-a-sha", ref="main")

    def test_from_github_push(self) -> None:
        event = SourceEvent.from_github("push", {"ref": "refs/heads/main", "after": SHA})
        assert event.kind is SourceEventKind.PUSH
        assert event.branch == "main"

    def test_from_github_tag_push(self) -> None:
        event = SourceEvent.from_github("push", {"ref": "refs/tags/v2.0.0", "after": SHA})
        assert event.kind is SourceEventKind.TAG
        assert event.tag == "v2.0.0"

    def test_from_github_pull_request(self) -> None:
        payload = {"pull_request": {"head": {"sha": SHA, "ref": "feature/login"}}}
        event = SourceEvent.from_github("pull_request", payload)

        assert event.kind is SourceEventKind.PULL_REQUEST
        assert event.revision == SHA
        assert event.branch == "feature/login"

    def test_from_github_unsupported_event(self) -> None:
        with pytest.raises(ValueError, match="Unsupported event"):
            SourceEvent.from_github("issues", {})


class TestRolloutAttempt:
    def test_new_attempt_in_progress(self) -> None:
        attempt = RolloutAttempt(environment="staging", release_id="r1")
        assert attempt.status is RolloutStatus.IN_PROGRESS
        assert attempt.finished_at is None

    def test_record_defaults_release_id(self) -> None:
        attempt = RolloutAttempt(environment="staging", release_id="r1")
        attempt.record(1, TaskAction.STARTED, ["t1"])
        attempt.record(1, TaskAction.REVERTED, ["t2"], release_id="r0")

        assert [e.release_id for e in attempt.events] == ["r1", "r0"]

    def test_finish_records_error(self) -> None:
        attempt = RolloutAttempt(environment="staging", release_id="r1")
        attempt.finish(RolloutStatus.FAILED, HealthCheckTimeoutError("staging", 1, 30.0))

        assert attempt.status is RolloutStatus.FAILED
        assert attempt.error_type == "HealthCheckTimeoutError"
        assert attempt.finished_at is not None

    def test_finish_only_once(self) -> None:
        attempt = RolloutAttempt(environment="staging", release_id="r1")
        attempt.finish(RolloutStatus.SUCCESS)

        with pytest.raises(ValueError, match="already finalized"):
            attempt.finish(RolloutStatus.FAILED)

    def test_finish_requires_terminal_status(self) -> None:
        attempt = RolloutAttempt(environment="staging", release_id="r1")
        with pytest.raises(ValueError, match="non-terminal"):
            attempt.finish(RolloutStatus.IN_PROGRESS)


class TestEnvironmentAndRun:
    def test_environment_starts_unfrozen_without_versions(self) -> None:
        env = Environment(name="staging")
        assert env.current_version is None
        assert env.freeze.frozen is False

    def test_visited_follows_transitions(self) -> None:
        run = PipelineRun(
            event=SourceEvent(kind=SourceEventKind.PUSH, revision=SHA, ref="refs/heads/main")
        )
        run.transitions.append(
            StateTransition(from_state=PipelineState.IDLE, to_state=PipelineState.CI_RUNNING)
        )
        run.transitions.append(
            StateTransition(from_state=PipelineState.CI_RUNNING, to_state=PipelineState.CI_PASSED)
        )

        assert run.visited == [PipelineState.CI_RUNNING, PipelineState.CI_PASSED]

    def test_run_round_trips_through_json(self) -> None:
        run = PipelineRun(
            event=SourceEvent(kind=SourceEventKind.TAG, revision=SHA, ref="refs/tags/v1.0.0")
        )
        restored = PipelineRun.model_validate_json(run.model_dump_json())
        assert restored.run_id == run.run_id
        assert restored.event.tag == "v1.0.0"
