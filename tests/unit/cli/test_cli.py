"""Unit tests for the conveyor CLI commands."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner, Result

from conveyor.cli.main import cli
from conveyor.cli.utils import exit_code_for, get_operator

REVISION = "3f2a9c1b7d4e5f60718293a4b5c6d7e8f9012345"


def _run_tag(
    runner: CliRunner, manifest: Path, *extra: str, tag: str = "v1.0.0", input: str | None = None
) -> Result:
    return runner.invoke(
        cli,
        [
            "run",
            "-c",
            str(manifest),
            "--event",
            "tag",
            "--revision",
            REVISION,
            "--ref",
            f"refs/tags/{tag}",
            "--output",
            "json",
            *extra,
        ],
        input=input,
    )


class TestMain:
    def test_help_lists_commands(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("validate", "run", "status", "freeze", "unfreeze"):
            assert command in result.output


class TestValidate:
    def test_valid_manifest(self, cli_runner: CliRunner, manifest: Path) -> None:
        result = cli_runner.invoke(cli, ["validate", "-c", str(manifest)])

        assert result.exit_code == 0
        assert "Manifest valid" in result.stdout
        assert "production" in result.stdout
        assert "[approval]" in result.stdout

    def test_json_output(self, cli_runner: CliRunner, manifest: Path) -> None:
        result = cli_runner.invoke(cli, ["validate", "-c", str(manifest), "--output", "json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [e["name"] for e in data["environments"]] == ["staging", "production"]

    def test_invalid_manifest_exits_2(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("environments:\n  - name: Staging!\n")

        result = cli_runner.invoke(cli, ["validate", "-c", str(path)])

        assert result.exit_code == 2
        assert "Error:" in result.stderr


class TestRun:
    @pytest.mark.requirement("cli.run-auto-approve")
    def test_tag_auto_approved_reaches_production(
        self, cli_runner: CliRunner, manifest: Path
    ) -> None:
        """A production tag with --auto-approve ends production_healthy."""
        result = _run_tag(cli_runner, manifest, "--auto-approve", "--operator", "alice")

        assert result.exit_code == 0, result.stderr
        data = json.loads(result.stdout)
        assert data["state"] == "production_healthy"
        assert data["visited"][-3:] == ["approved", "production_rollout", "production_healthy"]
        assert data["release"]["release_id"] == "v1.0.0"

    def test_rejected_tag_exits_12(self, cli_runner: CliRunner, manifest: Path) -> None:
        result = _run_tag(cli_runner, manifest, "--reject", "change freeze")

        assert result.exit_code == 12
        data = json.loads(result.stdout)
        assert data["state"] == "rejected"
        assert "production_rollout" not in data["visited"]

    def test_interactive_confirmation(self, cli_runner: CliRunner, manifest: Path) -> None:
        result = _run_tag(cli_runner, manifest, input="y\n")

        assert result.exit_code == 0, result.stderr
        assert json.loads(result.stdout)["state"] == "production_healthy"

    def test_push_to_main_stops_at_staging(self, cli_runner: CliRunner, manifest: Path) -> None:
        result = cli_runner.invoke(
            cli,
            [
                "run",
                "-c",
                str(manifest),
                "--event",
                "push",
                "--revision",
                REVISION,
                "--ref",
                "refs/heads/main",
            ],
        )

        assert result.exit_code == 0, result.stderr
        assert "staging_healthy" in result.stdout

    def test_conflicting_decisions_exit_2(self, cli_runner: CliRunner, manifest: Path) -> None:
        result = _run_tag(cli_runner, manifest, "--auto-approve", "--reject", "no")

        assert result.exit_code == 2
        assert "mutually exclusive" in result.stderr

    def test_invalid_revision_exit_2(self, cli_runner: CliRunner, manifest: Path) -> None:
        result = cli_runner.invoke(
            cli,
            ["run", "-c", str(manifest), "--event", "push", "--revision", "XYZ", "--ref", "main"],
        )

        assert result.exit_code == 2
        assert "Invalid source event" in result.stderr

    def test_ci_failure_exit_8(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "failing.yaml"
        path.write_text('ci_steps:\n  - name: test\n    command: "exit 1"\n')

        result = _run_tag(cli_runner, path, "--auto-approve")

        assert result.exit_code == 8
        assert json.loads(result.stdout)["state"] == "ci_failed"


class TestStatusAndFreeze:
    def test_status_after_deploy(self, cli_runner: CliRunner, manifest: Path) -> None:
        assert _run_tag(cli_runner, manifest, "--auto-approve").exit_code == 0

        result = cli_runner.invoke(cli, ["status", "-c", str(manifest), "--output", "json"])

        assert result.exit_code == 0
        envs = {e["name"]: e for e in json.loads(result.stdout)["environments"]}
        assert envs["production"]["current_version"] == "v1.0.0"
        assert [a["status"] for a in envs["production"]["attempts"]] == ["success"]

    def test_status_table_for_one_environment(
        self, cli_runner: CliRunner, manifest: Path
    ) -> None:
        result = cli_runner.invoke(cli, ["status", "-c", str(manifest), "--env", "staging"])

        assert result.exit_code == 0
        assert "staging" in result.stdout
        assert "production" not in result.stdout

    def test_status_unknown_environment_exits_3(
        self, cli_runner: CliRunner, manifest: Path
    ) -> None:
        result = cli_runner.invoke(cli, ["status", "-c", str(manifest), "--env", "qa"])

        assert result.exit_code == 3

    def test_status_requires_store(
        self, cli_runner: CliRunner, manifest_without_store: Path
    ) -> None:
        result = cli_runner.invoke(cli, ["status", "-c", str(manifest_without_store)])

        assert result.exit_code == 2
        assert "store_path" in result.stderr

    @pytest.mark.requirement("cli.freeze-blocks-rollout")
    def test_frozen_production_fails_promotion(
        self, cli_runner: CliRunner, manifest: Path
    ) -> None:
        """A freeze persisted by one command blocks the next run's production rollout."""
        frozen = cli_runner.invoke(
            cli,
            [
                "freeze",
                "-c",
                str(manifest),
                "--env",
                "production",
                "--reason",
                "Incident #123",
                "-o",
                "sre",
            ],
        )
        assert frozen.exit_code == 0
        assert "frozen by sre" in frozen.stdout

        result = _run_tag(cli_runner, manifest, "--auto-approve")

        assert result.exit_code == 13
        data = json.loads(result.stdout)
        assert data["state"] == "production_failed"
        assert data["error_type"] == "EnvironmentFrozenError"

        thawed = cli_runner.invoke(
            cli, ["unfreeze", "-c", str(manifest), "--env", "production", "--output", "json"]
        )
        assert thawed.exit_code == 0
        assert json.loads(thawed.stdout)["freeze"]["frozen"] is False

    def test_freeze_unknown_environment_exits_3(
        self, cli_runner: CliRunner, manifest: Path
    ) -> None:
        result = cli_runner.invoke(
            cli, ["freeze", "-c", str(manifest), "--env", "qa", "--reason", "x"]
        )

        assert result.exit_code == 3


class TestUtils:
    @pytest.mark.parametrize(
        ("error_type", "expected"),
        [
            ("BuildFailedError", 8),
            ("ApprovalTimeoutError", 12),
            ("EnvironmentFrozenError", 13),
            ("ValueError", 1),
            (None, 1),
        ],
    )
    def test_exit_code_for(self, error_type: str | None, expected: int) -> None:
        assert exit_code_for(error_type) == expected

    def test_get_operator(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONVEYOR_OPERATOR", "alice")
        assert get_operator() == "alice"

        monkeypatch.delenv("CONVEYOR_OPERATOR")
        monkeypatch.delenv("USER", raising=False)
        assert get_operator() == "unknown"
