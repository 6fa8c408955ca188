"""Unit test fixtures for the CLI module.

CLI tests run the real command stack in local mode: in-memory providers,
shell CI steps and a JSON file store under tmp_path.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

MANIFEST = """
environments:
  - name: staging
    desired_count: 2
    rollout:
      batch_size: 1
      health_timeout_seconds: 2
      poll_interval_seconds: 0.01
  - name: production
    desired_count: 4
    requires_approval: true
    rollout:
      batch_size: 2
      health_timeout_seconds: 2
      poll_interval_seconds: 0.01
ci_steps:
  - name: build
    command: "true"
    timeout_seconds: 30
approval_timeout_seconds: 30
store_path: {store_path}
"""


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def manifest(tmp_path: Path, store_dir: Path) -> Path:
    """Write a conveyor.yaml with a persistent store."""
    path = tmp_path / "conveyor.yaml"
    path.write_text(MANIFEST.format(store_path=store_dir))
    return path


@pytest.fixture
def manifest_without_store(tmp_path: Path) -> Path:
    path = tmp_path / "ephemeral.yaml"
    path.write_text(MANIFEST.replace("store_path: {store_path}\n", ""))
    return path
