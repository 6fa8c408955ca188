"""Control-plane persistence for environments, rollout attempts and pipeline runs.

Attempts and runs are an append-only ledger written once they reach a
terminal state. Environment records are a snapshot keyed by name; records
are replaced, never removed.

Key Components:
    ControlPlaneStore: Storage interface
    InMemoryStore: Process-local store (default)
    JsonFileStore: JSON-lines ledger plus environment snapshot on disk
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path

import structlog

from conveyor.errors import ConfigurationError
from conveyor.schemas.models import Environment, PipelineRun, RolloutAttempt

logger = structlog.get_logger(__name__)

ENVIRONMENTS_FILE = "environments.json"
ATTEMPTS_FILE = "attempts.jsonl"
RUNS_FILE = "runs.jsonl"


class ControlPlaneStore(ABC):
    """Storage interface for control-plane records."""

    @abstractmethod
    def save_environment(self, environment: Environment) -> None:
        """Insert or replace an environment record."""
        ...

    @abstractmethod
    def load_environments(self) -> dict[str, Environment]:
        """Return all environment records by name."""
        ...

    @abstractmethod
    def append_attempt(self, attempt: RolloutAttempt) -> None:
        """Append a finalized attempt to the ledger."""
        ...

    @abstractmethod
    def list_attempts(self, environment: str | None = None) -> list[RolloutAttempt]:
        """Return attempts in ledger order, optionally for one environment."""
        ...

    @abstractmethod
    def append_run(self, run: PipelineRun) -> None:
        """Append a finished pipeline run to the ledger."""
        ...

    @abstractmethod
    def list_runs(self) -> list[PipelineRun]:
        """Return pipeline runs in ledger order."""
        ...


class InMemoryStore(ControlPlaneStore):
    def __init__(self) -> None:
        self._environments: dict[str, Environment] = {}
        self._attempts: list[RolloutAttempt] = []
        self._runs: list[PipelineRun] = []
        self._lock = threading.Lock()

    def save_environment(self, environment: Environment) -> None:
        with self._lock:
            self._environments[environment.name] = environment

    def load_environments(self) -> dict[str, Environment]:
        with self._lock:
            return dict(self._environments)

    def append_attempt(self, attempt: RolloutAttempt) -> None:
        with self._lock:
            self._attempts.append(attempt.model_copy(deep=True))

    def list_attempts(self, environment: str | None = None) -> list[RolloutAttempt]:
        with self._lock:
            return [
                a for a in self._attempts if environment is None or a.environment == environment
            ]

    def append_run(self, run: PipelineRun) -> None:
        with self._lock:
            self._runs.append(run.model_copy(deep=True))

    def list_runs(self) -> list[PipelineRun]:
        with self._lock:
            return list(self._runs)


class JsonFileStore(ControlPlaneStore):
    """File-backed store under a directory.

    Layout:
        environments.json  snapshot, rewritten atomically on every save
        attempts.jsonl     one RolloutAttempt per line
        runs.jsonl         one PipelineRun per line
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create store directory: {e}", path=str(root)) from e
        self._lock = threading.Lock()

    def save_environment(self, environment: Environment) -> None:
        with self._lock:
            records = self._read_environments()
            records[environment.name] = environment
            payload = {name: env.model_dump(mode="json") for name, env in records.items()}
            path = self.root / ENVIRONMENTS_FILE
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(payload, indent=2, sort_keys=True))
            tmp.replace(path)

    def load_environments(self) -> dict[str, Environment]:
        with self._lock:
            return self._read_environments()

    def append_attempt(self, attempt: RolloutAttempt) -> None:
        self._append(ATTEMPTS_FILE, attempt.model_dump_json())

    def list_attempts(self, environment: str | None = None) -> list[RolloutAttempt]:
        attempts = [RolloutAttempt.model_validate_json(line) for line in self._lines(ATTEMPTS_FILE)]
        return [a for a in attempts if environment is None or a.environment == environment]

    def append_run(self, run: PipelineRun) -> None:
        self._append(RUNS_FILE, run.model_dump_json())

    def list_runs(self) -> list[PipelineRun]:
        return [PipelineRun.model_validate_json(line) for line in self._lines(RUNS_FILE)]

    def _read_environments(self) -> dict[str, Environment]:
        path = self.root / ENVIRONMENTS_FILE
        if not path.exists():
            return {}
        data = json.loads(path.read_text())
        return {name: Environment.model_validate(record) for name, record in data.items()}

    def _append(self, filename: str, line: str) -> None:
        with self._lock, open(self.root / filename, "a") as f:
            f.write(line + "\n")
        logger.debug("store_record_appended", file=filename)

    def _lines(self, filename: str) -> list[str]:
        path = self.root / filename
        with self._lock:
            if not path.exists():
                return []
            return [line for line in path.read_text().splitlines() if line.strip()]


def open_store(store_path: str | None) -> ControlPlaneStore:
    """Return a JsonFileStore for a configured path, else an InMemoryStore."""
    if store_path:
        return JsonFileStore(store_path)
    return InMemoryStore()


__all__: list[str] = [
    "ControlPlaneStore",
    "InMemoryStore",
    "JsonFileStore",
    "open_store",
]
