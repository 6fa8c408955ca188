"""Environment arena: Environment records indexed by name, each with its own lock.

There is no global lock. Each slot carries:

- a rollout lock, held by exactly one RolloutAttempt for its whole duration
  (this is what serializes deployments per environment), and
- a short-lived state lock guarding reads and replacements of the record.

Only the attempt holding an environment's rollout lock may change its
versions or health. Operator freezes bypass the rollout lock so an incident
freeze takes effect while a rollout is running; the freeze is checked when
the next rollout starts.

Example:
    >>> arena = EnvironmentArena(["staging", "production"])
    >>> with arena.hold("staging", attempt.attempt_id, timeout=30.0):
    ...     arena.update("staging", attempt.attempt_id, desired_version="v1.0.0")
"""

from __future__ import annotations

import threading
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from conveyor.errors import (
    EnvironmentFrozenError,
    EnvironmentNotFoundError,
    LockContentionError,
)
from conveyor.schemas.models import Environment, EnvironmentFreeze

if TYPE_CHECKING:
    from conveyor.store import ControlPlaneStore

logger = structlog.get_logger(__name__)


class _Slot:
    __slots__ = ("record", "rollout_lock", "state_lock", "holder")

    def __init__(self, record: Environment) -> None:
        self.record = record
        self.rollout_lock = threading.Lock()
        self.state_lock = threading.Lock()
        self.holder: str | None = None


class EnvironmentArena:
    """Arena of Environment records with per-environment rollout locks.

    Args:
        names: Configured environment names.
        store: Optional store; existing records are loaded from it and every
            change is written back.
    """

    def __init__(self, names: Iterable[str], store: ControlPlaneStore | None = None) -> None:
        self._store = store
        persisted = store.load_environments() if store is not None else {}
        self._slots: dict[str, _Slot] = {}
        for name in names:
            record = persisted.get(name) or Environment(name=name)
            self._slots[name] = _Slot(record)
            if store is not None and name not in persisted:
                store.save_environment(record)

    @property
    def names(self) -> list[str]:
        return list(self._slots)

    def get(self, name: str) -> Environment:
        """Return the current record for an environment."""
        slot = self._slot(name)
        with slot.state_lock:
            return slot.record

    def snapshot(self) -> list[Environment]:
        """Return all records in configuration order."""
        return [self.get(name) for name in self._slots]

    def holder(self, name: str) -> str | None:
        """Attempt id currently holding the rollout lock, if any."""
        slot = self._slot(name)
        with slot.state_lock:
            return slot.holder

    # ------------------------------------------------------------------
    # Rollout lock
    # ------------------------------------------------------------------

    def acquire(self, name: str, attempt_id: str, timeout: float) -> None:
        """Acquire the environment's rollout lock for an attempt.

        Blocks up to timeout seconds.

        Raises:
            LockContentionError: If the lock is still held after timeout.
            EnvironmentNotFoundError: If the environment is not configured.
        """
        slot = self._slot(name)
        if not slot.rollout_lock.acquire(timeout=timeout):
            with slot.state_lock:
                holder = slot.holder
            logger.info("rollout_lock_contended", environment=name, holder=holder)
            raise LockContentionError(name, holder)
        with slot.state_lock:
            slot.holder = attempt_id
        logger.debug("rollout_lock_acquired", environment=name, attempt_id=attempt_id)

    def release(self, name: str, attempt_id: str) -> None:
        """Release the rollout lock held by attempt_id.

        Raises:
            RuntimeError: If attempt_id does not hold the lock.
        """
        slot = self._slot(name)
        with slot.state_lock:
            if slot.holder != attempt_id:
                raise RuntimeError(
                    f"Attempt {attempt_id} does not hold the rollout lock for {name}"
                )
            slot.holder = None
        slot.rollout_lock.release()
        logger.debug("rollout_lock_released", environment=name, attempt_id=attempt_id)

    @contextmanager
    def hold(self, name: str, attempt_id: str, timeout: float) -> Generator[Environment, None, None]:
        """Hold the rollout lock for the duration of the block.

        Yields:
            The environment record at acquisition time.
        """
        self.acquire(name, attempt_id, timeout)
        try:
            yield self.get(name)
        finally:
            self.release(name, attempt_id)

    def update(self, name: str, attempt_id: str, **changes: Any) -> Environment:
        """Replace the record with changed fields.

        Raises:
            RuntimeError: If attempt_id does not hold the rollout lock.
        """
        slot = self._slot(name)
        with slot.state_lock:
            if slot.holder != attempt_id:
                raise RuntimeError(
                    f"Attempt {attempt_id} cannot update {name} without its rollout lock"
                )
            slot.record = slot.record.model_copy(
                update={**changes, "updated_at": datetime.now(timezone.utc)}
            )
            record = slot.record
            self._persist(record)
        return record

    # ------------------------------------------------------------------
    # Operator freeze
    # ------------------------------------------------------------------

    def check_not_frozen(self, name: str) -> None:
        """Raise EnvironmentFrozenError if the environment is frozen."""
        freeze = self.get(name).freeze
        if freeze.frozen:
            raise EnvironmentFrozenError(name, freeze.frozen_by or "", freeze.reason or "")

    def freeze(self, name: str, reason: str, operator: str) -> Environment:
        """Freeze an environment. Freezing a frozen environment replaces the reason."""
        record = self._set_freeze(
            name,
            EnvironmentFreeze(
                frozen=True,
                reason=reason,
                frozen_by=operator,
                frozen_at=datetime.now(timezone.utc),
            ),
        )
        logger.info("environment_frozen", environment=name, operator=operator, reason=reason)
        return record

    def unfreeze(self, name: str, operator: str) -> Environment:
        """Lift a freeze."""
        record = self._set_freeze(name, EnvironmentFreeze(frozen=False))
        logger.info("environment_unfrozen", environment=name, operator=operator)
        return record

    def _set_freeze(self, name: str, freeze: EnvironmentFreeze) -> Environment:
        slot = self._slot(name)
        with slot.state_lock:
            slot.record = slot.record.model_copy(
                update={"freeze": freeze, "updated_at": datetime.now(timezone.utc)}
            )
            record = slot.record
            self._persist(record)
        return record

    def _slot(self, name: str) -> _Slot:
        try:
            return self._slots[name]
        except KeyError:
            raise EnvironmentNotFoundError(name, list(self._slots)) from None

    def _persist(self, record: Environment) -> None:
        # Caller holds the slot's state_lock so saves land in update order.
        if self._store is not None:
            self._store.save_environment(record)


__all__: list[str] = ["EnvironmentArena"]
