"""Tracer lookup with per-name overrides for tests.

Tracers come from the global OpenTelemetry provider unless one was installed
with set_tracer(). If the global provider raises, a NoOpTracer is returned so
instrumentation never breaks a rollout.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import structlog
from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

logger = structlog.get_logger(__name__)

_overrides: dict[str, Tracer] = {}
_lock = threading.Lock()


def get_tracer(name: str = "conveyor") -> Tracer:
    """Return the tracer for name, preferring an installed override."""
    with _lock:
        override = _overrides.get(name)
    if override is not None:
        return override
    try:
        return trace.get_tracer(name)
    except Exception as e:
        logger.warning("tracer_unavailable", tracer=name, error=str(e))
        return trace.NoOpTracer()


def set_tracer(name: str, tracer: Tracer | None) -> None:
    """Install (or clear, with None) the tracer returned for name."""
    with _lock:
        if tracer is None:
            _overrides.pop(name, None)
        else:
            _overrides[name] = tracer


def reset_tracer() -> None:
    """Drop every override."""
    with _lock:
        _overrides.clear()


__all__: list[str] = ["get_tracer", "reset_tracer", "set_tracer"]
