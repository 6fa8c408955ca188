"""OpenTelemetry tracing utilities for conveyor.

Provides the @traced decorator and the create_span() context manager used to
instrument pipeline stages, rollouts, health waits, migrations and artifact
publishing. Error messages are sanitized before being recorded on spans.
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

from opentelemetry.trace import Status, StatusCode, Tracer

from conveyor.telemetry.sanitization import sanitize_error_message
from conveyor.telemetry.tracer_factory import get_tracer as _factory_get_tracer
from conveyor.telemetry.tracer_factory import reset_tracer
from conveyor.telemetry.tracer_factory import set_tracer as _factory_set_tracer

__all__ = ["traced", "create_span", "get_tracer", "set_tracer", "reset_tracer", "trace_id_of"]

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span

P = ParamSpec("P")
R = TypeVar("R")

_TRACER_NAME = "conveyor"


def get_tracer() -> Tracer:
    """Get the tracer instance for conveyor telemetry."""
    return _factory_get_tracer(_TRACER_NAME)


def set_tracer(tracer: Tracer | None) -> None:
    """Set the module-level tracer (for testing)."""
    _factory_set_tracer(_TRACER_NAME, tracer)


def _record_error(span: Span, exc: Exception) -> None:
    sanitized = sanitize_error_message(str(exc))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(exc).__name__)
    span.set_attribute("exception.message", sanitized)


@overload
def traced(func: Callable[P, R]) -> Callable[P, R]: ...


@overload
def traced(
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator to trace function execution with an OpenTelemetry span.

    Can be used with or without arguments:
        @traced
        def my_function(): ...

        @traced(name="conveyor.publish", attributes={"component": "artifacts"})
        def my_function(): ...

    Args:
        func: The function to decorate (when used without parentheses).
        name: Optional custom span name. Defaults to function name.
        attributes: Optional static span attributes.

    Returns:
        Decorated function that creates a span on each invocation.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name if name is not None else fn.__name__

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with get_tracer().start_as_current_span(
                span_name,
                record_exception=False,
                set_status_on_exception=False,
            ) as span:
                if attributes:
                    for key, value in attributes.items():
                        span.set_attribute(key, value)
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Nested calls create parent-child relationships automatically. None-valued
    attributes are skipped.

    Examples:
        >>> with create_span("conveyor.rollout", attributes={"environment": "staging"}) as span:
        ...     span.set_attribute("batch_count", 3)
    """
    with get_tracer().start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise


def trace_id_of(span: Span) -> str:
    """Return the span's trace id as 32-char hex, or "" for an invalid context."""
    ctx = span.get_span_context()
    return format(ctx.trace_id, "032x") if ctx.is_valid else ""
