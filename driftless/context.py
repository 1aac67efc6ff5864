"""Nested timing spans for debug logging.

A span is opened around each render and each reconciliation pass. Spans nest
within an asyncio task since every task copies the context it was created in,
so passes of different applications running concurrently never mix labels.
"""

from collections.abc import Generator
import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter

_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []

_SPANS: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "spans", default=()
)


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Log entering and leaving the span `name` with its duration."""
    spans = _SPANS.get() + (name,)
    token = _SPANS.set(spans)
    label = " > ".join(spans)
    _LOGGER.debug("[Trace] > %s", label)
    start = perf_counter()
    try:
        yield
    finally:
        _SPANS.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.3fs)", label, perf_counter() - start)


def current_trace() -> tuple[str, ...]:
    """Names of the spans open in this context, outermost first."""
    return _SPANS.get()
