"""Utilities for tracing the steps of a sync cycle."""

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

__all__ = [
    "trace_context",
    "TraceCollector",
]


trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")
collector: contextvars.ContextVar["TraceCollector | None"] = contextvars.ContextVar(
    "collector", default=None
)


@dataclass
class TraceCollector:
    """Accumulates the time spent in each traced step."""

    timings: dict[str, float] = field(default_factory=dict)

    def record(self, label: str, elapsed: float) -> None:
        self.timings[label] = self.timings.get(label, 0.0) + elapsed

    @contextmanager
    def activate(self) -> Generator["TraceCollector", None, None]:
        """Collect timings for all traces started inside this block."""
        token = collector.set(self)
        try:
            yield self
        finally:
            collector.reset(token)


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    stack = trace.get([])
    token = trace.set(stack + [name])
    label = " > ".join(stack + [name])
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        t2 = perf_counter()
        trace.reset(token)
        if (active := collector.get()) is not None:
            active.record(label, t2 - t1)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, (t2 - t1))
