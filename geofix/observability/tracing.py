"""Tracing helpers for pipeline runs."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars


def _logger():
    return structlog.get_logger("geofix.trace")


def set_context(*, run_id: str, stage: str) -> None:
    bind_contextvars(run_id=run_id, stage=stage)
    _logger().debug("trace_context", run_id=run_id, stage=stage)


def clear_context() -> None:
    clear_contextvars()


@contextlib.contextmanager
def span(*, name: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().info("trace_span", span=name, elapsed_ms=elapsed_ms)
