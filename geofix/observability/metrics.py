"""Per-run pipeline counters: messages read/written/located and plugin lifecycle events."""
from __future__ import annotations

import contextlib
import time
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterator

import orjson
import structlog

LOGGER = structlog.get_logger(__name__)


MESSAGE_COUNTERS = ("messages_read", "messages_written", "messages_located")
PLUGIN_COUNTERS = (
    "elements_started",
    "elements_ended",
    "element_duration_ms",
    "plugins_completed",
    "plugins_errored",
)


class MetricsRegistry:
    """Counters for one pipeline run, shared by the reader, the sink and the plugin reporter."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        for key in (*MESSAGE_COUNTERS, *PLUGIN_COUNTERS, "run_duration_ms"):
            self._counters[key] = 0

    def incr(self, name: str, value: int = 1) -> None:
        """Increment the named counter by the supplied value."""
        self._counters[name] += value

    def get(self, name: str) -> int:
        """Return the current value for the counter, defaulting to zero."""
        return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        """Return a shallow copy of all counters for reporting."""
        return dict(self._counters)

    def export(self, *, path: Path, run_id: str) -> Path:
        """Write the run's counters to ``path`` as ``run_<id>.json``-style JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "run_id": run_id,
            "counters": self.snapshot(),
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        return path


@contextlib.contextmanager
def record_duration(registry: MetricsRegistry, metric_name: str) -> Iterator[None]:
    """Add the block's wall time in milliseconds to ``metric_name``, e.g. ``run_duration_ms``."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        registry.incr(metric_name, int(elapsed * 1000))
        LOGGER.info("timer_stop", metric=metric_name, duration_ms=int(elapsed * 1000))
