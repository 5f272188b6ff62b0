"""Plugin lifecycle reporting consumed by pipeline stages."""
from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Protocol

import structlog

from geofix.observability.metrics import PLUGIN_COUNTERS, MetricsRegistry

LOGGER = structlog.get_logger(__name__)


class PluginReporter(Protocol):
    """Write-only sink for element and plugin lifecycle events.

    Implementations must be safe to call from several threads, since
    parallel stages may share one reporter.
    """

    def report_element_as_started(self, element_id: object) -> None:
        ...

    def report_element_as_ended(self, element_id: object) -> None:
        ...

    def report_plugin_as_completed(self) -> None:
        ...

    def report_plugin_as_errored(self) -> None:
        ...


class MonitoredPlugin:
    """Reporter that logs lifecycle events and keeps counters."""

    def __init__(self, name: str, *, metrics: Optional[MetricsRegistry] = None) -> None:
        self.name = name
        self.metrics = metrics or MetricsRegistry()
        self.status = "idle"
        self._in_flight: Dict[object, float] = {}
        self._lock = threading.Lock()
        self._log = LOGGER.bind(plugin=name)

    def report_element_as_started(self, element_id: object) -> None:
        with self._lock:
            self._in_flight[element_id] = time.perf_counter()
            if self.status == "idle":
                self.status = "running"
            self.metrics.incr("elements_started")
        self._log.debug("element_started", element_id=element_id)

    def report_element_as_ended(self, element_id: object) -> None:
        with self._lock:
            started = self._in_flight.pop(element_id, None)
            self.metrics.incr("elements_ended")
            if started is not None:
                self.metrics.incr("element_duration_ms", int((time.perf_counter() - started) * 1000))
        self._log.debug("element_ended", element_id=element_id)

    def report_plugin_as_completed(self) -> None:
        with self._lock:
            self.status = "completed"
            self.metrics.incr("plugins_completed")
        self._log.info("plugin_completed", elements=self.metrics.get("elements_ended"))

    def report_plugin_as_errored(self) -> None:
        with self._lock:
            self.status = "errored"
            self.metrics.incr("plugins_errored")
            in_flight = len(self._in_flight)
        self._log.warning("plugin_errored", in_flight=in_flight)

    @property
    def in_flight(self) -> List[object]:
        """Ids whose processing started but has not ended."""
        with self._lock:
            return list(self._in_flight)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "plugin": self.name,
                "status": self.status,
                "in_flight": [str(element_id) for element_id in self._in_flight],
                "counters": {name: self.metrics.get(name) for name in PLUGIN_COUNTERS},
            }
