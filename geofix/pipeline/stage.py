"""Geo-fix stage: attaches resolved coordinates to each record in a stream."""
from __future__ import annotations

import enum
from typing import Any, Callable, Optional, Protocol

import structlog

from geofix.normalize.geo import Coordinates, ResolverLike, as_resolver, is_coordinate_pair
from geofix.pipeline.stream import Observer, Subscription
from geofix.reporting.plugin import PluginReporter

LOGGER = structlog.get_logger(__name__)


class GeoRecord(Protocol):
    """The only fields the stage touches. ``id`` is never written."""

    @property
    def id(self) -> Any:
        ...

    latitude: Optional[float]
    longitude: Optional[float]


class StageState(str, enum.Enum):
    """Lifecycle of a single subscription to the stage."""

    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERRORED = "errored"
    DISPOSED = "disposed"


_CLOSED_STATES = frozenset({StageState.COMPLETED, StageState.ERRORED, StageState.DISPOSED})


class GeoFixSubscriber:
    """Observer that brackets each record with lifecycle reports before passing it on."""

    def __init__(
        self,
        downstream: Observer[Any],
        *,
        plugin: PluginReporter,
        fixer: Callable[[Any], Any],
    ) -> None:
        self._downstream = downstream
        self._plugin: Optional[PluginReporter] = plugin
        self._fixer = fixer
        self._upstream: Optional[Subscription] = None
        self.state = StageState.IDLE

    @property
    def is_disposed(self) -> bool:
        return self.state is StageState.DISPOSED

    def on_start(self, upstream: Optional[Subscription] = None) -> None:
        """Move to ACTIVE when the upstream subscription begins."""
        self._upstream = upstream
        if self.state is StageState.IDLE:
            self.state = StageState.ACTIVE

    def on_next(self, record: GeoRecord) -> None:
        if self._dropped("next"):
            return
        self.state = StageState.ACTIVE
        plugin = self._plugin
        try:
            plugin.report_element_as_started(record.id)
            record = self._fixer(record)
            if self.is_disposed:
                return
            plugin.report_element_as_ended(record.id)
        except Exception as error:
            self.on_error(error)
            return
        self._downstream.on_next(record)

    def on_completed(self) -> None:
        if self._dropped("completed"):
            return
        plugin = self._plugin
        try:
            plugin.report_plugin_as_completed()
        except Exception as error:
            self.on_error(error)
            return
        self.state = StageState.COMPLETED
        self._plugin = None
        self._downstream.on_completed()

    def on_error(self, error: BaseException) -> None:
        """Report the failure, cancel upstream and forward ``error`` unchanged.

        If the reporter itself raises, ``error`` still reaches downstream and
        the reporter's exception then propagates to whoever drove the signal.
        """
        if self._dropped("error"):
            return
        plugin = self._plugin
        self.state = StageState.ERRORED
        self._plugin = None
        upstream, self._upstream = self._upstream, None
        if upstream is not None:
            upstream.dispose()
        try:
            plugin.report_plugin_as_errored()
        finally:
            self._downstream.on_error(error)

    def dispose(self) -> None:
        """Stop resolving, reporting and emitting. Idempotent."""
        if self.state in _CLOSED_STATES:
            return
        self.state = StageState.DISPOSED
        self._plugin = None

    def _dropped(self, signal: str) -> bool:
        if self.state not in _CLOSED_STATES:
            return False
        LOGGER.debug("stage_signal_dropped", signal=signal, state=self.state.value)
        return True


class GeoFixStage:
    """Stream operator that fixes the geo-location of every record.

    The single extension point is the coordinate lookup: pass a resolver (an
    object with ``resolve`` or a plain callable), or subclass and override
    :meth:`get_coordinates`. Calling the stage with a downstream observer
    returns the wrapping :class:`GeoFixSubscriber`, so it can be handed to
    ``Stream.lift``.
    """

    def __init__(self, plugin: PluginReporter, resolver: Optional[ResolverLike] = None) -> None:
        if resolver is None and type(self).get_coordinates is GeoFixStage.get_coordinates:
            raise TypeError("GeoFixStage requires a resolver or a get_coordinates override")
        self._plugin = plugin
        self._resolver = as_resolver(resolver) if resolver is not None else None

    def __call__(self, subscriber: Observer[Any]) -> GeoFixSubscriber:
        return GeoFixSubscriber(subscriber, plugin=self._plugin, fixer=self.geo_fix)

    def get_coordinates(self, record: GeoRecord) -> Coordinates:
        """Return ``(latitude, longitude)`` for the record, or None when not found."""
        return self._resolver.resolve(record)  # type: ignore[union-attr]

    def geo_fix(self, record: GeoRecord) -> GeoRecord:
        """Apply resolved coordinates in place; anything but a pair is ignored."""
        coordinates = self.get_coordinates(record)
        if is_coordinate_pair(coordinates):
            record.latitude = coordinates[0]  # type: ignore[index]
            record.longitude = coordinates[1]  # type: ignore[index]
        return record
