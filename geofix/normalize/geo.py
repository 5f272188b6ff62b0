"""Coordinate resolution strategies plugged into the geo-fix stage."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, Sequence, Tuple, Union

import structlog
import yaml

LOGGER = structlog.get_logger(__name__)

Coordinates = Optional[Sequence[float]]

_MISSING = object()


@dataclass(frozen=True)
class GeoPoint:
    """Represents a resolved coordinate pair."""

    latitude: float
    longitude: float

    def __iter__(self) -> Iterator[float]:
        yield self.latitude
        yield self.longitude

    def __len__(self) -> int:
        return 2

    def __getitem__(self, index: int) -> float:
        return (self.latitude, self.longitude)[index]


class GeoResolver(Protocol):
    """Interface for plugging coordinate lookups into the stage."""

    def resolve(self, record: Any) -> Coordinates:
        """Return ``(latitude, longitude)`` for the record or None when unavailable."""
        ...


def is_coordinate_pair(value: object) -> bool:
    """Return True when ``value`` holds exactly two coordinates."""
    if value is None or isinstance(value, (str, bytes)):
        return False
    try:
        return len(value) == 2  # type: ignore[arg-type]
    except TypeError:
        return False


class NullResolver:
    """Resolver that never finds coordinates."""

    def resolve(self, record: Any) -> Coordinates:
        return None


class FunctionResolver:
    """Adapts a plain callable to the resolver interface."""

    def __init__(self, func: Callable[[Any], Coordinates]) -> None:
        self._func = func

    def resolve(self, record: Any) -> Coordinates:
        return self._func(record)


class TableResolver:
    """Looks up a record attribute in a static coordinate table."""

    def __init__(self, table: Dict[str, Sequence[float]], *, key_field: str = "location") -> None:
        self._table: Dict[str, Tuple[float, float]] = {}
        for key, value in table.items():
            try:
                self._table[_normalise_key(str(key))] = parse_pair(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Invalid coordinates for {key!r}: {value!r}") from exc
        self._key_field = key_field

    @classmethod
    def from_yaml(cls, path: Path, *, key_field: str = "location") -> "TableResolver":
        """Load a ``name: [lat, lon]`` mapping from a YAML file."""
        if not path.exists():
            raise FileNotFoundError(f"Coordinate table not found: {path}")
        with path.open("r", encoding="utf-8") as handle:
            try:
                payload = yaml.safe_load(handle) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Unreadable coordinate table {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValueError(f"Coordinate table must be a mapping: {path}")
        return cls(payload, key_field=key_field)

    def __len__(self) -> int:
        return len(self._table)

    def key_for(self, record: Any) -> Optional[str]:
        """Return the normalised lookup key for ``record``, if it has one."""
        value = getattr(record, self._key_field, None)
        if not value:
            return None
        return _normalise_key(str(value))

    def resolve(self, record: Any) -> Coordinates:
        key = self.key_for(record)
        if key is None:
            return None
        return self._table.get(key)


class CachingResolver:
    """Memoises a delegate resolver, negative answers included."""

    def __init__(self, delegate: "ResolverLike", *, key: Optional[Callable[[Any], object]] = None) -> None:
        self._delegate = as_resolver(delegate)
        self._key = key or (lambda record: record.id)
        self._cache: Dict[object, Coordinates] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def resolve(self, record: Any) -> Coordinates:
        cache_key = self._key(record)
        with self._lock:
            cached = self._cache.get(cache_key, _MISSING)
            if cached is not _MISSING:
                self.hits += 1
                return cached  # type: ignore[return-value]
            self.misses += 1
        coordinates = self._delegate.resolve(record)
        with self._lock:
            self._cache[cache_key] = coordinates
        LOGGER.debug("resolver_cache_store", key=str(cache_key), resolved=coordinates is not None)
        return coordinates

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


ResolverLike = Union[GeoResolver, Callable[[Any], Coordinates]]


def as_resolver(candidate: ResolverLike) -> GeoResolver:
    """Return ``candidate`` as an object exposing ``resolve``."""
    if hasattr(candidate, "resolve"):
        return candidate  # type: ignore[return-value]
    if callable(candidate):
        return FunctionResolver(candidate)
    raise TypeError(f"Expected a resolver or callable, got {type(candidate).__name__}")


def _normalise_key(text: str) -> str:
    return " ".join(text.lower().split())


def parse_pair(value: Sequence[float]) -> Tuple[float, float]:
    """Coerce a two-value sequence into floats."""
    latitude, longitude = value
    return float(latitude), float(longitude)
