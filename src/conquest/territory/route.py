"""Route reduction: ordered GPS points to the set of traversed cells."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from conquest.territory.grid import cell_id_for, cells_between


@dataclass(frozen=True)
class RoutePoint:
    """One GPS fix of an activity route."""

    latitude: float
    longitude: float
    timestamp: datetime | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RoutePoint:
        ts = data.get("timestamp")
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts)
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            timestamp=ts,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    @property
    def coordinate(self) -> tuple[float, float]:
        return self.latitude, self.longitude


@dataclass
class RouteReducer:
    """Incremental reducer; feeding chunks one by one equals feeding the whole route.

    The last point of a chunk is remembered so the segment bridging two
    chunks is still interpolated.
    """

    cells: set[str] = field(default_factory=set)
    _last: RoutePoint | None = None

    def feed(self, points: Iterable[RoutePoint]) -> None:
        for point in points:
            if self._last is None:
                self.cells.add(cell_id_for(point.latitude, point.longitude))
            else:
                self.cells |= cells_between(self._last.coordinate, point.coordinate)
            self._last = point


def reduce_route(points: Iterable[RoutePoint]) -> set[str]:
    """Deduplicated set of cells touched by a route. Empty route gives an empty set."""
    reducer = RouteReducer()
    reducer.feed(points)
    return reducer.cells


def reduce_chunks(chunks: Iterable[tuple[int, list[Mapping[str, Any]]]]) -> set[str]:
    """Reduce stored route chunks given as (order, raw points) pairs."""
    reducer = RouteReducer()
    for _order, raw_points in sorted(chunks, key=lambda c: c[0]):
        reducer.feed(RoutePoint.from_dict(p) for p in raw_points)
    return reducer.cells
