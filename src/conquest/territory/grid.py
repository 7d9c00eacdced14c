"""Fixed-size equirectangular grid: cell indexing and segment coverage."""

from __future__ import annotations

import math

CELL_SIZE_DEGREES = 0.002
EARTH_RADIUS_METERS = 6371000

# Below this distance a segment is treated as a single point
SEGMENT_MIN_METERS = 10.0
# Interpolation step, well under the ~200 m cell edge
SEGMENT_STEP_METERS = 20.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate the great-circle distance between two points in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def cell_index(latitude: float, longitude: float) -> tuple[int, int]:
    """Grid coordinates (x, y) of the cell containing a point."""
    return math.floor(longitude / CELL_SIZE_DEGREES), math.floor(latitude / CELL_SIZE_DEGREES)


def cell_id(x: int, y: int) -> str:
    return f"{x}_{y}"


def cell_id_for(latitude: float, longitude: float) -> str:
    return cell_id(*cell_index(latitude, longitude))


def parse_cell_id(value: str) -> tuple[int, int]:
    """Inverse of cell_id. Raises ValueError on malformed ids."""
    x_str, sep, y_str = value.partition("_")
    if not sep:
        raise ValueError(f"Invalid cell id: {value!r}")
    return int(x_str), int(y_str)


def cell_center(x: int, y: int) -> tuple[float, float]:
    """(latitude, longitude) of a cell's center."""
    return (y + 0.5) * CELL_SIZE_DEGREES, (x + 0.5) * CELL_SIZE_DEGREES


def cell_boundary(x: int, y: int) -> list[dict[str, float]]:
    """Rendering polygon: top-left, top-right, bottom-right, bottom-left."""
    lat, lon = cell_center(x, y)
    half = CELL_SIZE_DEGREES / 2.0
    return [
        {"latitude": lat + half, "longitude": lon - half},
        {"latitude": lat + half, "longitude": lon + half},
        {"latitude": lat - half, "longitude": lon + half},
        {"latitude": lat - half, "longitude": lon - half},
    ]


def neighbours(value: str) -> list[str]:
    """The four edge-adjacent cell ids."""
    x, y = parse_cell_id(value)
    return [cell_id(x + 1, y), cell_id(x - 1, y), cell_id(x, y + 1), cell_id(x, y - 1)]


def cells_between(
    start: tuple[float, float],
    end: tuple[float, float],
) -> set[str]:
    """Every cell a straight segment from start to end passes through.

    Points are (latitude, longitude). Segments shorter than
    SEGMENT_MIN_METERS collapse to the start cell; longer ones are sampled
    every SEGMENT_STEP_METERS, both endpoints included.
    """
    lat1, lon1 = start
    lat2, lon2 = end
    distance = haversine_distance(lat1, lon1, lat2, lon2)
    if distance < SEGMENT_MIN_METERS:
        return {cell_id_for(lat1, lon1)}

    steps = math.ceil(distance / SEGMENT_STEP_METERS)
    cells: set[str] = set()
    for i in range(steps + 1):
        fraction = i / steps
        cells.add(
            cell_id_for(
                lat1 + (lat2 - lat1) * fraction,
                lon1 + (lon2 - lon1) * fraction,
            )
        )
    return cells
