"""Geo-grid point geometry: center + radius + grid size -> ordered check points.

Every function here is pure. Offsets are laid out on a flat north/east plane
in miles, then projected onto the sphere with the great-circle
destination-point formula so that recomputing a config always yields the
same coordinates.
"""

import math
from dataclasses import dataclass
from typing import Any

from rankgrid.exceptions import ConfigurationError

EARTH_RADIUS_MILES = 3958.8
COORDINATE_PRECISION = 6
SUPPORTED_GRID_SIZES = (5, 9, 25, 49)


@dataclass(frozen=True)
class CheckPoint:
    """A labelled grid coordinate."""
    label: str
    lat: float
    lng: float

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "lat": self.lat, "lng": self.lng}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckPoint":
        return cls(label=data["label"], lat=float(data["lat"]), lng=float(data["lng"]))


def _validate(center_lat: float, center_lng: float, radius_miles: float, grid_size: int) -> None:
    if grid_size not in SUPPORTED_GRID_SIZES:
        raise ConfigurationError(
            f"Unsupported grid size {grid_size!r}; expected one of {SUPPORTED_GRID_SIZES}"
        )
    if radius_miles is None or not math.isfinite(radius_miles) or radius_miles < 0:
        raise ConfigurationError(f"Radius must be a non-negative number, got {radius_miles!r}")
    if not -90.0 <= center_lat <= 90.0:
        raise ConfigurationError(f"Latitude out of range: {center_lat!r}")
    if not -180.0 <= center_lng <= 180.0:
        raise ConfigurationError(f"Longitude out of range: {center_lng!r}")


def _normalize_lng(lng: float) -> float:
    return (lng + 540.0) % 360.0 - 180.0


def destination_point(
    lat: float, lng: float, bearing_deg: float, distance_miles: float
) -> tuple[float, float]:
    """Great-circle destination from (lat, lng) along a bearing for a distance."""
    if distance_miles == 0:
        return lat, lng
    angular = distance_miles / EARTH_RADIUS_MILES
    bearing = math.radians(bearing_deg)
    lat1 = math.radians(lat)
    lng1 = math.radians(lng)

    sin_lat2 = (
        math.sin(lat1) * math.cos(angular)
        + math.cos(lat1) * math.sin(angular) * math.cos(bearing)
    )
    lat2 = math.asin(max(-1.0, min(1.0, sin_lat2)))
    lng2 = lng1 + math.atan2(
        math.sin(bearing) * math.sin(angular) * math.cos(lat1),
        math.cos(angular) - math.sin(lat1) * math.sin(lat2),
    )
    return math.degrees(lat2), _normalize_lng(math.degrees(lng2))


def haversine_miles(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Great-circle distance in miles between two (lat, lng) pairs."""
    lat1, lng1 = map(math.radians, a)
    lat2, lng2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(h)))


def point_label(north: int, east: int) -> str:
    """Label a cell by its ring offsets, e.g. ``center``, ``ne``, ``n2``, ``s1w2``."""
    if north == 0 and east == 0:
        return "center"
    ring = max(abs(north), abs(east))
    parts = []
    if north:
        parts.append(("n" if north > 0 else "s") + (str(abs(north)) if ring > 1 else ""))
    if east:
        parts.append(("e" if east > 0 else "w") + (str(abs(east)) if ring > 1 else ""))
    return "".join(parts)


def _grid_offsets(grid_size: int) -> list[tuple[int, int]]:
    """(north, east) cell offsets in row-major order, north to south, west to east."""
    if grid_size == 5:
        return [(1, 0), (0, -1), (0, 0), (0, 1), (-1, 0)]
    n = math.isqrt(grid_size)
    half = (n - 1) // 2
    return [
        (north, east)
        for north in range(half, -half - 1, -1)
        for east in range(-half, half + 1)
    ]


def calculate_grid_points(
    center_lat: float,
    center_lng: float,
    radius_miles: float,
    grid_size: int,
) -> list[CheckPoint]:
    """Compute the ordered check points for a geo-grid config.

    Grid size 5 is a cross: the center plus one point at full radius on each
    cardinal bearing. Sizes 9, 25 and 49 are N x N squares whose outermost
    ring sits at ``radius_miles`` along each axis.

    Raises:
        ConfigurationError: unsupported grid size, negative radius, or
            coordinates outside the valid lat/lng range.
    """
    _validate(center_lat, center_lng, radius_miles, grid_size)

    offsets = _grid_offsets(grid_size)
    half = max(max(abs(n), abs(e)) for n, e in offsets)
    spacing = radius_miles / half if half else 0.0

    points: list[CheckPoint] = []
    for north, east in offsets:
        dn = north * spacing
        de = east * spacing
        distance = math.hypot(dn, de)
        bearing = math.degrees(math.atan2(de, dn)) % 360.0
        lat, lng = destination_point(center_lat, center_lng, bearing, distance)
        points.append(
            CheckPoint(
                label=point_label(north, east),
                lat=round(lat, COORDINATE_PRECISION),
                lng=round(lng, COORDINATE_PRECISION),
            )
        )
    return points
