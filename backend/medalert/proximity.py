"""
Proximity matching.

One algorithm for both ambulance units and medical facilities: the caller
passes the candidates (usually a store "list all" result) and, when the
candidates are not plain objects with ``latitude``/``longitude`` attributes,
an accessor returning the coordinate pair.
"""
from typing import Any, Callable, Iterable, List, Optional, Tuple, TypeVar

from .geo import distance_km, parse_coordinate

T = TypeVar("T")

DEFAULT_RADIUS_KM = 10.0


def _attribute_coords(candidate: Any) -> Tuple[Any, Any]:
    return getattr(candidate, "latitude", None), getattr(candidate, "longitude", None)


def ranked(
    latitude: float,
    longitude: float,
    candidates: Iterable[T],
    radius_km: float = DEFAULT_RADIUS_KM,
    coords: Optional[Callable[[T], Tuple[Any, Any]]] = None,
) -> List[Tuple[T, float]]:
    """Return ``(candidate, distance_km)`` pairs within ``radius_km``, nearest first.

    Candidates with missing or unparseable coordinates are skipped. The sort
    is stable, so equidistant candidates keep their input order.
    """
    accessor = coords or _attribute_coords
    origin_lat = parse_coordinate(latitude)
    origin_lon = parse_coordinate(longitude)
    if origin_lat is None or origin_lon is None:
        return []

    matches: List[Tuple[T, float]] = []
    for candidate in candidates:
        raw_lat, raw_lon = accessor(candidate)
        lat = parse_coordinate(raw_lat)
        lon = parse_coordinate(raw_lon)
        if lat is None or lon is None:
            continue
        distance = distance_km(origin_lat, origin_lon, lat, lon)
        # NaN compares False against everything, so it never passes this check.
        if distance <= radius_km:
            matches.append((candidate, distance))

    matches.sort(key=lambda pair: pair[1])
    return matches


def nearby(
    latitude: float,
    longitude: float,
    candidates: Iterable[T],
    radius_km: float = DEFAULT_RADIUS_KM,
    coords: Optional[Callable[[T], Tuple[Any, Any]]] = None,
) -> List[T]:
    """Candidates within ``radius_km`` of the point, sorted by ascending distance."""
    return [candidate for candidate, _ in ranked(latitude, longitude, candidates, radius_km, coords)]
