"""
Geospatial helpers.

Great-circle distance on a spherical earth, used by the proximity matcher
to rank ambulance units and medical facilities.
"""
import math

EARTH_RADIUS_KM = 6371.0


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in kilometres between two (lat, lon) points in degrees.

    NaN coordinates yield NaN; callers filter those out before ranking.
    """
    rlat1 = math.radians(lat1)
    rlat2 = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    )
    # Rounding can push `a` a hair above 1 for antipodal points.
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def parse_coordinate(value) -> float | None:
    """Best-effort float conversion for stored coordinates (strings or numbers).

    Returns None for missing, unparseable or non-finite values.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number
