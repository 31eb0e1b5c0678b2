import math

EARTH_RADIUS_KM = 6371.0

# Roughly 11 km either way; anything outside the box skips the haversine.
MAX_DEGREE_DELTA = 0.1


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in km between two lat/lon points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bounded_distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    if abs(lat2 - lat1) > MAX_DEGREE_DELTA or abs(lon2 - lon1) > MAX_DEGREE_DELTA:
        return math.inf
    return haversine_km(lat1, lon1, lat2, lon2)
