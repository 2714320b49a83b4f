import math
from dataclasses import dataclass

from .errors import ValidationFailed

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEG_LAT = 111000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def _coerce(name: str, value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationFailed(f"{name} must be a number")
    value = float(value)
    if not math.isfinite(value):
        raise ValidationFailed(f"{name} must be finite")
    return value


@dataclass(frozen=True)
class GeoPoint:
    """A WGS84 position. Construction fails for out-of-range coordinates."""

    longitude: float
    latitude: float

    def __post_init__(self):
        lon = _coerce("longitude", self.longitude)
        lat = _coerce("latitude", self.latitude)
        if not -180.0 <= lon <= 180.0:
            raise ValidationFailed("longitude must be within [-180, 180]")
        if not -90.0 <= lat <= 90.0:
            raise ValidationFailed("latitude must be within [-90, 90]")
        object.__setattr__(self, "longitude", lon)
        object.__setattr__(self, "latitude", lat)

    def distance_to(self, other: "GeoPoint") -> float:
        return haversine_m(self.latitude, self.longitude, other.latitude, other.longitude)

    def bounding_box(self, radius_m: float) -> tuple[float, float, float, float]:
        """
        Conservative (min_lat, max_lat, min_lon, max_lon) box enclosing a circle
        of radius_m around the point. Used as an index-friendly pre-filter.
        """
        d_lat = radius_m / METERS_PER_DEG_LAT
        # widest longitude span is at the circle edge nearest a pole
        c = math.cos(math.radians(min(90.0, abs(self.latitude) + d_lat)))
        if abs(c) < 0.01:
            c = 0.01
        d_lon = radius_m / (METERS_PER_DEG_LAT * c)

        min_lat = max(-90.0, self.latitude - d_lat)
        max_lat = min(90.0, self.latitude + d_lat)
        min_lon = self.longitude - d_lon
        max_lon = self.longitude + d_lon
        if min_lon < -180.0 or max_lon > 180.0 or d_lon >= 180.0 or abs(self.latitude) + d_lat >= 90.0:
            # circle crosses the antimeridian or a pole; use the full longitude band
            min_lon, max_lon = -180.0, 180.0
        return min_lat, max_lat, min_lon, max_lon
