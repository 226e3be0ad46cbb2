"""
AyurTrace - Geofencing
Approved harvesting zones (polygon or circle) and seasonal harvest windows
"""

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GeoPoint':
        lat = data['lat'] if 'lat' in data else data['latitude']
        lng = data['lng'] if 'lng' in data else data['longitude']
        return cls(lat=float(lat), lng=float(lng))

    def to_dict(self) -> Dict[str, float]:
        return {'lat': self.lat, 'lng': self.lng}


@dataclass(frozen=True)
class SeasonalWindow:
    """Permitted harvest months, inclusive. start_month > end_month wraps the new year."""
    start_month: int
    end_month: int

    def __post_init__(self):
        for month in (self.start_month, self.end_month):
            if not 1 <= month <= 12:
                raise ValueError(f"Month must be between 1 and 12, got {month}")


@dataclass
class GeofenceZone:
    """An approved harvesting zone"""
    id: str
    name: str
    coordinates: List[GeoPoint]
    allowed_species: frozenset = field(default_factory=frozenset)
    radius: Optional[float] = None
    seasonal_restrictions: Dict[str, SeasonalWindow] = field(default_factory=dict)

    def __post_init__(self):
        if self.radius is not None and self.radius < 0:
            raise ValueError(f"Zone {self.id}: radius must not be negative")
        self.allowed_species = frozenset(self.allowed_species)

    @property
    def is_circle(self) -> bool:
        return self.radius is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GeofenceZone':
        """Build a zone from a stored row or request body"""
        restrictions = data.get('seasonal_restrictions') or {}
        return cls(
            id=str(data['id']),
            name=data['name'],
            coordinates=[GeoPoint.from_dict(c) for c in data.get('coordinates') or []],
            allowed_species=data.get('allowed_species') or [],
            radius=data.get('radius'),
            seasonal_restrictions={
                species: SeasonalWindow(int(window['start_month']), int(window['end_month']))
                for species, window in restrictions.items()
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'coordinates': [c.to_dict() for c in self.coordinates],
            'allowed_species': sorted(self.allowed_species),
            'radius': self.radius,
            'seasonal_restrictions': {
                species: {'start_month': w.start_month, 'end_month': w.end_month}
                for species, w in self.seasonal_restrictions.items()
            },
        }


@dataclass
class HarvestValidation:
    is_valid: bool
    errors: List[str]
    zone: Optional[GeofenceZone] = None


# ============================================================
# GEOMETRY
# ============================================================

def calculate_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres (haversine)"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def is_point_in_polygon(point: GeoPoint, polygon: Sequence[GeoPoint]) -> bool:
    """
    Ray casting (even-odd rule) with x = lng, y = lat.

    The last vertex connects back to the first. Points on a western or
    southern edge count as inside, eastern or northern edges as outside.
    """
    if len(polygon) < 3:
        return False

    x, y = point.lng, point.lat
    inside = False

    j = len(polygon) - 1
    for i in range(len(polygon)):
        xi, yi = polygon[i].lng, polygon[i].lat
        xj, yj = polygon[j].lng, polygon[j].lat

        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i

    return inside


def is_inside_geofence(point: GeoPoint, zone: GeofenceZone) -> bool:
    if zone.is_circle:
        if not zone.coordinates:
            return False
        center = zone.coordinates[0]
        distance = calculate_distance(point.lat, point.lng, center.lat, center.lng)
        return distance <= zone.radius
    return is_point_in_polygon(point, zone.coordinates)


# ============================================================
# HARVEST VALIDATION
# ============================================================

def is_in_season(window: SeasonalWindow, month: int) -> bool:
    if window.start_month <= window.end_month:
        return window.start_month <= month <= window.end_month
    # Season crosses the year boundary
    return month >= window.start_month or month <= window.end_month


def validate_harvest_location(
    point: GeoPoint,
    species: str,
    zones: Sequence[GeofenceZone],
    today: Optional[date] = None
) -> HarvestValidation:
    """
    Check that a harvest of `species` at `point` happens inside an approved
    zone and within that zone's season. The first matching zone wins.
    """
    errors = []

    valid_zones = [
        zone for zone in zones
        if species in zone.allowed_species and is_inside_geofence(point, zone)
    ]

    if not valid_zones:
        errors.append(f"No approved harvesting zone found for {species} at current location")
        return HarvestValidation(is_valid=False, errors=errors)

    zone = valid_zones[0]
    current_month = (today or date.today()).month

    window = zone.seasonal_restrictions.get(species)
    if window is not None and not is_in_season(window, current_month):
        errors.append(f"Harvesting {species} is not allowed in current season")

    return HarvestValidation(is_valid=len(errors) == 0, errors=errors, zone=zone)
