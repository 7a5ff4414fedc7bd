"""
Arrival geofence check.
Uses the Haversine formula to measure how far a check-in is from the project site.
"""
import math
from dataclasses import dataclass
from typing import Optional

from ..config import Settings, settings as default_settings


@dataclass(frozen=True)
class ArrivalCheck:
    distance_m: Optional[float]
    outside_geofence: Optional[bool]
    low_accuracy: bool


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Returns:
        Distance in meters
    """
    # Earth radius in meters
    R = 6371000

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return R * c


def check_arrival(
    project,
    latitude: float,
    longitude: float,
    accuracy_m: Optional[float] = None,
    cfg: Optional[Settings] = None,
) -> ArrivalCheck:
    """
    Compare a check-in position with the project's site.

    Projects without site coordinates yield no distance. The result is
    informational: check-in is never refused on distance alone.
    """
    cfg = cfg or default_settings
    low_accuracy = accuracy_m is not None and accuracy_m > cfg.gps_accuracy_risk_m

    if project is None or project.site_latitude is None or project.site_longitude is None:
        return ArrivalCheck(distance_m=None, outside_geofence=None, low_accuracy=low_accuracy)

    distance = haversine_distance(latitude, longitude, float(project.site_latitude), float(project.site_longitude))
    radius_m = float(project.geofence_radius_m or cfg.geo_radius_m_default)
    return ArrivalCheck(
        distance_m=round(distance, 2),
        outside_geofence=distance > radius_m,
        low_accuracy=low_accuracy,
    )
