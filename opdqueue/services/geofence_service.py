import math
from typing import Optional

from pydantic import BaseModel

from opdqueue.core.config import settings

EARTH_RADIUS_METERS = 6371000


class GeofenceResult(BaseModel):
    success: bool
    distance: float
    required_distance: float
    message: str
    error_code: Optional[str] = None


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters (Haversine, spherical earth)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def validate_check_in(hospital, patient_lat: float, patient_lon: float) -> GeofenceResult:
    radius = hospital.geofence_radius_meters or settings.DEFAULT_GEOFENCE_RADIUS_METERS
    distance = distance_meters(patient_lat, patient_lon, float(hospital.latitude), float(hospital.longitude))
    rounded = round(distance, 1)

    if distance <= radius:
        return GeofenceResult(
            success=True,
            distance=rounded,
            required_distance=radius,
            message="Check-in successful",
        )
    return GeofenceResult(
        success=False,
        distance=rounded,
        required_distance=radius,
        message=f"You must be within {radius}m of the hospital",
        error_code="GEOFENCE_VIOLATION",
    )
