"""Capture location checks: distance from the property and GPS accuracy grading"""
import math
from dataclasses import asdict, dataclass
from typing import Optional

from config import settings
from schemas import GPSFix

EARTH_RADIUS_M = 6371000  # WGS84 mean radius

# Upper bounds in metres, checked in order
ACCURACY_LEVELS = (
    (10, "Excellent"),
    (30, "Good"),
    (100, "Fair"),
)


@dataclass
class LocationCheck:
    is_valid: bool
    distance_m: Optional[int]
    message: str
    accuracy_level: Optional[str] = None
    approximate: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""
    if lat1 == lat2 and lng1 == lng2:
        return 0.0
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_approximate_location(accuracy: float, limit_m: Optional[float] = None) -> bool:
    """True for fixes too coarse to place evidence, e.g. when precise location is denied."""
    limit = settings.APPROXIMATE_LOCATION_ACCURACY_M if limit_m is None else limit_m
    return accuracy > limit


def format_gps_accuracy(accuracy: float) -> str:
    for bound, label in ACCURACY_LEVELS:
        if accuracy < bound:
            return label
    if not is_approximate_location(accuracy):
        return "Poor"
    return "Approximate only"


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)}m"
    return f"{meters / 1000:.1f}km"


def validate_capture_location(
    capture: Optional[GPSFix],
    property_location: Optional[GPSFix],
    threshold_m: Optional[float] = None,
) -> LocationCheck:
    """Check a capture fix against the property it is supposed to document.

    No fix at all is invalid. No property location means there is nothing
    to compare against, which passes.
    """
    threshold = settings.CAPTURE_LOCATION_THRESHOLD_M if threshold_m is None else threshold_m
    if capture is None:
        return LocationCheck(False, None, "No GPS signal")

    accuracy_level = format_gps_accuracy(capture.accuracy) if capture.accuracy is not None else None
    approximate = capture.accuracy is not None and is_approximate_location(capture.accuracy)

    if property_location is None:
        return LocationCheck(True, None, "No property location to validate against", accuracy_level, approximate)

    distance = haversine_distance(
        capture.latitude, capture.longitude, property_location.latitude, property_location.longitude
    )
    rounded = round(distance)
    if distance <= threshold:
        return LocationCheck(True, rounded, "Within expected range", accuracy_level, approximate)
    return LocationCheck(
        False, rounded, f"Capture location is {format_distance(distance)} from property", accuracy_level, approximate
    )
