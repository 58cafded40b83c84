"""Tests for capture location checks."""
import pytest

from location_utils import (
    format_distance,
    format_gps_accuracy,
    haversine_distance,
    is_approximate_location,
    validate_capture_location,
)
from schemas import GPSFix

PROPERTY = GPSFix(latitude=-36.8485, longitude=174.7633)


def test_haversine_same_point_is_zero():
    assert haversine_distance(-36.8485, 174.7633, -36.8485, 174.7633) == 0


def test_haversine_known_distance():
    # One degree of latitude on the mean sphere
    assert haversine_distance(0, 0, 1, 0) == pytest.approx(111195, rel=1e-4)


def test_within_threshold_is_valid():
    nearby = GPSFix(latitude=-36.8490, longitude=174.7640)
    check = validate_capture_location(nearby, PROPERTY, threshold_m=500)

    assert check.is_valid is True
    assert 0 < check.distance_m < 500
    assert check.message == "Within expected range"


def test_outside_threshold_is_flagged():
    far = GPSFix(latitude=-36.8608, longitude=174.7780)
    check = validate_capture_location(far, PROPERTY, threshold_m=500)

    assert check.is_valid is False
    assert check.message == "Capture location is 1.9km from property"


def test_no_fix_is_invalid():
    check = validate_capture_location(None, PROPERTY)
    assert check.is_valid is False
    assert check.distance_m is None
    assert check.message == "No GPS signal"


def test_no_property_location_passes():
    check = validate_capture_location(GPSFix(latitude=1.0, longitude=1.0, accuracy=8.0), None)
    assert check.is_valid is True
    assert check.distance_m is None
    assert check.accuracy_level == "Excellent"


def test_default_threshold_from_settings(monkeypatch):
    import location_utils

    monkeypatch.setattr(location_utils.settings, "CAPTURE_LOCATION_THRESHOLD_M", 5000.0)
    far = GPSFix(latitude=-36.8608, longitude=174.7780)
    assert validate_capture_location(far, PROPERTY).is_valid is True


@pytest.mark.parametrize(
    "accuracy,approximate",
    [(50, False), (1000, False), (1001, True), (5000, True)],
)
def test_is_approximate_location(accuracy, approximate):
    assert is_approximate_location(accuracy) is approximate


@pytest.mark.parametrize(
    "accuracy,level",
    [(5, "Excellent"), (10, "Good"), (29.9, "Good"), (30, "Fair"), (100, "Poor"), (1000, "Poor"),
     (1500, "Approximate only")],
)
def test_format_gps_accuracy(accuracy, level):
    assert format_gps_accuracy(accuracy) == level


def test_format_distance():
    assert format_distance(149.6) == "150m"
    assert format_distance(1500) == "1.5km"
