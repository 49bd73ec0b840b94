"""
Pytest configuration and shared fixtures for Wound Measurement tests.

This module provides:
- FastAPI TestClient configuration (fresh app per test)
- Engine fixtures built with default thresholds
- Synthetic image fixtures (ruler, disk, checkerboard, textures)
- Calibration fixtures
"""

import pytest
import os
import sys
from datetime import datetime, timezone
from typing import Generator

# Add backend directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Keep test logs quiet and off disk
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_OUTPUT", "stdout")

from fastapi.testclient import TestClient

from calibration_detector import CalibrationDetector, manual_calibration
from fixtures.synthetic_images import (
    checkerboard_image,
    disk_image,
    encode_png,
    flat_image,
    ruler_image,
    textured_image,
)
from photo_quality import QualityAssessor
from wound_measurement import MeasurementEngine
from wound_types import CalibrationResult, MarkerType, Point, RasterImage, RulerMarker


# =============================================================================
# APPLICATION FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def app():
    """Fresh application (engines and store) for each test."""
    from main import create_app
    return create_app()


@pytest.fixture(scope="function")
def client(app) -> Generator[TestClient, None, None]:
    """Create a TestClient for making requests to the app."""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


# =============================================================================
# ENGINE FIXTURES
# =============================================================================

@pytest.fixture
def detector() -> CalibrationDetector:
    return CalibrationDetector()


@pytest.fixture
def assessor() -> QualityAssessor:
    return QualityAssessor()


@pytest.fixture
def engine() -> MeasurementEngine:
    return MeasurementEngine()


# =============================================================================
# IMAGE FIXTURES
# =============================================================================

@pytest.fixture
def ruler_frame() -> RasterImage:
    """200x100 ruler with ticks every 20 px."""
    return RasterImage.from_array(ruler_image())


@pytest.fixture
def disk_frame() -> RasterImage:
    """100x100 frame with a radius-10 disk at (50, 50)."""
    return RasterImage.from_array(disk_image())


@pytest.fixture
def checkerboard_frame() -> RasterImage:
    """200x200 checkerboard with 40 px cells."""
    return RasterImage.from_array(checkerboard_image())


@pytest.fixture
def textured_frame() -> RasterImage:
    """Sharp, evenly lit random texture."""
    return RasterImage.from_array(textured_image())


@pytest.fixture
def blank_frame() -> RasterImage:
    return RasterImage.from_array(flat_image())


@pytest.fixture
def ruler_png() -> bytes:
    return encode_png(ruler_image())


# =============================================================================
# CALIBRATION FIXTURES
# =============================================================================

@pytest.fixture
def manual_20ppc() -> CalibrationResult:
    """Manual calibration at exactly 20 px/cm."""
    return manual_calibration(Point(0, 0), Point(20, 0), 1.0)


@pytest.fixture
def regular_ruler_calibration() -> CalibrationResult:
    """Detected ruler with perfectly even ticks (no perspective distortion)."""
    ticks = tuple(Point(10.0 + 20 * i, 30.0) for i in range(6))
    return CalibrationResult(
        detected=True,
        pixels_per_cm=20.0,
        confidence=1.0,
        marker_type=MarkerType.RULER,
        reference_points=ticks,
        marker=RulerMarker(ticks=ticks, tick_spacing_px=20.0, angle_rad=0.0),
    )


@pytest.fixture
def undetected_calibration() -> CalibrationResult:
    return CalibrationResult.undetected(MarkerType.RULER, "no marker")


@pytest.fixture
def utc_now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
