"""
Unit tests for wound measurement.

Tests:
- Convex hull and minimum-area rectangle geometry
- Pixel to centimeter conversion on synthetic masks
- Depth and volume
- Plausibility warnings
"""

import math

import pytest
import numpy as np
import sys
import os

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from calibration_detector import manual_calibration
from fixtures.synthetic_images import ellipse_mask, square_mask
from wound_errors import InvalidCalibration
from wound_measurement import (
    WARNING_AREA,
    WARNING_AREA_RATIO,
    WARNING_ASPECT_RATIO,
    WARNING_DEGENERATE,
    WARNING_DIMENSIONS,
    MeasurementEngine,
    contour_perimeter,
    convex_hull,
    measurement_summary,
    min_area_rect,
    polygon_area,
)
from wound_pipeline import segmentation_from_mask
from wound_types import CalibrationResult, MarkerType, Point, SegmentationResult, WoundMeasurement


def calibration_at(pixels_per_cm: float) -> CalibrationResult:
    return manual_calibration(Point(0, 0), Point(pixels_per_cm, 0), 1.0)


def rotated_rectangle(length: float, width: float, angle: float, center=(100.0, 100.0)):
    cos_a, sin_a = math.cos(angle), math.sin(angle)
    corners = []
    for dx, dy in ((-1, -1), (1, -1), (1, 1), (-1, 1)):
        x = dx * length / 2
        y = dy * width / 2
        corners.append(Point(center[0] + x * cos_a - y * sin_a, center[1] + x * sin_a + y * cos_a))
    return corners


class TestConvexHull:
    """Tests for the Graham scan."""

    def test_interior_and_collinear_points_dropped(self):
        points = [Point(0, 0), Point(1, 0), Point(2, 0), Point(2, 2), Point(0, 2), Point(1, 1)]

        hull = convex_hull(points)

        assert hull == [Point(0, 0), Point(2, 0), Point(2, 2), Point(0, 2)]

    def test_hull_of_hull_is_unchanged(self):
        rng = np.random.default_rng(7)
        points = [Point(float(x), float(y)) for x, y in rng.random((50, 2)) * 100]

        hull = convex_hull(points)

        assert convex_hull(hull) == hull

    def test_hull_contains_extreme_points(self):
        rng = np.random.default_rng(3)
        points = [Point(float(x), float(y)) for x, y in rng.random((40, 2)) * 50]

        hull = convex_hull(points)

        assert min(points, key=lambda p: p.x) in hull
        assert max(points, key=lambda p: p.x) in hull
        assert max(points, key=lambda p: p.y) in hull

    def test_fewer_than_three_points_returned_as_is(self):
        points = [Point(3, 4), Point(1, 1)]
        assert convex_hull(points) == points


class TestMinAreaRect:
    """Tests for the rotating-calipers rectangle."""

    @pytest.mark.parametrize("angle", [0.0, math.pi / 6, math.pi / 4, 1.2])
    def test_recovers_rotated_rectangle(self, angle):
        rect = min_area_rect(convex_hull(rotated_rectangle(10.0, 4.0, angle)))

        assert max(rect.width, rect.height) == pytest.approx(10.0)
        assert min(rect.width, rect.height) == pytest.approx(4.0)

    def test_rectangle_bounds_the_hull(self):
        rng = np.random.default_rng(11)
        points = [Point(float(x), float(y)) for x, y in rng.random((60, 2)) * 80]
        hull = convex_hull(points)

        rect = min_area_rect(hull)

        xs = [p.x for p in points]
        ys = [p.y for p in points]
        bbox_area = (max(xs) - min(xs)) * (max(ys) - min(ys))
        assert polygon_area(hull) <= rect.area + 1e-6
        assert rect.area <= bbox_area + 1e-6

    def test_degenerate_hull_gives_zero_rectangle(self):
        assert min_area_rect([Point(0, 0), Point(5, 5)]).area == 0.0

    def test_polygon_area_and_perimeter_of_square(self):
        square = [Point(0, 0), Point(4, 0), Point(4, 4), Point(0, 4)]

        assert polygon_area(square) == 16.0
        assert contour_perimeter(square) == 16.0


class TestCalculateMeasurements:
    """Tests for pixel to centimeter conversion."""

    @pytest.mark.parametrize("ppc", [5, 10, 20, 40])
    def test_unit_square(self, engine, ppc):
        segmentation = segmentation_from_mask(square_mask((100, 100), (10, 10), ppc))

        measurement = engine.calculate_measurements(segmentation, calibration_at(ppc))

        assert measurement.area == 1.0
        # Contour runs through pixel centres, one pixel short of the full side
        assert measurement.length == pytest.approx((ppc - 1) / ppc, abs=0.01)
        assert measurement.width == pytest.approx((ppc - 1) / ppc, abs=0.01)
        assert measurement.perimeter == pytest.approx(4 * (ppc - 1) / ppc, abs=0.01)
        assert measurement.depth is None
        assert measurement.volume is None

    def test_ellipse_dimensions(self, engine):
        segmentation = segmentation_from_mask(ellipse_mask((120, 160), (80, 60), (50, 20)))

        measurement = engine.calculate_measurements(segmentation, calibration_at(10))

        assert measurement.length == pytest.approx(10.0, abs=0.3)
        assert measurement.width == pytest.approx(4.0, abs=0.3)
        assert measurement.area == pytest.approx(math.pi * 5 * 2, rel=0.05)

    def test_boolean_mask_counts_true_pixels(self, engine):
        mask = np.zeros((50, 50), dtype=bool)
        mask[10:20, 10:30] = True
        segmentation = SegmentationResult(
            mask=mask,
            contour=(Point(10, 10), Point(29, 10), Point(29, 19), Point(10, 19)),
            confidence=0.9,
        )

        measurement = engine.calculate_measurements(segmentation, calibration_at(10))

        assert measurement.area == 2.0

    def test_foreground_threshold_is_injected(self):
        mask = np.zeros((40, 40), dtype=np.uint8)
        mask[0:10, 0:10] = 100
        contour = (Point(0, 0), Point(9, 0), Point(9, 9), Point(0, 9))
        segmentation = SegmentationResult(mask=mask, contour=contour, confidence=1.0)

        default = MeasurementEngine().calculate_measurements(segmentation, calibration_at(10))
        lenient = MeasurementEngine(foreground_threshold=50).calculate_measurements(
            segmentation, calibration_at(10)
        )

        assert default.area == 0.0
        assert lenient.area == 1.0

    def test_undetected_calibration_raises(self, engine, undetected_calibration):
        segmentation = segmentation_from_mask(square_mask((50, 50), (5, 5), 10))

        with pytest.raises(InvalidCalibration) as exc_info:
            engine.calculate_measurements(segmentation, undetected_calibration)

        assert exc_info.value.detected is False

    def test_zero_scale_raises(self, engine):
        segmentation = segmentation_from_mask(square_mask((50, 50), (5, 5), 10))
        calibration = CalibrationResult(
            detected=True, pixels_per_cm=0.0, confidence=0.9, marker_type=MarkerType.CIRCLE
        )

        with pytest.raises(InvalidCalibration) as exc_info:
            engine.calculate_measurements(segmentation, calibration)

        assert exc_info.value.pixels_per_cm == 0.0
        assert isinstance(exc_info.value, ValueError)


class TestDepthAndVolume:
    """Tests for manual depth and derived volume."""

    def test_volume_uses_default_coefficient(self, engine):
        measurement = WoundMeasurement(area=10.0, length=4.0, width=3.0, perimeter=12.0)

        deep = engine.with_depth(measurement, 2.0)

        assert deep.depth == 2.0
        assert deep.volume == 6.54
        assert measurement.depth is None

    def test_volume_coefficient_is_injected(self):
        engine = MeasurementEngine(volume_coefficient=0.5)

        assert engine.calculate_volume(10.0, 2.0) == 10.0

    def test_volume_rounds_half_up(self):
        engine = MeasurementEngine(volume_coefficient=0.5)

        assert engine.calculate_volume(0.25, 1.0) == 0.13

    def test_zero_depth_gives_zero_volume(self, engine):
        measurement = WoundMeasurement(area=10.0, length=4.0, width=3.0, perimeter=12.0)

        assert engine.with_depth(measurement, 0.0).volume == 0.0

    def test_negative_depth_rejected(self, engine):
        measurement = WoundMeasurement(area=10.0, length=4.0, width=3.0, perimeter=12.0)

        with pytest.raises(ValueError):
            engine.with_depth(measurement, -0.5)

    def test_depth_recorded_only_once(self, engine):
        measurement = WoundMeasurement(area=10.0, length=4.0, width=3.0, perimeter=12.0)
        deep = engine.with_depth(measurement, 1.0)

        with pytest.raises(ValueError):
            engine.with_depth(deep, 2.0)


class TestValidation:
    """Tests for plausibility warnings."""

    def test_plausible_measurement_is_valid(self, engine):
        measurement = WoundMeasurement(area=9.42, length=4.0, width=3.0, perimeter=11.0)

        validation = engine.validate_measurement(measurement)

        assert validation.valid is True
        assert validation.warnings == ()

    def test_huge_area(self, engine):
        measurement = WoundMeasurement(area=1200.0, length=40.0, width=38.0, perimeter=120.0)

        assert engine.validate_measurement(measurement).warnings == (WARNING_AREA,)

    def test_huge_dimensions(self, engine):
        measurement = WoundMeasurement(area=942.48, length=60.0, width=20.0, perimeter=140.0)

        assert engine.validate_measurement(measurement).warnings == (WARNING_DIMENSIONS,)

    def test_extreme_aspect_ratio(self, engine):
        measurement = WoundMeasurement(area=15.71, length=20.0, width=1.0, perimeter=42.0)

        validation = engine.validate_measurement(measurement)

        assert validation.valid is False
        assert validation.warnings == (WARNING_ASPECT_RATIO,)

    def test_area_inconsistent_with_dimensions(self, engine):
        measurement = WoundMeasurement(area=1.0, length=4.0, width=4.0, perimeter=16.0)

        assert engine.validate_measurement(measurement).warnings == (WARNING_AREA_RATIO,)

    def test_area_ratio_band_is_injected(self):
        engine = MeasurementEngine(area_ratio_band=(0.05, 1.5))
        measurement = WoundMeasurement(area=1.0, length=4.0, width=4.0, perimeter=16.0)

        assert engine.validate_measurement(measurement).valid is True

    def test_collinear_outline_is_degenerate(self, engine):
        mask = np.zeros((20, 20), dtype=np.uint8)
        mask[5, 0:10] = 255
        segmentation = SegmentationResult(
            mask=mask,
            contour=(Point(0, 5), Point(5, 5), Point(9, 5)),
            confidence=1.0,
        )

        measurement = engine.calculate_measurements(segmentation, calibration_at(10))
        validation = engine.validate_measurement(measurement)

        assert measurement.width == 0.0
        assert validation.warnings == (WARNING_DEGENERATE,)

    def test_empty_measurement_has_no_warnings(self, engine):
        measurement = WoundMeasurement(area=0.0, length=0.0, width=0.0, perimeter=0.0)

        assert engine.validate_measurement(measurement).valid is True

    def test_validation_serializes(self, engine):
        measurement = WoundMeasurement(area=1.0, length=4.0, width=4.0, perimeter=16.0)

        data = engine.validate_measurement(measurement).to_dict()

        assert data == {"valid": False, "warnings": [WARNING_AREA_RATIO]}


class TestMeasurementSummary:
    """Tests for the text summary."""

    def test_summary_without_depth(self):
        summary = measurement_summary(WoundMeasurement(area=2.5, length=2.0, width=1.5, perimeter=6.1))

        assert summary.splitlines() == [
            "Area: 2.5 cm²",
            "Length: 2.0 cm",
            "Width: 1.5 cm",
            "Perimeter: 6.1 cm",
        ]

    def test_summary_with_depth_and_volume(self, engine):
        measurement = engine.with_depth(
            WoundMeasurement(area=10.0, length=4.0, width=3.0, perimeter=12.0), 2.0
        )

        summary = measurement_summary(measurement)

        assert "Depth: 2.0 cm" in summary
        assert summary.endswith("Volume: 6.54 cm³")
