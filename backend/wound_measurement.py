"""
Wound Measurement Engine

Converts a segmentation mask and contour into physical wound dimensions:
- Area from the foreground pixel count
- Perimeter from the closed contour
- Length and width from the minimum-area bounding rectangle of the convex hull
- Volume from a manually entered depth
- Plausibility warnings for implausible geometry
"""

import math
from dataclasses import dataclass, replace
from typing import List, Sequence, Tuple

import numpy as np

from structured_logging import get_logger, log_measurement
from wound_errors import InvalidCalibration
from wound_types import (
    CalibrationResult,
    MeasurementValidation,
    Point,
    SegmentationResult,
    WoundMeasurement,
    round_half_up,
)

logger = get_logger(__name__)

WARNING_AREA = "Area exceeds 1000 cm² - verify calibration"
WARNING_DIMENSIONS = "Dimensions exceed 50 cm - verify calibration"
WARNING_ASPECT_RATIO = "Unusual aspect ratio detected - verify segmentation"
WARNING_AREA_RATIO = "Area inconsistent with dimensions - verify segmentation"
WARNING_DEGENERATE = "Degenerate wound outline - verify segmentation"


# =============================================================================
# GEOMETRY
# =============================================================================

@dataclass(frozen=True)
class RotatedRect:
    width: float
    height: float
    angle: float  # radians of the hull edge the rectangle is aligned with

    @property
    def area(self) -> float:
        return self.width * self.height


def cross_product(p1: Point, p2: Point, p3: Point) -> float:
    """Z component of (p2 − p1) × (p3 − p1); positive for a left turn."""
    return (p2.x - p1.x) * (p3.y - p1.y) - (p2.y - p1.y) * (p3.x - p1.x)


def convex_hull(points: Sequence[Point]) -> List[Point]:
    """
    Graham scan.

    The anchor is the point with the smallest y (smallest x on ties); the rest
    are ordered by polar angle about it, nearer points first on equal angles.
    Collinear boundary points are dropped.

    Args:
        points: input points, any order

    Returns:
        Hull vertices starting at the anchor; inputs with fewer than 3 points
        are returned unchanged
    """
    if len(points) < 3:
        return list(points)

    anchor = min(points, key=lambda p: (p.y, p.x))
    rest = list(points)
    rest.remove(anchor)
    rest.sort(key=lambda p: (math.atan2(p.y - anchor.y, p.x - anchor.x),
                             (p.x - anchor.x) ** 2 + (p.y - anchor.y) ** 2))

    hull = [anchor, rest[0]]
    for point in rest[1:]:
        while len(hull) > 1 and cross_product(hull[-2], hull[-1], point) <= 0:
            hull.pop()
        hull.append(point)

    return hull


def _rotate(points: np.ndarray, angle: float, center: np.ndarray) -> np.ndarray:
    cos_a = math.cos(angle)
    sin_a = math.sin(angle)
    d = points - center
    return np.column_stack((
        center[0] + d[:, 0] * cos_a - d[:, 1] * sin_a,
        center[1] + d[:, 0] * sin_a + d[:, 1] * cos_a,
    ))


def min_area_rect(hull: Sequence[Point]) -> RotatedRect:
    """
    Minimum-area bounding rectangle by rotating calipers.

    For each hull edge the hull is rotated by the negative edge angle about the
    first hull point and its axis-aligned box is measured; the smallest box wins.
    Hulls with fewer than 3 points give a zero rectangle.
    """
    if len(hull) < 3:
        return RotatedRect(0.0, 0.0, 0.0)

    coords = np.array([(p.x, p.y) for p in hull], dtype=np.float64)
    origin = coords[0]
    best = None

    for i in range(len(coords)):
        p1 = coords[i]
        p2 = coords[(i + 1) % len(coords)]
        angle = math.atan2(p2[1] - p1[1], p2[0] - p1[0])

        rotated = _rotate(coords, -angle, origin)
        width = float(rotated[:, 0].max() - rotated[:, 0].min())
        height = float(rotated[:, 1].max() - rotated[:, 1].min())

        if best is None or width * height < best.area:
            best = RotatedRect(width, height, angle)

    return best


def polygon_area(points: Sequence[Point]) -> float:
    """Shoelace area of a simple polygon."""
    if len(points) < 3:
        return 0.0
    xs = np.array([p.x for p in points])
    ys = np.array([p.y for p in points])
    return float(abs(np.dot(xs, np.roll(ys, -1)) - np.dot(ys, np.roll(xs, -1))) / 2)


def contour_perimeter(contour: Sequence[Point]) -> float:
    """Length of the closed contour; 0 for fewer than 3 points."""
    if len(contour) < 3:
        return 0.0
    xs = np.array([p.x for p in contour])
    ys = np.array([p.y for p in contour])
    return float(np.hypot(np.roll(xs, -1) - xs, np.roll(ys, -1) - ys).sum())


# =============================================================================
# MEASUREMENT ENGINE
# =============================================================================

class MeasurementEngine:
    """
    Turns segmentation geometry into centimeters.

    volume_coefficient and area_ratio_band are empirical wound constants and
    are injected rather than hard-coded.
    """

    MAX_AREA_CM2 = 1000.0
    MAX_DIMENSION_CM = 50.0
    MAX_ASPECT_RATIO = 10.0

    def __init__(
        self,
        volume_coefficient: float = 0.327,
        area_ratio_band: Tuple[float, float] = (0.3, 1.5),
        foreground_threshold: int = 127,
    ):
        self.volume_coefficient = volume_coefficient
        self.area_ratio_band = area_ratio_band
        self.foreground_threshold = foreground_threshold

    def calculate_measurements(
        self,
        segmentation: SegmentationResult,
        calibration: CalibrationResult,
    ) -> WoundMeasurement:
        """
        Measure a segmented wound.

        Args:
            segmentation: mask and boundary contour from the segmentation model
            calibration: scale for the same frame

        Returns:
            WoundMeasurement with every figure rounded to 2 decimals

        Raises:
            InvalidCalibration: calibration not detected or non-positive scale
        """
        if not calibration.detected or not calibration.pixels_per_cm > 0:
            logger.warning(
                "Measurement requested without valid calibration",
                extra={
                    "detected": calibration.detected,
                    "pixels_per_cm": calibration.pixels_per_cm,
                    "marker_type": calibration.marker_type.value,
                },
            )
            raise InvalidCalibration(
                "Valid calibration required for measurement",
                pixels_per_cm=calibration.pixels_per_cm,
                detected=calibration.detected,
            )

        ppc = calibration.pixels_per_cm

        area_px = self.foreground_pixels(segmentation.mask)
        perimeter_px = contour_perimeter(segmentation.contour)
        length_px, width_px = self.length_width(segmentation.contour)

        measurement = WoundMeasurement(
            area=round_half_up(area_px / (ppc * ppc), 2),
            length=round_half_up(length_px / ppc, 2),
            width=round_half_up(width_px / ppc, 2),
            perimeter=round_half_up(perimeter_px / ppc, 2),
        )

        logger.debug(
            "Measured wound",
            extra={
                "area_px": area_px,
                "perimeter_px": round(perimeter_px, 2),
                "contour_points": len(segmentation.contour),
                "pixels_per_cm": round(ppc, 3),
            },
        )
        return measurement

    def foreground_pixels(self, mask: np.ndarray) -> int:
        if mask.dtype == np.bool_:
            return int(np.count_nonzero(mask))
        return int(np.count_nonzero(mask > self.foreground_threshold))

    @staticmethod
    def length_width(contour: Sequence[Point]) -> Tuple[float, float]:
        """(length, width) in pixels from the min-area rectangle of the hull."""
        if len(contour) < 3:
            return 0.0, 0.0
        rect = min_area_rect(convex_hull(contour))
        return max(rect.width, rect.height), min(rect.width, rect.height)

    def calculate_volume(self, area: float, depth: float) -> float:
        """Empirical wound volume (cm³) from area (cm²) and depth (cm)."""
        return round_half_up(self.volume_coefficient * area * depth, 2)

    def with_depth(self, measurement: WoundMeasurement, depth: float) -> WoundMeasurement:
        """
        Attach a manually entered depth and the derived volume.

        Raises:
            ValueError: negative depth, or depth already recorded
        """
        if depth < 0:
            raise ValueError(f"Depth must be non-negative, got {depth}")
        if measurement.depth is not None:
            raise ValueError("Depth has already been recorded for this measurement")

        return replace(
            measurement,
            depth=depth,
            volume=self.calculate_volume(measurement.area, depth),
        )

    def validate_measurement(self, measurement: WoundMeasurement) -> MeasurementValidation:
        """
        Flag physically implausible results. Never raises.

        Returns:
            MeasurementValidation with valid=False when any warning applies
        """
        warnings = []

        if measurement.area > self.MAX_AREA_CM2:
            warnings.append(WARNING_AREA)

        if measurement.length > self.MAX_DIMENSION_CM or measurement.width > self.MAX_DIMENSION_CM:
            warnings.append(WARNING_DIMENSIONS)

        if measurement.length <= 0 or measurement.width <= 0:
            if measurement.area > 0 or measurement.length > 0:
                warnings.append(WARNING_DEGENERATE)
        else:
            if measurement.length / measurement.width > self.MAX_ASPECT_RATIO:
                warnings.append(WARNING_ASPECT_RATIO)

            expected_area = (math.pi / 4) * measurement.length * measurement.width
            ratio = measurement.area / expected_area
            low, high = self.area_ratio_band
            if ratio < low or ratio > high:
                warnings.append(WARNING_AREA_RATIO)

        log_measurement(
            area_cm2=measurement.area,
            length_cm=measurement.length,
            width_cm=measurement.width,
            warnings=warnings,
        )
        return MeasurementValidation(valid=not warnings, warnings=tuple(warnings))


def measurement_summary(measurement: WoundMeasurement) -> str:
    """Multi-line text summary of a measurement."""
    lines = [
        f"Area: {measurement.area} cm²",
        f"Length: {measurement.length} cm",
        f"Width: {measurement.width} cm",
        f"Perimeter: {measurement.perimeter} cm",
    ]
    if measurement.depth is not None:
        lines.append(f"Depth: {measurement.depth} cm")
    if measurement.volume is not None:
        lines.append(f"Volume: {measurement.volume} cm³")
    return "\n".join(lines)
