"""
Calibration Marker Detection

Locates a physical scale reference in a wound photo and derives the
pixels-per-centimeter factor:
- Ruler: Hough lines over Sobel edges, tick marks from an intensity profile
- Circle: Hough circle voting with a circularity check
- Grid: Harris corners and the median corner spacing
- Manual: operator-entered segment of known length

Hypotheses run in priority order (ruler, circle, grid). The first detected
result above the acceptance confidence wins; otherwise the most confident
candidate is returned, which may be undetected.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from edge_primitives import (
    GrayscaleField,
    corner_points,
    harris_response,
    otsu_threshold,
    sobel_magnitude,
    to_grayscale,
)
from structured_logging import get_logger, log_calibration
from wound_errors import DetectionFailure
from wound_types import (
    CalibrationResult,
    CircleMarker,
    GridMarker,
    ManualMarker,
    MarkerSpecs,
    MarkerType,
    Point,
    RasterImage,
    RulerMarker,
)

logger = get_logger(__name__)


# =============================================================================
# HOUGH LINES AND RULER TICKS
# =============================================================================

@dataclass(frozen=True)
class HoughLine:
    rho: int
    theta: float
    votes: int


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5).astype(np.int64)


def hough_lines(
    binary: np.ndarray,
    theta_steps: int = 180,
    vote_fraction: float = 0.2,
    max_lines: int = 20,
) -> List[HoughLine]:
    """
    ρ–θ Hough transform over a binary edge map.

    Args:
        binary: (height, width) boolean edge map
        theta_steps: number of θ buckets over [0, π)
        vote_fraction: lines need more than vote_fraction·max(W, H) votes
        max_lines: strongest lines kept

    Returns:
        Lines sorted by votes, strongest first
    """
    height, width = binary.shape
    rho_max = int(math.ceil(math.hypot(width, height)))
    ys, xs = np.nonzero(binary)
    if xs.size == 0:
        return []

    xs = xs.astype(np.float64)
    ys = ys.astype(np.float64)
    accumulator = np.zeros((2 * rho_max, theta_steps), dtype=np.int64)

    for t in range(theta_steps):
        theta = t * math.pi / theta_steps
        rho = _round_half_up(xs * math.cos(theta) + ys * math.sin(theta)) + rho_max
        accumulator[:, t] = np.bincount(rho, minlength=2 * rho_max + 1)[:2 * rho_max]

    flat = accumulator.ravel()
    peaks = np.nonzero(flat > max(width, height) * vote_fraction)[0]
    if peaks.size == 0:
        return []

    order = np.argsort(-flat[peaks], kind="stable")[:max_lines]
    lines = []
    for idx in peaks[order]:
        r, t = divmod(int(idx), theta_steps)
        lines.append(HoughLine(rho=r - rho_max, theta=t * math.pi / theta_steps, votes=int(flat[idx])))
    return lines


def largest_parallel_group(lines: Sequence[HoughLine], tolerance: float = 0.1) -> List[HoughLine]:
    """
    Greedy grouping of lines whose θ is within tolerance of a group's mean θ.

    Returns the largest group (the later one on ties), or [] for no lines.
    """
    groups: List[List[HoughLine]] = []
    for line in lines:
        for group in groups:
            mean_theta = sum(l.theta for l in group) / len(group)
            if abs(line.theta - mean_theta) < tolerance:
                group.append(line)
                break
        else:
            groups.append([line])

    largest: List[HoughLine] = []
    for group in groups:
        if len(group) >= len(largest):
            largest = group
    return largest


def group_axis_theta(group: Sequence[HoughLine], theta_steps: int = 180) -> float:
    """
    Mean Hough normal angle of a parallel group, snapped to the accumulator's
    θ grid (a multiple of π / theta_steps).
    """
    step = math.pi / theta_steps
    mean_theta = sum(line.theta for line in group) / len(group)
    return math.floor(mean_theta / step + 0.5) * step


def tick_marks(gray: GrayscaleField, axis_theta: float) -> List[Point]:
    """
    Dark tick marks along the ruler direction.

    Intensities are averaged into a 1-D profile along the axis perpendicular to
    the Hough normal (i.e. along the ruler), centered on the image. A tick is a
    profile sample strictly darker than its neighbours at ±1 and ±2.

    Args:
        gray: grayscale field
        axis_theta: Hough normal angle of the ruler edges

    Returns:
        Tick positions mapped back to image coordinates, in profile order
    """
    height, width = gray.shape
    direction = axis_theta + math.pi / 2
    # Drop floating noise so axis-aligned rulers project onto whole bins
    cos_d = round(math.cos(direction), 12)
    sin_d = round(math.sin(direction), 12)

    length = int(math.floor(math.hypot(width, height)))
    if length < 5:
        return []
    half = length / 2

    ys, xs = np.indices((height, width), dtype=np.float64)
    proj = _round_half_up((xs - width / 2) * cos_d + (ys - height / 2) * sin_d + half).ravel()
    values = np.asarray(gray, dtype=np.float64).ravel()
    inside = (proj >= 0) & (proj < length)

    sums = np.bincount(proj[inside], weights=values[inside], minlength=length)[:length]
    counts = np.bincount(proj[inside], minlength=length)[:length]
    profile = np.divide(sums, counts, out=np.zeros(length), where=counts > 0)

    center = profile[2:-2]
    is_tick = (
        (center < profile[1:-3]) & (center < profile[3:-1]) &
        (center < profile[:-4]) & (center < profile[4:])
    )

    ticks = []
    for i in np.nonzero(is_tick)[0] + 2:
        offset = i - half
        ticks.append(Point(offset * cos_d + width / 2, offset * sin_d + height / 2))
    return ticks


def consecutive_spacings(points: Sequence[Point]) -> List[float]:
    return [points[i].distance_to(points[i - 1]) for i in range(1, len(points))]


def spacing_confidence(points: Sequence[Point]) -> float:
    """max(0, 1 − 2·CV) of consecutive spacings; 0 with fewer than 3 points."""
    if len(points) < 3:
        return 0.0
    spacings = np.array(consecutive_spacings(points))
    mean = spacings.mean()
    if mean <= 0:
        return 0.0
    cv = spacings.std() / mean
    return float(max(0.0, 1.0 - cv * 2))


# =============================================================================
# HOUGH CIRCLES
# =============================================================================

@dataclass(frozen=True)
class CircleCandidate:
    center_x: int
    center_y: int
    radius: float
    circularity: float
    votes: int


def circularity(edge_x: np.ndarray, edge_y: np.ndarray, cx: float, cy: float, radius: float) -> float:
    """Fraction of edge pixels within 0.1·r of the circle over 2πr, capped at 1."""
    tolerance = radius * 0.1
    distance = np.hypot(edge_x - cx, edge_y - cy)
    on_circle = int(np.count_nonzero(np.abs(distance - radius) < tolerance))
    return min(1.0, on_circle / (2 * math.pi * radius))


def hough_circles(
    binary: np.ndarray,
    radius_steps: int = 20,
    min_radius_fraction: float = 0.05,
    max_radius_fraction: float = 0.3,
    angle_step_deg: int = 10,
    sample_every: int = 10,
    vote_fraction: float = 0.1,
    min_circularity: float = 0.7,
) -> List[CircleCandidate]:
    """
    Circle voting over a binary edge map.

    Every sample_every-th edge pixel votes for the centers it would have at each
    candidate radius and angle. Centers with enough votes are kept when the
    circularity over all edge pixels exceeds min_circularity.
    """
    height, width = binary.shape
    ys, xs = np.nonzero(binary)
    if xs.size == 0:
        return []

    edge_x = xs.astype(np.float64)
    edge_y = ys.astype(np.float64)
    sample_x = edge_x[::sample_every]
    sample_y = edge_y[::sample_every]
    min_vote = sample_x.size * vote_fraction

    min_radius = min(width, height) * min_radius_fraction
    max_radius = min(width, height) * max_radius_fraction
    angles = np.radians(np.arange(0, 360, angle_step_deg))
    cos_a = np.cos(angles)[None, :]
    sin_a = np.sin(angles)[None, :]

    circles = []
    for step in range(radius_steps):
        radius = min_radius + (step / radius_steps) * (max_radius - min_radius)
        cx = _round_half_up(sample_x[:, None] - radius * cos_a)
        cy = _round_half_up(sample_y[:, None] - radius * sin_a)
        inside = (cx >= 0) & (cx < width) & (cy >= 0) & (cy < height)
        votes = np.bincount((cy[inside] * width + cx[inside]), minlength=width * height)

        for key in np.nonzero(votes > min_vote)[0]:
            center_y, center_x = divmod(int(key), width)
            score = circularity(edge_x, edge_y, center_x, center_y, radius)
            if score > min_circularity:
                circles.append(CircleCandidate(center_x, center_y, radius, score, int(votes[key])))

    return circles


# =============================================================================
# GRID
# =============================================================================

def median_cell_size(points: Sequence[Point], min_step: float = 5.0) -> float:
    """Median of the per-axis spacings between consecutive (x, y)-sorted corners."""
    spacings = []
    for i in range(1, len(points)):
        dx = abs(points[i].x - points[i - 1].x)
        dy = abs(points[i].y - points[i - 1].y)
        if dx > min_step:
            spacings.append(dx)
        if dy > min_step:
            spacings.append(dy)
    if not spacings:
        return 0.0
    spacings.sort()
    return float(spacings[len(spacings) // 2])


# =============================================================================
# DETECTOR
# =============================================================================

class CalibrationDetector:
    """
    Scale marker detector. Construct one per pipeline; it holds only the
    immutable marker specifications.
    """

    PRIORITY = (MarkerType.RULER, MarkerType.CIRCLE, MarkerType.GRID)

    def __init__(self, specs: Optional[MarkerSpecs] = None):
        self.specs = specs or MarkerSpecs()
        self._hypotheses: Dict[MarkerType, Callable[[GrayscaleField, np.ndarray], CalibrationResult]] = {
            MarkerType.RULER: self._ruler_hypothesis,
            MarkerType.CIRCLE: self._circle_hypothesis,
            MarkerType.GRID: self._grid_hypothesis,
        }

    def detect_calibration(self, image: RasterImage) -> CalibrationResult:
        """
        Detect a calibration marker in the frame.

        Args:
            image: RGBA frame

        Returns:
            CalibrationResult; detected=False with pixels_per_cm=0 when no
            marker was found
        """
        start_time = time.time()
        gray = to_grayscale(image)
        edges = self._binary_edges(gray)

        candidates = []
        chosen = None
        for marker_type in self.PRIORITY:
            result = self._run(marker_type, gray, edges)
            candidates.append(result)
            if result.detected and result.confidence > self.specs.accept_confidence:
                chosen = result
                break

        if chosen is None:
            chosen = candidates[0]
            for candidate in candidates[1:]:
                if not chosen.confidence > candidate.confidence:
                    chosen = candidate

        log_calibration(
            marker_type=chosen.marker_type.value,
            detected=chosen.detected,
            confidence=chosen.confidence,
            pixels_per_cm=chosen.pixels_per_cm,
            duration_ms=(time.time() - start_time) * 1000,
            failure_reason=chosen.failure_reason,
            hypotheses_tried=len(candidates),
        )
        return chosen

    def detect_ruler(self, image: RasterImage) -> CalibrationResult:
        gray = to_grayscale(image)
        return self._run(MarkerType.RULER, gray, self._binary_edges(gray))

    def detect_circle(self, image: RasterImage) -> CalibrationResult:
        gray = to_grayscale(image)
        return self._run(MarkerType.CIRCLE, gray, self._binary_edges(gray))

    def detect_grid(self, image: RasterImage) -> CalibrationResult:
        gray = to_grayscale(image)
        return self._run(MarkerType.GRID, gray, None)

    # -------------------------------------------------------------------------
    # Hypotheses
    # -------------------------------------------------------------------------

    @staticmethod
    def _binary_edges(gray: GrayscaleField) -> np.ndarray:
        edges = sobel_magnitude(gray)
        return edges > otsu_threshold(edges)

    def _run(self, marker_type: MarkerType, gray: GrayscaleField, edges) -> CalibrationResult:
        try:
            result = self._hypotheses[marker_type](gray, edges)
        except DetectionFailure as e:
            logger.debug(f"{marker_type.value} hypothesis rejected: {e.reason}")
            return CalibrationResult.undetected(marker_type, e.reason)

        logger.debug(
            f"{marker_type.value} hypothesis accepted",
            extra={"confidence": round(result.confidence, 3), "pixels_per_cm": round(result.pixels_per_cm, 3)},
        )
        return result

    def _ruler_hypothesis(self, gray: GrayscaleField, edges: np.ndarray) -> CalibrationResult:
        lines = hough_lines(edges)
        group = largest_parallel_group(lines)
        if len(group) < 2:
            raise DetectionFailure("ruler", f"found {len(group)} parallel edge lines, need 2")

        axis_theta = group_axis_theta(group)
        ticks = tick_marks(gray, axis_theta)
        if len(ticks) < self.specs.ruler_min_ticks:
            raise DetectionFailure(
                "ruler", f"found {len(ticks)} tick marks, need {self.specs.ruler_min_ticks}"
            )

        spacing = float(np.mean(consecutive_spacings(ticks)))
        if spacing <= 0:
            raise DetectionFailure("ruler", "tick marks coincide")

        return CalibrationResult(
            detected=True,
            pixels_per_cm=spacing / self.specs.ruler_tick_spacing_cm,
            confidence=spacing_confidence(ticks),
            marker_type=MarkerType.RULER,
            reference_points=tuple(ticks),
            marker=RulerMarker(
                ticks=tuple(ticks),
                tick_spacing_px=spacing,
                angle_rad=axis_theta + math.pi / 2,
            ),
        )

    def _circle_hypothesis(self, gray: GrayscaleField, edges: np.ndarray) -> CalibrationResult:
        """
        Most circular candidate wins; on equal circularity the candidate with more
        center votes is kept, regardless of the order candidates were found in.
        """
        circles = hough_circles(edges)
        if not circles:
            raise DetectionFailure("circle", "no circular marker above circularity threshold")

        best = max(circles, key=lambda c: (c.circularity, c.votes))
        center = Point(float(best.center_x), float(best.center_y))

        return CalibrationResult(
            detected=True,
            pixels_per_cm=best.radius * 2 / self.specs.circle_diameter_cm,
            confidence=best.circularity,
            marker_type=MarkerType.CIRCLE,
            reference_points=(center, Point(center.x + best.radius, center.y)),
            marker=CircleMarker(center=center, radius_px=best.radius, circularity=best.circularity),
        )

    def _grid_hypothesis(self, gray: GrayscaleField, edges=None) -> CalibrationResult:
        corners = corner_points(harris_response(gray))
        required = self.specs.grid_min_cells * 4
        if len(corners) < required:
            raise DetectionFailure("grid", f"found {len(corners)} grid corners, need {required}")

        cell_size = median_cell_size(corners)
        if cell_size <= 0:
            raise DetectionFailure("grid", "grid corners have no measurable spacing")

        return CalibrationResult(
            detected=True,
            pixels_per_cm=cell_size / self.specs.grid_cell_size_cm,
            confidence=min(1.0, len(corners) / 20),
            marker_type=MarkerType.GRID,
            reference_points=tuple(corners),
            marker=GridMarker(cell_size_px=cell_size, corner_count=len(corners)),
        )


# =============================================================================
# MANUAL CALIBRATION
# =============================================================================

def manual_calibration(p1: Point, p2: Point, distance_cm: float) -> CalibrationResult:
    """
    Calibration from two operator-placed points a known distance apart.

    Args:
        p1: first point in pixels
        p2: second point in pixels
        distance_cm: physical distance between the points

    Returns:
        Detected MANUAL calibration with confidence 1.0

    Raises:
        ValueError: non-positive distance or coincident points
    """
    if not distance_cm > 0:
        raise ValueError(f"distance_cm must be positive, got {distance_cm}")

    distance_px = math.hypot(p2.x - p1.x, p2.y - p1.y)
    if distance_px <= 0:
        raise ValueError("Calibration points must not coincide")

    return CalibrationResult(
        detected=True,
        pixels_per_cm=distance_px / distance_cm,
        confidence=1.0,
        marker_type=MarkerType.MANUAL,
        reference_points=(p1, p2),
        marker=ManualMarker(p1=p1, p2=p2, distance_cm=distance_cm),
    )
