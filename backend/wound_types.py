"""
Wound Measurement Data Types

Value types shared by the calibration, quality, measurement and analytics
engines. Everything here is immutable once built; derived views (progress,
analytics) are recomputed rather than mutated.
"""

import io
import math
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
from PIL import Image


def round_half_up(value: float, digits: int = 0) -> float:
    """Round to the given number of decimals; halves go up (12.25 -> 12.3)."""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


# =============================================================================
# GEOMETRY AND PIXELS
# =============================================================================

@dataclass(frozen=True)
class Point:
    """Floating-point pixel coordinate"""
    x: float
    y: float

    def distance_to(self, other: "Point") -> float:
        return float(np.hypot(self.x - other.x, self.y - other.y))

    def to_dict(self) -> Dict[str, float]:
        return {"x": round(float(self.x), 2), "y": round(float(self.y), 2)}


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in pixel coordinates"""
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_points(cls, points: List[Point]) -> "BoundingBox":
        if not points:
            return cls(0.0, 0.0, 0.0, 0.0)
        xs = [p.x for p in points]
        ys = [p.y for p in points]
        return cls(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True, eq=False)
class RasterImage:
    """
    8-bit RGBA frame, row-major, shape (height, width, 4).

    The pixel buffer is marked read-only on construction so every engine can
    borrow it without copying.
    """
    pixels: np.ndarray

    def __post_init__(self):
        pixels = self.pixels
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise ValueError(f"RasterImage expects an (H, W, 4) buffer, got shape {pixels.shape}")
        if pixels.dtype != np.uint8:
            pixels = pixels.astype(np.uint8)
        view = pixels.view()
        view.setflags(write=False)
        object.__setattr__(self, "pixels", view)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @classmethod
    def from_array(cls, array: np.ndarray) -> "RasterImage":
        """
        Build a frame from a grayscale (H, W), RGB (H, W, 3) or RGBA (H, W, 4) array.
        """
        array = np.asarray(array)
        if array.ndim == 2:
            gray = array.astype(np.uint8)
            alpha = np.full_like(gray, 255)
            return cls(np.stack([gray, gray, gray, alpha], axis=-1))
        if array.ndim == 3 and array.shape[2] == 3:
            rgb = array.astype(np.uint8)
            alpha = np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)
            return cls(np.concatenate([rgb, alpha], axis=-1))
        if array.ndim == 3 and array.shape[2] == 4:
            return cls(np.ascontiguousarray(array, dtype=np.uint8))
        raise ValueError(f"Unsupported image array shape {array.shape}")

    @classmethod
    def from_bytes(cls, data: bytes) -> "RasterImage":
        """Decode an encoded image (PNG, JPEG, ...) into an RGBA frame."""
        image = Image.open(io.BytesIO(data)).convert("RGBA")
        return cls(np.array(image, dtype=np.uint8))

    def copy(self) -> "RasterImage":
        """Independent copy for handing to another worker."""
        return RasterImage(self.pixels.copy())


# =============================================================================
# CALIBRATION
# =============================================================================

class MarkerType(Enum):
    """Physical scale reference kinds"""
    RULER = "ruler"
    CIRCLE = "circle"
    GRID = "grid"
    MANUAL = "manual"


@dataclass(frozen=True)
class RulerMarker:
    """Ruler payload: tick positions along the ruler axis"""
    ticks: Tuple[Point, ...]
    tick_spacing_px: float
    angle_rad: float


@dataclass(frozen=True)
class CircleMarker:
    """Circle payload: fitted center and radius"""
    center: Point
    radius_px: float
    circularity: float


@dataclass(frozen=True)
class GridMarker:
    """Grid payload: median cell size over the detected corners"""
    cell_size_px: float
    corner_count: int


@dataclass(frozen=True)
class ManualMarker:
    """Operator-entered reference segment"""
    p1: Point
    p2: Point
    distance_cm: float


MarkerPayload = Union[RulerMarker, CircleMarker, GridMarker, ManualMarker]


@dataclass(frozen=True)
class CalibrationResult:
    """Pixel-to-centimeter scale derived from one frame"""
    detected: bool
    pixels_per_cm: float
    confidence: float
    marker_type: MarkerType
    reference_points: Tuple[Point, ...] = ()
    marker: Optional[MarkerPayload] = None
    failure_reason: Optional[str] = None

    @classmethod
    def undetected(cls, marker_type: MarkerType, reason: str = None) -> "CalibrationResult":
        return cls(
            detected=False,
            pixels_per_cm=0.0,
            confidence=0.0,
            marker_type=marker_type,
            failure_reason=reason,
        )

    @property
    def is_usable(self) -> bool:
        """True when the scale can be used for measurement."""
        return self.detected and self.pixels_per_cm > 0

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "detected": self.detected,
            "pixels_per_cm": round(float(self.pixels_per_cm), 4),
            "confidence": round(float(self.confidence), 4),
            "marker_type": self.marker_type.value,
            "reference_points": [p.to_dict() for p in self.reference_points],
        }
        if self.failure_reason:
            result["failure_reason"] = self.failure_reason

        marker = self.marker
        if isinstance(marker, RulerMarker):
            result["marker"] = {
                "tick_count": len(marker.ticks),
                "tick_spacing_px": round(marker.tick_spacing_px, 3),
                "angle_deg": round(float(np.degrees(marker.angle_rad)), 2),
            }
        elif isinstance(marker, CircleMarker):
            result["marker"] = {
                "center": marker.center.to_dict(),
                "radius_px": round(marker.radius_px, 2),
                "circularity": round(marker.circularity, 3),
            }
        elif isinstance(marker, GridMarker):
            result["marker"] = {
                "cell_size_px": round(marker.cell_size_px, 3),
                "corner_count": marker.corner_count,
            }
        elif isinstance(marker, ManualMarker):
            result["marker"] = {
                "p1": marker.p1.to_dict(),
                "p2": marker.p2.to_dict(),
                "distance_cm": marker.distance_cm,
            }
        return result


# =============================================================================
# CONFIGURATION STRUCTS
# =============================================================================

@dataclass(frozen=True)
class QualityThresholds:
    """Pass/fail gates for the photo quality checks"""
    min_blur_score: float = 0.7
    min_lighting_score: float = 0.6
    min_calibration_confidence: float = 0.8
    max_perspective_distortion: float = 15.0  # degrees

    def to_dict(self) -> Dict[str, float]:
        return {
            "min_blur_score": self.min_blur_score,
            "min_lighting_score": self.min_lighting_score,
            "min_calibration_confidence": self.min_calibration_confidence,
            "max_perspective_distortion": self.max_perspective_distortion,
        }


@dataclass(frozen=True)
class MarkerSpecs:
    """Known physical sizes of the supported calibration markers"""
    ruler_tick_spacing_cm: float = 1.0
    ruler_min_ticks: int = 5
    circle_diameter_cm: float = 2.5
    grid_cell_size_cm: float = 1.0
    grid_min_cells: int = 4
    accept_confidence: float = 0.8

    def to_dict(self) -> Dict[str, float]:
        return {
            "ruler_tick_spacing_cm": self.ruler_tick_spacing_cm,
            "ruler_min_ticks": self.ruler_min_ticks,
            "circle_diameter_cm": self.circle_diameter_cm,
            "grid_cell_size_cm": self.grid_cell_size_cm,
            "grid_min_cells": self.grid_min_cells,
            "accept_confidence": self.accept_confidence,
        }


# =============================================================================
# QUALITY REPORT
# =============================================================================

@dataclass(frozen=True)
class BlurCheck:
    score: float
    passed: bool


@dataclass(frozen=True)
class LightingCheck:
    score: float
    passed: bool
    issues: Tuple[str, ...] = ()
    brightness: float = 0.0
    dynamic_range: int = 0


@dataclass(frozen=True)
class CalibrationCheck:
    detected: bool
    confidence: float
    passed: bool  # detected and confident enough


@dataclass(frozen=True)
class PerspectiveCheck:
    distortion: float  # degrees
    corrected: bool


@dataclass(frozen=True)
class QualityReport:
    """Outcome of the blur, lighting, calibration and perspective checks"""
    passed: bool
    blur: BlurCheck
    lighting: LightingCheck
    calibration: CalibrationCheck
    perspective: PerspectiveCheck

    def failed_checks(self) -> List[str]:
        failed = []
        if not self.blur.passed:
            failed.append("blur")
        if not self.lighting.passed:
            failed.append("lighting")
        if not self.calibration.passed:
            failed.append("calibration")
        if not self.perspective.corrected:
            failed.append("perspective")
        return failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "blur": {"score": self.blur.score, "passed": self.blur.passed},
            "lighting": {
                "score": self.lighting.score,
                "passed": self.lighting.passed,
                "issues": list(self.lighting.issues),
                "brightness": self.lighting.brightness,
                "dynamic_range": self.lighting.dynamic_range,
            },
            "calibration": {
                "detected": self.calibration.detected,
                "confidence": round(float(self.calibration.confidence), 4),
                "passed": self.calibration.passed,
            },
            "perspective": {
                "distortion": self.perspective.distortion,
                "corrected": self.perspective.corrected,
            },
        }


# =============================================================================
# SEGMENTATION AND MEASUREMENT
# =============================================================================

@dataclass(frozen=True, eq=False)
class SegmentationResult:
    """
    Output of the external segmentation model.

    mask is a (height, width) uint8 array; contour is the closed boundary
    polygon in pixel coordinates.
    """
    mask: np.ndarray
    contour: Tuple[Point, ...]
    confidence: float
    bounding_box: Optional[BoundingBox] = None

    def __post_init__(self):
        if self.mask.ndim != 2:
            raise ValueError(f"Segmentation mask must be 2-D, got shape {self.mask.shape}")
        view = self.mask.view()
        view.setflags(write=False)
        object.__setattr__(self, "mask", view)
        object.__setattr__(self, "contour", tuple(self.contour))
        if self.bounding_box is None:
            object.__setattr__(self, "bounding_box", BoundingBox.from_points(list(self.contour)))

    @property
    def width(self) -> int:
        return int(self.mask.shape[1])

    @property
    def height(self) -> int:
        return int(self.mask.shape[0])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "contour_points": len(self.contour),
            "confidence": round(float(self.confidence), 4),
            "bounding_box": self.bounding_box.to_dict(),
        }


@dataclass(frozen=True)
class WoundMeasurement:
    """Physical wound dimensions in centimeters"""
    area: float        # cm²
    length: float      # cm, longest axis
    width: float       # cm, perpendicular to length
    perimeter: float   # cm
    depth: Optional[float] = None   # cm, manual entry
    volume: Optional[float] = None  # cm³, derived from depth

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "area": self.area,
            "length": self.length,
            "width": self.width,
            "perimeter": self.perimeter,
        }
        if self.depth is not None:
            result["depth"] = self.depth
            result["volume"] = self.volume
        return result


@dataclass(frozen=True)
class MeasurementValidation:
    """Plausibility check outcome; warnings never block the measurement"""
    valid: bool
    warnings: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "warnings": list(self.warnings)}


# =============================================================================
# HEALING ANALYTICS
# =============================================================================

class HealingTrend(Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    WORSENING = "worsening"


@dataclass(frozen=True)
class AreaObservation:
    """Minimal view of one assessment used by the healing analytics"""
    assessment_id: str
    captured_at: datetime
    area: float


@dataclass(frozen=True)
class HealingProgressPoint:
    assessment_id: str
    date: datetime
    area: float
    area_change: float
    area_change_percent: float
    healing_rate: float  # cm²/day
    projected_healing_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assessment_id": self.assessment_id,
            "date": self.date.isoformat(),
            "area": self.area,
            "area_change": self.area_change,
            "area_change_percent": self.area_change_percent,
            "healing_rate": self.healing_rate,
            "projected_healing_date": (
                self.projected_healing_date.isoformat() if self.projected_healing_date else None
            ),
        }


@dataclass(frozen=True)
class WoundAnalytics:
    wound_id: str
    initial_area: float
    current_area: float
    total_reduction: float
    total_reduction_percent: float
    average_healing_rate: float
    healing_velocity: float  # cm²/week
    assessment_count: int
    days_since_onset: int
    trend: HealingTrend
    progress_history: Tuple[HealingProgressPoint, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wound_id": self.wound_id,
            "initial_area": self.initial_area,
            "current_area": self.current_area,
            "total_reduction": self.total_reduction,
            "total_reduction_percent": self.total_reduction_percent,
            "average_healing_rate": self.average_healing_rate,
            "healing_velocity": self.healing_velocity,
            "assessment_count": self.assessment_count,
            "days_since_onset": self.days_since_onset,
            "trend": self.trend.value,
            "progress_history": [p.to_dict() for p in self.progress_history],
        }


# =============================================================================
# ASSESSMENT RECORD
# =============================================================================

@dataclass(frozen=True, eq=False)
class WoundAssessment:
    """Finished assessment handed to the persistence collaborator"""
    id: str
    wound_id: str
    captured_at: datetime
    calibration: CalibrationResult
    quality: QualityReport
    segmentation: SegmentationResult
    measurement: WoundMeasurement
    validation: MeasurementValidation
    notes: Optional[str] = None
    clinician_verified: bool = False

    def observation(self) -> AreaObservation:
        return AreaObservation(self.id, self.captured_at, self.measurement.area)

    def verified(self, notes: str = None) -> "WoundAssessment":
        """Copy of this record marked as clinician-verified."""
        return replace(self, clinician_verified=True, notes=notes if notes is not None else self.notes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "wound_id": self.wound_id,
            "captured_at": self.captured_at.isoformat(),
            "calibration": self.calibration.to_dict(),
            "quality": self.quality.to_dict(),
            "segmentation": self.segmentation.to_dict(),
            "measurement": self.measurement.to_dict(),
            "validation": self.validation.to_dict(),
            "notes": self.notes,
            "clinician_verified": self.clinician_verified,
        }
