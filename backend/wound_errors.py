"""
Wound Measurement Errors

Only InvalidCalibration is a hard failure. Detection failures surface as
undetected calibration results, and quality or plausibility problems are
reported as warning records attached to the outcome.
"""

from dataclasses import dataclass
from typing import Any, Dict, Tuple


class WoundMeasureError(Exception):
    """Base class for wound measurement errors."""


class InvalidCalibration(WoundMeasureError, ValueError):
    """Measurement requested without a usable positive scale factor."""

    def __init__(self, message: str, pixels_per_cm: float = 0.0, detected: bool = False):
        super().__init__(message)
        self.pixels_per_cm = pixels_per_cm
        self.detected = detected


class DetectionFailure(WoundMeasureError):
    """A marker hypothesis found no usable marker. Caught inside the detector."""

    def __init__(self, marker_type: str, reason: str):
        super().__init__(f"{marker_type}: {reason}")
        self.marker_type = marker_type
        self.reason = reason


@dataclass(frozen=True)
class QualityWarning:
    """One or more soft quality checks failed."""
    failed_checks: Tuple[str, ...]
    issues: Tuple[str, ...]
    recommendations: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failed_checks": list(self.failed_checks),
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class MeasurementWarning:
    """Physically implausible geometry attached to a measurement."""
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message}
