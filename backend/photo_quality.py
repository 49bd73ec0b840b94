"""
Wound Photo Quality Assessment

Gates whether a wound photo can be trusted for measurement:
- Sharpness from Laplacian variance
- Lighting from the luma histogram (exposure, contrast, shadows, highlights)
- Calibration presence and confidence
- Perspective distortion estimated from ruler tick regularity

Also maps failed checks to fixed, human-actionable advice.
"""

from typing import List, Optional

import numpy as np

from edge_primitives import GrayscaleField, laplacian, to_grayscale
from structured_logging import get_logger, log_quality_check
from wound_types import (
    BlurCheck,
    CalibrationCheck,
    CalibrationResult,
    LightingCheck,
    MarkerType,
    PerspectiveCheck,
    QualityReport,
    QualityThresholds,
    RasterImage,
    round_half_up,
)

logger = get_logger(__name__)

# Lighting issue flags
ISSUE_TOO_DARK = "Image is too dark"
ISSUE_TOO_BRIGHT = "Image is too bright"
ISSUE_LOW_CONTRAST = "Low contrast - poor lighting"
ISSUE_SHADOWS = "Significant shadows detected"
ISSUE_OVEREXPOSED = "Overexposed regions detected"


class QualityAssessor:
    """
    Runs the photo quality checks against injected thresholds.
    """

    # Lighting limits on the 0-255 luma scale
    DARK_BRIGHTNESS = 50
    BRIGHT_BRIGHTNESS = 200
    MIN_DYNAMIC_RANGE = 100
    TARGET_DYNAMIC_RANGE = 150
    IDEAL_BRIGHTNESS = 128
    SHADOW_LEVEL = 50
    SHADOW_FRACTION = 0.3
    HIGHLIGHT_LEVEL = 245
    HIGHLIGHT_FRACTION = 0.1
    ISSUE_PENALTY = 0.15

    # Laplacian variance giving a full sharpness score
    BLUR_VARIANCE_SCALE = 1000.0

    # Degrees of distortion per unit of tick-spacing coefficient of variation
    DISTORTION_PER_CV = 45.0

    def __init__(self, thresholds: Optional[QualityThresholds] = None):
        self.thresholds = thresholds or QualityThresholds()

    def run_quality_checks(self, image: RasterImage, calibration: CalibrationResult) -> QualityReport:
        """
        Run all quality checks on a frame.

        Args:
            image: RGBA frame
            calibration: calibration detected on (or entered for) the same frame

        Returns:
            QualityReport; passed only when every check passes
        """
        gray = to_grayscale(image)
        blur = self.check_blur(gray)
        lighting = self.check_lighting(gray)
        perspective = self.check_perspective(calibration)

        calibration_check = CalibrationCheck(
            detected=calibration.detected,
            confidence=calibration.confidence,
            passed=(
                calibration.detected
                and calibration.confidence >= self.thresholds.min_calibration_confidence
            ),
        )

        passed = blur.passed and lighting.passed and calibration_check.passed and perspective.corrected

        report = QualityReport(
            passed=passed,
            blur=blur,
            lighting=lighting,
            calibration=calibration_check,
            perspective=perspective,
        )

        log_quality_check(
            passed=passed,
            failed_checks=report.failed_checks(),
            blur_score=blur.score,
            lighting_score=lighting.score,
            lighting_issues=list(lighting.issues),
        )
        return report

    # =========================================================================
    # SHARPNESS
    # =========================================================================

    def check_blur(self, gray: GrayscaleField) -> BlurCheck:
        """
        Sharpness from the variance of nonzero Laplacian responses.

        A frame with no Laplacian response at all (flat) scores 0.
        """
        response = laplacian(gray)
        nonzero = response[response != 0]
        if nonzero.size == 0:
            return BlurCheck(score=0.0, passed=False)

        variance = float(np.mean((nonzero - nonzero.mean()) ** 2))
        score = min(1.0, variance / self.BLUR_VARIANCE_SCALE)

        return BlurCheck(
            score=round_half_up(score, 2),
            passed=score >= self.thresholds.min_blur_score,
        )

    # =========================================================================
    # LIGHTING
    # =========================================================================

    def check_lighting(self, gray: GrayscaleField) -> LightingCheck:
        """Exposure, contrast, shadow and highlight analysis of the luma histogram."""
        brightness = np.floor(np.asarray(gray) + 0.5).astype(np.int64)
        histogram = np.bincount(np.clip(brightness, 0, 255).ravel(), minlength=256)
        total = brightness.size

        avg = float(brightness.mean())
        dynamic_range = int(brightness.max() - brightness.min())

        issues = []
        if avg < self.DARK_BRIGHTNESS:
            issues.append(ISSUE_TOO_DARK)
        if avg > self.BRIGHT_BRIGHTNESS:
            issues.append(ISSUE_TOO_BRIGHT)
        if dynamic_range < self.MIN_DYNAMIC_RANGE:
            issues.append(ISSUE_LOW_CONTRAST)
        if histogram[:self.SHADOW_LEVEL].sum() / total > self.SHADOW_FRACTION:
            issues.append(ISSUE_SHADOWS)
        if histogram[self.HIGHLIGHT_LEVEL:].sum() / total > self.HIGHLIGHT_FRACTION:
            issues.append(ISSUE_OVEREXPOSED)

        score = 1.0
        score -= abs(avg - self.IDEAL_BRIGHTNESS) / 256 * 0.3
        score -= max(0.0, (self.TARGET_DYNAMIC_RANGE - dynamic_range) / self.TARGET_DYNAMIC_RANGE) * 0.3
        score -= len(issues) * self.ISSUE_PENALTY
        score = max(0.0, min(1.0, score))

        return LightingCheck(
            score=round_half_up(score, 2),
            passed=score >= self.thresholds.min_lighting_score and len(issues) <= 1,
            issues=tuple(issues),
            brightness=round_half_up(avg, 1),
            dynamic_range=dynamic_range,
        )

    # =========================================================================
    # PERSPECTIVE
    # =========================================================================

    def check_perspective(self, calibration: CalibrationResult) -> PerspectiveCheck:
        """
        Distortion estimate from the regularity of ruler tick spacing.

        Only a detected ruler with at least 3 reference points can be assessed;
        any other calibration reports distortion 0 and corrected=False.
        """
        points = calibration.reference_points
        if (
            not calibration.detected
            or calibration.marker_type is not MarkerType.RULER
            or len(points) < 3
        ):
            return PerspectiveCheck(distortion=0.0, corrected=False)

        spacings = np.array([points[i].distance_to(points[i - 1]) for i in range(1, len(points))])
        mean = spacings.mean()
        if mean <= 0:
            return PerspectiveCheck(distortion=0.0, corrected=False)

        distortion = float(spacings.std() / mean * self.DISTORTION_PER_CV)
        return PerspectiveCheck(
            distortion=round_half_up(distortion, 1),
            corrected=distortion <= self.thresholds.max_perspective_distortion,
        )

    def recommendations(self, report: QualityReport) -> List[str]:
        return recommendations(report)


# =============================================================================
# GUIDANCE
# =============================================================================

BLUR_ADVICE = [
    "Hold the camera steady or use a tripod",
    "Ensure adequate lighting for faster shutter speed",
    "Clean the camera lens",
]

LIGHTING_ADVICE = {
    ISSUE_TOO_DARK: ["Increase ambient lighting", "Use the camera flash if available"],
    ISSUE_TOO_BRIGHT: ["Reduce direct lighting on the wound", "Avoid harsh overhead lights"],
    ISSUE_LOW_CONTRAST: [
        "Use even, brighter lighting across the wound",
        "Avoid a background that matches the skin tone",
    ],
    ISSUE_SHADOWS: ["Use diffused lighting", "Adjust camera angle to reduce shadows"],
    ISSUE_OVEREXPOSED: [
        "Turn off the flash or move it further away",
        "Angle the camera to avoid glare on moist tissue",
    ],
}

CALIBRATION_ADVICE = [
    "Ensure the calibration ruler is visible in the frame",
    "Place the ruler on the same plane as the wound",
    "Avoid covering the ruler markings",
]

PERSPECTIVE_ADVICE = [
    "Position the camera perpendicular to the wound surface",
    "Maintain consistent distance from the wound",
]


def recommendations(report: QualityReport) -> List[str]:
    """
    Fixed advice for every failing check, in check order.

    Args:
        report: quality report

    Returns:
        Advice strings; empty when nothing failed
    """
    advice = []

    if not report.blur.passed:
        advice.extend(BLUR_ADVICE)

    if not report.lighting.passed:
        for issue, lines in LIGHTING_ADVICE.items():
            if issue in report.lighting.issues:
                advice.extend(lines)

    if not report.calibration.passed:
        advice.extend(CALIBRATION_ADVICE)

    if not report.perspective.corrected:
        advice.extend(PERSPECTIVE_ADVICE)

    return advice


def quality_summary(report: QualityReport) -> str:
    """Multi-line, human-readable summary of a quality report."""
    def mark(ok: bool) -> str:
        return "✓" if ok else "✗"

    def percent(fraction: float) -> int:
        return int(round_half_up(fraction * 100))

    lines = ["✅ Image quality: PASSED" if report.passed else "❌ Image quality: FAILED"]
    lines.append(f"   Sharpness: {mark(report.blur.passed)} ({percent(report.blur.score)}%)")
    lines.append(f"   Lighting: {mark(report.lighting.passed)} ({percent(report.lighting.score)}%)")
    lines.append(
        f"   Calibration: {mark(report.calibration.passed)} "
        f"({percent(report.calibration.confidence)}%)"
    )
    lines.append(
        f"   Perspective: {mark(report.perspective.corrected)} "
        f"({report.perspective.distortion}° distortion)"
    )

    if report.lighting.issues:
        lines.append("   Lighting issues:")
        lines.extend(f"     - {issue}" for issue in report.lighting.issues)

    return "\n".join(lines)
