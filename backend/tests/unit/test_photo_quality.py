"""
Unit tests for photo quality assessment.

Tests:
- Sharpness, lighting and perspective checks
- Aggregate pass/fail decision and injected thresholds
- Recommendations and text summary
"""

import pytest
import numpy as np
import sys
import os

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from edge_primitives import to_grayscale
from fixtures.synthetic_images import flat_image, textured_image
from photo_quality import (
    CALIBRATION_ADVICE,
    ISSUE_LOW_CONTRAST,
    ISSUE_OVEREXPOSED,
    ISSUE_SHADOWS,
    ISSUE_TOO_BRIGHT,
    ISSUE_TOO_DARK,
    PERSPECTIVE_ADVICE,
    QualityAssessor,
    quality_summary,
    recommendations,
)
from wound_types import (
    CalibrationResult,
    MarkerType,
    Point,
    QualityThresholds,
    RasterImage,
)


def ruler_calibration(xs, confidence=1.0):
    return CalibrationResult(
        detected=True,
        pixels_per_cm=20.0,
        confidence=confidence,
        marker_type=MarkerType.RULER,
        reference_points=tuple(Point(float(x), 0.0) for x in xs),
    )


def gray_of(array) -> np.ndarray:
    return to_grayscale(RasterImage.from_array(array))


class TestBlurCheck:
    """Tests for the sharpness check."""

    def test_textured_image_is_sharp(self, assessor):
        blur = assessor.check_blur(gray_of(textured_image()))

        assert blur.score == 1.0
        assert blur.passed is True

    def test_flat_image_scores_zero(self, assessor):
        blur = assessor.check_blur(gray_of(flat_image()))

        assert blur.score == 0.0
        assert blur.passed is False

    def test_soft_gradient_is_blurry(self, assessor):
        ramp = np.tile(np.linspace(0, 255, 64), (64, 1)).astype(np.uint8)

        blur = assessor.check_blur(gray_of(ramp))

        assert blur.score < 0.7
        assert blur.passed is False

    def test_threshold_is_injected(self):
        ramp = np.tile(np.linspace(0, 255, 64), (64, 1)).astype(np.uint8)
        lenient = QualityAssessor(QualityThresholds(min_blur_score=0.0))

        assert lenient.check_blur(gray_of(ramp)).passed is True


class TestLightingCheck:
    """Tests for the lighting check."""

    def test_even_lighting_passes(self, assessor):
        lighting = assessor.check_lighting(gray_of(textured_image()))

        assert lighting.passed is True
        assert lighting.issues == ()
        assert lighting.dynamic_range == 200
        assert lighting.brightness == pytest.approx(128, abs=3)

    def test_dark_image_flags_issues(self, assessor):
        lighting = assessor.check_lighting(gray_of(textured_image(low=0, high=60)))

        assert ISSUE_TOO_DARK in lighting.issues
        assert ISSUE_SHADOWS in lighting.issues
        assert ISSUE_LOW_CONTRAST in lighting.issues
        assert lighting.passed is False

    def test_bright_image_flags_overexposure(self, assessor):
        lighting = assessor.check_lighting(gray_of(flat_image(value=250)))

        assert ISSUE_TOO_BRIGHT in lighting.issues
        assert ISSUE_OVEREXPOSED in lighting.issues
        assert lighting.passed is False

    def test_flat_mid_gray_score(self, assessor):
        lighting = assessor.check_lighting(gray_of(flat_image(value=128)))

        # Only low contrast: 1 - 0.3 (range) - 0.15 (one issue)
        assert lighting.issues == (ISSUE_LOW_CONTRAST,)
        assert lighting.score == 0.55
        assert lighting.brightness == 128.0
        assert lighting.passed is False


class TestPerspectiveCheck:
    """Tests for the perspective check."""

    def test_regular_ticks_have_no_distortion(self, assessor, regular_ruler_calibration):
        perspective = assessor.check_perspective(regular_ruler_calibration)

        assert perspective.distortion == 0.0
        assert perspective.corrected is True

    def test_irregular_ticks_are_distorted(self, assessor):
        perspective = assessor.check_perspective(ruler_calibration([0, 10, 30, 40]))

        assert perspective.distortion == 15.9
        assert perspective.corrected is False

    def test_distortion_limit_is_injected(self):
        lenient = QualityAssessor(QualityThresholds(max_perspective_distortion=20.0))

        assert lenient.check_perspective(ruler_calibration([0, 10, 30, 40])).corrected is True

    def test_undetected_calibration_is_not_corrected(self, assessor, undetected_calibration):
        perspective = assessor.check_perspective(undetected_calibration)

        assert perspective.distortion == 0.0
        assert perspective.corrected is False

    def test_non_ruler_calibration_is_not_corrected(self, assessor, manual_20ppc):
        assert assessor.check_perspective(manual_20ppc).corrected is False

    def test_two_ticks_are_not_enough(self, assessor):
        assert assessor.check_perspective(ruler_calibration([0, 20])).corrected is False


class TestQualityReport:
    """Tests for the aggregate quality decision."""

    def test_good_photo_passes(self, assessor, textured_frame, regular_ruler_calibration):
        report = assessor.run_quality_checks(textured_frame, regular_ruler_calibration)

        assert report.passed is True
        assert report.failed_checks() == []
        assert recommendations(report) == []

    def test_dark_photo_fails_despite_sharpness_and_calibration(self, assessor, regular_ruler_calibration):
        frame = RasterImage.from_array(textured_image(low=0, high=60))

        report = assessor.run_quality_checks(frame, regular_ruler_calibration)

        assert report.blur.passed is True
        assert report.calibration.detected is True
        assert report.perspective.corrected is True
        assert report.passed is False
        assert ISSUE_TOO_DARK in report.lighting.issues
        assert report.failed_checks() == ["lighting"]

    def test_low_calibration_confidence_fails(self, assessor, textured_frame):
        report = assessor.run_quality_checks(
            textured_frame, ruler_calibration([0, 20, 40, 60], confidence=0.5)
        )

        assert report.passed is False

    def test_low_calibration_confidence_is_reported_as_failed_check(self, assessor, textured_frame):
        report = assessor.run_quality_checks(
            textured_frame, ruler_calibration([0, 20, 40, 60], confidence=0.5)
        )

        assert report.calibration.detected is True
        assert report.calibration.passed is False
        assert report.failed_checks() == ["calibration"]
        assert report.to_dict()["calibration"]["passed"] is False

    def test_calibration_confidence_threshold_is_injected(self, textured_frame):
        lenient = QualityAssessor(QualityThresholds(min_calibration_confidence=0.4))

        report = lenient.run_quality_checks(
            textured_frame, ruler_calibration([0, 20, 40, 60], confidence=0.5)
        )

        assert report.passed is True

    def test_missing_calibration_fails(self, assessor, textured_frame, undetected_calibration):
        report = assessor.run_quality_checks(textured_frame, undetected_calibration)

        assert report.passed is False
        assert report.failed_checks() == ["calibration", "perspective"]

    def test_report_serializes(self, assessor, textured_frame, regular_ruler_calibration):
        data = assessor.run_quality_checks(textured_frame, regular_ruler_calibration).to_dict()

        assert data["passed"] is True
        assert set(data) == {"passed", "blur", "lighting", "calibration", "perspective"}


class TestRecommendations:
    """Tests for quality advice and summaries."""

    def test_dark_photo_advice(self, assessor, regular_ruler_calibration):
        frame = RasterImage.from_array(textured_image(low=0, high=60))
        report = assessor.run_quality_checks(frame, regular_ruler_calibration)

        assert recommendations(report) == [
            "Increase ambient lighting",
            "Use the camera flash if available",
            "Use even, brighter lighting across the wound",
            "Avoid a background that matches the skin tone",
            "Use diffused lighting",
            "Adjust camera angle to reduce shadows",
        ]

    def test_missing_calibration_advice(self, assessor, textured_frame, undetected_calibration):
        report = assessor.run_quality_checks(textured_frame, undetected_calibration)

        assert assessor.recommendations(report) == CALIBRATION_ADVICE + PERSPECTIVE_ADVICE

    def test_low_confidence_calibration_advice(self, assessor, textured_frame):
        report = assessor.run_quality_checks(
            textured_frame, ruler_calibration([0, 20, 40, 60], confidence=0.5)
        )

        assert recommendations(report) == CALIBRATION_ADVICE

    def test_low_contrast_advice(self, assessor, regular_ruler_calibration):
        frame = RasterImage.from_array(textured_image(low=118, high=138))

        report = assessor.run_quality_checks(frame, regular_ruler_calibration)

        assert report.lighting.issues == (ISSUE_LOW_CONTRAST,)
        assert report.lighting.passed is False
        assert "Use even, brighter lighting across the wound" in recommendations(report)

    def test_overexposed_advice(self, assessor, regular_ruler_calibration):
        frame = RasterImage.from_array(textured_image(low=200, high=255))

        report = assessor.run_quality_checks(frame, regular_ruler_calibration)
        advice = recommendations(report)

        assert ISSUE_OVEREXPOSED in report.lighting.issues
        assert "Turn off the flash or move it further away" in advice
        assert "Reduce direct lighting on the wound" in advice

    def test_every_failed_report_has_advice(self, assessor, regular_ruler_calibration, manual_20ppc):
        frames = [textured_image(low=118, high=138), textured_image(low=200, high=255), flat_image()]

        for pixels in frames:
            for calibration in (regular_ruler_calibration, manual_20ppc):
                report = assessor.run_quality_checks(RasterImage.from_array(pixels), calibration)
                assert report.passed is False
                assert recommendations(report)

    def test_blurry_photo_advice_comes_first(self, assessor, blank_frame, manual_20ppc):
        report = assessor.run_quality_checks(blank_frame, manual_20ppc)

        advice = recommendations(report)
        assert advice[0] == "Hold the camera steady or use a tripod"

    def test_summary_of_passing_report(self, assessor, textured_frame, regular_ruler_calibration):
        summary = quality_summary(assessor.run_quality_checks(textured_frame, regular_ruler_calibration))

        lines = summary.splitlines()
        assert lines[0] == "✅ Image quality: PASSED"
        assert "Sharpness: ✓ (100%)" in lines[1]
        assert "Perspective: ✓ (0.0° distortion)" in lines[4]

    def test_summary_lists_lighting_issues(self, assessor, undetected_calibration):
        frame = RasterImage.from_array(textured_image(low=0, high=60))

        summary = quality_summary(assessor.run_quality_checks(frame, undetected_calibration))

        assert summary.startswith("❌ Image quality: FAILED")
        assert "Lighting issues:" in summary
        assert f"- {ISSUE_TOO_DARK}" in summary
