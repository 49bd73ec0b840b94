"""
Wound Assessment Pipeline

Runs one frame start to finish: calibration, quality, external segmentation,
measurement and persistence. Each stage only runs when the one before it
produced something usable; the pipeline never calls the segmentation model for
a frame without a usable scale.

Collaborators:
- WoundSegmenter: any object with segment(image) -> SegmentationResult
- AssessmentStore: any object with save(assessment)
"""

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple

import cv2
import numpy as np

from calibration_detector import CalibrationDetector
from healing_analytics import calculate_wound_analytics
from photo_quality import QualityAssessor, recommendations
from structured_logging import LogContext, get_logger
from wound_errors import InvalidCalibration, MeasurementWarning, QualityWarning
from wound_measurement import MeasurementEngine
from wound_types import (
    AreaObservation,
    CalibrationResult,
    Point,
    QualityReport,
    RasterImage,
    SegmentationResult,
    WoundAnalytics,
    WoundAssessment,
)

logger = get_logger(__name__)


# =============================================================================
# COLLABORATORS
# =============================================================================

class WoundSegmenter(Protocol):
    def segment(self, image: RasterImage) -> SegmentationResult:
        ...


class AssessmentStore(Protocol):
    def save(self, assessment: WoundAssessment) -> None:
        ...


def segmentation_from_mask(mask: np.ndarray, confidence: float = 1.0, threshold: int = 127) -> SegmentationResult:
    """
    Wrap an externally produced wound mask as a SegmentationResult.

    The boundary contour is the largest external contour of the foreground.

    Args:
        mask: (H, W) mask, or (H, W, C) where the first channel is used
        confidence: model confidence to carry along
        threshold: values above it are foreground (boolean masks are used as is)

    Returns:
        SegmentationResult with a 0/255 uint8 mask
    """
    mask = np.asarray(mask)
    if mask.ndim == 3:
        mask = mask[:, :, 0]
    if mask.dtype == np.bool_:
        foreground = mask
    else:
        foreground = mask > threshold
    binary = foreground.astype(np.uint8) * 255

    contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    contour: List[Point] = []
    if contours:
        largest = max(contours, key=cv2.contourArea)
        contour = [Point(float(x), float(y)) for x, y in largest.reshape(-1, 2)]

    return SegmentationResult(mask=binary, contour=tuple(contour), confidence=confidence)


class MaskSegmenter:
    """Segmenter that returns a mask produced ahead of time (uploads, batch jobs)."""

    def __init__(self, mask: np.ndarray, confidence: float = 1.0, threshold: int = 127):
        self.mask = mask
        self.confidence = confidence
        self.threshold = threshold

    def segment(self, image: RasterImage) -> SegmentationResult:
        return segmentation_from_mask(self.mask, self.confidence, self.threshold)


class InMemoryAssessmentStore:
    """Process-local store, one instance per owner; safe to share across request threads."""

    def __init__(self):
        self._assessments: Dict[str, WoundAssessment] = {}
        self._lock = threading.Lock()

    def save(self, assessment: WoundAssessment) -> None:
        with self._lock:
            self._assessments[assessment.id] = assessment

    def get(self, assessment_id: str) -> Optional[WoundAssessment]:
        with self._lock:
            return self._assessments.get(assessment_id)

    def for_wound(self, wound_id: str) -> List[WoundAssessment]:
        """Assessments of one wound, oldest first."""
        with self._lock:
            matching = [a for a in self._assessments.values() if a.wound_id == wound_id]
        return sorted(matching, key=lambda a: a.captured_at)

    def verify(self, assessment_id: str, notes: str = None) -> WoundAssessment:
        """
        Mark a stored assessment as clinician-verified.

        Raises:
            KeyError: unknown assessment
        """
        with self._lock:
            verified = self._assessments[assessment_id].verified(notes)
            self._assessments[assessment_id] = verified
        return verified

    def observations(self, wound_id: str) -> List[AreaObservation]:
        return [a.observation() for a in self.for_wound(wound_id)]

    def analytics(self, wound_id: str, onset: datetime, now: datetime = None) -> WoundAnalytics:
        return calculate_wound_analytics(wound_id, self.for_wound(wound_id), onset, now)


# =============================================================================
# PIPELINE
# =============================================================================

class PipelineStage(Enum):
    CALIBRATION = "calibration"
    QUALITY = "quality"
    SEGMENTATION = "segmentation"
    MEASUREMENT = "measurement"


@dataclass(frozen=True)
class PipelineOutcome:
    """Result of one pipeline run; assessment is None when a stage stopped it"""
    calibration: CalibrationResult
    quality: QualityReport
    assessment: Optional[WoundAssessment] = None
    quality_warning: Optional[QualityWarning] = None
    measurement_warnings: Tuple[MeasurementWarning, ...] = ()
    stopped_at: Optional[PipelineStage] = None
    stop_reason: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.assessment is not None

    def to_dict(self) -> Dict:
        return {
            "completed": self.completed,
            "stopped_at": self.stopped_at.value if self.stopped_at else None,
            "stop_reason": self.stop_reason,
            "calibration": self.calibration.to_dict(),
            "quality": self.quality.to_dict(),
            "quality_warning": self.quality_warning.to_dict() if self.quality_warning else None,
            "measurement_warnings": [w.message for w in self.measurement_warnings],
            "assessment": self.assessment.to_dict() if self.assessment else None,
        }


class WoundAssessmentPipeline:
    """
    Sequential calibration → quality → segmentation → measurement pipeline.

    Owns no frame state; each assess() call works on its own buffers.
    """

    def __init__(
        self,
        detector: CalibrationDetector,
        assessor: QualityAssessor,
        segmenter: WoundSegmenter,
        engine: MeasurementEngine,
        store: Optional[AssessmentStore] = None,
    ):
        self.detector = detector
        self.assessor = assessor
        self.segmenter = segmenter
        self.engine = engine
        self.store = store

    def assess(
        self,
        image: RasterImage,
        wound_id: str,
        captured_at: Optional[datetime] = None,
        depth_cm: Optional[float] = None,
        calibration: Optional[CalibrationResult] = None,
        require_quality: bool = False,
        notes: Optional[str] = None,
    ) -> PipelineOutcome:
        """
        Assess one wound photo.

        Args:
            image: RGBA frame
            wound_id: wound being assessed
            captured_at: capture time (defaults to now, UTC)
            depth_cm: manually measured depth, enables volume
            calibration: manual calibration that replaces detection
            require_quality: stop before segmentation when quality fails
            notes: clinician notes stored with the assessment

        Returns:
            PipelineOutcome

        Raises:
            ValueError: segmentation mask does not match the frame, or invalid depth
        """
        captured_at = captured_at or datetime.now(timezone.utc)

        with LogContext(wound_id=wound_id):
            if calibration is None:
                calibration = self.detector.detect_calibration(image)

            quality = self.assessor.run_quality_checks(image, calibration)
            quality_warning = None
            if not quality.passed:
                quality_warning = QualityWarning(
                    failed_checks=tuple(quality.failed_checks()),
                    issues=quality.lighting.issues,
                    recommendations=tuple(recommendations(quality)),
                )
                if require_quality:
                    logger.info("Assessment stopped: quality check failed")
                    return PipelineOutcome(
                        calibration=calibration,
                        quality=quality,
                        quality_warning=quality_warning,
                        stopped_at=PipelineStage.QUALITY,
                        stop_reason="Image quality check failed",
                    )

            if not calibration.is_usable:
                reason = str(InvalidCalibration("Valid calibration required for measurement"))
                logger.info("Assessment stopped: calibration unavailable")
                return PipelineOutcome(
                    calibration=calibration,
                    quality=quality,
                    quality_warning=quality_warning,
                    stopped_at=PipelineStage.CALIBRATION,
                    stop_reason=calibration.failure_reason or reason,
                )

            segmentation = self.segmenter.segment(image)
            if (segmentation.width, segmentation.height) != (image.width, image.height):
                raise ValueError(
                    f"Segmentation mask is {segmentation.width}x{segmentation.height}, "
                    f"image is {image.width}x{image.height}"
                )

            measurement = self.engine.calculate_measurements(segmentation, calibration)
            if depth_cm is not None:
                measurement = self.engine.with_depth(measurement, depth_cm)
            validation = self.engine.validate_measurement(measurement)

            assessment = WoundAssessment(
                id=uuid.uuid4().hex,
                wound_id=wound_id,
                captured_at=captured_at,
                calibration=calibration,
                quality=quality,
                segmentation=segmentation,
                measurement=measurement,
                validation=validation,
                notes=notes,
            )

            if self.store is not None:
                self.store.save(assessment)

            logger.info(
                "Assessment completed",
                extra={
                    "assessment_id": assessment.id,
                    "area_cm2": measurement.area,
                    "quality_passed": quality.passed,
                },
            )

            return PipelineOutcome(
                calibration=calibration,
                quality=quality,
                assessment=assessment,
                quality_warning=quality_warning,
                measurement_warnings=tuple(MeasurementWarning(w) for w in validation.warnings),
            )


def build_pipeline(segmenter: WoundSegmenter, store: Optional[AssessmentStore] = None) -> WoundAssessmentPipeline:
    """Pipeline wired with the thresholds and constants from config."""
    import config

    return WoundAssessmentPipeline(
        detector=CalibrationDetector(config.default_marker_specs()),
        assessor=QualityAssessor(config.default_quality_thresholds()),
        segmenter=segmenter,
        engine=MeasurementEngine(
            volume_coefficient=config.VOLUME_COEFFICIENT,
            area_ratio_band=(config.AREA_RATIO_MIN, config.AREA_RATIO_MAX),
            foreground_threshold=config.MASK_FOREGROUND_THRESHOLD,
        ),
        store=store,
    )
