"""
Wound Measurement Router

Endpoints for:
- Calibration marker detection and manual calibration
- Photo quality checks with recommendations
- Wound measurement from a photo and its segmentation mask
- Healing analytics over an area time series
- Stored assessments and clinician verification
"""

import io
from datetime import datetime
from typing import List, Optional

import numpy as np
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

import config
from calibration_detector import CalibrationDetector, manual_calibration
from healing_analytics import calculate_wound_analytics
from photo_quality import QualityAssessor, quality_summary, recommendations
from structured_logging import get_logger
from wound_errors import InvalidCalibration
from wound_measurement import MeasurementEngine, measurement_summary
from wound_pipeline import InMemoryAssessmentStore, MaskSegmenter, WoundAssessmentPipeline, PipelineStage
from wound_types import AreaObservation, CalibrationResult, Point, RasterImage

logger = get_logger(__name__)

router = APIRouter(prefix="/wound", tags=["Wound Measurement"])


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_detector(request: Request) -> CalibrationDetector:
    return request.app.state.detector


def get_assessor(request: Request) -> QualityAssessor:
    return request.app.state.assessor


def get_engine(request: Request) -> MeasurementEngine:
    return request.app.state.engine


def get_store(request: Request) -> InMemoryAssessmentStore:
    return request.app.state.store


# =============================================================================
# REQUEST MODELS
# =============================================================================

class PointModel(BaseModel):
    x: float
    y: float


class ManualCalibrationRequest(BaseModel):
    p1: PointModel
    p2: PointModel
    distance_cm: float


class AreaObservationModel(BaseModel):
    id: str
    captured_at: datetime
    area: float = Field(..., ge=0)


class AnalyticsRequest(BaseModel):
    wound_id: str
    onset: datetime
    assessments: List[AreaObservationModel] = []
    now: Optional[datetime] = None


class VerifyRequest(BaseModel):
    notes: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================

async def read_upload(upload: UploadFile) -> bytes:
    contents = await upload.read()
    if not contents:
        raise HTTPException(status_code=400, detail=f"Empty upload: {upload.filename}")
    if len(contents) > config.MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=413, detail="Upload exceeds maximum size")
    return contents


def decode_image(contents: bytes) -> RasterImage:
    try:
        return RasterImage.from_bytes(contents)
    except (UnidentifiedImageError, OSError) as e:
        raise HTTPException(status_code=400, detail=f"Could not decode image: {e}")


def decode_mask(contents: bytes) -> np.ndarray:
    try:
        with Image.open(io.BytesIO(contents)) as mask:
            return np.array(mask.convert("L"), dtype=np.uint8)
    except (UnidentifiedImageError, OSError) as e:
        raise HTTPException(status_code=400, detail=f"Could not decode mask: {e}")


def calibration_from_form(
    p1_x: Optional[float],
    p1_y: Optional[float],
    p2_x: Optional[float],
    p2_y: Optional[float],
    distance_cm: Optional[float],
) -> Optional[CalibrationResult]:
    """Manual calibration from optional form fields; None when none are given."""
    values = (p1_x, p1_y, p2_x, p2_y, distance_cm)
    if all(v is None for v in values):
        return None
    if any(v is None for v in values):
        raise HTTPException(
            status_code=400,
            detail="Manual calibration needs p1_x, p1_y, p2_x, p2_y and distance_cm",
        )
    try:
        return manual_calibration(Point(p1_x, p1_y), Point(p2_x, p2_y), distance_cm)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


# =============================================================================
# CALIBRATION
# =============================================================================

@router.post("/calibration/detect")
async def detect_calibration(
    image: UploadFile = File(...),
    detector: CalibrationDetector = Depends(get_detector),
):
    """
    Detect a ruler, circle or grid marker in a wound photo.

    Returns:
        - detected: whether a marker was found
        - pixels_per_cm: scale factor (0 when not detected)
        - confidence: detection confidence 0-1
        - marker_type: ruler / circle / grid
        - marker: marker-specific geometry
    """
    frame = decode_image(await read_upload(image))
    calibration = await run_in_threadpool(detector.detect_calibration, frame)
    return calibration.to_dict()


@router.post("/calibration/manual")
def create_manual_calibration(body: ManualCalibrationRequest):
    """Calibration from two points a known distance apart."""
    try:
        calibration = manual_calibration(
            Point(body.p1.x, body.p1.y), Point(body.p2.x, body.p2.y), body.distance_cm
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return calibration.to_dict()


# =============================================================================
# QUALITY
# =============================================================================

@router.post("/quality")
async def check_quality(
    image: UploadFile = File(...),
    p1_x: Optional[float] = Form(None),
    p1_y: Optional[float] = Form(None),
    p2_x: Optional[float] = Form(None),
    p2_y: Optional[float] = Form(None),
    distance_cm: Optional[float] = Form(None),
    detector: CalibrationDetector = Depends(get_detector),
    assessor: QualityAssessor = Depends(get_assessor),
):
    """
    Run the photo quality checks.

    Calibration is detected unless a manual calibration is supplied.

    Returns:
        - report: per-check scores and pass flags
        - recommendations: advice for every failed check
        - summary: human-readable text
    """
    calibration = calibration_from_form(p1_x, p1_y, p2_x, p2_y, distance_cm)
    frame = decode_image(await read_upload(image))
    if calibration is None:
        calibration = await run_in_threadpool(detector.detect_calibration, frame)

    report = await run_in_threadpool(assessor.run_quality_checks, frame, calibration)
    return {
        "report": report.to_dict(),
        "calibration": calibration.to_dict(),
        "recommendations": recommendations(report),
        "summary": quality_summary(report),
    }


# =============================================================================
# MEASUREMENT
# =============================================================================

@router.post("/measure")
async def measure_wound(
    image: UploadFile = File(...),
    mask: UploadFile = File(...),
    wound_id: str = Form("unassigned"),
    depth_cm: Optional[float] = Form(None),
    require_quality: bool = Form(False),
    notes: Optional[str] = Form(None),
    p1_x: Optional[float] = Form(None),
    p1_y: Optional[float] = Form(None),
    p2_x: Optional[float] = Form(None),
    p2_y: Optional[float] = Form(None),
    distance_cm: Optional[float] = Form(None),
    detector: CalibrationDetector = Depends(get_detector),
    assessor: QualityAssessor = Depends(get_assessor),
    engine: MeasurementEngine = Depends(get_engine),
    store: InMemoryAssessmentStore = Depends(get_store),
):
    """
    Measure a wound from its photo and segmentation mask.

    The mask must have the same size as the photo; pixels above the foreground
    threshold are wound.

    Returns:
        - assessment: measurement, validation warnings, quality and calibration
        - quality_warning: failed checks and advice when quality failed
        - summary: human-readable measurement text
    """
    calibration = calibration_from_form(p1_x, p1_y, p2_x, p2_y, distance_cm)
    frame = decode_image(await read_upload(image))
    wound_mask = decode_mask(await read_upload(mask))

    pipeline = WoundAssessmentPipeline(
        detector=detector,
        assessor=assessor,
        segmenter=MaskSegmenter(wound_mask, threshold=engine.foreground_threshold),
        engine=engine,
        store=store,
    )

    try:
        outcome = await run_in_threadpool(
            pipeline.assess,
            frame,
            wound_id,
            depth_cm=depth_cm,
            calibration=calibration,
            require_quality=require_quality,
            notes=notes,
        )
    except InvalidCalibration:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if outcome.stopped_at is PipelineStage.CALIBRATION:
        raise InvalidCalibration(
            outcome.stop_reason or "Valid calibration required for measurement",
            pixels_per_cm=outcome.calibration.pixels_per_cm,
            detected=outcome.calibration.detected,
        )

    result = outcome.to_dict()
    if outcome.assessment is not None:
        result["summary"] = measurement_summary(outcome.assessment.measurement)
    return result


# =============================================================================
# ANALYTICS AND STORED ASSESSMENTS
# =============================================================================

@router.post("/analytics")
def wound_analytics(body: AnalyticsRequest):
    """Healing progress and trend for an area time series."""
    observations = [
        AreaObservation(assessment_id=a.id, captured_at=a.captured_at, area=a.area)
        for a in body.assessments
    ]
    return calculate_wound_analytics(body.wound_id, observations, body.onset, body.now).to_dict()


@router.get("/{wound_id}/assessments")
def list_assessments(wound_id: str, store: InMemoryAssessmentStore = Depends(get_store)):
    """Stored assessments of one wound, oldest first."""
    assessments = store.for_wound(wound_id)
    return {
        "wound_id": wound_id,
        "count": len(assessments),
        "assessments": [a.to_dict() for a in assessments],
    }


@router.post("/assessments/{assessment_id}/verify")
def verify_assessment(
    assessment_id: str,
    body: VerifyRequest,
    store: InMemoryAssessmentStore = Depends(get_store),
):
    """Mark a stored assessment as clinician-verified."""
    try:
        assessment = store.verify(assessment_id, body.notes)
    except KeyError:
        raise HTTPException(status_code=404, detail="Assessment not found")
    return assessment.to_dict()


# =============================================================================
# CONFIGURATION
# =============================================================================

@router.get("/config")
def get_measurement_config(
    detector: CalibrationDetector = Depends(get_detector),
    assessor: QualityAssessor = Depends(get_assessor),
    engine: MeasurementEngine = Depends(get_engine),
):
    """Thresholds, marker specs and measurement constants in force."""
    return {
        "quality_thresholds": assessor.thresholds.to_dict(),
        "marker_specs": detector.specs.to_dict(),
        "volume_coefficient": engine.volume_coefficient,
        "area_ratio_band": list(engine.area_ratio_band),
        "foreground_threshold": engine.foreground_threshold,
    }
