"""
Celery Tasks for Batch Wound Processing

- Reprocessing a stored wound photo and mask through the full pipeline
- Calibration detection on a single photo

Each task loads its own copy of the image (and mask) from disk, so no pixel
buffer is ever shared between tasks. Tasks update their progress state for
real-time monitoring.
"""

import time
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import numpy as np
from PIL import Image
from celery import current_task
from celery.exceptions import SoftTimeLimitExceeded

from celery_app import PROGRESS, celery_app
import config
from calibration_detector import CalibrationDetector
from structured_logging import LogContext, get_logger
from wound_pipeline import MaskSegmenter, build_pipeline
from wound_types import RasterImage

logger = get_logger(__name__)


def update_progress(current: int, total: int, status: str, details: dict = None):
    """Update task progress state."""
    if current_task and current_task.request.id:
        meta = {
            "current": current,
            "total": total,
            "percent": int((current / total) * 100) if total > 0 else 0,
            "status": status,
            "updated_at": datetime.now(timezone.utc).isoformat()
        }
        if details:
            meta.update(details)
        current_task.update_state(state=PROGRESS, meta=meta)


def load_image(image_path: str) -> RasterImage:
    """Decode an image file into a fresh RGBA frame."""
    with Image.open(image_path) as image:
        return RasterImage(np.array(image.convert("RGBA"), dtype=np.uint8))


def load_mask(mask_path: str) -> np.ndarray:
    """Decode a mask file into a fresh (H, W) grayscale array."""
    with Image.open(mask_path) as mask:
        return np.array(mask.convert("L"), dtype=np.uint8)


@celery_app.task(bind=True, name="tasks.reprocess_assessment_task")
def reprocess_assessment_task(
    self,
    image_path: str,
    mask_path: str,
    wound_id: str,
    captured_at: Optional[str] = None,
    depth_cm: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Run a stored wound photo and its segmentation mask through the pipeline.

    Args:
        image_path: path to the wound photo
        mask_path: path to the segmentation mask (same size as the photo)
        wound_id: wound the photo belongs to
        captured_at: ISO-8601 capture time
        depth_cm: manually measured depth

    Returns:
        dict with the pipeline outcome and processing time
    """
    with LogContext(task_id=self.request.id, wound_id=wound_id):
        try:
            start_time = time.time()
            update_progress(1, 3, "Loading image and mask")

            image = load_image(image_path)
            mask = load_mask(mask_path)
            captured = datetime.fromisoformat(captured_at) if captured_at else None

            update_progress(2, 3, "Assessing wound")

            pipeline = build_pipeline(
                MaskSegmenter(mask, threshold=config.MASK_FOREGROUND_THRESHOLD)
            )
            outcome = pipeline.assess(image, wound_id, captured_at=captured, depth_cm=depth_cm)

            update_progress(3, 3, "Complete")
            processing_time = time.time() - start_time

            logger.info(
                "Reprocessed assessment",
                extra={"completed": outcome.completed, "processing_time": round(processing_time, 3)},
            )

            return {
                "task_id": self.request.id,
                "wound_id": wound_id,
                "outcome": outcome.to_dict(),
                "processing_time": processing_time,
                "status": "success"
            }

        except SoftTimeLimitExceeded:
            logger.warning("Reprocessing timed out")
            return {"status": "error", "error": "Task timed out", "task_id": self.request.id}
        except Exception as e:
            logger.error(f"Reprocessing failed: {e}", exc_info=True)
            return {"status": "error", "error": str(e), "traceback": traceback.format_exc(), "task_id": self.request.id}


@celery_app.task(bind=True, name="tasks.detect_calibration_task")
def detect_calibration_task(self, image_path: str) -> Dict[str, Any]:
    """
    Detect the calibration marker in a stored wound photo.

    Args:
        image_path: path to the wound photo

    Returns:
        dict with the calibration result
    """
    with LogContext(task_id=self.request.id):
        try:
            start_time = time.time()
            update_progress(1, 2, "Loading image")

            image = load_image(image_path)

            update_progress(2, 2, "Detecting calibration marker")
            calibration = CalibrationDetector(config.default_marker_specs()).detect_calibration(image)

            return {
                "task_id": self.request.id,
                "calibration": calibration.to_dict(),
                "processing_time": time.time() - start_time,
                "status": "success"
            }

        except SoftTimeLimitExceeded:
            logger.warning("Calibration detection timed out")
            return {"status": "error", "error": "Task timed out", "task_id": self.request.id}
        except Exception as e:
            logger.error(f"Calibration detection failed: {e}", exc_info=True)
            return {"status": "error", "error": str(e), "traceback": traceback.format_exc(), "task_id": self.request.id}
