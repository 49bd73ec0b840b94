"""
Live Preview Calibration

Background loop that polls the camera for frames, downsamples them and runs
calibration detection so the capture screen can show whether a scale
reference is in view. The loop owns its own downsampled buffers and never
touches the full-resolution capture pipeline.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import cv2

from calibration_detector import CalibrationDetector
from structured_logging import get_logger
from wound_types import CalibrationResult, RasterImage

logger = get_logger(__name__)

FrameSource = Callable[[], Optional[RasterImage]]
StatusCallback = Callable[["PreviewStatus"], None]


def downsample(image: RasterImage, target_width: int) -> RasterImage:
    """
    Resize a frame to target_width, keeping the aspect ratio.

    Frames already at or below the target width are returned as is.
    """
    if image.width <= target_width:
        return image
    target_height = max(1, int(round(image.height * target_width / image.width)))
    resized = cv2.resize(
        image.pixels, (target_width, target_height), interpolation=cv2.INTER_AREA
    )
    return RasterImage(resized)


@dataclass(frozen=True)
class PreviewStatus:
    """Calibration state for one preview frame"""
    frame_index: int
    calibration: CalibrationResult
    present: bool
    scale: float  # preview width / full frame width

    @property
    def full_resolution_pixels_per_cm(self) -> float:
        if not self.calibration.detected or self.scale <= 0:
            return 0.0
        return self.calibration.pixels_per_cm / self.scale

    def to_dict(self):
        return {
            "frame_index": self.frame_index,
            "present": self.present,
            "marker_type": self.calibration.marker_type.value,
            "confidence": round(float(self.calibration.confidence), 4),
            "pixels_per_cm": round(self.full_resolution_pixels_per_cm, 4),
        }


class LivePreviewCalibrator:
    """
    Polls frames on a fixed cadence and reports calibration presence.

    One instance per camera view; stop() it when the view closes.
    """

    def __init__(
        self,
        detector: CalibrationDetector,
        frame_source: FrameSource,
        on_status: StatusCallback,
        interval_ms: int = 200,
        preview_width: int = 320,
        min_confidence: float = 0.6,
    ):
        self.detector = detector
        self.frame_source = frame_source
        self.on_status = on_status
        self.interval_ms = interval_ms
        self.preview_width = preview_width
        self.min_confidence = min_confidence

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._frame_index = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def evaluate(self, frame: RasterImage) -> PreviewStatus:
        """Run detection on one downsampled frame."""
        preview = downsample(frame, self.preview_width)
        calibration = self.detector.detect_calibration(preview)
        present = calibration.detected and calibration.confidence > self.min_confidence

        status = PreviewStatus(
            frame_index=self._frame_index,
            calibration=calibration,
            present=present,
            scale=preview.width / frame.width,
        )
        self._frame_index += 1
        return status

    def start(self):
        """Start the polling thread."""
        if self.is_running:
            logger.warning("Live preview already running")
            return

        # One stop event per run
        stop_event = threading.Event()
        self._stop_event = stop_event
        self._thread = threading.Thread(
            target=self._run, args=(stop_event,), name="LivePreviewCalibration", daemon=True
        )
        self._thread.start()
        logger.info(
            "Live preview started",
            extra={"interval_ms": self.interval_ms, "preview_width": self.preview_width},
        )

    def stop(self, timeout: float = 2.0):
        """Stop the polling thread; safe to call when not running."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Live preview poller still finishing a frame", extra={"timeout": timeout})
            self._thread = None
        logger.info("Live preview stopped", extra={"frames": self._frame_index})

    def _run(self, stop_event: threading.Event):
        interval = self.interval_ms / 1000.0
        while not stop_event.is_set():
            started = time.perf_counter()
            try:
                frame = self.frame_source()
                if frame is not None and not stop_event.is_set():
                    self.on_status(self.evaluate(frame))
            except Exception as e:
                logger.error(f"Error in live preview: {e}", exc_info=True)

            elapsed = time.perf_counter() - started
            stop_event.wait(timeout=max(0.0, interval - elapsed))
