"""
Application Configuration

Loads configuration from environment variables with sensible defaults.
All thresholds, marker specifications and service settings are defined here;
engines receive them as explicit structs built by the helpers at the bottom.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file if it exists (override=True means .env takes precedence over system env vars)
load_dotenv(override=True)

# =============================================================================
# BASE PATHS
# =============================================================================

# Base directory (where this config file is located)
BASE_DIR = Path(__file__).resolve().parent

# =============================================================================
# APPLICATION SETTINGS
# =============================================================================

DEBUG = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))

# Maximum file upload size (in bytes) - default 20MB
MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", str(20 * 1024 * 1024)))

# =============================================================================
# QUALITY THRESHOLDS
# =============================================================================

MIN_BLUR_SCORE = float(os.getenv("MIN_BLUR_SCORE", "0.7"))
MIN_LIGHTING_SCORE = float(os.getenv("MIN_LIGHTING_SCORE", "0.6"))
MIN_CALIBRATION_CONFIDENCE = float(os.getenv("MIN_CALIBRATION_CONFIDENCE", "0.8"))
MAX_PERSPECTIVE_DISTORTION = float(os.getenv("MAX_PERSPECTIVE_DISTORTION", "15.0"))  # degrees

# =============================================================================
# CALIBRATION MARKERS
# =============================================================================

RULER_TICK_SPACING_CM = float(os.getenv("RULER_TICK_SPACING_CM", "1.0"))
RULER_MIN_TICKS = int(os.getenv("RULER_MIN_TICKS", "5"))
CIRCLE_DIAMETER_CM = float(os.getenv("CIRCLE_DIAMETER_CM", "2.5"))
GRID_CELL_SIZE_CM = float(os.getenv("GRID_CELL_SIZE_CM", "1.0"))
GRID_MIN_CELLS = int(os.getenv("GRID_MIN_CELLS", "4"))

# A hypothesis above this confidence short-circuits the remaining ones
CALIBRATION_ACCEPT_CONFIDENCE = float(os.getenv("CALIBRATION_ACCEPT_CONFIDENCE", "0.8"))

# =============================================================================
# MEASUREMENT
# =============================================================================

# Empirical wound constants, pending clinical review
VOLUME_COEFFICIENT = float(os.getenv("VOLUME_COEFFICIENT", "0.327"))
AREA_RATIO_MIN = float(os.getenv("AREA_RATIO_MIN", "0.3"))
AREA_RATIO_MAX = float(os.getenv("AREA_RATIO_MAX", "1.5"))

# Mask pixels strictly above this value count as wound
MASK_FOREGROUND_THRESHOLD = int(os.getenv("MASK_FOREGROUND_THRESHOLD", "127"))

# =============================================================================
# LIVE PREVIEW
# =============================================================================

LIVE_PREVIEW_INTERVAL_MS = int(os.getenv("LIVE_PREVIEW_INTERVAL_MS", "200"))
LIVE_PREVIEW_WIDTH = int(os.getenv("LIVE_PREVIEW_WIDTH", "320"))
LIVE_PREVIEW_MIN_CONFIDENCE = float(os.getenv("LIVE_PREVIEW_MIN_CONFIDENCE", "0.6"))

# =============================================================================
# CORS SETTINGS
# =============================================================================

# Comma-separated list of allowed origins, or "*" for all
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
CORS_ALLOW_CREDENTIALS = os.getenv("CORS_ALLOW_CREDENTIALS", "True").lower() in ("true", "1", "yes")

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")
LOG_OUTPUT = os.getenv("LOG_OUTPUT", "stdout")
LOG_FILE = os.getenv("LOG_FILE", str(BASE_DIR / "logs" / "wound_measure.json.log"))

# =============================================================================
# CELERY / REDIS CONFIGURATION
# =============================================================================

# Redis connection URL
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Celery broker and result backend
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)

# Queues: quick single-photo detection vs. full reprocessing runs
CALIBRATION_QUEUE = os.getenv("CALIBRATION_QUEUE", "calibration")
REPROCESS_QUEUE = os.getenv("REPROCESS_QUEUE", "wound_reprocess")

# Time limits (seconds); detection is a single pass over one photo
CALIBRATION_TASK_SOFT_TIME_LIMIT = int(os.getenv("CALIBRATION_TASK_SOFT_TIME_LIMIT", "30"))
REPROCESS_TASK_SOFT_TIME_LIMIT = int(os.getenv("REPROCESS_TASK_SOFT_TIME_LIMIT", "120"))
TASK_HARD_LIMIT_GRACE = int(os.getenv("TASK_HARD_LIMIT_GRACE", "60"))
CELERY_TASK_RESULT_EXPIRES = int(os.getenv("CELERY_TASK_RESULT_EXPIRES", "3600"))  # 1 hour

# Worker settings
CELERY_WORKER_CONCURRENCY = int(os.getenv("CELERY_WORKER_CONCURRENCY", "2"))
CELERY_WORKER_PREFETCH_MULTIPLIER = int(os.getenv("CELERY_WORKER_PREFETCH_MULTIPLIER", "1"))


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def default_quality_thresholds():
    """Build the QualityThresholds struct from the environment defaults."""
    from wound_types import QualityThresholds

    return QualityThresholds(
        min_blur_score=MIN_BLUR_SCORE,
        min_lighting_score=MIN_LIGHTING_SCORE,
        min_calibration_confidence=MIN_CALIBRATION_CONFIDENCE,
        max_perspective_distortion=MAX_PERSPECTIVE_DISTORTION,
    )


def default_marker_specs():
    """Build the MarkerSpecs struct from the environment defaults."""
    from wound_types import MarkerSpecs

    return MarkerSpecs(
        ruler_tick_spacing_cm=RULER_TICK_SPACING_CM,
        ruler_min_ticks=RULER_MIN_TICKS,
        circle_diameter_cm=CIRCLE_DIAMETER_CM,
        grid_cell_size_cm=GRID_CELL_SIZE_CM,
        grid_min_cells=GRID_MIN_CELLS,
        accept_confidence=CALIBRATION_ACCEPT_CONFIDENCE,
    )


def get_config_summary():
    """Returns a summary of current configuration (for debugging)."""
    return {
        "debug": DEBUG,
        "host": HOST,
        "port": PORT,
        "quality_thresholds": {
            "min_blur_score": MIN_BLUR_SCORE,
            "min_lighting_score": MIN_LIGHTING_SCORE,
            "min_calibration_confidence": MIN_CALIBRATION_CONFIDENCE,
            "max_perspective_distortion": MAX_PERSPECTIVE_DISTORTION,
        },
        "volume_coefficient": VOLUME_COEFFICIENT,
        "area_ratio_band": [AREA_RATIO_MIN, AREA_RATIO_MAX],
        "log_level": LOG_LEVEL,
        "celery_broker": CELERY_BROKER_URL.split("@")[-1],
    }
