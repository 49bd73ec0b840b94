"""
Wound Measurement API - Main Application

Routers:
- wound_router.py - Calibration, quality, measurement, healing analytics

Engines (calibration detector, quality assessor, measurement engine) and the
assessment store are built once per application from config and kept on
app.state.
"""

import time
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from calibration_detector import CalibrationDetector
from middleware import (
    RequestLoggingMiddleware,
    RequestStats,
    RequestStatsMiddleware,
)
from photo_quality import QualityAssessor
from routers.wound_router import router as wound_router
from structured_logging import get_logger
from wound_errors import InvalidCalibration
from wound_measurement import MeasurementEngine
from wound_pipeline import InMemoryAssessmentStore

logger = get_logger("api")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Wound Measurement API",
        description="Calibrated wound measurement: marker detection, photo quality checks, wound dimensions and healing analytics.",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # =========================================================================
    # ENGINES
    # =========================================================================

    app.state.detector = CalibrationDetector(config.default_marker_specs())
    app.state.assessor = QualityAssessor(config.default_quality_thresholds())
    app.state.engine = MeasurementEngine(
        volume_coefficient=config.VOLUME_COEFFICIENT,
        area_ratio_band=(config.AREA_RATIO_MIN, config.AREA_RATIO_MAX),
        foreground_threshold=config.MASK_FOREGROUND_THRESHOLD,
    )
    app.state.store = InMemoryAssessmentStore()
    app.state.request_stats = RequestStats()
    app.state.started_at = time.time()

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=config.CORS_ALLOW_CREDENTIALS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logs all API calls
    app.add_middleware(RequestLoggingMiddleware, log_headers=False)

    # Tracks request statistics for /stats
    app.add_middleware(RequestStatsMiddleware, stats=app.state.request_stats)

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(InvalidCalibration)
    async def invalid_calibration_handler(request: Request, exc: InvalidCalibration):
        logger.warning(
            "Measurement rejected: invalid calibration",
            extra={"detected": exc.detected, "pixels_per_cm": exc.pixels_per_cm},
        )
        return JSONResponse(
            status_code=422,
            content={
                "detail": str(exc),
                "error_type": "InvalidCalibration",
                "detected": exc.detected,
                "pixels_per_cm": exc.pixels_per_cm,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled error",
            extra={"error_type": type(exc).__name__, "error_message": str(exc)},
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    # =========================================================================
    # REGISTER ROUTERS
    # =========================================================================

    app.include_router(wound_router)

    # =========================================================================
    # HEALTH CHECK ENDPOINTS
    # =========================================================================

    @app.get("/")
    def read_root():
        return {
            "message": "Wound Measurement API v1.0",
            "status": "healthy",
            "docs": "/docs"
        }

    @app.get("/health")
    def health_check():
        """
        Basic health check endpoint.
        Returns process memory, CPU and uptime.
        """
        import psutil

        process = psutil.Process()
        uptime_seconds = time.time() - app.state.started_at

        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "memory": {
                "process_mb": round(process.memory_info().rss / (1024**2), 1),
                "available_gb": round(psutil.virtual_memory().available / (1024**3), 2),
            },
            "cpu": {
                "cores": psutil.cpu_count(),
            },
            "uptime": _format_uptime(uptime_seconds),
            "uptime_seconds": round(uptime_seconds),
        }

    @app.get("/stats")
    def get_request_stats():
        """Get API request statistics for monitoring."""
        return app.state.request_stats.get_stats()

    return app


def _format_uptime(seconds: float) -> str:
    """Format uptime seconds to human readable string."""
    days, remainder = divmod(int(seconds), 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")

    return " ".join(parts)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
