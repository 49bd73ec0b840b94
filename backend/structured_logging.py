"""
Structured Logging Module

Provides JSON-formatted logging for the wound measurement service.

Features:
- JSON log formatting for machine-readable logs (one object per line)
- Request context tracking (request ID, correlation ID, wound ID)
- Stdout and rotating file handlers
- Sensitive data masking
- Convenience loggers for calibration, quality and measurement events

Usage:
    from structured_logging import get_logger, LogContext

    logger = get_logger(__name__)

    with LogContext(request_id="abc123", wound_id="w-42"):
        logger.info("Measuring wound", extra={"marker_type": "ruler"})

Configuration (environment variables):
    LOG_FORMAT: "json" or "text" (default: "json")
    LOG_OUTPUT: "stdout", "file", "all" (default: "stdout")
    LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL (default: "INFO")
    LOG_FILE: path of the JSON log file when file output is enabled
"""

import json
import logging
import sys
import os
import threading
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from contextvars import ContextVar
from pathlib import Path
import socket
import uuid

# Context variables for request tracking
_request_context: ContextVar[Dict[str, Any]] = ContextVar('request_context', default={})


# =============================================================================
# LOG CONTEXT MANAGEMENT
# =============================================================================

class LogContext:
    """
    Context manager for adding contextual information to logs.

    Usage:
        with LogContext(request_id="abc", wound_id="w-1"):
            logger.info("Processing")  # Will include request_id and wound_id
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._token = None

    def __enter__(self):
        current = _request_context.get().copy()
        current.update(self.context)
        self._token = _request_context.set(current)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token:
            _request_context.reset(self._token)
        return False


def set_context(**kwargs):
    """Set context values for the current execution context."""
    current = _request_context.get().copy()
    current.update(kwargs)
    _request_context.set(current)


def get_context() -> Dict[str, Any]:
    """Get current logging context."""
    return _request_context.get().copy()


def clear_context():
    """Clear the current logging context."""
    _request_context.set({})


# =============================================================================
# JSON LOG FORMATTER
# =============================================================================

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:45.123Z",
        "level": "INFO",
        "logger": "calibration",
        "message": "Calibration detected",
        "service": "wound-measure",
        "environment": "production",
        "host": "server-01",
        "request_id": "abc123",
        "wound_id": "w-42",
        "extra": {...}
    }
    """

    CONTEXT_FIELDS = ('request_id', 'correlation_id', 'wound_id', 'task_id')

    STANDARD_FIELDS = {
        'timestamp', 'level', 'logger', 'message', 'service',
        'environment', 'host', *CONTEXT_FIELDS
    }

    # Sensitive fields to mask
    SENSITIVE_FIELDS = {
        'password', 'token', 'secret', 'api_key', 'authorization',
        'patient_name', 'mrn', 'date_of_birth'
    }

    # Attributes every LogRecord carries; anything else came in through extra=
    _RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

    def __init__(
        self,
        service_name: str = "wound-measure",
        environment: str = None,
        include_extra: bool = True,
        mask_sensitive: bool = True
    ):
        super().__init__()
        self.service_name = service_name
        self.environment = environment or os.getenv("ENVIRONMENT", "development")
        self.include_extra = include_extra
        self.mask_sensitive = mask_sensitive
        self.hostname = socket.gethostname()

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        context = get_context()

        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "host": self.hostname,
        }

        # Record-level values (passed via extra=) win over the ambient context
        for key in self.CONTEXT_FIELDS:
            value = getattr(record, key, context.get(key))
            if value is not None:
                log_entry[key] = value

        # Add source location for errors
        if record.levelno >= logging.ERROR:
            log_entry["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName
            }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": self._format_exception(record.exc_info)
            }

        if self.include_extra:
            extra = {}
            for key, value in record.__dict__.items():
                if key in self._RESERVED or key.startswith('_') or key in self.STANDARD_FIELDS:
                    continue
                if self.mask_sensitive and self._is_sensitive(key):
                    extra[key] = "***MASKED***"
                else:
                    extra[key] = self._serialize_value(value)

            # Add remaining context as extra
            for key, value in context.items():
                if key not in log_entry and key not in extra:
                    extra[key] = self._serialize_value(value)

            if extra:
                log_entry["extra"] = extra

        return json.dumps(log_entry, default=str, ensure_ascii=False)

    def _format_exception(self, exc_info) -> Optional[str]:
        """Format exception traceback."""
        if exc_info:
            return ''.join(traceback.format_exception(*exc_info))
        return None

    def _is_sensitive(self, key: str) -> bool:
        key_lower = key.lower()
        return any(sensitive in key_lower for sensitive in self.SENSITIVE_FIELDS)

    def _serialize_value(self, value: Any) -> Any:
        if isinstance(value, (str, int, float, bool, type(None))):
            return value
        elif isinstance(value, datetime):
            return value.isoformat()
        elif isinstance(value, (list, tuple)):
            return [self._serialize_value(v) for v in value]
        elif isinstance(value, dict):
            return {k: self._serialize_value(v) for k, v in value.items()}
        else:
            return str(value)


# =============================================================================
# NDJSON FILE HANDLER
# =============================================================================

class RotatingJSONFileHandler(logging.Handler):
    """
    File handler that writes one JSON object per line.

    Rotates by size, keeping `backup_count` numbered backups.
    """

    def __init__(
        self,
        filename: str,
        max_bytes: int = 10 * 1024 * 1024,  # 10MB
        backup_count: int = 5,
        encoding: str = 'utf-8'
    ):
        super().__init__()
        self.filename = Path(filename)
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.encoding = encoding
        self._lock = threading.Lock()

        self.filename.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, record: logging.LogRecord):
        """Write log record to file."""
        try:
            msg = self.format(record)

            with self._lock:
                if self.filename.exists() and self.filename.stat().st_size >= self.max_bytes:
                    self._rotate()

                with open(self.filename, 'a', encoding=self.encoding) as f:
                    f.write(msg + '\n')

        except Exception:
            self.handleError(record)

    def _rotate(self):
        """Rotate log files."""
        oldest = Path(f"{self.filename}.{self.backup_count}")
        if oldest.exists():
            oldest.unlink()

        for i in range(self.backup_count - 1, 0, -1):
            src = Path(f"{self.filename}.{i}")
            dst = Path(f"{self.filename}.{i + 1}")
            if src.exists():
                src.rename(dst)

        if self.filename.exists():
            self.filename.rename(Path(f"{self.filename}.1"))


# =============================================================================
# LOGGER FACTORY
# =============================================================================

_configured = False


def configure_logging(
    level: str = None,
    format: str = None,
    output: str = None,
    service_name: str = "wound-measure",
    log_file: str = None
):
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format ("json" or "text")
        output: Output destination ("stdout", "file", "all")
        service_name: Service name for log entries
        log_file: Path to log file (for file output)
    """
    global _configured

    import config

    level = level or config.LOG_LEVEL
    format = format or config.LOG_FORMAT
    output = output or config.LOG_OUTPUT
    log_file = log_file or config.LOG_FILE

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    if format.lower() == "json":
        formatter = JSONFormatter(service_name=service_name)
    else:
        formatter = logging.Formatter(
            '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    for out in output.lower().split(","):
        out = out.strip()

        if out in ("stdout", "all"):
            stdout_handler = logging.StreamHandler(sys.stdout)
            stdout_handler.setFormatter(formatter)
            root_logger.addHandler(stdout_handler)

        if out in ("file", "all"):
            if format.lower() == "json":
                file_handler = RotatingJSONFileHandler(log_file)
            else:
                Path(log_file).parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    _configured = True

    root_logger.info(
        "Logging configured",
        extra={
            "log_level": level,
            "log_format": format,
            "log_output": output,
        }
    )


def get_logger(name: str = None) -> logging.Logger:
    """
    Get a logger instance with structured logging support.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    if not _configured:
        configure_logging()

    return logging.getLogger(name or "app")


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    request_id: str = None,
    client_ip: str = None,
    **extra
):
    """Log an HTTP request in structured format."""
    logger = get_logger("http")

    log_data = {
        "http_method": method,
        "http_path": path,
        "http_status": status_code,
        "duration_ms": round(duration_ms, 2),
        "request_id": request_id,
        "client_ip": client_ip,
        **extra
    }

    if status_code >= 500:
        logger.error("HTTP request failed", extra=log_data)
    elif status_code >= 400:
        logger.warning("HTTP request client error", extra=log_data)
    else:
        logger.info("HTTP request completed", extra=log_data)


def log_calibration(
    marker_type: str,
    detected: bool,
    confidence: float,
    pixels_per_cm: float,
    duration_ms: float = None,
    failure_reason: str = None,
    **extra
):
    """Log a calibration detection outcome."""
    logger = get_logger("calibration")

    log_data = {
        "marker_type": marker_type,
        "detected": detected,
        "confidence": round(confidence, 3),
        "pixels_per_cm": round(pixels_per_cm, 3),
        "duration_ms": round(duration_ms, 2) if duration_ms is not None else None,
        **extra
    }

    if detected:
        logger.info("Calibration detected", extra=log_data)
    else:
        log_data["failure_reason"] = failure_reason
        logger.info("Calibration not detected", extra=log_data)


def log_measurement(
    area_cm2: float,
    length_cm: float,
    width_cm: float,
    warnings: List[str] = None,
    **extra
):
    """Log a completed wound measurement."""
    logger = get_logger("measurement")

    warnings = warnings or []
    log_data = {
        "area_cm2": area_cm2,
        "length_cm": length_cm,
        "width_cm": width_cm,
        "warning_count": len(warnings),
        **extra
    }

    if warnings:
        log_data["warnings"] = warnings
        logger.warning("Measurement completed with warnings", extra=log_data)
    else:
        logger.info("Measurement completed", extra=log_data)


def log_quality_check(
    passed: bool,
    failed_checks: List[str],
    blur_score: float = None,
    lighting_score: float = None,
    **extra
):
    """Log the outcome of a photo quality check."""
    logger = get_logger("quality")

    log_data = {
        "passed": passed,
        "failed_checks": failed_checks,
        "blur_score": blur_score,
        "lighting_score": lighting_score,
        **extra
    }

    if passed:
        logger.info("Quality check passed", extra=log_data)
    else:
        logger.info("Quality check failed", extra=log_data)


# =============================================================================
# REQUEST ID GENERATION
# =============================================================================

def generate_request_id() -> str:
    """Generate a unique request ID."""
    return str(uuid.uuid4())[:12]


def generate_correlation_id() -> str:
    """Generate a correlation ID for distributed tracing."""
    return str(uuid.uuid4())
