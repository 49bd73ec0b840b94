"""
Celery application for offloaded wound image work.

Two kinds of job leave the request path:
- calibration detection on a single stored photo (short, own queue)
- full reprocessing of a stored photo and mask through the pipeline

Queue names and per-task time limits come from config, so a worker can be
pointed at just one kind of job:

    celery -A celery_app worker --loglevel=info -Q calibration
    celery -A celery_app worker --loglevel=info -Q wound_reprocess
"""

from typing import Dict, NamedTuple

from celery import Celery

import config

# Custom state reported while a task is running
PROGRESS = "PROGRESS"


class TaskPlacement(NamedTuple):
    queue: str
    soft_time_limit: int


TASK_PLACEMENTS: Dict[str, TaskPlacement] = {
    "tasks.detect_calibration_task": TaskPlacement(
        config.CALIBRATION_QUEUE, config.CALIBRATION_TASK_SOFT_TIME_LIMIT
    ),
    "tasks.reprocess_assessment_task": TaskPlacement(
        config.REPROCESS_QUEUE, config.REPROCESS_TASK_SOFT_TIME_LIMIT
    ),
}


def task_routes() -> Dict[str, dict]:
    return {name: {"queue": placement.queue} for name, placement in TASK_PLACEMENTS.items()}


def task_annotations() -> Dict[str, dict]:
    """Soft limit per task; the hard limit follows after a fixed grace period."""
    return {
        name: {
            "soft_time_limit": placement.soft_time_limit,
            "time_limit": placement.soft_time_limit + config.TASK_HARD_LIMIT_GRACE,
        }
        for name, placement in TASK_PLACEMENTS.items()
    }


celery_app = Celery(
    "wound_measure",
    broker=config.CELERY_BROKER_URL,
    backend=config.CELERY_RESULT_BACKEND,
    include=["tasks"],
)

celery_app.conf.update(
    # Payloads are file paths and outcome dicts; pixels never cross the broker
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=config.CELERY_TASK_RESULT_EXPIRES,

    task_default_queue=config.CALIBRATION_QUEUE,
    task_routes=task_routes(),
    task_annotations=task_annotations(),

    worker_concurrency=config.CELERY_WORKER_CONCURRENCY,
    worker_prefetch_multiplier=config.CELERY_WORKER_PREFETCH_MULTIPLIER,
    task_track_started=True,
    task_acks_late=True,
)
