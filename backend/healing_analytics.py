"""
Wound Healing Analytics

Derives healing progress and trend analytics from the time series of area
measurements of one wound. Results are views recomputed on demand; nothing
here is stored.
"""

import math
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Union

from structured_logging import get_logger
from wound_types import (
    AreaObservation,
    HealingProgressPoint,
    HealingTrend,
    WoundAnalytics,
    WoundAssessment,
    round_half_up,
)

logger = get_logger(__name__)

# Mean recent area change (%) beyond which a wound counts as improving/worsening
TREND_THRESHOLD_PERCENT = 5.0
TREND_WINDOW = 3

SECONDS_PER_DAY = 24 * 60 * 60

Observation = Union[AreaObservation, WoundAssessment]


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end, rounded half up to the nearest day."""
    return int(math.floor((end - start).total_seconds() / SECONDS_PER_DAY + 0.5))


def _as_observation(item: Observation) -> AreaObservation:
    if isinstance(item, WoundAssessment):
        return item.observation()
    return item


def calculate_healing_progress(assessments: Sequence[Observation]) -> List[HealingProgressPoint]:
    """
    Per-assessment healing progress in chronological order.

    Args:
        assessments: area observations or finished assessments, any order

    Returns:
        One progress point per assessment; area change, change percent and
        healing rate are relative to the previous assessment (0 for the first)
    """
    ordered = sorted((_as_observation(a) for a in assessments), key=lambda o: o.captured_at)

    progress = []
    previous: Optional[AreaObservation] = None
    for current in ordered:
        current_area = current.area
        previous_area = previous.area if previous is not None else current_area

        area_change = current_area - previous_area
        area_change_percent = (area_change / previous_area) * 100 if previous_area > 0 else 0.0

        healing_rate = 0.0
        if previous is not None:
            days = days_between(previous.captured_at, current.captured_at)
            if days > 0:
                healing_rate = -area_change / days

        projected = None
        if healing_rate > 0 and current_area > 0:
            projected = current.captured_at + timedelta(days=math.ceil(current_area / healing_rate))

        progress.append(HealingProgressPoint(
            assessment_id=current.assessment_id,
            date=current.captured_at,
            area=current_area,
            area_change=round_half_up(area_change, 2),
            area_change_percent=round_half_up(area_change_percent, 1),
            healing_rate=round_half_up(healing_rate, 3),
            projected_healing_date=projected,
        ))
        previous = current

    return progress


def classify_trend(progress: Sequence[HealingProgressPoint]) -> HealingTrend:
    """
    Trend from the mean change percent of the last three progress points.

    Fewer than two points is always stable.
    """
    if len(progress) < 2:
        return HealingTrend.STABLE

    recent = progress[-TREND_WINDOW:]
    avg_change = sum(p.area_change_percent for p in recent) / len(recent)

    if avg_change < -TREND_THRESHOLD_PERCENT:
        return HealingTrend.IMPROVING
    if avg_change > TREND_THRESHOLD_PERCENT:
        return HealingTrend.WORSENING
    return HealingTrend.STABLE


def calculate_wound_analytics(
    wound_id: str,
    assessments: Sequence[Observation],
    onset: datetime,
    now: Optional[datetime] = None,
) -> WoundAnalytics:
    """
    Aggregate healing analytics for one wound.

    Args:
        wound_id: wound identifier
        assessments: area observations or finished assessments, any order
        onset: wound onset date
        now: reference time for days since onset (defaults to the current time,
            in onset's timezone)

    Returns:
        WoundAnalytics; all zero with a stable trend when there are no assessments
    """
    progress = calculate_healing_progress(assessments)

    if not progress:
        return WoundAnalytics(
            wound_id=wound_id,
            initial_area=0.0,
            current_area=0.0,
            total_reduction=0.0,
            total_reduction_percent=0.0,
            average_healing_rate=0.0,
            healing_velocity=0.0,
            assessment_count=0,
            days_since_onset=0,
            trend=HealingTrend.STABLE,
        )

    if now is None:
        now = datetime.now(onset.tzinfo)

    initial_area = progress[0].area
    current_area = progress[-1].area
    total_reduction = initial_area - current_area
    total_reduction_percent = (total_reduction / initial_area) * 100 if initial_area > 0 else 0.0

    positive_rates = [p.healing_rate for p in progress if p.healing_rate > 0]
    average_healing_rate = sum(positive_rates) / len(positive_rates) if positive_rates else 0.0

    trend = classify_trend(progress)

    logger.debug(
        "Computed wound analytics",
        extra={
            "wound_id": wound_id,
            "assessment_count": len(progress),
            "trend": trend.value,
        },
    )

    return WoundAnalytics(
        wound_id=wound_id,
        initial_area=round_half_up(initial_area, 2),
        current_area=round_half_up(current_area, 2),
        total_reduction=round_half_up(total_reduction, 2),
        total_reduction_percent=round_half_up(total_reduction_percent, 1),
        average_healing_rate=round_half_up(average_healing_rate, 3),
        healing_velocity=round_half_up(average_healing_rate * 7, 2),
        assessment_count=len(progress),
        days_since_onset=days_between(onset, now),
        trend=trend,
        progress_history=tuple(progress),
    )
