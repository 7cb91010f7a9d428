"""
Time-bucketed trend aggregation.

Groups observations into hour, day or week buckets and rolls them up into
per-bucket volume, success rate and average time.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Union

from decision_analytics.config.loader import ConfigurationError
from .statistics import safe_percentage, safe_ratio


class Granularity(Enum):
    """Bucket width for trend series."""
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"


@dataclass(frozen=True)
class BucketObservation:
    """Executions observed at one instant.

    A single execution has ``executions=1``; an aggregated block of
    executions (for example evicted samples) carries its totals.
    """
    timestamp: datetime
    executions: int
    successes: int
    total_time: float


@dataclass(frozen=True)
class TrendPoint:
    """Rollup of one time bucket."""
    date: datetime
    executions: int
    success_rate: float
    average_time: float


def parse_granularity(value: Union[str, Granularity]) -> Granularity:
    """Accept a Granularity or its string value.

    Raises:
        ConfigurationError: If the value is not hour, day or week
    """
    if isinstance(value, Granularity):
        return value
    try:
        return Granularity(str(value).lower())
    except ValueError:
        valid = [g.value for g in Granularity]
        raise ConfigurationError(f"granularity must be one of: {valid}")


def bucket_start(timestamp: datetime, granularity: Granularity) -> datetime:
    """Start of the calendar bucket containing ``timestamp``.

    Weeks start on Sunday.
    """
    if granularity == Granularity.HOUR:
        return timestamp.replace(minute=0, second=0, microsecond=0)
    day = timestamp.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == Granularity.DAY:
        return day
    days_since_sunday = (day.weekday() + 1) % 7
    return day - timedelta(days=days_since_sunday)


def validate_range(start: datetime, end: datetime) -> None:
    if start > end:
        raise ConfigurationError("start must not be after end")


def aggregate_by_time(
    observations: Iterable[BucketObservation],
    granularity: Granularity,
) -> List[TrendPoint]:
    """Roll observations up into ascending trend points.

    Args:
        observations: Observations to bucket (any order)
        granularity: Bucket width

    Returns:
        One TrendPoint per non-empty bucket, sorted by bucket start
    """
    totals: Dict[datetime, List[float]] = {}
    for obs in observations:
        if obs.executions <= 0:
            continue
        key = bucket_start(obs.timestamp, granularity)
        bucket = totals.setdefault(key, [0, 0, 0.0])
        bucket[0] += obs.executions
        bucket[1] += obs.successes
        bucket[2] += obs.total_time

    return [
        TrendPoint(
            date=key,
            executions=int(executions),
            success_rate=safe_percentage(successes, executions),
            average_time=safe_ratio(total_time, executions),
        )
        for key, (executions, successes, total_time) in sorted(totals.items())
    ]
