"""
User segmentation and cohort retention.

Segments bucket users by fixed behavior predicates; cohorts group users by
the calendar period of their first request and follow them for twelve
periods.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Tuple, Union

from decision_analytics.config.loader import ConfigurationError
from decision_analytics.storage.models import SessionAnalytics, UserDecisionRequest
from .statistics import safe_percentage, safe_ratio
from .time_buckets import Granularity, bucket_start, validate_range

COHORT_PERIODS = 12
NEW_USER_DAYS = 7
TOP_CAMPAIGNS = 5


class PeriodType(Enum):
    """Cohort period width."""
    WEEK = "week"
    MONTH = "month"


@dataclass(frozen=True)
class CampaignEngagement:
    campaign_id: str
    engagement: float


@dataclass(frozen=True)
class UserSegment:
    """Aggregate view of the users matching one segment predicate."""
    segment_id: str
    name: str
    description: str
    criteria: Dict[str, Any]
    user_count: int
    average_engagement: float
    average_value: float
    churn_rate: float
    top_campaigns: Tuple[CampaignEngagement, ...] = ()
    user_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SegmentDefinition:
    segment_id: str
    name: str
    description: str
    criteria: Dict[str, Any]
    predicate: Callable[[Any, datetime], bool] = field(compare=False)


SEGMENT_DEFINITIONS = (
    SegmentDefinition(
        segment_id="high-value",
        name="High Value Users",
        description="Frequent users with high conversion likelihood",
        criteria={"request_frequency": "> 10", "conversion_likelihood": "> 70"},
        predicate=lambda p, now: p.request_frequency > 10 and p.conversion_likelihood > 70,
    ),
    SegmentDefinition(
        segment_id="at-risk",
        name="At-Risk Users",
        description="Users with high churn risk and decreasing engagement",
        criteria={"churn_risk": "> 60", "engagement_trend": "decreasing"},
        predicate=lambda p, now: p.churn_risk > 60 and p.engagement_trend.value == "decreasing",
    ),
    SegmentDefinition(
        segment_id="new-users",
        name="New Users",
        description="Users active within the last 7 days",
        criteria={"last_activity_days": f"<= {NEW_USER_DAYS}"},
        predicate=lambda p, now: (now - p.last_activity) <= timedelta(days=NEW_USER_DAYS),
    ),
    SegmentDefinition(
        segment_id="power-users",
        name="Power Users",
        description="Highly engaged users with long session durations",
        criteria={"pattern_type": "power_user", "average_session_length": "> 30"},
        predicate=lambda p, now: p.pattern_type.value == "power_user" and p.average_session_length > 30,
    ),
)


def create_segment(definition: SegmentDefinition, users: List[Any]) -> UserSegment:
    """Aggregate member patterns into a segment.

    Engagement is request frequency, value is conversion likelihood and the
    churn rate is the mean churn risk.
    """
    campaign_engagement: Dict[str, float] = {}
    for user in users:
        for preference in user.campaign_preferences:
            campaign_engagement[preference.campaign_id] = (
                campaign_engagement.get(preference.campaign_id, 0.0) + preference.engagement_score
            )

    top_campaigns = tuple(
        CampaignEngagement(campaign_id=campaign_id, engagement=engagement)
        for campaign_id, engagement in sorted(
            campaign_engagement.items(), key=lambda item: item[1], reverse=True
        )[:TOP_CAMPAIGNS]
    )

    count = len(users)
    return UserSegment(
        segment_id=definition.segment_id,
        name=definition.name,
        description=definition.description,
        criteria=dict(definition.criteria),
        user_count=count,
        average_engagement=safe_ratio(sum(u.request_frequency for u in users), count),
        average_value=safe_ratio(sum(u.conversion_likelihood for u in users), count),
        churn_rate=safe_ratio(sum(u.churn_risk for u in users), count),
        top_campaigns=top_campaigns,
        user_ids=tuple(u.user_id for u in users),
    )


def generate_segments(patterns: Iterable[Any], now: datetime) -> List[UserSegment]:
    """Evaluate every segment predicate; empty segments are omitted."""
    patterns = list(patterns)
    segments = []
    for definition in SEGMENT_DEFINITIONS:
        members = [p for p in patterns if definition.predicate(p, now)]
        if members:
            segments.append(create_segment(definition, members))
    return segments


@dataclass(frozen=True)
class CohortRetention:
    period: int
    active_users: int
    retention_rate: float
    average_value: float


@dataclass(frozen=True)
class CohortBehavior:
    period: int
    avg_requests_per_user: float
    avg_acceptance_rate: float
    avg_session_duration: float


@dataclass(frozen=True)
class CohortAnalysis:
    """Retention and behavior of one first-activity cohort."""
    cohort_id: str
    cohort_date: datetime
    initial_size: int
    retention_rates: Tuple[CohortRetention, ...]
    behavior_evolution: Tuple[CohortBehavior, ...]


def parse_period_type(value: Union[str, PeriodType]) -> PeriodType:
    if isinstance(value, PeriodType):
        return value
    try:
        return PeriodType(str(value).lower())
    except ValueError:
        valid = [p.value for p in PeriodType]
        raise ConfigurationError(f"period_type must be one of: {valid}")


def cohort_start(timestamp: datetime, period_type: PeriodType) -> datetime:
    """Start of the calendar week (Sunday) or month containing ``timestamp``."""
    if period_type == PeriodType.WEEK:
        return bucket_start(timestamp, Granularity.WEEK)
    return timestamp.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def cohort_id(start: datetime, period_type: PeriodType) -> str:
    if period_type == PeriodType.WEEK:
        iso_year, iso_week, _ = start.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    return f"{start.year}-{start.month:02d}"


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    return moment.replace(year=moment.year + month_index // 12, month=month_index % 12 + 1)


def period_window(start: datetime, period: int, period_type: PeriodType) -> Tuple[datetime, datetime]:
    """Half-open [start, end) window of the given period after the cohort start."""
    if period_type == PeriodType.WEEK:
        window_start = start + timedelta(weeks=period)
        return window_start, window_start + timedelta(weeks=1)
    return _add_months(start, period), _add_months(start, period + 1)


def perform_cohort_analysis(
    requests_by_user: Dict[str, List[UserDecisionRequest]],
    sessions: Iterable[SessionAnalytics],
    conversion_by_user: Dict[str, float],
    start: datetime,
    end: datetime,
    period_type: Union[str, PeriodType] = PeriodType.MONTH,
    periods: int = COHORT_PERIODS,
) -> List[CohortAnalysis]:
    """Group users by first request in [start, end] and compute retention.

    A user is active in a period when at least one of their requests falls
    in the period window. Behavior averages only count active users.

    Args:
        requests_by_user: Every retained request per user
        sessions: Every retained session
        conversion_by_user: Conversion likelihood per user (0-100)
        start: Range start (inclusive)
        end: Range end (inclusive)
        period_type: week or month
        periods: Number of periods to follow, including period 0

    Returns:
        Cohorts sorted by cohort start

    Raises:
        ConfigurationError: If start is after end or period_type is unknown
    """
    validate_range(start, end)
    period_type = parse_period_type(period_type)

    cohorts: Dict[datetime, List[str]] = {}
    for user_id, requests in requests_by_user.items():
        in_range = [r.timestamp for r in requests if start <= r.timestamp <= end]
        if in_range:
            cohorts.setdefault(cohort_start(min(in_range), period_type), []).append(user_id)

    sessions_by_user: Dict[str, List[SessionAnalytics]] = {}
    for session in sessions:
        sessions_by_user.setdefault(session.user_id, []).append(session)

    analyses = []
    for cohort_date in sorted(cohorts):
        users = cohorts[cohort_date]
        retention = []
        behavior = []

        for period in range(periods):
            window_start, window_end = period_window(cohort_date, period, period_type)
            active: List[Tuple[str, List[UserDecisionRequest]]] = []
            for user_id in users:
                period_requests = [
                    r for r in requests_by_user.get(user_id, [])
                    if window_start <= r.timestamp < window_end
                ]
                if period_requests:
                    active.append((user_id, period_requests))

            retention.append(CohortRetention(
                period=period,
                active_users=len(active),
                retention_rate=safe_percentage(len(active), len(users)),
                average_value=safe_ratio(
                    sum(conversion_by_user.get(user_id, 0.0) for user_id, _ in active), len(active)
                ),
            ))

            acceptance_rates = []
            session_durations = []
            for user_id, period_requests in active:
                accepted = sum(1 for r in period_requests if r.decision_made)
                acceptance_rates.append(safe_percentage(accepted, len(period_requests)))
                ended = [
                    s.duration for s in sessions_by_user.get(user_id, [])
                    if s.duration is not None and window_start <= s.start_time < window_end
                ]
                session_durations.append(safe_ratio(sum(ended), len(ended)) / 60000)

            behavior.append(CohortBehavior(
                period=period,
                avg_requests_per_user=safe_ratio(sum(len(reqs) for _, reqs in active), len(active)),
                avg_acceptance_rate=safe_ratio(sum(acceptance_rates), len(active)),
                avg_session_duration=safe_ratio(sum(session_durations), len(active)),
            ))

        analyses.append(CohortAnalysis(
            cohort_id=cohort_id(cohort_date, period_type),
            cohort_date=cohort_date,
            initial_size=len(users),
            retention_rates=tuple(retention),
            behavior_evolution=tuple(behavior),
        ))

    return analyses
