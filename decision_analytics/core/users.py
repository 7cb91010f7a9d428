"""
User interaction analytics.

Tracks decision requests per user and per session, and derives behavior
patterns, personalization effectiveness, request patterns, segments,
cohorts, journeys and lifetime value predictions.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from decision_analytics.config.loader import ConfigurationError, require_positive
from decision_analytics.storage.models import (
    DeviceInfo,
    DeviceType,
    JourneyEntry,
    SessionAnalytics,
    UserDecisionRequest,
)
from decision_analytics.storage.repository import MetricStore
from .events import EventBus, EventType
from .scheduler import Clock, SystemClock
from .segments import (
    CohortAnalysis,
    PeriodType,
    UserSegment,
    generate_segments,
    perform_cohort_analysis,
)
from .statistics import clamp, safe_percentage, safe_ratio
from .time_buckets import validate_range

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
TREND_WINDOW = 10
TREND_BAND = 0.2
MIN_TREND_SPAN_DAYS = 1 / 24
DEFAULT_SESSION_MINUTES = 5.0
CHURN_INACTIVITY_DAYS = 30
PEAK_HOURS = 5

LTV_BASE_VALUE = 100
LTV_WEIGHTS = {
    "request_frequency": 0.3,
    "conversion_likelihood": 0.25,
    "session_length": 0.2,
    "churn_risk": -0.15,
    "engagement_trend": 0.1,
}


class PatternType(Enum):
    """Behavior tier of a user."""
    TRIAL_USER = "trial_user"
    CASUAL_USER = "casual_user"
    FREQUENT_USER = "frequent_user"
    POWER_USER = "power_user"
    CHURNED_USER = "churned_user"


class EngagementTrend(Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


@dataclass(frozen=True)
class TimeSlot:
    hour: int
    day_of_week: int  # 0 = Sunday
    frequency: int


@dataclass(frozen=True)
class CampaignPreference:
    campaign_id: str
    engagement_score: float


@dataclass
class UserBehaviorPattern:
    """Behavior summary for one user, recomputed on every request."""
    user_id: str
    pattern_type: PatternType
    request_frequency: float
    average_session_length: float
    conversion_likelihood: float
    churn_risk: float
    engagement_trend: EngagementTrend
    last_activity: datetime
    preferred_time_slots: List[TimeSlot] = field(default_factory=list)
    campaign_preferences: List[CampaignPreference] = field(default_factory=list)


@dataclass(frozen=True)
class PersonalizationFactor:
    factor: str
    impact: float
    confidence: float


@dataclass
class SegmentPerformance:
    requests: int = 0
    acceptance_rate: float = 0.0
    average_response_time: float = 0.0


@dataclass
class PersonalizationEffectiveness:
    """Acceptance of personalized (context-carrying) versus generic requests."""
    user_id: str
    personalized_requests: int = 0
    generic_requests: int = 0
    personalized_acceptance_rate: float = 0.0
    generic_acceptance_rate: float = 0.0
    personalization_lift: float = 0.0
    top_personalization_factors: List[PersonalizationFactor] = field(default_factory=list)
    segment_performance: Dict[str, SegmentPerformance] = field(default_factory=dict)
    factor_counts: Dict[str, List[int]] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class HourCount:
    hour: int
    requests: int


@dataclass(frozen=True)
class CampaignPopularity:
    campaign_id: str
    requests: int
    unique_users: int


@dataclass(frozen=True)
class RequestPatternReport:
    """Aggregate view of all requests in a time range."""
    total_requests: int = 0
    unique_users: int = 0
    average_requests_per_user: float = 0.0
    peak_hours: Tuple[HourCount, ...] = ()
    device_distribution: Dict[str, int] = field(default_factory=dict)
    geographic_distribution: Dict[str, int] = field(default_factory=dict)
    campaign_popularity: Tuple[CampaignPopularity, ...] = ()


@dataclass(frozen=True)
class JourneyEvent:
    timestamp: datetime
    session_id: str
    campaign_id: str
    action: str
    outcome: str
    response_time: float
    context: Dict = field(default_factory=dict)


@dataclass(frozen=True)
class ValueFactor:
    factor: str
    weight: float
    value: float


@dataclass(frozen=True)
class LifetimeValuePrediction:
    predicted_value: float = 0.0
    confidence: float = 0.0
    factors: Tuple[ValueFactor, ...] = ()


def detect_os(user_agent: Optional[str]) -> str:
    """Operating system named in a user agent string, or "unknown"."""
    if not user_agent:
        return "unknown"
    if "Windows" in user_agent:
        return "Windows"
    if "Mac" in user_agent:
        return "macOS"
    if "Linux" in user_agent:
        return "Linux"
    if "Android" in user_agent:
        return "Android"
    if "iOS" in user_agent:
        return "iOS"
    return "unknown"


def device_info_for(request: UserDecisionRequest) -> DeviceInfo:
    user_agent = request.user_agent
    return DeviceInfo(
        type=request.device_type or DeviceType.DESKTOP,
        browser=user_agent.split()[0] if user_agent and user_agent.split() else None,
        os=detect_os(user_agent),
    )


def classify_pattern(request_frequency: float) -> PatternType:
    if request_frequency > 20:
        return PatternType.POWER_USER
    if request_frequency > 5:
        return PatternType.FREQUENT_USER
    if request_frequency > 1:
        return PatternType.CASUAL_USER
    return PatternType.TRIAL_USER


def _request_rate(window: List[UserDecisionRequest]) -> float:
    span = (window[-1].timestamp - window[0].timestamp).total_seconds() / SECONDS_PER_DAY
    return len(window) / max(span, MIN_TREND_SPAN_DAYS)


def engagement_trend(requests: List[UserDecisionRequest]) -> EngagementTrend:
    """Compare the latest 10 requests with the 10 before them.

    Windows are compared by request rate; if the earlier window holds fewer
    than two requests its raw count is compared instead.
    """
    ordered = sorted(requests, key=lambda r: r.timestamp)
    recent = ordered[-TREND_WINDOW:]
    older = ordered[-2 * TREND_WINDOW:-TREND_WINDOW]

    if len(older) < 2:
        if len(recent) > len(older):
            return EngagementTrend.INCREASING
        if len(recent) < len(older):
            return EngagementTrend.DECREASING
        return EngagementTrend.STABLE

    ratio = _request_rate(recent) / _request_rate(older)
    if ratio > 1 + TREND_BAND:
        return EngagementTrend.INCREASING
    if ratio < 1 - TREND_BAND:
        return EngagementTrend.DECREASING
    return EngagementTrend.STABLE


def churn_risk(trend: EngagementTrend, conversion_likelihood: float) -> float:
    adjustment = {
        EngagementTrend.INCREASING: -10,
        EngagementTrend.STABLE: 0,
        EngagementTrend.DECREASING: 35,
    }[trend]
    return clamp(30 + adjustment + 0.4 * (50 - conversion_likelihood), 0, 100)


def preferred_time_slots(requests: List[UserDecisionRequest], limit: int = 3) -> List[TimeSlot]:
    counts: Dict[Tuple[int, int], int] = {}
    for request in requests:
        key = (request.timestamp.hour, (request.timestamp.weekday() + 1) % 7)
        counts[key] = counts.get(key, 0) + 1
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:limit]
    return [TimeSlot(hour=hour, day_of_week=day, frequency=count) for (hour, day), count in ranked]


def campaign_preferences(requests: List[UserDecisionRequest], limit: int = 5) -> List[CampaignPreference]:
    """Engagement = half request share plus half acceptance rate, both in percent."""
    totals: Dict[str, List[int]] = {}
    for request in requests:
        counts = totals.setdefault(request.campaign_id, [0, 0])
        counts[0] += 1
        if request.decision_made:
            counts[1] += 1

    preferences = [
        CampaignPreference(
            campaign_id=campaign_id,
            engagement_score=0.5 * safe_percentage(count, len(requests)) + 0.5 * safe_percentage(accepted, count),
        )
        for campaign_id, (count, accepted) in totals.items()
    ]
    preferences.sort(key=lambda p: p.engagement_score, reverse=True)
    return preferences[:limit]


class UserInteractionAnalyzer:
    """User interaction analyzer.

    Keeps requests per user and sessions per session id, plus one behavior
    pattern and one personalization record per user. The segment table is
    replaced on every call to generate_user_segments.
    """

    def __init__(
        self,
        retention_days: float = 365,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize the analyzer.

        Args:
            retention_days: Requests and sessions older than this are evicted
            event_bus: Bus to publish request and session notifications on
            clock: Time source (wall clock by default)

        Raises:
            ConfigurationError: If retention_days is not positive
        """
        require_positive(retention_days, "retention_days")
        self.retention_days = retention_days
        self.event_bus = event_bus or EventBus()
        self.clock = clock or SystemClock()
        self.store = MetricStore()
        self.patterns: Dict[str, UserBehaviorPattern] = {}
        self.personalization: Dict[str, PersonalizationEffectiveness] = {}
        self.segments: Dict[str, UserSegment] = {}

    def record_user_request(self, request: UserDecisionRequest) -> None:
        """Record one decision request and update every derived view of its user."""
        requests = self.store.append_user_request(request)
        self._update_session(request)
        self._update_pattern(request.user_id, requests, request.timestamp)
        self._update_personalization(request)

        logger.debug(
            "User request recorded: %s/%s (campaign=%s, accepted=%s)",
            request.user_id, request.session_id, request.campaign_id, request.decision_made,
        )
        self.event_bus.publish(EventType.REQUEST_RECORDED, request)

    def _update_session(self, request: UserDecisionRequest) -> None:
        session = self.store.sessions.get(request.session_id)
        if session is None:
            session = SessionAnalytics(
                session_id=request.session_id,
                user_id=request.user_id,
                start_time=request.timestamp,
                device_info=device_info_for(request),
            )
            self.store.sessions[request.session_id] = session

        session.total_requests += 1
        if request.decision_made:
            session.decisions_accepted += 1
        else:
            session.decisions_rejected += 1
        session.average_response_time += (
            (request.response_time - session.average_response_time) / session.total_requests
        )
        session.journey.append(JourneyEntry(
            timestamp=request.timestamp,
            action="decision_request",
            campaign_id=request.campaign_id,
            value=1.0 if request.decision_made else 0.0,
        ))

    def _average_session_length(self, user_id: str) -> float:
        durations = [
            s.duration for s in self.store.sessions.values()
            if s.user_id == user_id and s.duration is not None
        ]
        if not durations:
            return DEFAULT_SESSION_MINUTES
        return sum(durations) / len(durations) / 60000

    def _update_pattern(self, user_id: str, requests: List[UserDecisionRequest], now: datetime) -> None:
        first_seen = min(r.timestamp for r in requests)
        days_active = max(1.0, (now - first_seen).total_seconds() / SECONDS_PER_DAY)
        request_frequency = len(requests) / days_active

        accepted = sum(1 for r in requests if r.decision_made)
        conversion_likelihood = safe_percentage(accepted, len(requests))
        trend = engagement_trend(requests)

        previous = self.patterns.get(user_id)
        self.patterns[user_id] = UserBehaviorPattern(
            user_id=user_id,
            pattern_type=classify_pattern(request_frequency),
            request_frequency=request_frequency,
            average_session_length=(
                previous.average_session_length if previous else self._average_session_length(user_id)
            ),
            conversion_likelihood=conversion_likelihood,
            churn_risk=churn_risk(trend, conversion_likelihood),
            engagement_trend=trend,
            last_activity=max(now, previous.last_activity) if previous else now,
            preferred_time_slots=preferred_time_slots(requests),
            campaign_preferences=campaign_preferences(requests),
        )

    def _update_personalization(self, request: UserDecisionRequest) -> None:
        record = self.personalization.setdefault(
            request.user_id, PersonalizationEffectiveness(user_id=request.user_id)
        )
        outcome = 100.0 if request.decision_made else 0.0

        if request.context_data:
            record.personalized_requests += 1
            record.personalized_acceptance_rate += (
                (outcome - record.personalized_acceptance_rate) / record.personalized_requests
            )
            for key in request.context_data:
                counts = record.factor_counts.setdefault(key, [0, 0])
                counts[0] += 1
                if request.decision_made:
                    counts[1] += 1
        else:
            record.generic_requests += 1
            record.generic_acceptance_rate += (
                (outcome - record.generic_acceptance_rate) / record.generic_requests
            )

        generic = record.generic_acceptance_rate
        record.personalization_lift = (
            (record.personalized_acceptance_rate - generic) / generic * 100 if generic > 0 else 0.0
        )

        factors = [
            PersonalizationFactor(
                factor=key,
                impact=safe_percentage(accepted, occurrences) - generic,
                confidence=min(100.0, 10.0 * occurrences),
            )
            for key, (occurrences, accepted) in record.factor_counts.items()
        ]
        factors.sort(key=lambda f: f.impact, reverse=True)
        record.top_personalization_factors = factors[:5]

        device = (request.device_type or DeviceType.DESKTOP).value
        segment = record.segment_performance.setdefault(device, SegmentPerformance())
        segment.requests += 1
        segment.acceptance_rate += (outcome - segment.acceptance_rate) / segment.requests
        segment.average_response_time += (
            (request.response_time - segment.average_response_time) / segment.requests
        )

    def end_session(self, session_id: str, end_time: Optional[datetime] = None) -> Optional[SessionAnalytics]:
        """Close a session. Calling it again on an ended session changes nothing.

        Returns:
            The session, or None if the id is unknown

        Raises:
            ConfigurationError: If end_time is before the session start
        """
        session = self.store.sessions.get(session_id)
        if session is None or session.is_ended:
            return session

        end_time = end_time or self.clock.now()
        if end_time < session.start_time:
            raise ConfigurationError(
                f"Session {session_id} cannot end before it started ({session.start_time.isoformat()})"
            )
        session.end_time = end_time
        pattern = self.patterns.get(session.user_id)
        if pattern is not None:
            pattern.average_session_length = self._average_session_length(session.user_id)

        logger.debug("Session ended: %s (%.0fms)", session_id, session.duration)
        self.event_bus.publish(EventType.SESSION_ENDED, session)
        return session

    def get_user_behavior_pattern(self, user_id: str) -> Optional[UserBehaviorPattern]:
        return self.patterns.get(user_id)

    def get_session_analytics(self, session_id: str) -> Optional[SessionAnalytics]:
        return self.store.sessions.get(session_id)

    def get_user_sessions(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[SessionAnalytics]:
        """Sessions of a user started within the optional range, newest first."""
        sessions = [
            s for s in self.store.sessions.values()
            if s.user_id == user_id
            and (start is None or s.start_time >= start)
            and (end is None or s.start_time <= end)
        ]
        return sorted(sessions, key=lambda s: s.start_time, reverse=True)

    def get_personalization_effectiveness(self, user_id: str) -> Optional[PersonalizationEffectiveness]:
        return self.personalization.get(user_id)

    def analyze_request_patterns(self, start: datetime, end: datetime) -> RequestPatternReport:
        """Aggregate every request with start <= timestamp <= end.

        Raises:
            ConfigurationError: If start is after end
        """
        validate_range(start, end)
        requests = [r for r in self.store.iter_requests() if start <= r.timestamp <= end]
        if not requests:
            return RequestPatternReport()

        unique_users = {r.user_id for r in requests}

        hours: Dict[int, int] = {}
        devices: Dict[str, int] = {}
        countries: Dict[str, int] = {}
        campaigns: Dict[str, Tuple[int, set]] = {}
        for request in requests:
            hours[request.timestamp.hour] = hours.get(request.timestamp.hour, 0) + 1
            device = request.device_type.value if request.device_type else "unknown"
            devices[device] = devices.get(device, 0) + 1
            country = request.location.country if request.location else "unknown"
            countries[country] = countries.get(country, 0) + 1
            count, users = campaigns.get(request.campaign_id, (0, set()))
            users.add(request.user_id)
            campaigns[request.campaign_id] = (count + 1, users)

        peak_hours = tuple(
            HourCount(hour=hour, requests=count)
            for hour, count in sorted(hours.items(), key=lambda item: (-item[1], item[0]))[:PEAK_HOURS]
        )
        popularity = sorted(
            (
                CampaignPopularity(campaign_id=campaign_id, requests=count, unique_users=len(users))
                for campaign_id, (count, users) in campaigns.items()
            ),
            key=lambda c: c.requests,
            reverse=True,
        )

        return RequestPatternReport(
            total_requests=len(requests),
            unique_users=len(unique_users),
            average_requests_per_user=safe_ratio(len(requests), len(unique_users)),
            peak_hours=peak_hours,
            device_distribution=devices,
            geographic_distribution=countries,
            campaign_popularity=tuple(popularity),
        )

    def generate_user_segments(self) -> List[UserSegment]:
        """Rebuild the segment table from the current behavior patterns."""
        segments = generate_segments(self.patterns.values(), self.clock.now())
        self.segments = {segment.segment_id: segment for segment in segments}
        logger.info("User segments refreshed: %d non-empty segments", len(segments))
        return segments

    def perform_cohort_analysis(
        self,
        start: datetime,
        end: datetime,
        period_type: Union[str, PeriodType] = PeriodType.MONTH,
    ) -> List[CohortAnalysis]:
        """Retention and behavior evolution of first-activity cohorts in range."""
        return perform_cohort_analysis(
            requests_by_user=self.store.user_requests,
            sessions=self.store.sessions.values(),
            conversion_by_user={u: p.conversion_likelihood for u, p in self.patterns.items()},
            start=start,
            end=end,
            period_type=period_type,
        )

    def get_user_journey(self, user_id: str, session_id: Optional[str] = None) -> List[JourneyEvent]:
        """The user's requests as journey events in time order."""
        events = [
            JourneyEvent(
                timestamp=r.timestamp,
                session_id=r.session_id,
                campaign_id=r.campaign_id,
                action="decision_request",
                outcome="accepted" if r.decision_made else "rejected",
                response_time=r.response_time,
                context=dict(r.context_data),
            )
            for r in self.store.requests_for(user_id)
            if session_id is None or r.session_id == session_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    def predict_user_lifetime_value(self, user_id: str) -> LifetimeValuePrediction:
        """Linear value model over the user's behavior pattern.

        Each factor value is scaled to a fraction (divided by 100, or 1/0 for
        an increasing trend) and contributes base * weight * value on top of
        the base value of 100. Unknown users get an all-zero prediction.
        """
        pattern = self.patterns.get(user_id)
        if pattern is None:
            return LifetimeValuePrediction()

        values = {
            "request_frequency": pattern.request_frequency / 100,
            "conversion_likelihood": pattern.conversion_likelihood / 100,
            "session_length": pattern.average_session_length / 100,
            "churn_risk": pattern.churn_risk / 100,
            "engagement_trend": 1.0 if pattern.engagement_trend == EngagementTrend.INCREASING else 0.0,
        }
        factors = tuple(
            ValueFactor(factor=name, weight=weight, value=values[name])
            for name, weight in LTV_WEIGHTS.items()
        )
        predicted = LTV_BASE_VALUE + sum(LTV_BASE_VALUE * f.weight * f.value for f in factors)
        confidence = clamp(
            pattern.request_frequency / 10 * 20 + (100 - pattern.churn_risk) * 0.5, 10, 95
        )
        return LifetimeValuePrediction(
            predicted_value=max(0.0, predicted),
            confidence=confidence,
            factors=factors,
        )

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Evict old requests and sessions and tag long-inactive users as churned.

        Users left without any retained request lose their pattern and
        personalization records.

        Returns:
            Number of users whose request lists changed
        """
        now = now or self.clock.now()
        cutoff = now - timedelta(days=self.retention_days)
        touched, sessions_removed = self.store.evict_user_records(cutoff)

        for user_id in list(self.patterns):
            if user_id not in self.store.user_requests:
                del self.patterns[user_id]
                self.personalization.pop(user_id, None)
                continue
            pattern = self.patterns[user_id]
            if sessions_removed:
                pattern.average_session_length = self._average_session_length(user_id)
            if now - pattern.last_activity > timedelta(days=CHURN_INACTIVITY_DAYS):
                pattern.pattern_type = PatternType.CHURNED_USER

        if touched or sessions_removed:
            logger.info(
                "User retention cleanup touched %d users and removed %d sessions",
                len(touched), sessions_removed,
            )
        return len(touched)
