"""
Analytics engine.

Wires the atom, campaign and user analyzers to one event bus, one clock and
one job scheduler, fans a decision execution out to all three and derives
cross-component insights, health and comparisons.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from decision_analytics.config.loader import AnalyticsConfig, ConfigurationError
from decision_analytics.storage.models import (
    AtomUsageMetric,
    CampaignExecutionMetric,
    DeviceType,
    ExecutionStatus,
    Location,
    UserDecisionRequest,
)
from .atoms import AtomPerformanceStats, AtomUsageAnalyzer, RankingCriterion
from .campaigns import (
    CampaignMetricsCollector,
    CampaignPerformanceStats,
    ErrorAnalysisEntry,
    ExecutionTimePercentiles,
)
from .events import AnalyticsEvent, EventBus, EventType
from .recommendations import Effort, OptimizationRecommendation, RecommendationType
from .scheduler import Clock, JobScheduler, SystemClock
from .segments import UserSegment
from .statistics import clamp, safe_ratio
from .time_buckets import TrendPoint
from .users import DEFAULT_SESSION_MINUTES, EngagementTrend, UserInteractionAnalyzer

logger = logging.getLogger(__name__)

SLOW_ATOM_ALERT_MS = 5000
INSIGHT_CAMPAIGNS = 10
INSIGHT_ATOMS = 20
INSIGHT_ERRORS = 5
INSIGHT_TREND_DAYS = 30
MAX_RECENT_ALERTS = 100
FORECAST_CAMPAIGNS = 5
FORECAST_RECENT_POINTS = 7
FORECAST_BAND = 5
MAX_CHURN_PREDICTIONS = 10
MAX_OPTIMIZATION_OPPORTUNITIES = 10
AT_RISK_SEGMENT = "at-risk"
RETENTION_ACTIONS = (
    "Send personalized re-engagement campaign",
    "Offer special promotion",
    "Improve onboarding experience",
)
ACTIVE_USER_WINDOW = timedelta(hours=24)

CLEANUP_JOB = "retention_cleanup"
GRAPH_REBUILD_JOB = "dependency_graph_rebuild"
SEGMENT_REFRESH_JOB = "segment_refresh"


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ForecastTrend(Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


@dataclass(frozen=True)
class AtomExecution:
    """One atom evaluated while producing a decision."""
    atom_id: str
    execution_time: float
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class DecisionExecution:
    """Full telemetry for one decision, as reported by the rule engine."""
    campaign_id: str
    decision_id: str
    user_id: str
    session_id: str
    execution_time: float
    success: bool
    atoms_used: List[AtomExecution] = field(default_factory=list)
    user_context: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class Alert:
    level: AlertLevel
    type: str
    message: str
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CampaignInsight:
    stats: CampaignPerformanceStats
    trends: Tuple[TrendPoint, ...]
    errors: Tuple[ErrorAnalysisEntry, ...]
    percentiles: ExecutionTimePercentiles
    health_score: float


@dataclass(frozen=True)
class PerformanceInsights:
    campaigns: Tuple[CampaignInsight, ...]
    atoms: Tuple[AtomPerformanceStats, ...]
    segments: Tuple[UserSegment, ...]
    recommendations: Tuple[OptimizationRecommendation, ...]


@dataclass(frozen=True)
class SystemHealth:
    status: HealthStatus
    average_response_time: float
    error_rate: float
    throughput: int
    active_users: int
    alerts: Tuple[Alert, ...] = ()
    recommendations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ChurnPrediction:
    user_id: str
    churn_risk: float
    factors: Tuple[str, ...]
    recommended_actions: Tuple[str, ...] = RETENTION_ACTIONS


@dataclass(frozen=True)
class CampaignForecast:
    campaign_id: str
    forecasted_success_rate: float
    confidence: float
    trend: ForecastTrend


@dataclass(frozen=True)
class OptimizationOpportunity:
    atom_id: str
    current_performance: float
    potential_improvement: float
    effort: Effort


@dataclass(frozen=True)
class PredictiveInsights:
    """Forward-looking view over churn, campaign success and slow atoms."""
    user_churn_predictions: Tuple[ChurnPrediction, ...]
    campaign_performance_forecast: Tuple[CampaignForecast, ...]
    atom_optimization_opportunities: Tuple[OptimizationOpportunity, ...]


@dataclass(frozen=True)
class PerformanceComparison:
    entity_id: str
    metrics: Dict[str, float]
    rank: int
    trend: str = "stable"


def detect_device_type(user_agent: Optional[str]) -> DeviceType:
    """Classify a user agent as tablet, mobile or desktop."""
    if not user_agent:
        return DeviceType.DESKTOP
    if "iPad" in user_agent:
        return DeviceType.TABLET
    if any(token in user_agent for token in ("Mobile", "Android", "iPhone")):
        return DeviceType.MOBILE
    return DeviceType.DESKTOP


def calculate_campaign_health_score(stats: CampaignPerformanceStats) -> float:
    """Composite 0-100 score over success rate, speed, error rate and volume."""
    performance_score = max(0.0, 100 - stats.average_execution_time / 50)
    reliability_score = max(0.0, 100 - stats.error_rate * 2)
    usage_score = min(100.0, stats.total_executions / 1000 * 10)
    return (
        stats.success_rate * 0.3
        + performance_score * 0.25
        + reliability_score * 0.25
        + usage_score * 0.2
    )


def churn_factors(pattern) -> Tuple[str, ...]:
    """Behavior signals behind a user's churn risk."""
    factors = []
    if pattern.engagement_trend == EngagementTrend.DECREASING:
        factors.append("Decreasing engagement")
    if pattern.conversion_likelihood < 50:
        factors.append("Low conversion rate")
    if pattern.average_session_length < DEFAULT_SESSION_MINUTES:
        factors.append("Reduced session duration")
    return tuple(factors)


def forecast_trend(recent_success_rate: float, overall_success_rate: float) -> ForecastTrend:
    if recent_success_rate > overall_success_rate + FORECAST_BAND:
        return ForecastTrend.IMPROVING
    if recent_success_rate < overall_success_rate - FORECAST_BAND:
        return ForecastTrend.DECLINING
    return ForecastTrend.STABLE


def _location_from_context(context: Dict[str, Any]) -> Optional[Location]:
    location = context.get("location")
    if isinstance(location, Location):
        return location
    if isinstance(location, dict) and location.get("country"):
        return Location(
            country=str(location["country"]),
            region=str(location.get("region", "")),
            city=str(location.get("city", "")),
        )
    return None


class AnalyticsEngine:
    """Facade over the three analyzers sharing one bus, clock and scheduler.

    The periodic janitor jobs only run when ``run_pending`` is called.
    """

    def __init__(self, config: Optional[AnalyticsConfig] = None, clock: Optional[Clock] = None):
        self.config = config or AnalyticsConfig.defaults()
        self.clock = clock or SystemClock()
        self.event_bus = EventBus()
        self.scheduler = JobScheduler(self.clock)

        self.atom_analyzer = AtomUsageAnalyzer(
            retention_days=self.config.retention.atoms,
            event_bus=self.event_bus,
            clock=self.clock,
            max_samples_per_record=self.config.sampling.max_samples_per_record,
        )
        self.campaign_metrics = CampaignMetricsCollector(
            retention_days=self.config.retention.campaigns,
            event_bus=self.event_bus,
            clock=self.clock,
        )
        self.user_analyzer = UserInteractionAnalyzer(
            retention_days=self.config.retention.users,
            event_bus=self.event_bus,
            clock=self.clock,
        )

        self.recent_alerts: Deque[Alert] = deque(maxlen=MAX_RECENT_ALERTS)
        self._setup_event_handlers()
        self._schedule_jobs()

    def _schedule_jobs(self) -> None:
        scheduler_config = self.config.scheduler
        self.scheduler.schedule(
            CLEANUP_JOB,
            timedelta(seconds=scheduler_config.cleanup_interval),
            self.cleanup,
        )
        self.scheduler.schedule(
            GRAPH_REBUILD_JOB,
            timedelta(seconds=scheduler_config.graph_rebuild_interval),
            lambda now: self.atom_analyzer.build_dependency_graph(),
        )
        self.scheduler.schedule(
            SEGMENT_REFRESH_JOB,
            timedelta(seconds=scheduler_config.segment_refresh_interval),
            lambda now: self.user_analyzer.generate_user_segments(),
        )

    def _setup_event_handlers(self) -> None:
        self.event_bus.subscribe(EventType.EXECUTION_RECORDED, self._on_execution_recorded)
        self.event_bus.subscribe(EventType.USAGE_RECORDED, self._on_usage_recorded)
        self.event_bus.subscribe(EventType.REQUEST_RECORDED, self._on_request_recorded)
        self.event_bus.subscribe(EventType.PERFORMANCE_ALERT, self._remember_alert)
        self.event_bus.subscribe(EventType.CONVERSION_ALERT, self._remember_alert)

    def _emit_alert(self, event_type: EventType, alert: Alert) -> None:
        log = logger.info if alert.level == AlertLevel.INFO else logger.warning
        log("%s: %s", alert.type, alert.message)
        self.event_bus.publish(event_type, alert)

    def _remember_alert(self, event: AnalyticsEvent) -> None:
        self.recent_alerts.append(event.payload)

    def _on_execution_recorded(self, event: AnalyticsEvent) -> None:
        metric: CampaignExecutionMetric = event.payload
        if metric.errors:
            self._emit_alert(EventType.PERFORMANCE_ALERT, Alert(
                level=AlertLevel.ERROR,
                type="campaign_error",
                message=f"Campaign {metric.campaign_id} reported {len(metric.errors)} error(s)",
                timestamp=metric.timestamp,
                details={"campaign_id": metric.campaign_id, "errors": list(metric.errors)},
            ))

    def _on_usage_recorded(self, event: AnalyticsEvent) -> None:
        record: AtomUsageMetric = event.payload
        if record.average_execution_time > SLOW_ATOM_ALERT_MS:
            self._emit_alert(EventType.PERFORMANCE_ALERT, Alert(
                level=AlertLevel.WARNING,
                type="slow_atom",
                message=f"Atom {record.atom_id} averages {record.average_execution_time:.0f}ms",
                timestamp=record.last_used,
                details={"atom_id": record.atom_id, "execution_time": record.average_execution_time},
            ))

    def _on_request_recorded(self, event: AnalyticsEvent) -> None:
        request: UserDecisionRequest = event.payload
        if not request.decision_made:
            self._emit_alert(EventType.CONVERSION_ALERT, Alert(
                level=AlertLevel.INFO,
                type="decision_rejected",
                message=f"User {request.user_id} rejected campaign {request.campaign_id}",
                timestamp=request.timestamp,
                details={"user_id": request.user_id, "campaign_id": request.campaign_id},
            ))

    def record_decision_execution(self, execution: DecisionExecution) -> None:
        """Record a decision's campaign, atom and user telemetry.

        The three writes are independent; a failure part way through leaves
        the earlier writes in place.
        """
        timestamp = execution.timestamp or self.clock.now()
        context = dict(execution.user_context)

        self.campaign_metrics.record_execution(CampaignExecutionMetric(
            campaign_id=execution.campaign_id,
            decision_id=execution.decision_id,
            execution_time=execution.execution_time,
            status=ExecutionStatus.SUCCESS if execution.success else ExecutionStatus.FAILURE,
            rules_evaluated=len(execution.atoms_used),
            rules_triggered=sum(1 for atom in execution.atoms_used if atom.success),
            timestamp=timestamp,
            errors=list(execution.errors),
            context=context,
        ))

        for atom in execution.atoms_used:
            self.atom_analyzer.record_atom_usage(
                atom_id=atom.atom_id,
                rule_id=execution.decision_id,
                campaign_id=execution.campaign_id,
                execution_time=atom.execution_time,
                success=atom.success,
                input_data=context,
                error_message=atom.error,
                context=context,
                timestamp=timestamp,
            )

        user_agent = context.get("userAgent")
        self.user_analyzer.record_user_request(UserDecisionRequest(
            user_id=execution.user_id,
            session_id=execution.session_id,
            request_id=f"{execution.campaign_id}-{int(timestamp.timestamp() * 1000)}",
            timestamp=timestamp,
            campaign_id=execution.campaign_id,
            decision_made=execution.success,
            response_time=execution.execution_time,
            context_data=context,
            user_agent=user_agent,
            device_type=detect_device_type(user_agent),
            location=_location_from_context(context),
        ))

    def generate_performance_insights(self) -> PerformanceInsights:
        """Top campaigns with trends and health, top atoms, segments and recommendations."""
        now = self.clock.now()
        campaign_insights = []
        for stats in self.campaign_metrics.get_top_performing_campaigns(INSIGHT_CAMPAIGNS):
            trends = self.campaign_metrics.get_performance_trends(
                stats.campaign_id, now - timedelta(days=INSIGHT_TREND_DAYS), now
            )
            campaign_insights.append(CampaignInsight(
                stats=stats,
                trends=tuple(trends),
                errors=tuple(self.campaign_metrics.get_error_analysis(stats.campaign_id)[:INSIGHT_ERRORS]),
                percentiles=self.campaign_metrics.get_execution_time_percentiles(stats.campaign_id),
                health_score=calculate_campaign_health_score(stats),
            ))

        return PerformanceInsights(
            campaigns=tuple(campaign_insights),
            atoms=tuple(self.atom_analyzer.get_atom_rankings(RankingCriterion.EFFICIENCY, INSIGHT_ATOMS)),
            segments=tuple(self.user_analyzer.generate_user_segments()),
            recommendations=tuple(self.atom_analyzer.generate_optimization_recommendations()),
        )

    def generate_predictive_insights(self) -> PredictiveInsights:
        """Churn predictions, campaign forecasts and atom optimization opportunities.

        Churn predictions cover the riskiest members of the at-risk segment.
        Each top campaign is forecast from the mean success rate of its last
        seven daily trend points; the trend is improving or declining when
        that mean is more than 5 points away from the overall success rate.
        Opportunities come from the performance recommendations.
        """
        now = self.clock.now()

        predictions = []
        segments = {s.segment_id: s for s in self.user_analyzer.generate_user_segments()}
        at_risk = segments.get(AT_RISK_SEGMENT)
        if at_risk is not None:
            patterns = [self.user_analyzer.patterns[user_id] for user_id in at_risk.user_ids]
            patterns.sort(key=lambda p: p.churn_risk, reverse=True)
            for pattern in patterns[:MAX_CHURN_PREDICTIONS]:
                predictions.append(ChurnPrediction(
                    user_id=pattern.user_id,
                    churn_risk=pattern.churn_risk,
                    factors=churn_factors(pattern),
                ))

        forecasts = []
        for stats in self.campaign_metrics.get_top_performing_campaigns(FORECAST_CAMPAIGNS):
            trends = self.campaign_metrics.get_performance_trends(
                stats.campaign_id, now - timedelta(days=INSIGHT_TREND_DAYS), now
            )
            recent = trends[-FORECAST_RECENT_POINTS:]
            recent_rate = (
                safe_ratio(sum(p.success_rate for p in recent), len(recent)) if recent else stats.success_rate
            )
            forecasts.append(CampaignForecast(
                campaign_id=stats.campaign_id,
                forecasted_success_rate=clamp(recent_rate, 0, 100),
                confidence=min(95, 60 + len(recent) * 5),
                trend=forecast_trend(recent_rate, stats.success_rate),
            ))

        opportunities = []
        for rec in self.atom_analyzer.generate_optimization_recommendations():
            if rec.type != RecommendationType.PERFORMANCE:
                continue
            current = rec.metrics["current_time"]
            opportunities.append(OptimizationOpportunity(
                atom_id=rec.atom_id,
                current_performance=current,
                potential_improvement=safe_ratio(current - rec.metrics["target_time"], current) * 100,
                effort=rec.effort,
            ))

        return PredictiveInsights(
            user_churn_predictions=tuple(predictions),
            campaign_performance_forecast=tuple(forecasts),
            atom_optimization_opportunities=tuple(opportunities[:MAX_OPTIMIZATION_OPPORTUNITIES]),
        )

    def get_system_health(self) -> SystemHealth:
        """Overall status from execution-weighted campaign statistics.

        Critical above 10% errors or 2000ms average response, warning above
        5% or 1000ms.
        """
        all_stats = [s for s in self.campaign_metrics.all_campaign_stats() if s.total_executions > 0]
        throughput = sum(s.total_executions for s in all_stats)
        success_rate = safe_ratio(sum(s.success_rate * s.total_executions for s in all_stats), throughput)
        response_time = safe_ratio(
            sum(s.average_execution_time * s.total_executions for s in all_stats), throughput
        )
        error_rate = 100 - success_rate if throughput else 0.0

        if error_rate > 10 or response_time > 2000:
            status = HealthStatus.CRITICAL
        elif error_rate > 5 or response_time > 1000:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY

        recommendations = [
            rec.recommendation for rec in self.atom_analyzer.generate_optimization_recommendations()[:3]
        ]
        if error_rate > 5:
            recommendations.append("Review error patterns and implement fixes")
        if response_time > 1000:
            recommendations.append("Optimize slow-performing components")

        now = self.clock.now()
        active_users = sum(
            1 for pattern in self.user_analyzer.patterns.values()
            if now - pattern.last_activity <= ACTIVE_USER_WINDOW
        )

        return SystemHealth(
            status=status,
            average_response_time=response_time,
            error_rate=error_rate,
            throughput=throughput,
            active_users=active_users,
            alerts=tuple(self.recent_alerts),
            recommendations=tuple(recommendations),
        )

    def compare_performance(self, entity_type: str, entity_ids: List[str]) -> List[PerformanceComparison]:
        """Rank campaigns by success rate or atoms by efficiency score.

        Raises:
            ConfigurationError: If entity_type is not campaign or atom
        """
        rows = []
        if entity_type == "campaign":
            primary = "success_rate"
            for entity_id in entity_ids:
                stats = self.campaign_metrics.get_campaign_performance(entity_id)
                rows.append((entity_id, {
                    "success_rate": stats.success_rate,
                    "average_execution_time": stats.average_execution_time,
                    "total_executions": stats.total_executions,
                    "error_rate": stats.error_rate,
                }))
        elif entity_type == "atom":
            primary = "efficiency_score"
            for entity_id in entity_ids:
                stats = self.atom_analyzer.get_atom_performance(entity_id)
                rows.append((entity_id, {
                    "success_rate": stats.success_rate,
                    "average_execution_time": stats.average_execution_time,
                    "total_executions": stats.total_executions,
                    "efficiency_score": stats.efficiency_score,
                }))
        else:
            raise ConfigurationError("entity_type must be one of: ['campaign', 'atom']")

        rows.sort(key=lambda row: row[1][primary], reverse=True)
        return [
            PerformanceComparison(entity_id=entity_id, metrics=metrics, rank=index + 1)
            for index, (entity_id, metrics) in enumerate(rows)
        ]

    def cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run the retention janitor on every analyzer."""
        now = now or self.clock.now()
        return {
            "atoms": self.atom_analyzer.cleanup(now),
            "campaigns": self.campaign_metrics.cleanup(now),
            "users": self.user_analyzer.cleanup(now),
        }

    def run_pending(self) -> List[str]:
        """Run due periodic jobs; returns the names of those that ran."""
        return self.scheduler.run_pending()

    def shutdown(self) -> None:
        self.scheduler.cancel_all()
        logger.info("Analytics engine periodic jobs cancelled")
