"""
Campaign performance metrics.

Collects per-decision executions for each campaign and derives success
rates, timing percentiles, error breakdowns and time-bucketed trends.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union

from decision_analytics.config.loader import require_positive
from decision_analytics.storage.cache import StatsCache
from decision_analytics.storage.models import (
    CampaignExecutionMetric,
    ExecutionStatus,
    RulePerformanceMetric,
)
from decision_analytics.storage.repository import MetricStore
from .events import EventBus, EventType
from .scheduler import Clock, SystemClock
from .statistics import compute_exact_percentile, safe_percentage, safe_ratio
from .time_buckets import (
    BucketObservation,
    Granularity,
    TrendPoint,
    aggregate_by_time,
    parse_granularity,
    validate_range,
)

logger = logging.getLogger(__name__)

TREND_WINDOW_DAYS = 7
COMMON_ERROR_LIMIT = 10


@dataclass(frozen=True)
class ErrorCount:
    error: str
    count: int


@dataclass(frozen=True)
class CampaignPerformanceStats:
    """Derived performance statistics for one campaign."""
    campaign_id: str
    total_executions: int = 0
    success_rate: float = 0.0
    average_execution_time: float = 0.0
    total_rules_evaluated: int = 0
    total_rules_triggered: int = 0
    error_rate: float = 0.0
    common_errors: Tuple[ErrorCount, ...] = ()
    performance_trend: Tuple[TrendPoint, ...] = ()


@dataclass(frozen=True)
class ExecutionTimePercentiles:
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


@dataclass(frozen=True)
class ErrorAnalysisEntry:
    """Breakdown of one distinct error string."""
    error: str
    count: int
    percentage: float
    last_occurrence: datetime
    affected_rules: Tuple[str, ...]


def _observations(metrics: List[CampaignExecutionMetric]) -> List[BucketObservation]:
    return [
        BucketObservation(
            timestamp=m.timestamp,
            executions=1,
            successes=1 if m.status == ExecutionStatus.SUCCESS else 0,
            total_time=m.execution_time,
        )
        for m in metrics
    ]


def aggregate_metrics_by_time(
    metrics: List[CampaignExecutionMetric],
    granularity: Granularity,
) -> List[TrendPoint]:
    """Bucket executions by hour, day or week. Only SUCCESS counts as a success."""
    return aggregate_by_time(_observations(metrics), granularity)


def calculate_performance_stats(
    campaign_id: str,
    metrics: List[CampaignExecutionMetric],
    now: datetime,
) -> CampaignPerformanceStats:
    """Compute statistics for one campaign.

    Args:
        campaign_id: Campaign identifier
        metrics: The campaign's recorded executions
        now: Reference time for the trailing seven-day trend

    Returns:
        CampaignPerformanceStats (all zero when there are no executions)
    """
    if not metrics:
        return CampaignPerformanceStats(campaign_id=campaign_id)

    total_executions = len(metrics)
    success_count = sum(1 for m in metrics if m.status == ExecutionStatus.SUCCESS)
    total_execution_time = sum(m.execution_time for m in metrics)
    executions_with_errors = sum(1 for m in metrics if m.errors)

    error_counts: Dict[str, int] = {}
    for metric in metrics:
        for error in metric.errors:
            error_counts[error] = error_counts.get(error, 0) + 1

    common_errors = tuple(
        ErrorCount(error=error, count=count)
        for error, count in sorted(error_counts.items(), key=lambda item: item[1], reverse=True)[:COMMON_ERROR_LIMIT]
    )

    trend_start = now - timedelta(days=TREND_WINDOW_DAYS)
    recent = [m for m in metrics if m.timestamp >= trend_start]

    return CampaignPerformanceStats(
        campaign_id=campaign_id,
        total_executions=total_executions,
        success_rate=safe_percentage(success_count, total_executions),
        average_execution_time=safe_ratio(total_execution_time, total_executions),
        total_rules_evaluated=sum(m.rules_evaluated for m in metrics),
        total_rules_triggered=sum(m.rules_triggered for m in metrics),
        error_rate=safe_percentage(executions_with_errors, total_executions),
        common_errors=common_errors,
        performance_trend=tuple(aggregate_metrics_by_time(recent, Granularity.DAY)),
    )


class CampaignMetricsCollector:
    """Campaign execution collector.

    Executions are append-only; cached statistics for a campaign are dropped
    whenever it receives a new execution or loses records to cleanup.
    """

    def __init__(
        self,
        retention_days: float = 30,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize the collector.

        Args:
            retention_days: Executions older than this are evicted
            event_bus: Bus to publish execution notifications on
            clock: Time source (wall clock by default)

        Raises:
            ConfigurationError: If retention_days is not positive
        """
        require_positive(retention_days, "retention_days")
        self.retention_days = retention_days
        self.event_bus = event_bus or EventBus()
        self.clock = clock or SystemClock()
        self.store = MetricStore()
        self._performance_cache: StatsCache[CampaignPerformanceStats] = StatsCache(
            should_cache=lambda stats: stats.total_executions > 0
        )

    def record_execution(self, metric: CampaignExecutionMetric) -> None:
        """Append an execution, update its decision aggregate and notify subscribers."""
        self.store.append_campaign_execution(metric)
        self._performance_cache.invalidate(metric.campaign_id)

        logger.debug(
            "Campaign execution recorded: %s/%s (status=%s, time=%.1fms)",
            metric.campaign_id, metric.decision_id, metric.status.value, metric.execution_time,
        )
        self.event_bus.publish(EventType.EXECUTION_RECORDED, metric)

    def get_campaign_performance(self, campaign_id: str) -> CampaignPerformanceStats:
        """Performance statistics for one campaign, cached until its next write."""
        return self._performance_cache.get_or_compute(
            campaign_id,
            lambda: calculate_performance_stats(
                campaign_id, self.store.campaign_records(campaign_id), self.clock.now()
            ),
        )

    def get_rule_performance(self, rule_id: str) -> Optional[RulePerformanceMetric]:
        """Rolling aggregate for a decision id, or None if never seen."""
        return self.store.rule_metrics.get(rule_id)

    def get_top_performing_campaigns(self, limit: int = 10) -> List[CampaignPerformanceStats]:
        """Campaigns by success rate, then by execution volume."""
        campaigns = [
            stats for stats in (self.get_campaign_performance(c) for c in self.store.campaign_ids())
            if stats.total_executions > 0
        ]
        campaigns.sort(key=lambda s: (s.success_rate, s.total_executions), reverse=True)
        return campaigns[:limit]

    def get_performance_trends(
        self,
        campaign_id: str,
        start: datetime,
        end: datetime,
        granularity: Union[str, Granularity] = Granularity.DAY,
    ) -> List[TrendPoint]:
        """Bucketed trend for executions with start <= timestamp <= end.

        Raises:
            ConfigurationError: If start is after end or granularity is unknown
        """
        validate_range(start, end)
        granularity = parse_granularity(granularity)
        metrics = [m for m in self.store.campaign_records(campaign_id) if start <= m.timestamp <= end]
        return aggregate_metrics_by_time(metrics, granularity)

    def get_execution_time_percentiles(self, campaign_id: str) -> ExecutionTimePercentiles:
        """Linearly interpolated p50/p75/p90/p95/p99; all zero without data."""
        times = [m.execution_time for m in self.store.campaign_records(campaign_id)]
        if not times:
            return ExecutionTimePercentiles()

        return ExecutionTimePercentiles(
            p50=compute_exact_percentile(times, 50),
            p75=compute_exact_percentile(times, 75),
            p90=compute_exact_percentile(times, 90),
            p95=compute_exact_percentile(times, 95),
            p99=compute_exact_percentile(times, 99),
        )

    def get_error_analysis(self, campaign_id: str) -> List[ErrorAnalysisEntry]:
        """Every distinct error with its share of all errors, latest occurrence and decisions."""
        errors: Dict[str, Dict] = {}
        for metric in self.store.campaign_records(campaign_id):
            for error in metric.errors:
                entry = errors.setdefault(error, {"count": 0, "last": metric.timestamp, "rules": {}})
                entry["count"] += 1
                entry["last"] = max(entry["last"], metric.timestamp)
                entry["rules"][metric.decision_id] = None

        total_errors = sum(e["count"] for e in errors.values())
        analysis = [
            ErrorAnalysisEntry(
                error=error,
                count=data["count"],
                percentage=safe_percentage(data["count"], total_errors),
                last_occurrence=data["last"],
                affected_rules=tuple(data["rules"]),
            )
            for error, data in errors.items()
        ]
        return sorted(analysis, key=lambda e: e.count, reverse=True)

    def all_campaign_stats(self) -> List[CampaignPerformanceStats]:
        return [self.get_campaign_performance(c) for c in self.store.campaign_ids()]

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Evict executions outside the retention window.

        Returns:
            Number of campaigns whose records changed
        """
        cutoff = (now or self.clock.now()) - timedelta(days=self.retention_days)
        touched = self.store.evict_campaign_records(cutoff)
        for campaign_id in touched:
            self._performance_cache.invalidate(campaign_id)
        if touched:
            logger.info("Campaign retention cleanup touched %d campaigns", len(touched))
        return len(touched)
