"""
Atom usage analytics.

Tracks executions of reusable decision-rule components (atoms) and derives
performance statistics, rankings, trends, combination synergy, the
co-occurrence graph and optimization recommendations.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from decision_analytics.config.loader import ConfigurationError, require_positive
from decision_analytics.storage.cache import StatsCache
from decision_analytics.storage.models import AtomUsageMetric
from decision_analytics.storage.repository import DEFAULT_MAX_SAMPLES, MetricStore
from .combinations import (
    AtomCombinationAnalysis,
    AtomDependencyNode,
    analyze_combinations,
    build_dependency_graph,
)
from .events import EventBus, EventType
from .recommendations import OptimizationRecommendation, generate_recommendations
from .scheduler import Clock, SystemClock
from .statistics import compute_nearest_rank, expand_weighted, safe_percentage, safe_ratio
from .time_buckets import (
    BucketObservation,
    Granularity,
    TrendPoint,
    aggregate_by_time,
    parse_granularity,
    validate_range,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class RankingCriterion(Enum):
    """Ordering for atom rankings."""
    USAGE = "usage"
    PERFORMANCE = "performance"
    RELIABILITY = "reliability"
    EFFICIENCY = "efficiency"


@dataclass(frozen=True)
class ErrorFrequency:
    """An error message and how often it occurred."""
    error: str
    count: int
    percentage: float


@dataclass(frozen=True)
class AtomPerformanceStats:
    """Derived performance statistics for one atom."""
    atom_id: str
    total_executions: int = 0
    success_rate: float = 0.0
    average_execution_time: float = 0.0
    median_execution_time: float = 0.0
    p95_execution_time: float = 0.0
    error_rate: float = 0.0
    most_common_errors: Tuple[ErrorFrequency, ...] = ()
    usage_frequency: float = 0.0
    popularity_rank: int = 0
    efficiency_score: float = 0.0


def compute_efficiency_score(average_execution_time: float, success_rate: float) -> float:
    """0.4 * time score + 0.6 * success rate, where time score = max(0, 100 - time/10)."""
    time_score = max(0.0, 100 - average_execution_time / 10)
    return time_score * 0.4 + success_rate * 0.6


def _execution_times(records: List[AtomUsageMetric]) -> List[float]:
    """Sorted per-execution times: retained samples plus evicted ones at their exact mean."""
    pairs = []
    for record in records:
        pairs.extend((sample.execution_time, 1) for sample in record.samples)
        pairs.append((record.evicted_average_time, record.evicted_count))
    return expand_weighted(pairs)


def calculate_performance_stats(
    atom_id: str,
    records: List[AtomUsageMetric],
    now: datetime,
) -> AtomPerformanceStats:
    """Compute statistics for one atom from its merged records.

    Args:
        atom_id: Atom identifier
        records: The atom's stored usage records
        now: Reference time for usage frequency

    Returns:
        AtomPerformanceStats (all zero when there are no executions)
    """
    total_executions = sum(r.execution_count for r in records)
    if total_executions == 0:
        return AtomPerformanceStats(atom_id=atom_id)

    total_successes = sum(r.success_count for r in records)
    total_failures = sum(r.failure_count for r in records)
    total_time = sum(r.average_execution_time * r.execution_count for r in records)

    times = _execution_times(records)
    median_execution_time = compute_nearest_rank(times, 0.5)
    p95_execution_time = compute_nearest_rank(times, 0.95)

    error_counts: Dict[str, int] = {}
    for record in records:
        for error in record.error_messages:
            error_counts[error] = error_counts.get(error, 0) + 1

    most_common_errors = tuple(
        ErrorFrequency(error=error, count=count, percentage=safe_percentage(count, total_executions))
        for error, count in sorted(error_counts.items(), key=lambda item: item[1], reverse=True)[:5]
    )

    first_use = min(r.first_used for r in records)
    days_since_first = max(1.0, (now - first_use).total_seconds() / SECONDS_PER_DAY)

    success_rate = safe_percentage(total_successes, total_executions)
    average_execution_time = safe_ratio(total_time, total_executions)

    return AtomPerformanceStats(
        atom_id=atom_id,
        total_executions=total_executions,
        success_rate=success_rate,
        average_execution_time=average_execution_time,
        median_execution_time=median_execution_time,
        p95_execution_time=p95_execution_time,
        error_rate=safe_percentage(total_failures, total_executions),
        most_common_errors=most_common_errors,
        usage_frequency=total_executions / days_since_first,
        efficiency_score=compute_efficiency_score(average_execution_time, success_rate),
    )


def parse_ranking_criterion(value: Union[str, RankingCriterion]) -> RankingCriterion:
    if isinstance(value, RankingCriterion):
        return value
    try:
        return RankingCriterion(str(value).lower())
    except ValueError:
        valid = [c.value for c in RankingCriterion]
        raise ConfigurationError(f"order_by must be one of: {valid}")


class AtomUsageAnalyzer:
    """Atom usage analyzer.

    Owns the atom portion of a MetricStore, a statistics cache invalidated on
    every write, and the most recently built dependency graph.
    """

    def __init__(
        self,
        retention_days: float = 90,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        max_samples_per_record: int = DEFAULT_MAX_SAMPLES,
    ):
        """Initialize the analyzer.

        Args:
            retention_days: Records last used longer ago than this are evicted
            event_bus: Bus to publish usage notifications on (a private one by default)
            clock: Time source (wall clock by default)
            max_samples_per_record: Per-record ring buffer size for execution samples

        Raises:
            ConfigurationError: If retention_days or max_samples_per_record is not positive
        """
        require_positive(retention_days, "retention_days")
        require_positive(max_samples_per_record, "max_samples_per_record")
        self.retention_days = retention_days
        self.event_bus = event_bus or EventBus()
        self.clock = clock or SystemClock()
        self.store = MetricStore(max_samples_per_record=max_samples_per_record)
        self._performance_cache: StatsCache[AtomPerformanceStats] = StatsCache(
            should_cache=lambda stats: stats.total_executions > 0
        )
        self.dependency_graph: Dict[str, AtomDependencyNode] = {}

    def record_atom_usage(
        self,
        atom_id: str,
        rule_id: str,
        campaign_id: str,
        execution_time: float,
        success: bool,
        input_data: Any = None,
        output_data: Any = None,
        error_message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> AtomUsageMetric:
        """Record one atom execution.

        Consecutive executions for the same rule and campaign are merged into
        the atom's latest record; otherwise a new record is appended.

        Returns:
            The record holding this execution

        Raises:
            ConfigurationError: If execution_time is negative
        """
        if execution_time < 0:
            raise ConfigurationError("execution_time cannot be negative")

        record = self.store.merge_atom_execution(
            atom_id=atom_id,
            rule_id=rule_id,
            campaign_id=campaign_id,
            execution_time=execution_time,
            success=success,
            timestamp=timestamp or self.clock.now(),
            input_data=input_data,
            output_data=output_data,
            error_message=error_message,
            context=context,
        )
        self._performance_cache.invalidate(atom_id)

        logger.debug(
            "Atom usage recorded: %s/%s/%s (success=%s, time=%.1fms)",
            atom_id, rule_id, campaign_id, success, execution_time,
        )
        self.event_bus.publish(EventType.USAGE_RECORDED, record)
        return record

    def get_atom_performance(self, atom_id: str) -> AtomPerformanceStats:
        """Performance statistics for one atom, cached until its next write."""
        return self._performance_cache.get_or_compute(
            atom_id,
            lambda: calculate_performance_stats(atom_id, self.store.atom_records(atom_id), self.clock.now()),
        )

    def get_atom_rankings(
        self,
        order_by: Union[str, RankingCriterion] = RankingCriterion.EFFICIENCY,
        limit: int = 50,
    ) -> List[AtomPerformanceStats]:
        """Rank every atom with at least one execution.

        Args:
            order_by: usage, performance (fastest first), reliability or efficiency
            limit: Maximum number of atoms returned

        Returns:
            Stats with popularity_rank set to the 1-based position
        """
        criterion = parse_ranking_criterion(order_by)
        all_stats = [
            stats for stats in (self.get_atom_performance(a) for a in self.store.atom_ids())
            if stats.total_executions > 0
        ]

        if criterion == RankingCriterion.USAGE:
            all_stats.sort(key=lambda s: s.total_executions, reverse=True)
        elif criterion == RankingCriterion.PERFORMANCE:
            all_stats.sort(key=lambda s: s.average_execution_time)
        elif criterion == RankingCriterion.RELIABILITY:
            all_stats.sort(key=lambda s: s.success_rate, reverse=True)
        else:
            all_stats.sort(key=lambda s: s.efficiency_score, reverse=True)

        ranked = [replace(stats, popularity_rank=index + 1) for index, stats in enumerate(all_stats)]
        return ranked[:limit]

    def analyze_atom_combinations(self, min_frequency: int = 5) -> List[AtomCombinationAnalysis]:
        """Score atom combinations seen at least ``min_frequency`` times."""
        return analyze_combinations(self.store, self.get_atom_performance, min_frequency)

    def build_dependency_graph(self) -> Dict[str, AtomDependencyNode]:
        """Rebuild the co-occurrence graph from scratch and keep it as the latest graph."""
        self.dependency_graph = build_dependency_graph(self.store, self.get_atom_performance)
        logger.info("Dependency graph rebuilt with %d atoms", len(self.dependency_graph))
        return self.dependency_graph

    def generate_optimization_recommendations(self) -> List[OptimizationRecommendation]:
        """Recommendations over efficiency-ranked atoms and poor-synergy combinations."""
        rankings = self.get_atom_rankings(RankingCriterion.EFFICIENCY, limit=len(self.store.atom_ids()))
        return generate_recommendations(rankings, self.analyze_atom_combinations())

    def get_usage_trends(
        self,
        atom_id: str,
        start: datetime,
        end: datetime,
        granularity: Union[str, Granularity] = Granularity.DAY,
    ) -> List[TrendPoint]:
        """Per-bucket executions, success rate and average time for one atom.

        Retained samples are bucketed by their own timestamps and outcomes.
        Executions that no longer have samples are attributed to the
        record's first use.

        Raises:
            ConfigurationError: If start is after end or granularity is unknown
        """
        validate_range(start, end)
        granularity = parse_granularity(granularity)

        observations = []
        for record in self.store.atom_records(atom_id):
            for sample in record.samples:
                if start <= sample.timestamp <= end:
                    observations.append(BucketObservation(
                        timestamp=sample.timestamp,
                        executions=1,
                        successes=1 if sample.success else 0,
                        total_time=sample.execution_time,
                    ))
            if record.evicted_count and start <= record.first_used <= end:
                observations.append(BucketObservation(
                    timestamp=record.first_used,
                    executions=record.evicted_count,
                    successes=record.evicted_successes,
                    total_time=record.evicted_total_time,
                ))

        return aggregate_by_time(observations, granularity)

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Evict records last used outside the retention window.

        Returns:
            Number of atoms whose records changed
        """
        cutoff = (now or self.clock.now()) - timedelta(days=self.retention_days)
        touched = self.store.evict_atom_records(cutoff)
        for atom_id in touched:
            self._performance_cache.invalidate(atom_id)
        if touched:
            logger.info("Atom retention cleanup touched %d atoms", len(touched))
            if self.dependency_graph:
                self.build_dependency_graph()
        return len(touched)
