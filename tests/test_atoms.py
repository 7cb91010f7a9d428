"""
Unit tests for atom usage analytics.
"""

from datetime import datetime, timedelta

import pytest

from decision_analytics.config.loader import ConfigurationError
from decision_analytics.core.atoms import (
    AtomUsageAnalyzer,
    RankingCriterion,
    compute_efficiency_score,
)
from decision_analytics.core.events import EventBus, EventType
from decision_analytics.core.scheduler import ManualClock

T0 = datetime(2024, 1, 1, 9)


class TestAtomPerformance:
    """Test per-atom statistics."""

    def setup_method(self):
        """Set up an analyzer on a virtual clock."""
        self.clock = ManualClock(T0)
        self.analyzer = AtomUsageAnalyzer(clock=self.clock)

    def test_basic_scenario(self):
        """Test three successful executions of 100/200/300ms."""
        for time in (100, 200, 300):
            self.analyzer.record_atom_usage("A1", "R1", "C1", time, True)

        stats = self.analyzer.get_atom_performance("A1")

        assert stats.total_executions == 3
        assert stats.success_rate == 100
        assert stats.average_execution_time == 200
        assert stats.median_execution_time == 200
        assert stats.p95_execution_time == 300
        assert stats.error_rate == 0

    def test_unknown_atom_is_zeroed(self):
        """Test an atom without executions yields zero stats."""
        stats = self.analyzer.get_atom_performance("missing")

        assert stats.atom_id == "missing"
        assert stats.total_executions == 0
        assert stats.success_rate == 0
        assert stats.efficiency_score == 0

    def test_weighted_average_across_records(self):
        """Test the average is count-weighted over every record."""
        self.analyzer.record_atom_usage("A1", "R1", "C1", 100, True)
        self.analyzer.record_atom_usage("A1", "R1", "C1", 100, True)
        self.analyzer.record_atom_usage("A1", "R2", "C1", 400, True)

        stats = self.analyzer.get_atom_performance("A1")

        assert stats.total_executions == 3
        assert stats.average_execution_time == 200

    def test_errors_and_rates(self):
        """Test failures feed the error rate and common errors."""
        self.analyzer.record_atom_usage("A1", "R1", "C1", 10, True)
        self.analyzer.record_atom_usage("A1", "R1", "C1", 10, False, error_message="timeout")
        self.analyzer.record_atom_usage("A1", "R1", "C1", 10, False, error_message="timeout")
        self.analyzer.record_atom_usage("A1", "R1", "C1", 10, False, error_message="bad input")

        stats = self.analyzer.get_atom_performance("A1")

        assert stats.success_rate == 25
        assert stats.error_rate == 75
        assert stats.most_common_errors[0].error == "timeout"
        assert stats.most_common_errors[0].count == 2
        assert stats.most_common_errors[0].percentage == 50

    def test_usage_frequency_uses_at_least_one_day(self):
        """Test frequency divides by max(1, days since first use)."""
        for _ in range(4):
            self.analyzer.record_atom_usage("A1", "R1", "C1", 10, True)
        assert self.analyzer.get_atom_performance("A1").usage_frequency == 4

        self.clock.advance(timedelta(days=4))
        self.analyzer.record_atom_usage("A1", "R1", "C1", 10, True)
        assert self.analyzer.get_atom_performance("A1").usage_frequency == pytest.approx(5 / 4)

    def test_cache_invalidated_on_write(self):
        """Test a new execution changes the next performance lookup."""
        self.analyzer.record_atom_usage("A1", "R1", "C1", 100, True)
        first = self.analyzer.get_atom_performance("A1")
        assert self.analyzer.get_atom_performance("A1") is first

        self.analyzer.record_atom_usage("A1", "R1", "C1", 300, True)
        second = self.analyzer.get_atom_performance("A1")

        assert second.total_executions == 2
        assert second.average_execution_time == 200

    def test_percentiles_with_evicted_samples(self):
        """Test evicted samples contribute at their exact mean."""
        analyzer = AtomUsageAnalyzer(clock=self.clock, max_samples_per_record=2)
        for time in (10, 20, 30, 40):
            analyzer.record_atom_usage("A1", "R1", "C1", time, True)

        stats = analyzer.get_atom_performance("A1")

        # Retained 30 and 40; evicted 10 and 20 count as 15 each
        assert stats.median_execution_time == 30
        assert stats.average_execution_time == 25

    def test_efficiency_score(self):
        """Test efficiency blends time score and success rate."""
        assert compute_efficiency_score(0, 100) == 100
        assert compute_efficiency_score(500, 50) == pytest.approx(50 * 0.4 + 50 * 0.6)
        assert compute_efficiency_score(5000, 0) == 0


class TestValidation:
    """Test precondition checks."""

    def test_non_positive_retention(self):
        """Test retention must be positive."""
        with pytest.raises(ConfigurationError):
            AtomUsageAnalyzer(retention_days=0)
        with pytest.raises(ConfigurationError):
            AtomUsageAnalyzer(retention_days=-5)

    def test_negative_execution_time(self):
        """Test negative execution times are rejected."""
        analyzer = AtomUsageAnalyzer(clock=ManualClock(T0))
        with pytest.raises(ConfigurationError, match="execution_time"):
            analyzer.record_atom_usage("A1", "R1", "C1", -1, True)

    def test_unknown_ranking(self):
        """Test unknown order_by values are rejected."""
        analyzer = AtomUsageAnalyzer(clock=ManualClock(T0))
        with pytest.raises(ConfigurationError, match="order_by"):
            analyzer.get_atom_rankings("popularity")


class TestRankings:
    """Test atom rankings."""

    def setup_method(self):
        """Record a fast-unreliable, slow-reliable and busy atom."""
        self.analyzer = AtomUsageAnalyzer(clock=ManualClock(T0))
        self.analyzer.record_atom_usage("fast", "R1", "C1", 10, True)
        self.analyzer.record_atom_usage("fast", "R1", "C1", 10, False)
        self.analyzer.record_atom_usage("slow", "R2", "C1", 900, True)
        for _ in range(5):
            self.analyzer.record_atom_usage("busy", "R3", "C1", 100, True)

    def test_order_by_usage(self):
        """Test usage ranking sorts by executions."""
        ranked = self.analyzer.get_atom_rankings("usage")
        assert ranked[0].atom_id == "busy"

    def test_order_by_performance(self):
        """Test performance ranking puts the fastest first."""
        ranked = self.analyzer.get_atom_rankings(RankingCriterion.PERFORMANCE)
        assert [s.atom_id for s in ranked] == ["fast", "busy", "slow"]

    def test_order_by_reliability(self):
        """Test reliability ranking puts the least reliable last."""
        ranked = self.analyzer.get_atom_rankings("reliability")
        assert ranked[-1].atom_id == "fast"

    def test_ranks_are_one_based_and_limited(self):
        """Test popularity rank matches position and limit applies."""
        ranked = self.analyzer.get_atom_rankings("efficiency", limit=2)
        assert len(ranked) == 2
        assert [s.popularity_rank for s in ranked] == [1, 2]

    def test_rankings_do_not_mutate_cached_stats(self):
        """Test the cached per-atom stats keep rank 0."""
        self.analyzer.get_atom_rankings("usage")
        assert self.analyzer.get_atom_performance("busy").popularity_rank == 0


class TestUsageTrends:
    """Test bucketed usage trends."""

    def test_daily_trend_uses_real_outcomes(self):
        """Test samples are bucketed with their own success flags."""
        analyzer = AtomUsageAnalyzer(clock=ManualClock(T0))
        analyzer.record_atom_usage("A1", "R1", "C1", 100, True, timestamp=T0)
        analyzer.record_atom_usage("A1", "R1", "C1", 300, False, timestamp=T0 + timedelta(hours=1))
        analyzer.record_atom_usage("A1", "R1", "C1", 200, True, timestamp=T0 + timedelta(days=1))

        points = analyzer.get_usage_trends("A1", T0 - timedelta(days=1), T0 + timedelta(days=2))

        assert len(points) == 2
        assert points[0].executions == 2
        assert points[0].success_rate == 50
        assert points[0].average_time == 200
        assert points[1].executions == 1

    def test_evicted_remainder_attributed_to_first_use(self):
        """Test evicted executions land in the first-use bucket."""
        analyzer = AtomUsageAnalyzer(clock=ManualClock(T0), max_samples_per_record=1)
        analyzer.record_atom_usage("A1", "R1", "C1", 100, True, timestamp=T0)
        analyzer.record_atom_usage("A1", "R1", "C1", 300, True, timestamp=T0 + timedelta(days=2))

        points = analyzer.get_usage_trends("A1", T0 - timedelta(days=1), T0 + timedelta(days=3))

        assert [p.executions for p in points] == [1, 1]
        assert points[0].average_time == 100

    def test_range_endpoints_inclusive(self):
        """Test executions exactly at the range bounds are included."""
        analyzer = AtomUsageAnalyzer(clock=ManualClock(T0))
        analyzer.record_atom_usage("A1", "R1", "C1", 100, True, timestamp=T0)

        points = analyzer.get_usage_trends("A1", T0, T0, "hour")

        assert points[0].executions == 1

    def test_invalid_range(self):
        """Test start after end is rejected."""
        analyzer = AtomUsageAnalyzer(clock=ManualClock(T0))
        with pytest.raises(ConfigurationError):
            analyzer.get_usage_trends("A1", T0, T0 - timedelta(days=1))


class TestNotificationsAndCleanup:
    """Test usage events and retention."""

    def test_usage_event_carries_record(self):
        """Test each recording publishes the written record."""
        bus = EventBus()
        received = []
        bus.subscribe(EventType.USAGE_RECORDED, received.append)
        analyzer = AtomUsageAnalyzer(event_bus=bus, clock=ManualClock(T0))

        record = analyzer.record_atom_usage("A1", "R1", "C1", 100, True)

        assert received[0].payload is record

    def test_cleanup_evicts_and_invalidates(self):
        """Test cleanup drops stale records and refreshes stats."""
        clock = ManualClock(T0)
        analyzer = AtomUsageAnalyzer(retention_days=1, clock=clock)
        analyzer.record_atom_usage("A1", "R1", "C1", 100, True)
        assert analyzer.get_atom_performance("A1").total_executions == 1

        clock.advance(timedelta(days=2))
        assert analyzer.cleanup() == 1
        assert analyzer.get_atom_performance("A1").total_executions == 0
        assert analyzer.cleanup() == 0

    def test_cleanup_refreshes_dependency_graph(self):
        """Test evicted atoms leave the stored dependency graph."""
        clock = ManualClock(T0)
        analyzer = AtomUsageAnalyzer(retention_days=1, clock=clock)
        analyzer.record_atom_usage("A1", "R1", "C1", 100, True)
        analyzer.record_atom_usage("B1", "R1", "C1", 100, True)
        clock.advance(timedelta(days=2))
        analyzer.record_atom_usage("C1", "R2", "C1", 100, True)
        analyzer.build_dependency_graph()
        assert set(analyzer.dependency_graph) == {"A1", "B1", "C1"}

        analyzer.cleanup()

        assert set(analyzer.dependency_graph) == {"C1"}

    def test_unknown_atoms_are_not_cached(self):
        """Test zero stats for unseen atoms do not accumulate in the cache."""
        analyzer = AtomUsageAnalyzer(clock=ManualClock(T0))

        analyzer.get_atom_performance("ghost")
        analyzer.record_atom_usage("A1", "R1", "C1", 100, True)
        analyzer.get_atom_performance("A1")

        assert "ghost" not in analyzer._performance_cache
        assert "A1" in analyzer._performance_cache
