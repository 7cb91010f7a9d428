"""
Unit tests for the atom execution tracker.
"""

from datetime import datetime

import pytest

from decision_analytics.core.atoms import AtomUsageAnalyzer
from decision_analytics.core.scheduler import ManualClock
from decision_analytics.sdk import AtomTracker


class TestAtomTracker:
    """Test the tracking context manager."""

    def setup_method(self):
        """Create an analyzer on a virtual clock."""
        self.analyzer = AtomUsageAnalyzer(clock=ManualClock(datetime(2024, 1, 1)))

    def test_successful_block(self):
        """Test a clean block is recorded as a success with its output."""
        with AtomTracker(self.analyzer, "geo_check", "rule-1", "spring", input_data={"ip": "1.2.3.4"}) as tracker:
            tracker.output = "DE"

        record = self.analyzer.store.atom_records("geo_check")[0]
        assert record.success_count == 1
        assert record.output_data == "DE"
        assert record.input_data == {"ip": "1.2.3.4"}
        assert tracker.execution_time >= 0
        assert record.average_execution_time == pytest.approx(tracker.execution_time)

    def test_failure_is_recorded_and_reraised(self):
        """Test exceptions propagate and are stored as failures."""
        with pytest.raises(RuntimeError, match="lookup failed"):
            with AtomTracker(self.analyzer, "geo_check", "rule-1", "spring"):
                raise RuntimeError("lookup failed")

        record = self.analyzer.store.atom_records("geo_check")[0]
        assert record.failure_count == 1
        assert record.error_messages == ["lookup failed"]
        assert self.analyzer.get_atom_performance("geo_check").error_rate == 100

    def test_repeated_blocks_merge(self):
        """Test consecutive tracking for the same rule merges into one record."""
        for _ in range(3):
            with AtomTracker(self.analyzer, "geo_check", "rule-1", "spring"):
                pass

        records = self.analyzer.store.atom_records("geo_check")
        assert len(records) == 1
        assert records[0].execution_count == 3

    @pytest.mark.parametrize("field", ["atom_id", "rule_id", "campaign_id"])
    def test_missing_identifier(self, field):
        """Test empty identifiers are rejected before anything runs."""
        ids = {"atom_id": "a", "rule_id": "r", "campaign_id": "c"}
        ids[field] = "  "

        with pytest.raises(ValueError, match=f"{field} is required"):
            AtomTracker(self.analyzer, **ids)
