"""
Unit tests for clocks and periodic jobs.
"""

from datetime import datetime, timedelta

import pytest

from decision_analytics.core.scheduler import JobScheduler, ManualClock


class TestManualClock:
    """Test the virtual clock."""

    def test_advance(self):
        """Test advancing moves the clock forward."""
        clock = ManualClock(datetime(2024, 3, 1))
        assert clock.advance(timedelta(hours=2)) == datetime(2024, 3, 1, 2)
        assert clock.now() == datetime(2024, 3, 1, 2)

    def test_cannot_go_backwards(self):
        """Test negative deltas are rejected."""
        clock = ManualClock()
        with pytest.raises(ValueError):
            clock.advance(timedelta(seconds=-1))


class TestJobScheduler:
    """Test cooperative periodic jobs."""

    def setup_method(self):
        """Set up a scheduler with one hourly job."""
        self.clock = ManualClock(datetime(2024, 1, 1))
        self.scheduler = JobScheduler(self.clock)
        self.runs = []
        self.scheduler.schedule("cleanup", timedelta(hours=1), self.runs.append)

    def test_not_due_before_interval(self):
        """Test a job does not run before its first interval elapses."""
        self.clock.advance(timedelta(minutes=59))
        assert self.scheduler.run_pending() == []
        assert self.runs == []

    def test_runs_when_due_and_rearms(self):
        """Test a due job runs with the current time and is re-armed."""
        self.clock.advance(timedelta(hours=1))
        assert self.scheduler.run_pending() == ["cleanup"]
        assert self.runs == [datetime(2024, 1, 1, 1)]

        assert self.scheduler.run_pending() == []
        self.clock.advance(timedelta(hours=1))
        assert self.scheduler.run_pending() == ["cleanup"]
        assert self.scheduler.jobs()[0].run_count == 2

    def test_late_job_runs_once(self):
        """Test a job several intervals behind runs only once."""
        self.clock.advance(timedelta(hours=5))
        self.scheduler.run_pending()
        assert len(self.runs) == 1

    def test_cancel_and_restart(self):
        """Test cancelled jobs stay idle until restarted."""
        self.scheduler.cancel("cleanup")
        self.clock.advance(timedelta(hours=2))
        assert self.scheduler.run_pending() == []

        self.scheduler.restart("cleanup")
        self.clock.advance(timedelta(hours=1))
        assert self.scheduler.run_pending() == ["cleanup"]

    def test_non_positive_interval_rejected(self):
        """Test zero intervals are rejected."""
        with pytest.raises(ValueError):
            self.scheduler.schedule("bad", timedelta(0), lambda now: None)
