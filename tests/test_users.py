"""
Unit tests for user interaction analytics.
"""

from datetime import datetime, timedelta

import pytest

from decision_analytics.config.loader import ConfigurationError
from decision_analytics.core.events import EventBus, EventType
from decision_analytics.core.scheduler import ManualClock
from decision_analytics.core.users import (
    EngagementTrend,
    PatternType,
    UserInteractionAnalyzer,
    churn_risk,
    classify_pattern,
    detect_os,
)
from decision_analytics.storage.models import DeviceType, Location, UserDecisionRequest

T0 = datetime(2024, 1, 1, 10)


def _request(user_id="u1", session_id="s1", timestamp=T0, campaign_id="c1", accepted=True,
             response_time=100.0, context=None, device_type=None, user_agent=None, country=None,
             request_id="r"):
    return UserDecisionRequest(
        user_id=user_id,
        session_id=session_id,
        request_id=request_id,
        timestamp=timestamp,
        campaign_id=campaign_id,
        decision_made=accepted,
        response_time=response_time,
        context_data=context or {},
        user_agent=user_agent,
        device_type=device_type,
        location=Location(country=country) if country else None,
    )


class TestSessions:
    """Test session rollups."""

    def setup_method(self):
        """Set up an analyzer on a virtual clock."""
        self.clock = ManualClock(T0)
        self.analyzer = UserInteractionAnalyzer(clock=self.clock)

    def test_session_created_and_updated(self):
        """Test requests update counts, running average and journey."""
        self.analyzer.record_user_request(_request(response_time=100.0, accepted=True))
        self.analyzer.record_user_request(_request(response_time=300.0, accepted=False,
                                                   timestamp=T0 + timedelta(minutes=1)))

        session = self.analyzer.get_session_analytics("s1")

        assert session.total_requests == 2
        assert session.decisions_accepted == 1
        assert session.decisions_rejected == 1
        assert session.average_response_time == 200.0
        assert [entry.value for entry in session.journey] == [1.0, 0.0]
        assert session.start_time == T0

    def test_device_info_from_user_agent(self):
        """Test browser and OS are derived from the user agent."""
        self.analyzer.record_user_request(_request(
            user_agent="Mozilla/5.0 (Windows NT 10.0)", device_type=DeviceType.MOBILE,
        ))

        info = self.analyzer.get_session_analytics("s1").device_info

        assert info.type == DeviceType.MOBILE
        assert info.browser == "Mozilla/5.0"
        assert info.os == "Windows"

    def test_device_defaults(self):
        """Test missing device data defaults to desktop and unknown OS."""
        self.analyzer.record_user_request(_request())
        info = self.analyzer.get_session_analytics("s1").device_info
        assert info.type == DeviceType.DESKTOP
        assert info.browser is None
        assert info.os == "unknown"

    def test_end_session_is_idempotent(self):
        """Test a second end call keeps the first end time and publishes once."""
        bus = EventBus()
        ended = []
        bus.subscribe(EventType.SESSION_ENDED, ended.append)
        analyzer = UserInteractionAnalyzer(event_bus=bus, clock=self.clock)
        analyzer.record_user_request(_request())

        analyzer.end_session("s1", T0 + timedelta(minutes=10))
        analyzer.end_session("s1", T0 + timedelta(minutes=20))

        session = analyzer.get_session_analytics("s1")
        assert session.end_time == T0 + timedelta(minutes=10)
        assert session.duration == 600000
        assert len(ended) == 1

    def test_end_before_start_rejected(self):
        """Test a session cannot end before its first request."""
        self.analyzer.record_user_request(_request())

        with pytest.raises(ConfigurationError, match="cannot end before"):
            self.analyzer.end_session("s1", T0 - timedelta(minutes=1))

        session = self.analyzer.get_session_analytics("s1")
        assert session.end_time is None
        assert self.analyzer.get_user_behavior_pattern("u1").average_session_length == 5.0

    def test_end_unknown_session(self):
        """Test ending an unknown session returns None."""
        assert self.analyzer.end_session("missing") is None

    def test_user_sessions_newest_first(self):
        """Test sessions are filtered by start time and sorted descending."""
        self.analyzer.record_user_request(_request(session_id="s1", timestamp=T0))
        self.analyzer.record_user_request(_request(session_id="s2", timestamp=T0 + timedelta(days=1)))
        self.analyzer.record_user_request(_request(session_id="s3", timestamp=T0 + timedelta(days=5)))

        sessions = self.analyzer.get_user_sessions("u1", T0, T0 + timedelta(days=2))

        assert [s.session_id for s in sessions] == ["s2", "s1"]
        assert self.analyzer.get_user_sessions("nobody") == []


class TestBehaviorPattern:
    """Test behavior pattern recomputation."""

    def setup_method(self):
        """Set up an analyzer on a virtual clock."""
        self.analyzer = UserInteractionAnalyzer(clock=ManualClock(T0))

    def test_frequent_user_scenario(self):
        """Test 25 requests over 2 days classify as a frequent user."""
        step = timedelta(days=2) / 24
        for index in range(25):
            self.analyzer.record_user_request(_request(timestamp=T0 + step * index))

        pattern = self.analyzer.get_user_behavior_pattern("u1")

        assert pattern.request_frequency == pytest.approx(12.5)
        assert pattern.pattern_type == PatternType.FREQUENT_USER

    def test_first_request(self):
        """Test a single request is a trial user with default session length."""
        self.analyzer.record_user_request(_request(accepted=True))

        pattern = self.analyzer.get_user_behavior_pattern("u1")

        assert pattern.pattern_type == PatternType.TRIAL_USER
        assert pattern.request_frequency == 1
        assert pattern.conversion_likelihood == 100
        assert pattern.average_session_length == 5.0
        assert pattern.last_activity == T0

    def test_unknown_user(self):
        """Test unknown users have no pattern."""
        assert self.analyzer.get_user_behavior_pattern("nobody") is None

    def test_classification_thresholds(self):
        """Test frequency tiers."""
        assert classify_pattern(21) == PatternType.POWER_USER
        assert classify_pattern(20) == PatternType.FREQUENT_USER
        assert classify_pattern(5.5) == PatternType.FREQUENT_USER
        assert classify_pattern(2) == PatternType.CASUAL_USER
        assert classify_pattern(1) == PatternType.TRIAL_USER

    def test_decreasing_engagement(self):
        """Test a slowdown in request rate is detected."""
        for index in range(10):
            self.analyzer.record_user_request(_request(timestamp=T0 + timedelta(hours=index)))
        for index in range(10):
            self.analyzer.record_user_request(_request(timestamp=T0 + timedelta(days=2 + index)))

        pattern = self.analyzer.get_user_behavior_pattern("u1")

        assert pattern.engagement_trend == EngagementTrend.DECREASING

    def test_stable_engagement(self):
        """Test an even request rate is stable."""
        for index in range(20):
            self.analyzer.record_user_request(_request(timestamp=T0 + timedelta(hours=index)))

        assert self.analyzer.get_user_behavior_pattern("u1").engagement_trend == EngagementTrend.STABLE

    def test_churn_risk(self):
        """Test churn combines trend and conversion and is clamped."""
        assert churn_risk(EngagementTrend.STABLE, 50) == 30
        assert churn_risk(EngagementTrend.INCREASING, 100) == 0
        assert churn_risk(EngagementTrend.DECREASING, 0) == 85

    def test_preferences(self):
        """Test time slots and campaign preferences are derived from requests."""
        self.analyzer.record_user_request(_request(campaign_id="a", accepted=True))
        self.analyzer.record_user_request(_request(campaign_id="a", accepted=True))
        self.analyzer.record_user_request(_request(campaign_id="b", accepted=False))

        pattern = self.analyzer.get_user_behavior_pattern("u1")

        assert pattern.campaign_preferences[0].campaign_id == "a"
        assert pattern.campaign_preferences[0].engagement_score == pytest.approx(0.5 * 200 / 3 + 50)
        # 2024-01-01 is a Monday
        assert pattern.preferred_time_slots[0].hour == 10
        assert pattern.preferred_time_slots[0].day_of_week == 1
        assert pattern.preferred_time_slots[0].frequency == 3

    def test_session_length_updates_on_end(self):
        """Test ending a session refreshes the average session length."""
        self.analyzer.record_user_request(_request())
        self.analyzer.end_session("s1", T0 + timedelta(minutes=40))

        assert self.analyzer.get_user_behavior_pattern("u1").average_session_length == 40


class TestPersonalization:
    """Test personalized versus generic acceptance."""

    def test_running_acceptance_and_lift(self):
        """Test rejections lower the running rate and lift is relative to generic."""
        analyzer = UserInteractionAnalyzer(clock=ManualClock(T0))
        analyzer.record_user_request(_request(context={"segment": "vip"}, accepted=True))
        analyzer.record_user_request(_request(context={"segment": "vip"}, accepted=False))
        analyzer.record_user_request(_request(context={"segment": "vip"}, accepted=True))
        analyzer.record_user_request(_request(accepted=True))
        analyzer.record_user_request(_request(accepted=False))

        record = analyzer.get_personalization_effectiveness("u1")

        assert record.personalized_requests == 3
        assert record.generic_requests == 2
        assert record.personalized_acceptance_rate == pytest.approx(200 / 3)
        assert record.generic_acceptance_rate == pytest.approx(50)
        assert record.personalization_lift == pytest.approx((200 / 3 - 50) / 50 * 100)
        factor = record.top_personalization_factors[0]
        assert factor.factor == "segment"
        assert factor.confidence == 30
        assert record.segment_performance["desktop"].requests == 5

    def test_no_generic_requests_means_no_lift(self):
        """Test lift is 0 without a generic baseline."""
        analyzer = UserInteractionAnalyzer(clock=ManualClock(T0))
        analyzer.record_user_request(_request(context={"a": 1}))
        assert analyzer.get_personalization_effectiveness("u1").personalization_lift == 0

    def test_unknown_user(self):
        """Test unknown users have no personalization record."""
        analyzer = UserInteractionAnalyzer(clock=ManualClock(T0))
        assert analyzer.get_personalization_effectiveness("nobody") is None


class TestRequestPatterns:
    """Test range-wide request aggregation."""

    def test_report(self):
        """Test distributions, peak hours and campaign popularity."""
        analyzer = UserInteractionAnalyzer(clock=ManualClock(T0))
        analyzer.record_user_request(_request("u1", campaign_id="a", device_type=DeviceType.MOBILE, country="US"))
        analyzer.record_user_request(_request("u1", campaign_id="a", timestamp=T0 + timedelta(hours=3)))
        analyzer.record_user_request(_request("u2", session_id="s2", campaign_id="a", country="US"))
        analyzer.record_user_request(_request("u2", session_id="s2", campaign_id="b"))
        analyzer.record_user_request(_request("u3", session_id="s3", campaign_id="b",
                                              timestamp=T0 + timedelta(days=30)))

        report = analyzer.analyze_request_patterns(T0, T0 + timedelta(days=1))

        assert report.total_requests == 4
        assert report.unique_users == 2
        assert report.average_requests_per_user == 2
        assert report.peak_hours[0].hour == 10
        assert report.peak_hours[0].requests == 3
        assert report.device_distribution == {"mobile": 1, "unknown": 3}
        assert report.geographic_distribution == {"US": 2, "unknown": 2}
        assert report.campaign_popularity[0].campaign_id == "a"
        assert report.campaign_popularity[0].requests == 3
        assert report.campaign_popularity[0].unique_users == 2

    def test_empty_range(self):
        """Test an empty range yields an empty report."""
        analyzer = UserInteractionAnalyzer(clock=ManualClock(T0))
        assert analyzer.analyze_request_patterns(T0, T0).total_requests == 0

    def test_inverted_range(self):
        """Test start after end is rejected."""
        analyzer = UserInteractionAnalyzer(clock=ManualClock(T0))
        with pytest.raises(ConfigurationError):
            analyzer.analyze_request_patterns(T0, T0 - timedelta(hours=1))


class TestJourneyAndValue:
    """Test journeys and lifetime value."""

    def test_journey_sorted_and_filtered(self):
        """Test journey events are time ordered and filterable by session."""
        analyzer = UserInteractionAnalyzer(clock=ManualClock(T0))
        analyzer.record_user_request(_request(session_id="s2", timestamp=T0 + timedelta(hours=1), accepted=False))
        analyzer.record_user_request(_request(session_id="s1", timestamp=T0))

        journey = analyzer.get_user_journey("u1")
        assert [e.outcome for e in journey] == ["accepted", "rejected"]
        assert [e.session_id for e in analyzer.get_user_journey("u1", "s2")] == ["s2"]

    def test_lifetime_value_for_unknown_user(self):
        """Test unknown users get an all-zero prediction."""
        analyzer = UserInteractionAnalyzer(clock=ManualClock(T0))
        prediction = analyzer.predict_user_lifetime_value("nobody")
        assert prediction.predicted_value == 0
        assert prediction.confidence == 0
        assert prediction.factors == ()

    def test_lifetime_value(self):
        """Test the linear value model on a single accepted request."""
        analyzer = UserInteractionAnalyzer(clock=ManualClock(T0))
        analyzer.record_user_request(_request(accepted=True))

        prediction = analyzer.predict_user_lifetime_value("u1")

        # frequency 1, conversion 100, session 5min, churn 0, trend increasing
        expected = 100 + 100 * (0.3 * 0.01 + 0.25 * 1.0 + 0.2 * 0.05 - 0.15 * 0.0 + 0.1 * 1.0)
        assert prediction.predicted_value == pytest.approx(expected)
        assert prediction.confidence == pytest.approx(1 / 10 * 20 + 100 * 0.5)
        assert [f.factor for f in prediction.factors][0] == "request_frequency"


class TestCleanupAndEvents:
    """Test retention and notifications."""

    def test_request_event(self):
        """Test requests are published."""
        bus = EventBus()
        received = []
        bus.subscribe(EventType.REQUEST_RECORDED, received.append)
        analyzer = UserInteractionAnalyzer(event_bus=bus, clock=ManualClock(T0))
        request = _request()

        analyzer.record_user_request(request)

        assert received[0].payload is request

    def test_cleanup_drops_stale_users(self):
        """Test users without retained requests lose derived records."""
        clock = ManualClock(T0)
        analyzer = UserInteractionAnalyzer(retention_days=10, clock=clock)
        analyzer.record_user_request(_request())
        clock.advance(timedelta(days=11))

        assert analyzer.cleanup() == 1
        assert analyzer.get_user_behavior_pattern("u1") is None
        assert analyzer.get_session_analytics("s1") is None

    def test_inactive_users_tagged_churned(self):
        """Test users idle for over 30 days are tagged churned."""
        clock = ManualClock(T0)
        analyzer = UserInteractionAnalyzer(clock=clock)
        analyzer.record_user_request(_request())
        clock.advance(timedelta(days=31))

        analyzer.cleanup()

        assert analyzer.get_user_behavior_pattern("u1").pattern_type == PatternType.CHURNED_USER

    def test_detect_os(self):
        """Test OS detection order."""
        assert detect_os("Mozilla/5.0 (Macintosh; Intel Mac OS X)") == "macOS"
        assert detect_os("Mozilla/5.0 (X11; Linux x86_64)") == "Linux"
        assert detect_os("SomeBot/1.0") == "unknown"
        assert detect_os(None) == "unknown"
