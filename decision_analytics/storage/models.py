"""
Data models for the metric store.

Defines the raw telemetry records ingested from the decisioning platform.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional


class ExecutionStatus(Enum):
    """Outcome of a single campaign decision execution."""
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


class DeviceType(Enum):
    """Device class reported with a decision request."""
    MOBILE = "mobile"
    DESKTOP = "desktop"
    TABLET = "tablet"


@dataclass(frozen=True)
class ExecutionSample:
    """One retained atom execution."""
    timestamp: datetime
    execution_time: float
    success: bool


@dataclass
class AtomUsageMetric:
    """Merged usage record for one (atom, rule, campaign) run of executions.

    Consecutive executions of the same atom for the same rule and campaign
    are folded into a single record. The most recent executions are kept as
    samples in a bounded ring buffer; older ones survive only as exact
    evicted-sample counters.
    """
    atom_id: str
    rule_id: str
    campaign_id: str
    execution_count: int
    success_count: int
    failure_count: int
    average_execution_time: float
    first_used: datetime
    last_used: datetime
    context: Dict[str, Any] = field(default_factory=dict)
    input_data: Any = None
    output_data: Any = None
    error_messages: List[str] = field(default_factory=list)
    samples: Deque[ExecutionSample] = field(default_factory=deque)
    evicted_count: int = 0
    evicted_successes: int = 0
    evicted_total_time: float = 0.0

    def add_sample(self, sample: ExecutionSample) -> None:
        """Append a sample, folding the oldest one into the evicted counters when full."""
        if self.samples.maxlen is not None and len(self.samples) == self.samples.maxlen:
            oldest = self.samples[0]
            self.evicted_count += 1
            self.evicted_total_time += oldest.execution_time
            if oldest.success:
                self.evicted_successes += 1
        self.samples.append(sample)

    @property
    def evicted_average_time(self) -> float:
        """Exact mean execution time of samples that fell out of the buffer."""
        if self.evicted_count == 0:
            return 0.0
        return self.evicted_total_time / self.evicted_count


@dataclass(frozen=True)
class CampaignExecutionMetric:
    """Immutable record of one campaign decision execution."""
    campaign_id: str
    decision_id: str
    execution_time: float
    status: ExecutionStatus
    rules_evaluated: int
    rules_triggered: int
    timestamp: datetime
    errors: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RulePerformanceMetric:
    """Rolling aggregate of executions sharing a decision id."""
    rule_id: str
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    average_execution_time: float = 0.0
    last_executed: Optional[datetime] = None
    error_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def error_patterns(self) -> List[Dict[str, Any]]:
        """Errors seen for this rule, most frequent first."""
        return [
            {"error": error, "count": count}
            for error, count in sorted(self.error_counts.items(), key=lambda item: item[1], reverse=True)
        ]


@dataclass(frozen=True)
class Location:
    """Coarse geographic origin of a request."""
    country: str
    region: str = ""
    city: str = ""


@dataclass(frozen=True)
class UserDecisionRequest:
    """Immutable record of one user-triggered decision request."""
    user_id: str
    session_id: str
    request_id: str
    timestamp: datetime
    campaign_id: str
    decision_made: bool
    response_time: float
    context_data: Dict[str, Any] = field(default_factory=dict)
    user_agent: Optional[str] = None
    device_type: Optional[DeviceType] = None
    location: Optional[Location] = None


@dataclass(frozen=True)
class DeviceInfo:
    """Device details captured from the first request of a session."""
    type: DeviceType
    browser: Optional[str] = None
    os: str = "unknown"


@dataclass(frozen=True)
class JourneyEntry:
    """One step in a session journey."""
    timestamp: datetime
    action: str
    campaign_id: Optional[str] = None
    value: Optional[float] = None


@dataclass
class SessionAnalytics:
    """Mutable per-session rollup, open until the session is ended."""
    session_id: str
    user_id: str
    start_time: datetime
    device_info: DeviceInfo
    total_requests: int = 0
    decisions_accepted: int = 0
    decisions_rejected: int = 0
    average_response_time: float = 0.0
    end_time: Optional[datetime] = None
    journey: List[JourneyEntry] = field(default_factory=list)

    @property
    def duration(self) -> Optional[float]:
        """Session length in milliseconds, once ended."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    @property
    def is_ended(self) -> bool:
        return self.end_time is not None
