"""
Repository pattern for telemetry access.

Holds the raw, in-memory time series that every analyzer reads from.
"""

from collections import deque
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from .models import (
    AtomUsageMetric,
    CampaignExecutionMetric,
    ExecutionSample,
    ExecutionStatus,
    RulePerformanceMetric,
    SessionAnalytics,
    UserDecisionRequest,
)

DEFAULT_MAX_SAMPLES = 1000


class MetricStore:
    """Owned container for raw atom, campaign and user telemetry.

    Each analyzer holds its own store, so several engines (one per tenant,
    for example) can live in one process without sharing state. Records are
    kept per entity in insertion order.
    """

    def __init__(self, max_samples_per_record: int = DEFAULT_MAX_SAMPLES):
        """Initialize an empty store.

        Args:
            max_samples_per_record: Ring buffer size for per-execution atom samples
        """
        if max_samples_per_record <= 0:
            raise ValueError("max_samples_per_record must be > 0")
        self.max_samples_per_record = max_samples_per_record
        self.atom_usage: Dict[str, List[AtomUsageMetric]] = {}
        self.campaign_executions: Dict[str, List[CampaignExecutionMetric]] = {}
        self.rule_metrics: Dict[str, RulePerformanceMetric] = {}
        self.user_requests: Dict[str, List[UserDecisionRequest]] = {}
        self.sessions: Dict[str, SessionAnalytics] = {}

    # Atoms

    def merge_atom_execution(
        self,
        atom_id: str,
        rule_id: str,
        campaign_id: str,
        execution_time: float,
        success: bool,
        timestamp: datetime,
        input_data=None,
        output_data=None,
        error_message: Optional[str] = None,
        context: Optional[Dict] = None,
    ) -> AtomUsageMetric:
        """Fold one execution into the atom's latest record or start a new one.

        The latest record is merged in place when it belongs to the same
        rule and campaign; its average time is updated with the weighted
        formula ``(avg * count + time) / (count + 1)``.

        Returns:
            The record that now holds the execution
        """
        records = self.atom_usage.setdefault(atom_id, [])
        last = records[-1] if records else None
        sample = ExecutionSample(timestamp=timestamp, execution_time=execution_time, success=success)

        if last is not None and last.rule_id == rule_id and last.campaign_id == campaign_id:
            last.average_execution_time = (
                (last.average_execution_time * last.execution_count + execution_time)
                / (last.execution_count + 1)
            )
            last.execution_count += 1
            if success:
                last.success_count += 1
            else:
                last.failure_count += 1
            last.last_used = timestamp
            last.input_data = input_data if input_data is not None else last.input_data
            last.output_data = output_data if output_data is not None else last.output_data
            if error_message:
                last.error_messages.append(error_message)
            last.add_sample(sample)
            return last

        record = AtomUsageMetric(
            atom_id=atom_id,
            rule_id=rule_id,
            campaign_id=campaign_id,
            execution_count=1,
            success_count=1 if success else 0,
            failure_count=0 if success else 1,
            average_execution_time=execution_time,
            first_used=timestamp,
            last_used=timestamp,
            context=dict(context or {}),
            input_data=input_data,
            output_data=output_data,
            error_messages=[error_message] if error_message else [],
            samples=deque(maxlen=self.max_samples_per_record),
        )
        record.add_sample(sample)
        records.append(record)
        return record

    def atom_ids(self) -> List[str]:
        return list(self.atom_usage.keys())

    def atom_records(self, atom_id: str) -> List[AtomUsageMetric]:
        return self.atom_usage.get(atom_id, [])

    def iter_atom_records(self) -> Iterator[Tuple[str, AtomUsageMetric]]:
        """Yield (atom_id, record) for every stored atom record."""
        for atom_id, records in self.atom_usage.items():
            for record in records:
                yield atom_id, record

    def evict_atom_records(self, cutoff: datetime) -> List[str]:
        """Drop atom records last used before ``cutoff``.

        Returns:
            Atom ids whose record lists changed
        """
        touched = []
        for atom_id, records in list(self.atom_usage.items()):
            kept = [r for r in records if r.last_used >= cutoff]
            if len(kept) != len(records):
                touched.append(atom_id)
            if kept:
                self.atom_usage[atom_id] = kept
            else:
                del self.atom_usage[atom_id]
        return touched

    # Campaigns

    def append_campaign_execution(self, metric: CampaignExecutionMetric) -> RulePerformanceMetric:
        """Append an execution and update the rolling aggregate for its decision id.

        Returns:
            The updated per-decision aggregate
        """
        self.campaign_executions.setdefault(metric.campaign_id, []).append(metric)

        rule = self.rule_metrics.get(metric.decision_id)
        if rule is None:
            rule = RulePerformanceMetric(rule_id=metric.decision_id)
            self.rule_metrics[metric.decision_id] = rule

        rule.execution_count += 1
        rule.last_executed = (
            metric.timestamp if rule.last_executed is None else max(rule.last_executed, metric.timestamp)
        )
        if metric.status == ExecutionStatus.SUCCESS:
            rule.success_count += 1
        else:
            rule.failure_count += 1
        rule.average_execution_time = (
            (rule.average_execution_time * (rule.execution_count - 1) + metric.execution_time)
            / rule.execution_count
        )
        for error in metric.errors:
            rule.error_counts[error] = rule.error_counts.get(error, 0) + 1
        return rule

    def campaign_ids(self) -> List[str]:
        return list(self.campaign_executions.keys())

    def campaign_records(self, campaign_id: str) -> List[CampaignExecutionMetric]:
        return self.campaign_executions.get(campaign_id, [])

    def evict_campaign_records(self, cutoff: datetime) -> List[str]:
        """Drop campaign executions recorded before ``cutoff``.

        Rule aggregates whose last execution predates the cutoff go with them.
        """
        touched = []
        for campaign_id, records in list(self.campaign_executions.items()):
            kept = [r for r in records if r.timestamp >= cutoff]
            if len(kept) != len(records):
                touched.append(campaign_id)
            if kept:
                self.campaign_executions[campaign_id] = kept
            else:
                del self.campaign_executions[campaign_id]
        for rule_id, rule in list(self.rule_metrics.items()):
            if rule.last_executed is None or rule.last_executed < cutoff:
                del self.rule_metrics[rule_id]
        return touched

    # Users

    def append_user_request(self, request: UserDecisionRequest) -> List[UserDecisionRequest]:
        """Append a request and return the user's full request list."""
        requests = self.user_requests.setdefault(request.user_id, [])
        requests.append(request)
        return requests

    def user_ids(self) -> List[str]:
        return list(self.user_requests.keys())

    def requests_for(self, user_id: str) -> List[UserDecisionRequest]:
        return self.user_requests.get(user_id, [])

    def iter_requests(self) -> Iterator[UserDecisionRequest]:
        for requests in self.user_requests.values():
            yield from requests

    def evict_user_records(self, cutoff: datetime) -> Tuple[List[str], int]:
        """Drop requests timestamped and sessions started before ``cutoff``.

        Returns:
            Tuple of (user ids whose request lists changed, sessions removed)
        """
        touched = []
        for user_id, requests in list(self.user_requests.items()):
            kept = [r for r in requests if r.timestamp >= cutoff]
            if len(kept) != len(requests):
                touched.append(user_id)
            if kept:
                self.user_requests[user_id] = kept
            else:
                del self.user_requests[user_id]

        stale_sessions = [sid for sid, s in self.sessions.items() if s.start_time < cutoff]
        for session_id in stale_sessions:
            del self.sessions[session_id]
        return touched, len(stale_sessions)
