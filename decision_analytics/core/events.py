"""
Change notifications.

Analyzers publish every newly written record to an explicit event bus;
alerting and dashboards subscribe to the event types they care about.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Notifications emitted by the engine."""
    USAGE_RECORDED = "usage_recorded"
    EXECUTION_RECORDED = "execution_recorded"
    REQUEST_RECORDED = "request_recorded"
    SESSION_ENDED = "session_ended"
    PERFORMANCE_ALERT = "performance_alert"
    CONVERSION_ALERT = "conversion_alert"


@dataclass(frozen=True)
class AnalyticsEvent:
    """A published notification carrying the written record."""
    type: EventType
    payload: Any


Subscriber = Callable[[AnalyticsEvent], None]


class EventBus:
    """Synchronous publish/subscribe channel.

    Delivery happens in subscription order on the publishing call. A
    subscriber that raises is logged and skipped; it never aborts the write
    that triggered the notification.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[Subscriber]] = {}

    def subscribe(self, event_type: EventType, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for ``event_type``.

        Returns:
            A callable that removes the subscription
        """
        self._subscribers.setdefault(event_type, []).append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, callback)

        return _unsubscribe

    def unsubscribe(self, event_type: EventType, callback: Subscriber) -> None:
        callbacks = self._subscribers.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def publish(self, event_type: EventType, payload: Any) -> None:
        event = AnalyticsEvent(type=event_type, payload=payload)
        for callback in list(self._subscribers.get(event_type, [])):
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber failed while handling %s", event_type.value)

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers.get(event_type, []))
