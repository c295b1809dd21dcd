"""
Domain event publishing for the notification dispatcher.
"""

from tiss_claims.events.publisher import (
    DomainEvent,
    EventPublisher,
    create_event,
    topic_for,
    BATCH_SUBMITTED,
    BATCH_CLOSED,
    BATCH_HIGH_DENIAL,
    RETURN_COMPLETED,
    RETURN_FAILED,
    GUIDE_OUTCOME_ANOMALY,
)
from tiss_claims.events.backends import ALERT_EVENT_TYPES, InMemoryPublisher, LogPublisher, OutboxPublisher
from tiss_claims.events.factory import create_publisher
from tiss_claims.events.emitter import EventEmitter

__all__ = [
    "DomainEvent",
    "EventPublisher",
    "create_event",
    "topic_for",
    "create_publisher",
    "ALERT_EVENT_TYPES",
    "InMemoryPublisher",
    "LogPublisher",
    "OutboxPublisher",
    "EventEmitter",
    "BATCH_SUBMITTED",
    "BATCH_CLOSED",
    "BATCH_HIGH_DENIAL",
    "RETURN_COMPLETED",
    "RETURN_FAILED",
    "GUIDE_OUTCOME_ANOMALY",
]
