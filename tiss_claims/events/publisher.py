"""
Core publisher abstractions: DomainEvent dataclass and EventPublisher protocol.

Events are consumed by the external notification dispatcher, which turns them
into alerts. The engine never sends messages itself.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol, runtime_checkable
from uuid import UUID, uuid4

from tiss_claims.utils.dates import utc_now

# Event types emitted by the engine
BATCH_SUBMITTED = "batch.submitted"
BATCH_CLOSED = "batch.closed"
BATCH_HIGH_DENIAL = "batch.high_denial"
RETURN_COMPLETED = "return.completed"
RETURN_FAILED = "return.failed"
GUIDE_OUTCOME_ANOMALY = "guide.outcome_anomaly"


@dataclass(frozen=True)
class DomainEvent:
    """A lifecycle event about one engine entity."""

    event_id: UUID
    event_type: str  # e.g. "batch.high_denial"
    entity_id: str
    clinic_id: str | None
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def entity_type(self) -> str:
        return self.event_type.split(".", 1)[0]

    def to_dict(self) -> dict[str, Any]:
        """Plain dict representation for JSON serialization (outbox and log backends)."""
        return {
            "_event_type": self.event_type,
            "_event_id": str(self.event_id),
            "_event_timestamp": self.timestamp.isoformat(),
            "_entity_id": self.entity_id,
            "_clinic_id": self.clinic_id,
            "data": {k: _serialize(v) for k, v in self.data.items()},
        }


def create_event(
    event_type: str,
    entity_id: Any,
    clinic_id: str | None,
    data: dict[str, Any] | None = None,
) -> DomainEvent:
    """Factory to create a DomainEvent with auto-generated event_id."""
    return DomainEvent(
        event_id=uuid4(),
        event_type=event_type,
        entity_id=str(entity_id),
        clinic_id=clinic_id,
        timestamp=utc_now(),
        data=data or {},
    )


def topic_for(prefix: str, event: DomainEvent) -> str:
    """Topic name for an event, e.g. ``tiss.batch``."""
    return f"{prefix}.{event.entity_type}"


def _serialize(value: Any) -> Any:
    """Serialize a value for JSON output."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


@runtime_checkable
class EventPublisher(Protocol):
    """Protocol for event publisher backends."""

    def publish(self, topic: str, event: DomainEvent) -> None:
        """Publish a single event."""
        ...

    def publish_batch(self, topic: str, events: list[DomainEvent]) -> None:
        """Publish a batch of events."""
        ...

    def flush(self) -> None:
        """Flush any internal buffers."""
        ...

    def close(self) -> None:
        """Close the publisher and release resources."""
        ...

    @property
    def stats(self) -> dict[str, int]:
        """Return publishing statistics."""
        ...
