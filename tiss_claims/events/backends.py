"""
Publisher backends: outbox files for the notification dispatcher, the
structlog stream, and an in-memory capture for tests.
"""

import json
from pathlib import Path

import structlog

from tiss_claims.events.publisher import (
    BATCH_HIGH_DENIAL,
    GUIDE_OUTCOME_ANOMALY,
    RETURN_FAILED,
    DomainEvent,
)

logger = structlog.get_logger()

# Events a clinic has to act on
ALERT_EVENT_TYPES = frozenset({BATCH_HIGH_DENIAL, GUIDE_OUTCOME_ANOMALY, RETURN_FAILED})


class OutboxPublisher:
    """
    Appends events to one NDJSON outbox per topic, tailed by the dispatcher.

    Every call writes whole lines and closes the file, so a reader never
    sees half an event. Lines carry ``_source`` naming the writing process.

    File naming: {outbox_dir}/{topic}.ndjson
    """

    def __init__(self, outbox_dir: str, source: str) -> None:
        self.outbox_dir = Path(outbox_dir)
        self.outbox_dir.mkdir(parents=True, exist_ok=True)
        self.source = source
        self._lines = 0

    def path_for(self, topic: str) -> Path:
        return self.outbox_dir / f"{topic}.ndjson"

    def publish(self, topic: str, event: DomainEvent) -> None:
        self.publish_batch(topic, [event])

    def publish_batch(self, topic: str, events: list[DomainEvent]) -> None:
        lines = [
            json.dumps({**event.to_dict(), "_source": self.source}, ensure_ascii=False)
            for event in events
        ]
        with open(self.path_for(topic), "a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
        self._lines += len(lines)
        logger.debug("outbox_appended", topic=topic, event_count=len(lines))

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    @property
    def stats(self) -> dict[str, int]:
        return {"outbox_lines": self._lines}


class LogPublisher:
    """
    Writes events to the structlog stream.

    Alert events are logged at warning whatever ``level`` says, so a high
    denial batch or a failed return is visible even without a dispatcher.
    """

    def __init__(self, level: str = "info") -> None:
        self.level = level.lower()
        self._logged = 0
        self._alerts = 0

    def publish(self, topic: str, event: DomainEvent) -> None:
        alert = event.event_type in ALERT_EVENT_TYPES
        log = logger.warning if alert else getattr(logger, self.level, logger.info)
        log(
            "domain_event",
            topic=topic,
            event_type=event.event_type,
            entity_id=event.entity_id,
            clinic_id=event.clinic_id,
            data=event.to_dict()["data"],
        )
        self._logged += 1
        self._alerts += alert

    def publish_batch(self, topic: str, events: list[DomainEvent]) -> None:
        for event in events:
            self.publish(topic, event)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    @property
    def stats(self) -> dict[str, int]:
        return {"events_logged": self._logged, "alerts_logged": self._alerts}


class InMemoryPublisher:
    """Keeps (topic, event) pairs in memory. Not thread-safe."""

    def __init__(self) -> None:
        self._events: list[tuple[str, DomainEvent]] = []
        self._batches = 0

    def publish(self, topic: str, event: DomainEvent) -> None:
        self._events.append((topic, event))

    def publish_batch(self, topic: str, events: list[DomainEvent]) -> None:
        self._events.extend((topic, event) for event in events)
        self._batches += 1

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    @property
    def stats(self) -> dict[str, int]:
        return {"total_events": len(self._events), "batch_count": self._batches}

    @property
    def events(self) -> list[tuple[str, DomainEvent]]:
        return list(self._events)

    def get_events_by_type(self, event_type: str) -> list[DomainEvent]:
        return [e for _, e in self._events if e.event_type == event_type]

    def get_events_for_entity(self, entity_id: object) -> list[DomainEvent]:
        return [e for _, e in self._events if e.entity_id == str(entity_id)]

    def alerts(self) -> list[DomainEvent]:
        return [e for _, e in self._events if e.event_type in ALERT_EVENT_TYPES]

    def clear(self) -> None:
        self._events.clear()
        self._batches = 0
