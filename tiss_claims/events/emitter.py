"""
EventEmitter: publishes domain events after the owning transaction commits.
"""

from collections import defaultdict
from typing import Any

import structlog

from tiss_claims.events.publisher import (
    DomainEvent,
    EventPublisher,
    create_event,
    topic_for,
)

logger = structlog.get_logger()


class EventEmitter:
    """
    Groups events by topic and hands them to the configured publisher.

    With ``fail_open`` a publishing failure is logged and counted, since the
    state change it describes has already been committed.
    """

    def __init__(self, publisher: EventPublisher, topic_prefix: str = "tiss", fail_open: bool = True):
        self.publisher = publisher
        self.topic_prefix = topic_prefix
        self.fail_open = fail_open
        self._stats = {"events_published": 0, "publish_errors": 0}

    def event(self, event_type: str, entity_id: Any, clinic_id: str | None, **data: Any) -> DomainEvent:
        return create_event(event_type, entity_id, clinic_id, data)

    def emit(self, event_type: str, entity_id: Any, clinic_id: str | None, **data: Any) -> DomainEvent:
        event = self.event(event_type, entity_id, clinic_id, **data)
        self.emit_all([event])
        return event

    def emit_all(self, events: list[DomainEvent]) -> None:
        if not events:
            return
        by_topic: dict[str, list[DomainEvent]] = defaultdict(list)
        for event in events:
            by_topic[topic_for(self.topic_prefix, event)].append(event)

        for topic, batch in by_topic.items():
            try:
                if len(batch) == 1:
                    self.publisher.publish(topic, batch[0])
                else:
                    self.publisher.publish_batch(topic, batch)
                self._stats["events_published"] += len(batch)
            except Exception as e:
                self._stats["publish_errors"] += len(batch)
                if self.fail_open:
                    logger.warning(
                        "event_publish_error",
                        topic=topic,
                        event_count=len(batch),
                        error=str(e),
                    )
                else:
                    raise

    @property
    def stats(self) -> dict[str, int]:
        return {**self._stats, **self.publisher.stats}
