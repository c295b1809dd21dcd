"""
Factory for creating publisher instances from configuration.
"""

from tiss_claims.config.models import EventsConfig
from tiss_claims.events.backends import InMemoryPublisher, LogPublisher, OutboxPublisher
from tiss_claims.events.publisher import EventPublisher


def create_publisher(config: EventsConfig, worker_id: str = "api") -> EventPublisher:
    """
    Create the publisher named by ``config.backend``.

    Args:
        config: Events configuration
        worker_id: Process label written into outbox lines
    """
    if config.backend == "outbox":
        return OutboxPublisher(config.outbox_dir, source=worker_id)
    if config.backend == "memory":
        return InMemoryPublisher()
    return LogPublisher(level=config.log_level)
