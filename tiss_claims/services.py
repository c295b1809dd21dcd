"""
Service container wiring repository, storage, events and components.

Usage:
    config = load_config("config/tiss.yaml")
    services = TissServices.from_config(config)
    services.batches.submit(caller, batch_id)
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.engine import Engine

from tiss_claims.config.models import TissConfig
from tiss_claims.core.audit import AuditTrail
from tiss_claims.core.batch_assembler import BatchAssembler
from tiss_claims.core.glosas import GlosaService
from tiss_claims.core.guide_store import GuideStore
from tiss_claims.core.state_machine import BatchStateMachine
from tiss_claims.db.connection import create_engine_from_config
from tiss_claims.db.repository import TissRepository
from tiss_claims.events import EventEmitter, EventPublisher, create_publisher
from tiss_claims.ingestion import RetryPolicy, ReturnIngestionWorker, ReturnUploads
from tiss_claims.reports import ReportService
from tiss_claims.risk import GlosaRiskPredictor
from tiss_claims.storage import BlobStore, create_blob_store
from tiss_claims.utils.calendar import BrazilianCalendar

logger = structlog.get_logger()


@dataclass
class TissServices:
    config: TissConfig
    engine: Engine
    repo: TissRepository
    blobs: BlobStore
    publisher: EventPublisher
    events: EventEmitter
    audit: AuditTrail
    guides: GuideStore
    state_machine: BatchStateMachine
    batches: BatchAssembler
    uploads: ReturnUploads
    worker: ReturnIngestionWorker
    glosas: GlosaService
    risk: GlosaRiskPredictor
    reports: ReportService

    @classmethod
    def from_config(cls, config: TissConfig, worker_id: Optional[str] = None) -> "TissServices":
        """Build every component from configuration."""
        engine = create_engine_from_config(config.database)
        worker_id = worker_id or config.ingestion.worker_id
        return cls.for_engine(
            config,
            engine,
            blobs=create_blob_store(config.storage),
            publisher=create_publisher(config.events, worker_id=worker_id),
            worker_id=worker_id,
        )

    @classmethod
    def for_engine(
        cls,
        config: TissConfig,
        engine: Engine,
        blobs: BlobStore,
        publisher: EventPublisher,
        worker_id: Optional[str] = None,
    ) -> "TissServices":
        """Build components over an existing engine, blob store and publisher."""
        repo = TissRepository(engine)
        audit = AuditTrail(repo)
        events = EventEmitter(
            publisher,
            topic_prefix=config.events.topic_prefix,
            fail_open=config.events.fail_open,
        )
        guides = GuideStore(repo, audit, super_role=config.api.super_role)
        state_machine = BatchStateMachine(repo)

        batches = BatchAssembler(
            repo, audit, guides, state_machine, blobs, events,
            tiss_version=config.tiss_version,
        )
        worker = ReturnIngestionWorker(
            repo, audit, guides, state_machine, blobs, events,
            policy=RetryPolicy.from_config(config.ingestion),
            calendar=BrazilianCalendar(config.glosa.calendar_subdivision),
            worker_id=worker_id or config.ingestion.worker_id,
            appeal_window_days=config.glosa.appeal_window_business_days,
            high_denial_threshold=config.ingestion.high_denial_threshold,
        )

        logger.debug(
            "services_created",
            storage=config.storage.backend,
            events=config.events.backend,
            worker_id=worker.worker_id,
        )
        return cls(
            config=config,
            engine=engine,
            repo=repo,
            blobs=blobs,
            publisher=publisher,
            events=events,
            audit=audit,
            guides=guides,
            state_machine=state_machine,
            batches=batches,
            uploads=ReturnUploads(repo, audit, guides, blobs),
            worker=worker,
            glosas=GlosaService(repo, audit, guides),
            risk=GlosaRiskPredictor(config.risk, repo, guides),
            reports=ReportService(repo, guides),
        )

    @property
    def stale_timeout(self) -> timedelta:
        return timedelta(minutes=self.config.ingestion.stale_timeout_minutes)

    def close(self) -> None:
        """Flush events and release database connections."""
        self.publisher.flush()
        self.publisher.close()
        self.engine.dispose()
