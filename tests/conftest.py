"""
Shared test fixtures for TISS claims engine tests.
"""

from datetime import timedelta
from typing import Optional

import pytest
from sqlalchemy.engine import Engine

from tiss_claims.config.models import (
    ApiConfig,
    EventsConfig,
    GlosaConfig,
    IngestionConfig,
    StorageConfig,
    TissConfig,
)
from tiss_claims.db.connection import create_sqlite_engine
from tiss_claims.db.initialize import create_schema
from tiss_claims.domain import (
    Batch,
    BatchCreate,
    CallerContext,
    Guide,
    GuideCreate,
    GuideType,
)
from tiss_claims.events import InMemoryPublisher
from tiss_claims.services import TissServices
from tiss_claims.storage.implementations.memory import InMemoryBlobStore
from tiss_claims.utils.dates import today

CLINIC_ID = "clinic-a"
OTHER_CLINIC_ID = "clinic-b"
OPERATOR_REGISTRY = "123456"


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def test_config() -> TissConfig:
    """Minimal test configuration backed by in-memory adapters."""
    return TissConfig(
        storage=StorageConfig(backend="memory"),
        events=EventsConfig(backend="memory", fail_open=True),
        ingestion=IngestionConfig(
            max_retries=3,
            backoff_seconds=[30, 120, 600],
            stale_timeout_minutes=15,
            high_denial_threshold=0.40,
            worker_id="test-worker",
        ),
        api=ApiConfig(process_on_upload=False),
        glosa=GlosaConfig(appeal_window_business_days=30, calendar_subdivision="SP"),
    )


# =============================================================================
# Infrastructure Fixtures
# =============================================================================


@pytest.fixture
def engine() -> Engine:
    """Fresh in-memory SQLite database with the engine schema."""
    engine = create_sqlite_engine()
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def publisher() -> InMemoryPublisher:
    return InMemoryPublisher()


@pytest.fixture
def services(
    test_config: TissConfig,
    engine: Engine,
    blobs: InMemoryBlobStore,
    publisher: InMemoryPublisher,
) -> TissServices:
    """Every component wired over the test database and in-memory adapters."""
    return TissServices.for_engine(test_config, engine, blobs, publisher, worker_id="test-worker")


# =============================================================================
# Caller Fixtures
# =============================================================================


@pytest.fixture
def clinic_admin() -> CallerContext:
    return CallerContext(user_id="u-admin", clinic_id=CLINIC_ID, role="CLINIC_ADMIN")


@pytest.fixture
def clinic_staff() -> CallerContext:
    return CallerContext(user_id="u-staff", clinic_id=CLINIC_ID, role="CLINIC_STAFF")


@pytest.fixture
def other_clinic() -> CallerContext:
    return CallerContext(user_id="u-other", clinic_id=OTHER_CLINIC_ID, role="CLINIC_ADMIN")


@pytest.fixture
def super_admin() -> CallerContext:
    return CallerContext(user_id="u-root", clinic_id="platform", role="SUPER_ADMIN")


# =============================================================================
# Entity Factories
# =============================================================================


def guide_payload(guide_number: Optional[str] = None, **overrides) -> GuideCreate:
    """A consultation guide that passes every field rule."""
    values = dict(
        guide_number=guide_number,
        guide_type=GuideType.CONSULTATION,
        patient_ref="P-001",
        patient_name="Maria da Silva",
        card_number="1234567890123456",
        procedure_code="10101012",
        procedure_name="Consulta em consultorio",
        procedure_quantity=1,
        total_value=10000,
        cid_code="J06.9",
        provider_council_number="123456SP",
        execution_date=today() - timedelta(days=5),
    )
    values.update(overrides)
    return GuideCreate(**values)


@pytest.fixture
def make_guide(services: TissServices, clinic_admin: CallerContext):
    """Create a guide for the default clinic."""

    def _make(guide_number: Optional[str] = None, caller: Optional[CallerContext] = None, **overrides) -> Guide:
        return services.guides.create_guide(caller or clinic_admin, guide_payload(guide_number, **overrides))

    return _make


@pytest.fixture
def make_batch(services: TissServices, clinic_admin: CallerContext):
    """Create a DRAFT batch, optionally with guides attached."""

    def _make(
        guides: Optional[list[Guide]] = None,
        operator_name: str = "UNIMED",
        caller: Optional[CallerContext] = None,
        **overrides,
    ) -> Batch:
        caller = caller or clinic_admin
        batch = services.batches.create_batch(caller, BatchCreate(
            operator_name=operator_name,
            operator_registry=overrides.pop("operator_registry", OPERATOR_REGISTRY),
            **overrides,
        ))
        if guides:
            services.batches.add_guides(caller, batch.id, [g.id for g in guides])
        return services.batches.get_batch(caller, batch.id)

    return _make


@pytest.fixture
def sent_batch(services: TissServices, clinic_admin: CallerContext, make_guide, make_batch):
    """Submit a batch of fresh guides and return (batch, guides)."""

    def _make(numbers: tuple[str, ...] = ("2026000001", "2026000002"), **guide_overrides):
        guides = [make_guide(number, **guide_overrides) for number in numbers]
        batch = make_batch(guides)
        services.batches.generate_file(clinic_admin, batch.id)
        batch = services.batches.submit(clinic_admin, batch.id)
        return batch, guides

    return _make


@pytest.fixture
def upload_return(services: TissServices, clinic_admin: CallerContext):
    """Upload return bytes as the default clinic."""

    def _upload(content: str | bytes, file_name: str = "retorno.txt", caller: Optional[CallerContext] = None):
        data = content.encode("utf-8") if isinstance(content, str) else content
        return services.uploads.upload(caller or clinic_admin, data, file_name)

    return _upload


@pytest.fixture
def pipe_return():
    """Build a pipe-delimited return with a header line."""

    def _build(*lines: str) -> str:
        return "\n".join(("HEADER|UNIMED|LOTE1|PROT-1",) + lines) + "\n"

    return _build


@pytest.fixture
def guide_data():
    """Factory for valid GuideCreate payloads."""
    return guide_payload
