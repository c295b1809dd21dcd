"""
Table definitions for the TISS claims engine.

SQLAlchemy Core tables shared by PostgreSQL (production) and SQLite (tests).
Money columns hold integer minor units.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
)

metadata = MetaData()


tiss_batch = Table(
    "tiss_batch",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("clinic_id", String(64), nullable=False),
    Column("batch_number", String(20), nullable=False),
    Column("operator_name", String(80), nullable=False),
    Column("operator_registry", String(10)),
    Column("reference_month", Integer),
    Column("reference_year", Integer),
    Column("status", String(10), nullable=False, default="DRAFT"),
    Column("tiss_version", String(10)),
    # Snapshot columns are written once, when the interchange file is generated
    Column("xml_snapshot_url", Text),
    Column("xml_sha256", String(64)),
    Column("xml_size", Integer),
    Column("xml_generated_at", DateTime),
    Column("submission_date", Date),
    Column("protocol_number", String(40)),
    Column("submitted_by", String(64)),
    Column("submitted_at", DateTime),
    Column("closed_at", DateTime),
    Column("high_denial_at", DateTime),
    Column("validation_errors", JSON, nullable=False, default=list),
    Column("notes", Text),
    Column("created_by", String(64)),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime),
    UniqueConstraint("clinic_id", "batch_number", name="uq_tiss_batch_number"),
    Index("ix_tiss_batch_clinic_status", "clinic_id", "status"),
)


tiss_guide = Table(
    "tiss_guide",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("clinic_id", String(64), nullable=False),
    Column("batch_id", Uuid, ForeignKey("tiss_batch.id")),
    Column("guide_number", String(20), nullable=False),
    Column("guide_type", String(20), nullable=False),
    Column("patient_ref", String(64), nullable=False),
    Column("patient_name", String(120)),
    Column("card_number", String(40)),
    Column("procedure_code", String(20), nullable=False),
    Column("procedure_name", String(200)),
    Column("procedure_quantity", Integer, nullable=False, default=1),
    Column("unit_value", BigInteger),
    Column("total_value", BigInteger, nullable=False),
    Column("paid_value", BigInteger, nullable=False, default=0),
    Column("glosa_value", BigInteger, nullable=False, default=0),
    Column("cid_code", String(10)),
    Column("provider_council_number", String(20)),
    Column("authorization_number", String(30)),
    Column("execution_date", Date),
    Column("operator_name", String(80)),
    Column("notes", Text),
    Column("status", String(10), nullable=False, default="PENDING"),
    Column("validation_status", String(10), nullable=False, default="VALID"),
    Column("validation_errors", JSON, nullable=False, default=list),
    Column("outcome_return_id", Uuid),
    Column("outcome_received_at", DateTime),
    Column("created_by", String(64)),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime),
    Column("sent_at", DateTime),
    Column("processed_at", DateTime),
    UniqueConstraint("clinic_id", "guide_number", name="uq_tiss_guide_number"),
    Index("ix_tiss_guide_batch", "batch_id"),
    Index("ix_tiss_guide_clinic_status", "clinic_id", "status"),
)


tiss_return = Table(
    "tiss_return",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("clinic_id", String(64), nullable=False),
    Column("file_url", Text, nullable=False),
    Column("file_name", String(255)),
    Column("file_size", Integer),
    Column("processing_status", String(12), nullable=False, default="PENDING"),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("next_attempt_at", DateTime),
    Column("claimed_by", String(64)),
    Column("parser_strategy", String(40)),
    Column("file_encoding", String(20)),
    Column("tiss_version", String(10)),
    Column("total_guides_processed", Integer, nullable=False, default=0),
    Column("total_approved", Integer, nullable=False, default=0),
    Column("total_denied", Integer, nullable=False, default=0),
    Column("total_partial", Integer, nullable=False, default=0),
    Column("total_unmatched", Integer, nullable=False, default=0),
    Column("amount_approved", BigInteger, nullable=False, default=0),
    Column("amount_denied", BigInteger, nullable=False, default=0),
    Column("batch_ids", JSON, nullable=False, default=list),
    # Append-only stage log
    Column("processing_logs", JSON, nullable=False, default=list),
    Column("error_details", Text),
    Column("uploaded_by", String(64)),
    Column("created_at", DateTime, nullable=False),
    Column("processing_started_at", DateTime),
    Column("processing_completed_at", DateTime),
    Column("processing_duration_ms", Integer),
    Index("ix_tiss_return_status", "processing_status", "next_attempt_at"),
)


tiss_guide_outcome = Table(
    "tiss_guide_outcome",
    metadata,
    Column("guide_id", Uuid, ForeignKey("tiss_guide.id"), primary_key=True),
    Column("return_id", Uuid, ForeignKey("tiss_return.id"), primary_key=True),
    Column("outcome", String(10), nullable=False),
    Column("applied", Boolean, nullable=False),
    Column("paid_value", BigInteger, nullable=False, default=0),
    Column("glosa_value", BigInteger, nullable=False, default=0),
    Column("previous_status", String(10)),
    Column("previous_return_id", Uuid),
    Column("reason", String(200)),
    Column("recorded_at", DateTime, nullable=False),
)


tiss_glosa = Table(
    "tiss_glosa",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("clinic_id", String(64), nullable=False),
    Column("guide_id", Uuid, ForeignKey("tiss_guide.id"), nullable=False),
    Column("return_id", Uuid, ForeignKey("tiss_return.id"), nullable=False),
    Column("batch_id", Uuid),
    Column("glosa_type", String(10), nullable=False),
    Column("category", String(20), nullable=False, default="unknown"),
    Column("denial_code", String(20)),
    Column("denial_reason", Text),
    Column("glosa_value", BigInteger, nullable=False),
    Column("suggested_correction", Text),
    Column("can_appeal", Boolean, nullable=False, default=True),
    Column("appeal_deadline", Date),
    Column("disputed", Boolean, nullable=False, default=False),
    Column("disputed_at", DateTime),
    Column("disputed_by", String(64)),
    # Set when a newer return settles the guide differently
    Column("superseded_at", DateTime),
    Column("superseded_by_return_id", Uuid),
    Column("created_at", DateTime, nullable=False),
    Index("ix_tiss_glosa_clinic", "clinic_id"),
    Index("ix_tiss_glosa_guide_return", "guide_id", "return_id"),
)


tiss_audit_event = Table(
    "tiss_audit_event",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("entity_type", String(20), nullable=False),
    Column("entity_id", String(64), nullable=False),
    Column("action", String(40), nullable=False),
    Column("outcome", String(10), nullable=False),
    Column("user_id", String(64)),
    Column("clinic_id", String(64)),
    Column("details", JSON, nullable=False, default=dict),
    Column("created_at", DateTime, nullable=False),
    Index("ix_tiss_audit_entity", "entity_type", "entity_id"),
)


# Parent tables first
TABLES_IN_ORDER = [
    tiss_batch,
    tiss_guide,
    tiss_return,
    tiss_guide_outcome,
    tiss_glosa,
    tiss_audit_event,
]
