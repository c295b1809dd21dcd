"""
Batch domain models.
"""

from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from tiss_claims.domain.enums import BatchStatus
from tiss_claims.domain.findings import ValidationFinding


class BatchCreate(BaseModel):
    """Model for creating a batch."""

    batch_number: Optional[str] = Field(None, max_length=20)
    operator_name: str = Field(..., min_length=1, max_length=80)
    operator_registry: Optional[str] = Field(
        None,
        max_length=10,
        description="ANS registry code of the operator",
    )
    reference_month: Optional[int] = Field(None, ge=1, le=12)
    reference_year: Optional[int] = Field(None, ge=2000, le=2100)
    notes: Optional[str] = Field(None, max_length=500)


class SubmissionMeta(BaseModel):
    """Caller-supplied data recorded when a batch is sent."""

    protocol_number: Optional[str] = Field(None, max_length=40)
    submission_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=500)


class Batch(BaseModel):
    """Full batch as persisted."""

    id: UUID
    clinic_id: str
    batch_number: str
    operator_name: str
    operator_registry: Optional[str] = None
    reference_month: Optional[int] = None
    reference_year: Optional[int] = None

    status: BatchStatus = BatchStatus.DRAFT
    tiss_version: Optional[str] = None

    xml_snapshot_url: Optional[str] = None
    xml_sha256: Optional[str] = None
    xml_size: Optional[int] = None
    xml_generated_at: Optional[datetime] = None

    submission_date: Optional[date] = None
    protocol_number: Optional[str] = None
    submitted_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    high_denial_at: Optional[datetime] = None

    validation_errors: list[ValidationFinding] = Field(default_factory=list)
    notes: Optional[str] = None

    created_by: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_frozen(self) -> bool:
        """Membership and snapshot can no longer change."""
        return self.status in (BatchStatus.SENT, BatchStatus.CLOSED)

    def model_dump_db(self) -> dict[str, Any]:
        """Convert to dictionary for database insertion."""
        data = self.model_dump()
        data["status"] = self.status.value
        data["validation_errors"] = [f.model_dump(mode="json") for f in self.validation_errors]
        return data


class BatchSummary(BaseModel):
    """Batch with membership totals, as returned by the API."""

    batch: Batch
    guide_count: int = 0
    total_value: int = 0
    guide_ids: list[UUID] = Field(default_factory=list)
