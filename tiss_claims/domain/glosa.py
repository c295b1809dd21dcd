"""
Glosa (denial) domain models.
"""

from datetime import date, datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from tiss_claims.domain.enums import GlosaType, GlosaCategory, GuideStatus


class Glosa(BaseModel):
    """Denial or partial-payment record created by return ingestion."""

    id: UUID
    clinic_id: str
    guide_id: UUID
    return_id: UUID
    batch_id: Optional[UUID] = None

    glosa_type: GlosaType
    category: GlosaCategory = GlosaCategory.UNKNOWN
    denial_code: Optional[str] = Field(None, max_length=20)
    denial_reason: Optional[str] = None
    glosa_value: int = Field(..., ge=0)
    suggested_correction: Optional[str] = None

    can_appeal: bool = True
    appeal_deadline: Optional[date] = None
    disputed: bool = False
    disputed_at: Optional[datetime] = None
    disputed_by: Optional[str] = None
    superseded_at: Optional[datetime] = None
    superseded_by_return_id: Optional[UUID] = None

    created_at: datetime

    class Config:
        from_attributes = True

    @property
    def is_superseded(self) -> bool:
        return self.superseded_at is not None


class GlosaView(Glosa):
    """Glosa joined with guide and return summaries."""

    guide_number: Optional[str] = None
    patient_name: Optional[str] = None
    procedure_code: Optional[str] = None
    procedure_name: Optional[str] = None
    operator_name: Optional[str] = None
    guide_total_value: Optional[int] = None
    guide_status: Optional[GuideStatus] = None
    return_file_name: Optional[str] = None
    return_received_at: Optional[datetime] = None
