"""
Guide domain models.
"""

from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from tiss_claims.domain.enums import (
    GuideType,
    GuideStatus,
    ValidationStatus,
    OutcomeStatus,
)
from tiss_claims.domain.findings import ValidationFinding


def compute_glosa_value(total_value: int, paid_value: int) -> int:
    """Glosa is the unpaid part of the billed value, never negative."""
    return max(0, total_value - paid_value)


class GuideCreate(BaseModel):
    """Model for creating a guide."""

    guide_number: Optional[str] = Field(None, max_length=20)
    guide_type: GuideType = GuideType.CONSULTATION

    patient_ref: str = Field(..., min_length=1, max_length=64)
    patient_name: Optional[str] = Field(None, max_length=120)
    card_number: Optional[str] = Field(None, max_length=40)

    procedure_code: str = Field(..., min_length=1, max_length=20)
    procedure_name: Optional[str] = Field(None, max_length=200)
    procedure_quantity: int = Field(default=1, ge=1)
    unit_value: Optional[int] = Field(None, ge=0, description="Minor units")
    total_value: int = Field(..., ge=0, description="Minor units")

    cid_code: Optional[str] = Field(None, max_length=10)
    provider_council_number: Optional[str] = Field(None, max_length=20)
    authorization_number: Optional[str] = Field(None, max_length=30)
    execution_date: Optional[date] = None

    operator_name: Optional[str] = Field(None, max_length=80)
    notes: Optional[str] = Field(None, max_length=500)


class GuideUpdate(BaseModel):
    """Editable guide fields. Only PENDING guides accept updates."""

    guide_type: Optional[GuideType] = None
    patient_ref: Optional[str] = Field(None, min_length=1, max_length=64)
    patient_name: Optional[str] = Field(None, max_length=120)
    card_number: Optional[str] = Field(None, max_length=40)
    procedure_code: Optional[str] = Field(None, min_length=1, max_length=20)
    procedure_name: Optional[str] = Field(None, max_length=200)
    procedure_quantity: Optional[int] = Field(None, ge=1)
    unit_value: Optional[int] = Field(None, ge=0)
    total_value: Optional[int] = Field(None, ge=0)
    cid_code: Optional[str] = Field(None, max_length=10)
    provider_council_number: Optional[str] = Field(None, max_length=20)
    authorization_number: Optional[str] = Field(None, max_length=30)
    execution_date: Optional[date] = None
    operator_name: Optional[str] = Field(None, max_length=80)
    notes: Optional[str] = Field(None, max_length=500)


class Guide(BaseModel):
    """Full guide as persisted."""

    id: UUID
    clinic_id: str
    batch_id: Optional[UUID] = None

    guide_number: str
    guide_type: GuideType = GuideType.CONSULTATION

    patient_ref: str
    patient_name: Optional[str] = None
    card_number: Optional[str] = None

    procedure_code: str
    procedure_name: Optional[str] = None
    procedure_quantity: int = 1
    unit_value: Optional[int] = None
    total_value: int = Field(..., ge=0)
    paid_value: int = Field(default=0, ge=0)
    glosa_value: int = Field(default=0, ge=0)

    cid_code: Optional[str] = None
    provider_council_number: Optional[str] = None
    authorization_number: Optional[str] = None
    execution_date: Optional[date] = None
    operator_name: Optional[str] = None
    notes: Optional[str] = None

    status: GuideStatus = GuideStatus.PENDING
    validation_status: ValidationStatus = ValidationStatus.VALID
    validation_errors: list[ValidationFinding] = Field(default_factory=list)

    outcome_return_id: Optional[UUID] = None
    outcome_received_at: Optional[datetime] = None

    created_by: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @model_validator(mode="after")
    def glosa_matches_payment(self) -> "Guide":
        if self.paid_value > self.total_value:
            raise ValueError(
                f"paid_value ({self.paid_value}) exceeds total_value ({self.total_value})"
            )
        self.glosa_value = compute_glosa_value(self.total_value, self.paid_value)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def model_dump_db(self) -> dict[str, Any]:
        """Convert to dictionary for database insertion."""
        data = self.model_dump()
        data["guide_type"] = self.guide_type.value
        data["status"] = self.status.value
        data["validation_status"] = self.validation_status.value
        data["validation_errors"] = [f.model_dump(mode="json") for f in self.validation_errors]
        return data


class GlosaItem(BaseModel):
    """One denial line reported for a guide."""

    code: str
    description: Optional[str] = None
    value: Optional[int] = Field(None, ge=0, description="Minor units")
    can_appeal: Optional[bool] = None


class GuideOutcome(BaseModel):
    """An operator's verdict for one guide, as extracted from a return file."""

    guide_number: str
    status: OutcomeStatus
    presented_value: Optional[int] = None
    approved_value: Optional[int] = None
    denied_value: Optional[int] = None
    denial_code: Optional[str] = None
    denial_reason: Optional[str] = None
    can_appeal: Optional[bool] = None
    glosas: list[GlosaItem] = Field(default_factory=list)
    operator_guide_number: Optional[str] = None
    source_line: Optional[int] = None

    def paid_value_for(self, total_value: int) -> int:
        """
        Amount the operator paid against a guide billed at ``total_value``.

        Clamped to [0, total_value].
        """
        if self.status == OutcomeStatus.DENIED:
            paid = 0
        elif self.approved_value is not None:
            paid = self.approved_value
        elif self.denied_value is not None:
            paid = total_value - self.denied_value
        elif self.status == OutcomeStatus.APPROVED:
            paid = total_value
        else:
            glosa_total = sum(g.value or 0 for g in self.glosas)
            paid = total_value - glosa_total
        return min(max(paid, 0), total_value)
