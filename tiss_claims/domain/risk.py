"""
Risk assessment models.
"""

from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from tiss_claims.domain.enums import RiskLevel, IssueKind
from tiss_claims.domain.findings import ValidationFinding


class RiskCandidate(BaseModel):
    """
    A guide as seen by the risk predictor.

    Fields are kept as loosely typed text so malformed values coming from
    forms or spreadsheets can be scored and corrected rather than rejected.
    """

    guide_number: Optional[str] = None
    guide_type: Optional[str] = None
    patient_name: Optional[str] = None
    card_number: Optional[str] = None
    procedure_code: Optional[str] = None
    procedure_name: Optional[str] = None
    procedure_quantity: Optional[int] = None
    unit_value: Optional[int] = None
    total_value: Optional[int] = None
    cid_code: Optional[str] = None
    provider_council_number: Optional[str] = None
    authorization_number: Optional[str] = None
    execution_date: Optional[str] = None
    operator_registry: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_guide(cls, guide: Any) -> "RiskCandidate":
        """Build a candidate from a persisted Guide."""
        execution_date = getattr(guide, "execution_date", None)
        guide_type = getattr(guide, "guide_type", None)
        return cls(
            guide_number=guide.guide_number,
            guide_type=getattr(guide_type, "value", guide_type),
            patient_name=guide.patient_name,
            card_number=guide.card_number,
            procedure_code=guide.procedure_code,
            procedure_name=guide.procedure_name,
            procedure_quantity=guide.procedure_quantity,
            unit_value=guide.unit_value,
            total_value=guide.total_value,
            cid_code=guide.cid_code,
            provider_council_number=guide.provider_council_number,
            authorization_number=guide.authorization_number,
            execution_date=execution_date.isoformat() if execution_date else None,
            notes=guide.notes,
        )


class PredictedIssue(BaseModel):
    """One contributing reason in a risk assessment."""

    field: str
    code: str
    message: str
    kind: IssueKind
    probability: float = Field(..., ge=0, le=1)
    suggestion: Optional[str] = None


class RiskAssessment(BaseModel):
    """Transient scoring result."""

    risk_level: RiskLevel
    probability: float = Field(..., ge=0, le=1)
    base_rate: float = Field(..., ge=0, le=1)
    estimated_loss: int = Field(..., ge=0, description="Minor units")
    can_auto_fix: bool
    reasons: list[PredictedIssue] = Field(default_factory=list)
    operator_name: str


class FieldChange(BaseModel):
    """A single applied correction."""

    field: str
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None


class AutoFixResult(BaseModel):
    """Corrected candidate and the changes applied to it."""

    fixed: RiskCandidate
    changes: list[FieldChange] = Field(default_factory=list)


class GuideRiskResult(BaseModel):
    """Outcome of scoring one guide inside a batch analysis."""

    guide_id: Optional[UUID] = None
    guide_number: Optional[str] = None
    success: bool = True
    risk: Optional[RiskAssessment] = None
    findings: list[ValidationFinding] = Field(default_factory=list)
    auto_fix_applied: bool = False
    fixes: list[FieldChange] = Field(default_factory=list)
    error: Optional[str] = None


class BatchRiskSummary(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    high_risk: int = Field(0, description="Guides scored high or critical")
    auto_fixed: int = 0
    total_estimated_loss: int = Field(0, description="Minor units")


class BatchRiskAnalysis(BaseModel):
    """Per-guide risk results for a batch or an ad hoc list of guides."""

    batch_id: Optional[UUID] = None
    operator_name: str
    results: list[GuideRiskResult] = Field(default_factory=list)
    summary: BatchRiskSummary = Field(default_factory=BatchRiskSummary)
