"""
Request and response bodies that are not plain domain models.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from tiss_claims.domain import (
    BatchStatus,
    FieldChange,
    RiskAssessment,
    RiskCandidate,
    ValidationFinding,
)


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str


class GuideIdsRequest(BaseModel):
    guide_ids: list[UUID] = Field(..., min_length=1)


class ValidationReport(BaseModel):
    batch_id: UUID
    status: BatchStatus
    valid: bool
    errors: int
    warnings: int
    findings: list[ValidationFinding] = Field(default_factory=list)


class RiskAnalyzeRequest(BaseModel):
    guide: RiskCandidate
    operator_name: str = Field(..., min_length=1, max_length=80)
    auto_fix: bool = False


class RiskAnalyzeResponse(BaseModel):
    risk: RiskAssessment
    fixed_guide: Optional[RiskCandidate] = None
    applied_fixes: list[FieldChange] = Field(default_factory=list)
    risk_after_fix: Optional[RiskAssessment] = None


class BatchRiskRequest(BaseModel):
    batch_id: Optional[UUID] = None
    guides: Optional[list[RiskCandidate]] = None
    operator_name: Optional[str] = Field(None, min_length=1, max_length=80)
    auto_fix: bool = False
