"""
Domain models for the TISS claims engine.

Pydantic models representing guides, batches, returns, glosas and risk results.
"""

from tiss_claims.domain.enums import (
    GuideType,
    GuideStatus,
    TERMINAL_GUIDE_STATUSES,
    ValidationStatus,
    Severity,
    BatchStatus,
    ProcessingStatus,
    PROGRESS_BY_STATUS,
    OutcomeStatus,
    GlosaType,
    GlosaCategory,
    RiskLevel,
    IssueKind,
    AuditOutcome,
)
from tiss_claims.domain.findings import ValidationFinding, has_errors
from tiss_claims.domain.guide import (
    GuideCreate,
    GuideUpdate,
    Guide,
    GlosaItem,
    GuideOutcome,
    compute_glosa_value,
)
from tiss_claims.domain.batch import BatchCreate, Batch, BatchSummary, SubmissionMeta
from tiss_claims.domain.returns import ReturnCreate, Return, ReturnStatusView
from tiss_claims.domain.glosa import Glosa, GlosaView
from tiss_claims.domain.risk import (
    RiskCandidate,
    PredictedIssue,
    RiskAssessment,
    FieldChange,
    AutoFixResult,
    GuideRiskResult,
    BatchRiskSummary,
    BatchRiskAnalysis,
)
from tiss_claims.domain.audit import AuditEvent, CallerContext

__all__ = [
    # Enums
    "GuideType",
    "GuideStatus",
    "TERMINAL_GUIDE_STATUSES",
    "ValidationStatus",
    "Severity",
    "BatchStatus",
    "ProcessingStatus",
    "PROGRESS_BY_STATUS",
    "OutcomeStatus",
    "GlosaType",
    "GlosaCategory",
    "RiskLevel",
    "IssueKind",
    "AuditOutcome",
    # Validation
    "ValidationFinding",
    "has_errors",
    # Guide
    "GuideCreate",
    "GuideUpdate",
    "Guide",
    "GlosaItem",
    "GuideOutcome",
    "compute_glosa_value",
    # Batch
    "BatchCreate",
    "Batch",
    "BatchSummary",
    "SubmissionMeta",
    # Return
    "ReturnCreate",
    "Return",
    "ReturnStatusView",
    # Glosa
    "Glosa",
    "GlosaView",
    # Risk
    "RiskCandidate",
    "PredictedIssue",
    "RiskAssessment",
    "FieldChange",
    "AutoFixResult",
    "GuideRiskResult",
    "BatchRiskSummary",
    "BatchRiskAnalysis",
    # Audit
    "AuditEvent",
    "CallerContext",
]
