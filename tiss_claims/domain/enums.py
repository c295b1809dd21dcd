"""
Enumeration types for TISS claims domain models.
"""

from enum import Enum


class GuideType(str, Enum):
    """Type of TISS guide."""
    CONSULTATION = "CONSULTATION"
    SPSADT = "SPSADT"            # Professional / diagnostic and therapy services
    HONORARIUM = "HONORARIUM"    # Individual professional fee
    INTERNMENT = "INTERNMENT"    # Hospital admission


class GuideStatus(str, Enum):
    """Lifecycle status of a guide."""
    PENDING = "PENDING"
    SENT = "SENT"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    PARTIAL = "PARTIAL"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_GUIDE_STATUSES


TERMINAL_GUIDE_STATUSES = frozenset(
    {GuideStatus.APPROVED, GuideStatus.DENIED, GuideStatus.PARTIAL}
)


class ValidationStatus(str, Enum):
    """Field-level validation result of a guide."""
    VALID = "VALID"
    INVALID = "INVALID"


class Severity(str, Enum):
    """Severity of a validation finding."""
    ERROR = "ERROR"      # Blocks submission
    WARNING = "WARNING"  # Allowed, needs attention


class BatchStatus(str, Enum):
    """Submission lifecycle of a batch."""
    DRAFT = "DRAFT"
    VALID = "VALID"
    SENT = "SENT"
    CLOSED = "CLOSED"


class ProcessingStatus(str, Enum):
    """Processing status of an operator return file."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    RETRY = "RETRY"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


# Coarse progress exposed for client polling
PROGRESS_BY_STATUS = {
    ProcessingStatus.PENDING: 0,
    ProcessingStatus.RETRY: 25,
    ProcessingStatus.PROCESSING: 50,
    ProcessingStatus.COMPLETED: 100,
    ProcessingStatus.ERROR: 0,
}


class OutcomeStatus(str, Enum):
    """Per-guide outcome reported by the operator."""
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    PARTIAL = "PARTIAL"

    def to_guide_status(self) -> GuideStatus:
        return GuideStatus(self.value)


class GlosaType(str, Enum):
    """Whether the whole guide or part of it was denied."""
    TOTAL = "TOTAL"
    PARTIAL = "PARTIAL"


class GlosaCategory(str, Enum):
    """Denial category derived from the operator's denial code."""
    TECHNICAL = "technical"
    BUSINESS = "business"
    VALUE = "value"
    DOCUMENTATION = "documentation"
    UNKNOWN = "unknown"


class RiskLevel(str, Enum):
    """Bucketed glosa risk."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueKind(str, Enum):
    """Nature of a predicted glosa reason."""
    FORMATTING = "formatting"   # Deterministically fixable
    CONTENT = "content"         # Needs human correction
    HISTORICAL = "historical"   # Base denial rate


class AuditOutcome(str, Enum):
    """Result recorded in the audit trail."""
    OK = "ok"
    REJECTED = "rejected"
    FAILED = "failed"
    ANOMALY = "anomaly"
