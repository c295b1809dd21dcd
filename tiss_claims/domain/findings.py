"""
Validation findings shared by guide and batch validation.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from tiss_claims.domain.enums import Severity


class ValidationFinding(BaseModel):
    """One field-level validation result."""

    field: str
    code: str
    message: str
    severity: Severity = Severity.ERROR
    guide_id: Optional[UUID] = None
    guide_number: Optional[str] = None
    current_value: Optional[str] = None
    suggested_value: Optional[str] = Field(
        default=None,
        description="Deterministic correction when one exists",
    )

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR


def has_errors(findings: list[ValidationFinding]) -> bool:
    """True when any finding blocks submission."""
    return any(f.is_error for f in findings)
