"""
Audit trail and caller identity models.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from tiss_claims.domain.enums import AuditOutcome


class CallerContext(BaseModel):
    """Identity supplied by the upstream identity layer."""

    user_id: str
    clinic_id: str
    role: str


class AuditEvent(BaseModel):
    """One recorded state-mutating attempt."""

    id: UUID
    entity_type: str
    entity_id: str
    action: str
    outcome: AuditOutcome
    user_id: Optional[str] = None
    clinic_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    class Config:
        from_attributes = True
