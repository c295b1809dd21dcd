"""
Return file domain models.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from tiss_claims.domain.enums import ProcessingStatus, PROGRESS_BY_STATUS


class ReturnCreate(BaseModel):
    """Model for registering an uploaded return file."""

    file_url: str
    file_name: Optional[str] = Field(None, max_length=255)
    file_size: Optional[int] = Field(None, ge=0)


class Return(BaseModel):
    """Full return as persisted."""

    id: UUID
    clinic_id: str
    file_url: str
    file_name: Optional[str] = None
    file_size: Optional[int] = None

    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    retry_count: int = 0
    next_attempt_at: Optional[datetime] = None
    claimed_by: Optional[str] = None

    parser_strategy: Optional[str] = None
    file_encoding: Optional[str] = None
    tiss_version: Optional[str] = None

    total_guides_processed: int = 0
    total_approved: int = 0
    total_denied: int = 0
    total_partial: int = 0
    total_unmatched: int = 0
    amount_approved: int = 0
    amount_denied: int = 0
    batch_ids: list[UUID] = Field(default_factory=list)

    processing_logs: list[dict[str, Any]] = Field(default_factory=list)
    error_details: Optional[str] = None

    uploaded_by: Optional[str] = None
    created_at: datetime
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None

    class Config:
        from_attributes = True

    @property
    def progress_percentage(self) -> int:
        return PROGRESS_BY_STATUS[self.processing_status]


class ReturnStatusView(BaseModel):
    """Status payload for GET /returns/{id}/status."""

    id: UUID
    processing_status: ProcessingStatus
    progress_percentage: int
    total_guides_processed: int
    total_approved: int
    total_denied: int
    total_partial: int
    total_unmatched: int
    amount_approved: int
    amount_denied: int
    retry_count: int
    parser_used: Optional[str] = None
    encoding_detected: Optional[str] = None
    tiss_version: Optional[str] = None
    error_details: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    logs: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_return(cls, ret: Return) -> "ReturnStatusView":
        return cls(
            id=ret.id,
            processing_status=ret.processing_status,
            progress_percentage=ret.progress_percentage,
            total_guides_processed=ret.total_guides_processed,
            total_approved=ret.total_approved,
            total_denied=ret.total_denied,
            total_partial=ret.total_partial,
            total_unmatched=ret.total_unmatched,
            amount_approved=ret.amount_approved,
            amount_denied=ret.amount_denied,
            retry_count=ret.retry_count,
            parser_used=ret.parser_strategy,
            encoding_detected=ret.file_encoding,
            tiss_version=ret.tiss_version,
            error_details=ret.error_details,
            next_attempt_at=ret.next_attempt_at,
            logs=ret.processing_logs,
        )
