"""
Error taxonomy for the TISS claims engine.

Every error carries a machine-readable code and structured details so the
HTTP layer and the audit trail can report it without string parsing.
"""

from typing import Any, Optional


class TissError(Exception):
    """Base exception for all engine errors."""

    code = "TISS_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(TissError):
    """Client-fixable input problem, reported with field-level findings."""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        findings: Optional[list[Any]] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.findings = list(findings or [])
        payload = dict(details or {})
        if self.findings:
            payload["findings"] = [
                f.model_dump(mode="json") if hasattr(f, "model_dump") else f
                for f in self.findings
            ]
        super().__init__(message, payload)


class ConflictError(TissError):
    """Operation collides with existing state (e.g. double attachment)."""

    code = "CONFLICT"
    http_status = 409


class InvalidStateError(ConflictError):
    """Illegal lifecycle transition."""

    code = "INVALID_STATE"

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        target_state: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        payload = dict(details or {})
        if current_state is not None:
            payload["current_state"] = current_state
        if target_state is not None:
            payload["target_state"] = target_state
        super().__init__(message, payload)
        self.current_state = current_state
        self.target_state = target_state


class NotFoundError(TissError):
    """Entity does not exist or is not visible to the caller's clinic."""

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            f"{entity} {entity_id} not found",
            {"entity": entity, "id": str(entity_id)},
        )
        self.entity = entity
        self.entity_id = entity_id


class PreconditionFailed(TissError):
    """A prerequisite artifact is missing (e.g. interchange file not generated)."""

    code = "PRECONDITION_FAILED"
    http_status = 400


class PermissionDenied(TissError):
    """Caller's role does not allow the operation."""

    code = "PERMISSION_DENIED"
    http_status = 403


class TransientError(TissError):
    """Infrastructure failure (storage, network) worth retrying."""

    code = "TRANSIENT_ERROR"
    http_status = 503
