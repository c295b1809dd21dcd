"""
Audit trail helpers.

Successful mutations are recorded inside the caller's transaction. Failures
are recorded in a fresh transaction after the failed one has rolled back, so
rejected attempts survive the rollback.
"""

from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from sqlalchemy.engine import Connection

from tiss_claims.db.repository import TissRepository
from tiss_claims.domain import AuditOutcome, CallerContext
from tiss_claims.errors import TissError, TransientError

logger = structlog.get_logger()


class AuditTrail:
    """Writes audit events for state-mutating operations."""

    def __init__(self, repo: TissRepository):
        self.repo = repo

    def record(
        self,
        conn: Connection,
        entity_type: str,
        entity_id: Any,
        action: str,
        caller: Optional[CallerContext] = None,
        outcome: AuditOutcome = AuditOutcome.OK,
        clinic_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        self.repo.insert_audit(
            conn,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            outcome=outcome,
            user_id=caller.user_id if caller else None,
            clinic_id=clinic_id or (caller.clinic_id if caller else None),
            details=details,
        )

    def record_now(
        self,
        entity_type: str,
        entity_id: Any,
        action: str,
        caller: Optional[CallerContext] = None,
        outcome: AuditOutcome = AuditOutcome.OK,
        clinic_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Record in its own transaction."""
        with self.repo.begin() as conn:
            self.record(conn, entity_type, entity_id, action, caller, outcome, clinic_id, **details)

    @contextmanager
    def failures(
        self,
        entity_type: str,
        entity_id: Any,
        action: str,
        caller: Optional[CallerContext] = None,
    ) -> Iterator[None]:
        """
        Record any exception escaping the block, then re-raise it.

        Client errors are audited as ``rejected``, anything else as ``failed``.
        """
        try:
            yield
        except TissError as e:
            outcome = AuditOutcome.FAILED if isinstance(e, TransientError) else AuditOutcome.REJECTED
            logger.info(
                "operation_rejected",
                entity_type=entity_type,
                entity_id=str(entity_id),
                action=action,
                error=e.code,
            )
            self.record_now(entity_type, entity_id, action, caller, outcome, error=e.to_dict())
            raise
        except Exception as e:
            logger.error(
                "operation_failed",
                entity_type=entity_type,
                entity_id=str(entity_id),
                action=action,
                error=str(e),
            )
            self.record_now(
                entity_type, entity_id, action, caller, AuditOutcome.FAILED,
                error={"error": type(e).__name__, "message": str(e)},
            )
            raise
