"""
Batch submission state machine.

DRAFT -> VALID -> SENT -> CLOSED, plus DRAFT -> SENT for auto-validated
submissions. Batches never regress.
"""

from typing import Any, Optional

import structlog
from sqlalchemy.engine import Connection

from tiss_claims.db.repository import TissRepository
from tiss_claims.domain import Batch, BatchStatus
from tiss_claims.errors import InvalidStateError

logger = structlog.get_logger()

BATCH_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.DRAFT: frozenset({BatchStatus.VALID, BatchStatus.SENT}),
    BatchStatus.VALID: frozenset({BatchStatus.SENT}),
    BatchStatus.SENT: frozenset({BatchStatus.CLOSED}),
    BatchStatus.CLOSED: frozenset(),
}


def can_transition(current: BatchStatus, target: BatchStatus) -> bool:
    return target in BATCH_TRANSITIONS[current]


class BatchStateMachine:
    """
    Applies batch transitions as conditional updates.

    The row is only updated if it is still in the state the caller read, so
    two concurrent submissions cannot both succeed.
    """

    def __init__(self, repo: TissRepository):
        self.repo = repo

    def ensure(self, batch: Batch, target: BatchStatus, action: Optional[str] = None) -> None:
        """Raise InvalidStateError if ``batch`` cannot move to ``target``."""
        if not can_transition(batch.status, target):
            raise InvalidStateError(
                f"Batch {batch.batch_number} cannot {action or 'move'} from {batch.status.value}"
                f" to {target.value}",
                current_state=batch.status.value,
                target_state=target.value,
                details={"batch_id": str(batch.id)},
            )

    def ensure_editable(self, batch: Batch) -> None:
        """Membership changes are only allowed while DRAFT."""
        if batch.status != BatchStatus.DRAFT:
            raise InvalidStateError(
                f"Batch {batch.batch_number} is {batch.status.value}; guides can only change while DRAFT",
                current_state=batch.status.value,
                details={"batch_id": str(batch.id)},
            )

    def transition(
        self,
        conn: Connection,
        batch: Batch,
        target: BatchStatus,
        values: Optional[dict[str, Any]] = None,
    ) -> Batch:
        """
        Move ``batch`` to ``target``.

        Returns:
            The updated batch
        """
        self.ensure(batch, target)
        updated = self.repo.update_batch_if_status(
            conn,
            batch.id,
            (batch.status.value,),
            {"status": target.value, **(values or {})},
        )
        if not updated:
            current = self.repo.get_batch(conn, batch.id)
            raise InvalidStateError(
                f"Batch {batch.batch_number} changed state concurrently",
                current_state=current.status.value if current else None,
                target_state=target.value,
                details={"batch_id": str(batch.id)},
            )
        logger.info(
            "batch_transition",
            batch_id=str(batch.id),
            from_status=batch.status.value,
            to_status=target.value,
        )
        return self.repo.get_batch(conn, batch.id)
