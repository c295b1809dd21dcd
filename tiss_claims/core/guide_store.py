"""
Guide Store: CRUD and validation-state tracking for billable guides.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Connection

from tiss_claims.core.audit import AuditTrail
from tiss_claims.core.validation import validate_guide, validation_status_for
from tiss_claims.db.repository import TissRepository
from tiss_claims.domain import (
    AuditOutcome,
    Batch,
    BatchStatus,
    CallerContext,
    Guide,
    GuideCreate,
    GuideOutcome,
    GuideStatus,
    GuideUpdate,
    ValidationFinding,
    compute_glosa_value,
)
from tiss_claims.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from tiss_claims.utils.dates import utc_now

logger = structlog.get_logger()

# Results of recording an outcome
APPLIED = "applied"
DUPLICATE = "duplicate"
SUPERSEDED = "superseded"
REJECTED = "rejected"


@dataclass
class OutcomeRecord:
    """What happened when an outcome was offered to a guide."""

    result: str
    guide: Guide
    previous_status: Optional[GuideStatus] = None
    previous_return_id: Optional[UUID] = None
    reason: Optional[str] = None

    @property
    def changed_guide(self) -> bool:
        return self.result in (APPLIED, SUPERSEDED)

    @property
    def is_anomaly(self) -> bool:
        return self.result in (SUPERSEDED, REJECTED)


class GuideStore:
    """
    Guide lifecycle operations.

    Terminal statuses are only ever written by ``record_outcome``; user
    updates are limited to PENDING guides outside a frozen batch.
    """

    def __init__(self, repo: TissRepository, audit: AuditTrail, super_role: str = "SUPER_ADMIN"):
        self.repo = repo
        self.audit = audit
        self.super_role = super_role

    def scope(self, caller: CallerContext) -> Optional[str]:
        """Clinic filter for the caller (None for the super role)."""
        return None if caller.role == self.super_role else caller.clinic_id

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create_guide(self, caller: CallerContext, data: GuideCreate) -> Guide:
        with self.audit.failures("guide", data.guide_number or "new", "create", caller):
            with self.repo.begin() as conn:
                now = utc_now()
                number = data.guide_number or self.repo.next_guide_number(conn, caller.clinic_id, now.year)
                if self.repo.find_guide_by_number(conn, caller.clinic_id, number):
                    raise ConflictError(
                        f"Guide number {number} already exists",
                        {"guide_number": number},
                    )

                guide = Guide(
                    **data.model_dump(exclude={"guide_number"}),
                    id=uuid4(),
                    clinic_id=caller.clinic_id,
                    guide_number=number,
                    created_by=caller.user_id,
                    created_at=now,
                )
                findings = validate_guide(guide, now.date())
                guide.validation_errors = findings
                guide.validation_status = validation_status_for(findings)

                self.repo.insert_guide(conn, guide)
                self.audit.record(
                    conn, "guide", guide.id, "create", caller,
                    guide_number=number,
                    validation_status=guide.validation_status.value,
                )

        logger.info(
            "guide_created",
            guide_id=str(guide.id),
            guide_number=guide.guide_number,
            clinic_id=guide.clinic_id,
            validation_status=guide.validation_status.value,
        )
        return guide

    def get_guide(self, caller: CallerContext, guide_id: UUID) -> Guide:
        with self.repo.begin() as conn:
            return self._load(conn, guide_id, self.scope(caller))

    def list_guides(
        self,
        caller: CallerContext,
        status: Optional[GuideStatus] = None,
        batch_id: Optional[UUID] = None,
    ) -> list[Guide]:
        with self.repo.begin() as conn:
            return self.repo.list_guides(
                conn,
                self.scope(caller),
                status=status.value if status else None,
                batch_id=batch_id,
            )

    def update_guide(self, caller: CallerContext, guide_id: UUID, changes: GuideUpdate) -> Guide:
        with self.audit.failures("guide", guide_id, "update", caller):
            with self.repo.begin() as conn:
                guide = self._load(conn, guide_id, self.scope(caller), for_update=True)
                if guide.status != GuideStatus.PENDING:
                    raise InvalidStateError(
                        f"Guide {guide.guide_number} is {guide.status.value}; only PENDING guides can be edited",
                        current_state=guide.status.value,
                    )
                if guide.batch_id:
                    batch = self.repo.get_batch(conn, guide.batch_id)
                    if batch and batch.status != BatchStatus.DRAFT:
                        raise InvalidStateError(
                            f"Guide {guide.guide_number} belongs to batch {batch.batch_number} "
                            f"in state {batch.status.value}",
                            current_state=batch.status.value,
                        )

                values = changes.model_dump(exclude_unset=True)
                try:
                    updated = Guide.model_validate({**guide.model_dump(), **values})
                except PydanticValidationError as e:
                    raise ValidationError(
                        f"Invalid update for guide {guide.guide_number}",
                        details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
                    ) from e
                findings = validate_guide(updated, utc_now().date())
                values["validation_errors"] = [f.model_dump(mode="json") for f in findings]
                values["validation_status"] = validation_status_for(findings).value
                values["guide_type"] = updated.guide_type.value
                values["glosa_value"] = updated.glosa_value

                self.repo.update_guide(conn, guide.id, values)
                self.audit.record(conn, "guide", guide.id, "update", caller, fields=sorted(changes.model_fields_set))
                result = self.repo.get_guide(conn, guide.id)

        logger.info("guide_updated", guide_id=str(guide_id), fields=sorted(changes.model_fields_set))
        return result

    def guide_findings(self, caller: CallerContext, guide_id: UUID) -> list[ValidationFinding]:
        """Re-run field rules against the stored guide without persisting."""
        guide = self.get_guide(caller, guide_id)
        return validate_guide(guide)

    # -------------------------------------------------------------------------
    # Batch membership
    # -------------------------------------------------------------------------

    def attach_to_batch(self, caller: CallerContext, guide_id: UUID, batch_id: UUID) -> Guide:
        with self.audit.failures("guide", guide_id, "attach", caller):
            with self.repo.begin() as conn:
                scope = self.scope(caller)
                guide = self._load(conn, guide_id, scope, for_update=True)
                batch = self.repo.get_batch(conn, batch_id, scope, for_update=True)
                if batch is None:
                    raise NotFoundError("Batch", batch_id)
                self.attach(conn, guide, batch)
                self.audit.record(conn, "guide", guide.id, "attach", caller, batch_id=str(batch.id))
                return self.repo.get_guide(conn, guide.id)

    def attach(self, conn: Connection, guide: Guide, batch: Batch) -> None:
        """
        Attach within an open transaction.

        Raises:
            InvalidStateError: batch not DRAFT or guide not PENDING
            ConflictError: guide already in another non-CLOSED batch
        """
        if batch.status != BatchStatus.DRAFT:
            raise InvalidStateError(
                f"Batch {batch.batch_number} is {batch.status.value}; guides can only be added while DRAFT",
                current_state=batch.status.value,
            )
        if guide.clinic_id != batch.clinic_id:
            raise NotFoundError("Guide", guide.id)
        if guide.batch_id == batch.id:
            return
        if guide.batch_id is not None:
            current = self.repo.get_batch(conn, guide.batch_id)
            if current is not None and current.status != BatchStatus.CLOSED:
                raise ConflictError(
                    f"Guide {guide.guide_number} already belongs to batch {current.batch_number}",
                    {"guide_id": str(guide.id), "batch_id": str(current.id)},
                )
        if guide.status != GuideStatus.PENDING:
            raise InvalidStateError(
                f"Guide {guide.guide_number} is {guide.status.value}; only PENDING guides can be batched",
                current_state=guide.status.value,
            )
        self.repo.update_guide(conn, guide.id, {"batch_id": batch.id})

    def detach_from_batch(self, caller: CallerContext, guide_id: UUID) -> Guide:
        with self.audit.failures("guide", guide_id, "detach", caller):
            with self.repo.begin() as conn:
                guide = self._load(conn, guide_id, self.scope(caller), for_update=True)
                if guide.batch_id is None:
                    return guide
                batch = self.repo.get_batch(conn, guide.batch_id, for_update=True)
                self.detach(conn, guide, batch)
                self.audit.record(conn, "guide", guide.id, "detach", caller, batch_id=str(batch.id))
                return self.repo.get_guide(conn, guide.id)

    def detach(self, conn: Connection, guide: Guide, batch: Batch) -> None:
        if batch.status != BatchStatus.DRAFT:
            raise InvalidStateError(
                f"Batch {batch.batch_number} is {batch.status.value}; guides can only be removed while DRAFT",
                current_state=batch.status.value,
            )
        if guide.batch_id != batch.id:
            raise ConflictError(
                f"Guide {guide.guide_number} is not in batch {batch.batch_number}",
                {"guide_id": str(guide.id), "batch_id": str(batch.id)},
            )
        self.repo.update_guide(conn, guide.id, {"batch_id": None})

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def record_outcome(
        self,
        conn: Connection,
        guide_id: UUID,
        return_id: UUID,
        outcome: GuideOutcome,
        return_uploaded_at: datetime,
    ) -> OutcomeRecord:
        """
        Apply an operator verdict to a guide, at most once per return.

        Re-offering the same (guide, return) pair is a no-op. If the guide
        already holds a verdict from another return, the verdict from the
        most recently uploaded return wins; both cases are anomalies.
        """
        guide = self.repo.get_guide(conn, guide_id, for_update=True)
        if guide is None:
            raise NotFoundError("Guide", guide_id)

        if self.repo.get_outcome_application(conn, guide_id, return_id):
            return OutcomeRecord(DUPLICATE, guide)

        now = utc_now()
        paid_value = outcome.paid_value_for(guide.total_value)
        glosa_value = compute_glosa_value(guide.total_value, paid_value)
        application = {
            "guide_id": guide.id,
            "return_id": return_id,
            "outcome": outcome.status.value,
            "paid_value": paid_value,
            "glosa_value": glosa_value,
            "previous_status": guide.status.value,
            "previous_return_id": guide.outcome_return_id,
            "recorded_at": now,
        }

        if guide.status == GuideStatus.PENDING:
            reason = "guide was never sent"
            self.repo.insert_outcome_application(conn, {**application, "applied": False, "reason": reason})
            return OutcomeRecord(REJECTED, guide, guide.status, reason=reason)

        result = APPLIED
        reason = None
        if guide.status.is_terminal:
            previous = self.repo.get_return(conn, guide.outcome_return_id) if guide.outcome_return_id else None
            if previous is not None and previous.created_at > return_uploaded_at:
                reason = f"guide already settled by newer return {previous.id}"
                self.repo.insert_outcome_application(conn, {**application, "applied": False, "reason": reason})
                return OutcomeRecord(REJECTED, guide, guide.status, guide.outcome_return_id, reason)
            result = SUPERSEDED
            reason = f"supersedes {guide.status.value} from return {guide.outcome_return_id}"
            if guide.outcome_return_id:
                self.repo.revoke_outcome_application(
                    conn, guide.id, guide.outcome_return_id, f"superseded by return {return_id}"
                )

        self.repo.update_guide(conn, guide.id, {
            "status": outcome.status.to_guide_status().value,
            "paid_value": paid_value,
            "glosa_value": glosa_value,
            "outcome_return_id": return_id,
            "outcome_received_at": now,
            "processed_at": now,
        })
        self.repo.insert_outcome_application(conn, {**application, "applied": True, "reason": reason})

        return OutcomeRecord(
            result,
            self.repo.get_guide(conn, guide.id),
            previous_status=guide.status,
            previous_return_id=guide.outcome_return_id,
            reason=reason,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _load(
        self,
        conn: Connection,
        guide_id: UUID,
        clinic_id: Optional[str],
        for_update: bool = False,
    ) -> Guide:
        guide = self.repo.get_guide(conn, guide_id, clinic_id, for_update=for_update)
        if guide is None:
            raise NotFoundError("Guide", guide_id)
        return guide
