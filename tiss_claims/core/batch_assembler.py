"""
Batch Assembler: groups guides into operator-bound batches, validates them,
generates the interchange file and submits.
"""

import hashlib
from typing import Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy.engine import Connection

from tiss_claims.codec import encode
from tiss_claims.core.audit import AuditTrail
from tiss_claims.core.guide_store import GuideStore
from tiss_claims.core.state_machine import BatchStateMachine
from tiss_claims.core.validation import validate_batch, validation_status_for
from tiss_claims.db.repository import TissRepository
from tiss_claims.domain import (
    Batch,
    BatchCreate,
    BatchStatus,
    BatchSummary,
    CallerContext,
    GuideStatus,
    Severity,
    SubmissionMeta,
    ValidationFinding,
)
from tiss_claims.errors import (
    InvalidStateError,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from tiss_claims.events import BATCH_SUBMITTED, EventEmitter
from tiss_claims.storage import BlobStore
from tiss_claims.utils.dates import utc_now

logger = structlog.get_logger()

XML_CONTENT_TYPE = "application/xml"


class BatchAssembler:
    """
    Batch lifecycle operations up to submission.

    Membership is editable only while DRAFT. A clean validation or a
    successful file generation promotes DRAFT to VALID, which freezes the
    membership the file describes.
    """

    def __init__(
        self,
        repo: TissRepository,
        audit: AuditTrail,
        guides: GuideStore,
        state_machine: BatchStateMachine,
        blobs: BlobStore,
        events: EventEmitter,
        tiss_version: str = "4.02.00",
    ):
        self.repo = repo
        self.audit = audit
        self.guides = guides
        self.state_machine = state_machine
        self.blobs = blobs
        self.events = events
        self.tiss_version = tiss_version

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create_batch(self, caller: CallerContext, data: BatchCreate) -> Batch:
        with self.audit.failures("batch", data.batch_number or "new", "create", caller):
            with self.repo.begin() as conn:
                now = utc_now()
                number = data.batch_number or self.repo.next_batch_number(conn, caller.clinic_id, now.year)
                batch = Batch(
                    id=uuid4(),
                    clinic_id=caller.clinic_id,
                    batch_number=number,
                    operator_name=data.operator_name.strip(),
                    operator_registry=data.operator_registry,
                    reference_month=data.reference_month,
                    reference_year=data.reference_year,
                    notes=data.notes,
                    tiss_version=self.tiss_version,
                    created_by=caller.user_id,
                    created_at=now,
                )
                self.repo.insert_batch(conn, batch)
                self.audit.record(conn, "batch", batch.id, "create", caller, batch_number=number)

        logger.info(
            "batch_created",
            batch_id=str(batch.id),
            batch_number=batch.batch_number,
            operator=batch.operator_name,
        )
        return batch

    def get_batch(self, caller: CallerContext, batch_id: UUID) -> Batch:
        with self.repo.begin() as conn:
            return self._load(conn, batch_id, self.guides.scope(caller))

    def get_summary(self, caller: CallerContext, batch_id: UUID) -> BatchSummary:
        with self.repo.begin() as conn:
            batch = self._load(conn, batch_id, self.guides.scope(caller))
            return self._summary(conn, batch)

    def list_batches(self, caller: CallerContext, status: Optional[BatchStatus] = None) -> list[Batch]:
        with self.repo.begin() as conn:
            return self.repo.list_batches(
                conn,
                self.guides.scope(caller),
                status=status.value if status else None,
            )

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def add_guides(self, caller: CallerContext, batch_id: UUID, guide_ids: list[UUID]) -> BatchSummary:
        """Attach guides to a DRAFT batch, all or nothing."""
        with self.audit.failures("batch", batch_id, "add_guides", caller):
            with self.repo.begin() as conn:
                scope = self.guides.scope(caller)
                batch = self._load(conn, batch_id, scope, for_update=True)
                self.state_machine.ensure_editable(batch)
                for guide_id in guide_ids:
                    guide = self.repo.get_guide(conn, guide_id, scope, for_update=True)
                    if guide is None:
                        raise NotFoundError("Guide", guide_id)
                    self.guides.attach(conn, guide, batch)
                self.audit.record(
                    conn, "batch", batch.id, "add_guides", caller,
                    guide_ids=[str(g) for g in guide_ids],
                )
                summary = self._summary(conn, batch)

        logger.info("batch_guides_added", batch_id=str(batch_id), count=len(guide_ids))
        return summary

    def remove_guides(self, caller: CallerContext, batch_id: UUID, guide_ids: list[UUID]) -> BatchSummary:
        """Detach guides from a DRAFT batch, all or nothing."""
        with self.audit.failures("batch", batch_id, "remove_guides", caller):
            with self.repo.begin() as conn:
                scope = self.guides.scope(caller)
                batch = self._load(conn, batch_id, scope, for_update=True)
                self.state_machine.ensure_editable(batch)
                for guide_id in guide_ids:
                    guide = self.repo.get_guide(conn, guide_id, scope, for_update=True)
                    if guide is None:
                        raise NotFoundError("Guide", guide_id)
                    self.guides.detach(conn, guide, batch)
                self.audit.record(
                    conn, "batch", batch.id, "remove_guides", caller,
                    guide_ids=[str(g) for g in guide_ids],
                )
                summary = self._summary(conn, batch)

        logger.info("batch_guides_removed", batch_id=str(batch_id), count=len(guide_ids))
        return summary

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, caller: CallerContext, batch_id: UUID) -> list[ValidationFinding]:
        """
        Run batch rules and store the findings.

        A DRAFT batch without ERROR findings moves to VALID.
        """
        with self.audit.failures("batch", batch_id, "validate", caller):
            with self.repo.begin() as conn:
                batch = self._load(conn, batch_id, self.guides.scope(caller), for_update=True)
                findings = self._validate(conn, batch)
                if batch.status == BatchStatus.DRAFT and not _has_errors(findings):
                    self.state_machine.transition(conn, batch, BatchStatus.VALID)
                self.audit.record(
                    conn, "batch", batch.id, "validate", caller,
                    errors=sum(1 for f in findings if f.severity == Severity.ERROR),
                    warnings=sum(1 for f in findings if f.severity == Severity.WARNING),
                )
        return findings

    def batch_errors(self, caller: CallerContext, batch_id: UUID) -> list[ValidationFinding]:
        """Findings stored by the latest validation."""
        return self.get_batch(caller, batch_id).validation_errors

    def _validate(self, conn: Connection, batch: Batch) -> list[ValidationFinding]:
        guides = self.repo.guides_in_batch(conn, batch.id)
        findings, per_guide = validate_batch(batch, guides, utc_now().date())
        for guide in guides:
            if guide.status != GuideStatus.PENDING:
                continue
            guide_findings = per_guide.get(guide.id, [])
            self.repo.update_guide(conn, guide.id, {
                "validation_errors": [f.model_dump(mode="json") for f in guide_findings],
                "validation_status": validation_status_for(guide_findings).value,
            })
        self.repo.update_batch(conn, batch.id, {
            "validation_errors": [f.model_dump(mode="json") for f in findings],
        })
        logger.info(
            "batch_validated",
            batch_id=str(batch.id),
            guides=len(guides),
            errors=sum(1 for f in findings if f.severity == Severity.ERROR),
        )
        return findings

    # -------------------------------------------------------------------------
    # Interchange file
    # -------------------------------------------------------------------------

    def generate_file(self, caller: CallerContext, batch_id: UUID) -> Batch:
        """
        Encode the batch and store the snapshot.

        The snapshot is written once. Regenerating identical bytes returns
        the stored snapshot; different bytes are rejected.
        """
        with self.audit.failures("batch", batch_id, "generate_file", caller):
            with self.repo.begin() as conn:
                batch = self._load(conn, batch_id, self.guides.scope(caller), for_update=True)
                if batch.status not in (BatchStatus.DRAFT, BatchStatus.VALID):
                    raise InvalidStateError(
                        f"Batch {batch.batch_number} is {batch.status.value}; its file is frozen",
                        current_state=batch.status.value,
                    )

                rejection = _rejection(batch, self._validate(conn, batch), "has validation errors")
                if rejection is None:
                    batch = self._store_file(conn, batch, caller)

            # Raised after commit so the findings stay on the batch and its guides
            if rejection is not None:
                raise rejection

        logger.info(
            "batch_file_generated",
            batch_id=str(batch.id),
            url=batch.xml_snapshot_url,
            size=batch.xml_size,
        )
        return batch

    def _store_file(self, conn: Connection, batch: Batch, caller: CallerContext) -> Batch:
        guides = self.repo.guides_in_batch(conn, batch.id)
        content = encode(batch, guides, batch.tiss_version or self.tiss_version)
        digest = hashlib.sha256(content).hexdigest()

        if batch.xml_snapshot_url:
            if batch.xml_sha256 != digest:
                raise InvalidStateError(
                    f"Batch {batch.batch_number} already has a different interchange file",
                    current_state=batch.status.value,
                    details={"xml_sha256": batch.xml_sha256},
                )
            return batch

        key = f"{batch.clinic_id}/batches/{batch.id}/{batch.batch_number}-{digest[:12]}.xml"
        url = self.blobs.put(key, content, XML_CONTENT_TYPE)
        values = {
            "xml_snapshot_url": url,
            "xml_sha256": digest,
            "xml_size": len(content),
            "xml_generated_at": utc_now(),
        }
        if batch.status == BatchStatus.DRAFT:
            batch = self.state_machine.transition(conn, batch, BatchStatus.VALID, values)
        else:
            self.repo.update_batch(conn, batch.id, values)
            batch = self.repo.get_batch(conn, batch.id)
        self.audit.record(
            conn, "batch", batch.id, "generate_file", caller,
            xml_sha256=digest,
            xml_size=len(content),
        )
        return batch

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self, caller: CallerContext, batch_id: UUID, meta: Optional[SubmissionMeta] = None) -> Batch:
        """
        Mark a batch as sent to the operator.

        Raises:
            InvalidStateError: batch already SENT or CLOSED
            ValidationError: DRAFT batch failed auto-validation
            PreconditionFailed: interchange file not generated
        """
        meta = meta or SubmissionMeta()
        with self.audit.failures("batch", batch_id, "submit", caller):
            with self.repo.begin() as conn:
                batch = self._load(conn, batch_id, self.guides.scope(caller), for_update=True)
                self.state_machine.ensure(batch, BatchStatus.SENT, "submit")

                # Auto-validation findings are committed even when they block the submit
                rejection = None
                if batch.status == BatchStatus.DRAFT:
                    rejection = _rejection(batch, self._validate(conn, batch), "failed validation")
                if rejection is None and not batch.xml_snapshot_url:
                    rejection = PreconditionFailed(
                        f"Interchange file for batch {batch.batch_number} has not been generated",
                        {"batch_id": str(batch.id)},
                    )
                if rejection is None:
                    batch, flipped = self._mark_sent(conn, batch, caller, meta)

            if rejection is not None:
                raise rejection

        logger.info(
            "batch_submitted",
            batch_id=str(batch.id),
            batch_number=batch.batch_number,
            guides=flipped,
            protocol=batch.protocol_number,
        )
        self.events.emit(
            BATCH_SUBMITTED,
            batch.id,
            batch.clinic_id,
            batch_number=batch.batch_number,
            operator_name=batch.operator_name,
            guides=flipped,
            protocol_number=batch.protocol_number,
        )
        return batch

    def _mark_sent(
        self,
        conn: Connection,
        batch: Batch,
        caller: CallerContext,
        meta: SubmissionMeta,
    ) -> tuple[Batch, int]:
        now = utc_now()
        batch = self.state_machine.transition(conn, batch, BatchStatus.SENT, {
            "submission_date": meta.submission_date or now.date(),
            "protocol_number": meta.protocol_number,
            "submitted_by": caller.user_id,
            "submitted_at": now,
            "notes": meta.notes or batch.notes,
        })
        flipped = self.repo.set_batch_guides_status(conn, batch.id, GuideStatus.SENT.value, now)
        self.audit.record(
            conn, "batch", batch.id, "submit", caller,
            protocol_number=meta.protocol_number,
            guides=flipped,
        )
        return batch, flipped

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _load(
        self,
        conn: Connection,
        batch_id: UUID,
        clinic_id: Optional[str],
        for_update: bool = False,
    ) -> Batch:
        batch = self.repo.get_batch(conn, batch_id, clinic_id, for_update=for_update)
        if batch is None:
            raise NotFoundError("Batch", batch_id)
        return batch

    def _summary(self, conn: Connection, batch: Batch) -> BatchSummary:
        guides = self.repo.guides_in_batch(conn, batch.id)
        return BatchSummary(
            batch=self.repo.get_batch(conn, batch.id),
            guide_count=len(guides),
            total_value=sum(g.total_value for g in guides),
            guide_ids=[g.id for g in guides],
        )


def _has_errors(findings: list[ValidationFinding]) -> bool:
    return any(f.severity == Severity.ERROR for f in findings)


def _rejection(batch: Batch, findings: list[ValidationFinding], problem: str) -> Optional[ValidationError]:
    """ValidationError listing the ERROR findings, or None when there are none."""
    errors = [f for f in findings if f.severity == Severity.ERROR]
    if not errors:
        return None
    return ValidationError(
        f"Batch {batch.batch_number} {problem}",
        findings=errors,
        details={"invalid_guides": sorted({f.guide_number for f in errors if f.guide_number})},
    )
