"""
Clinic-scoped data access for guides, batches, returns and glosas.

Every query method takes an open connection so a service can compose several
calls in one transaction:

    with repo.begin() as conn:
        guide = repo.get_guide(conn, guide_id, clinic_id)
        repo.update_guide(conn, guide_id, {"notes": "checked"})

A ``clinic_id`` of None means "any clinic" and is only passed for
super-role callers and the background worker.
"""

from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Iterator, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.engine import Connection, Engine

from tiss_claims.db.schema import (
    tiss_audit_event,
    tiss_batch,
    tiss_glosa,
    tiss_guide,
    tiss_guide_outcome,
    tiss_return,
)
from tiss_claims.domain import (
    AuditEvent,
    AuditOutcome,
    Batch,
    Glosa,
    GlosaView,
    Guide,
    ProcessingStatus,
    Return,
    TERMINAL_GUIDE_STATUSES,
)
from tiss_claims.utils.dates import utc_now

logger = structlog.get_logger()

CLAIMABLE_STATUSES = (ProcessingStatus.PENDING.value, ProcessingStatus.RETRY.value)
TERMINAL_VALUES = tuple(s.value for s in TERMINAL_GUIDE_STATUSES)


def _scoped(stmt, table, clinic_id: Optional[str]):
    if clinic_id is None:
        return stmt
    return stmt.where(table.c.clinic_id == clinic_id)


class TissRepository:
    """SQLAlchemy Core repository over the tiss_* tables."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Open a transaction; commits on success, rolls back on error."""
        with self.engine.begin() as conn:
            yield conn

    # -------------------------------------------------------------------------
    # Guides
    # -------------------------------------------------------------------------

    def insert_guide(self, conn: Connection, guide: Guide) -> None:
        conn.execute(tiss_guide.insert().values(**guide.model_dump_db()))

    def get_guide(
        self,
        conn: Connection,
        guide_id: UUID,
        clinic_id: Optional[str] = None,
        for_update: bool = False,
    ) -> Optional[Guide]:
        stmt = _scoped(select(tiss_guide).where(tiss_guide.c.id == guide_id), tiss_guide, clinic_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = conn.execute(stmt).first()
        return Guide.model_validate(dict(row._mapping)) if row else None

    def find_guide_by_number(
        self,
        conn: Connection,
        clinic_id: str,
        guide_number: str,
    ) -> Optional[Guide]:
        stmt = select(tiss_guide).where(
            and_(
                tiss_guide.c.clinic_id == clinic_id,
                tiss_guide.c.guide_number == guide_number,
            )
        )
        row = conn.execute(stmt).first()
        return Guide.model_validate(dict(row._mapping)) if row else None

    def list_guides(
        self,
        conn: Connection,
        clinic_id: Optional[str],
        status: Optional[str] = None,
        batch_id: Optional[UUID] = None,
        limit: int = 500,
    ) -> list[Guide]:
        stmt = _scoped(select(tiss_guide), tiss_guide, clinic_id)
        if status:
            stmt = stmt.where(tiss_guide.c.status == status)
        if batch_id:
            stmt = stmt.where(tiss_guide.c.batch_id == batch_id)
        stmt = stmt.order_by(tiss_guide.c.created_at, tiss_guide.c.guide_number).limit(limit)
        return [Guide.model_validate(dict(r._mapping)) for r in conn.execute(stmt)]

    def guides_in_batch(self, conn: Connection, batch_id: UUID) -> list[Guide]:
        stmt = (
            select(tiss_guide)
            .where(tiss_guide.c.batch_id == batch_id)
            .order_by(tiss_guide.c.guide_number)
        )
        return [Guide.model_validate(dict(r._mapping)) for r in conn.execute(stmt)]

    def update_guide(self, conn: Connection, guide_id: UUID, values: dict[str, Any]) -> None:
        values = {**values, "updated_at": utc_now()}
        conn.execute(update(tiss_guide).where(tiss_guide.c.id == guide_id).values(**values))

    def set_batch_guides_status(
        self,
        conn: Connection,
        batch_id: UUID,
        status: str,
        sent_at: datetime,
    ) -> int:
        result = conn.execute(
            update(tiss_guide)
            .where(tiss_guide.c.batch_id == batch_id)
            .values(status=status, sent_at=sent_at, updated_at=sent_at)
        )
        return result.rowcount

    def next_guide_number(self, conn: Connection, clinic_id: str, year: int) -> str:
        """Next ``YYYY`` + 6-digit sequence number for the clinic."""
        return self._next_number(conn, tiss_guide, tiss_guide.c.guide_number, clinic_id, str(year))

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    def insert_batch(self, conn: Connection, batch: Batch) -> None:
        conn.execute(tiss_batch.insert().values(**batch.model_dump_db()))

    def get_batch(
        self,
        conn: Connection,
        batch_id: UUID,
        clinic_id: Optional[str] = None,
        for_update: bool = False,
    ) -> Optional[Batch]:
        stmt = _scoped(select(tiss_batch).where(tiss_batch.c.id == batch_id), tiss_batch, clinic_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = conn.execute(stmt).first()
        return Batch.model_validate(dict(row._mapping)) if row else None

    def list_batches(
        self,
        conn: Connection,
        clinic_id: Optional[str],
        status: Optional[str] = None,
        limit: int = 200,
    ) -> list[Batch]:
        stmt = _scoped(select(tiss_batch), tiss_batch, clinic_id)
        if status:
            stmt = stmt.where(tiss_batch.c.status == status)
        stmt = stmt.order_by(tiss_batch.c.created_at.desc()).limit(limit)
        return [Batch.model_validate(dict(r._mapping)) for r in conn.execute(stmt)]

    def update_batch(self, conn: Connection, batch_id: UUID, values: dict[str, Any]) -> None:
        values = {**values, "updated_at": utc_now()}
        conn.execute(update(tiss_batch).where(tiss_batch.c.id == batch_id).values(**values))

    def update_batch_if_status(
        self,
        conn: Connection,
        batch_id: UUID,
        expected: tuple[str, ...],
        values: dict[str, Any],
    ) -> bool:
        """
        Conditional batch update.

        Returns:
            True if the batch was in one of ``expected`` and was updated
        """
        values = {**values, "updated_at": utc_now()}
        result = conn.execute(
            update(tiss_batch)
            .where(and_(tiss_batch.c.id == batch_id, tiss_batch.c.status.in_(expected)))
            .values(**values)
        )
        return result.rowcount == 1

    def next_batch_number(self, conn: Connection, clinic_id: str, year: int) -> str:
        return self._next_number(conn, tiss_batch, tiss_batch.c.batch_number, clinic_id, str(year))

    def batch_totals(self, conn: Connection, batch_id: UUID) -> tuple[int, int]:
        """(guide count, summed total_value) for a batch."""
        row = conn.execute(
            select(
                func.count(tiss_guide.c.id),
                func.coalesce(func.sum(tiss_guide.c.total_value), 0),
            ).where(tiss_guide.c.batch_id == batch_id)
        ).one()
        return int(row[0]), int(row[1])

    def open_guide_count(self, conn: Connection, batch_id: UUID) -> int:
        row = conn.execute(
            select(func.count(tiss_guide.c.id)).where(
                and_(
                    tiss_guide.c.batch_id == batch_id,
                    tiss_guide.c.status.not_in(TERMINAL_VALUES),
                )
            )
        ).one()
        return int(row[0])

    # -------------------------------------------------------------------------
    # Returns
    # -------------------------------------------------------------------------

    def insert_return(self, conn: Connection, ret: Return) -> None:
        data = ret.model_dump()
        data["processing_status"] = ret.processing_status.value
        data["batch_ids"] = [str(b) for b in ret.batch_ids]
        conn.execute(tiss_return.insert().values(**data))

    def get_return(
        self,
        conn: Connection,
        return_id: UUID,
        clinic_id: Optional[str] = None,
    ) -> Optional[Return]:
        stmt = _scoped(select(tiss_return).where(tiss_return.c.id == return_id), tiss_return, clinic_id)
        row = conn.execute(stmt).first()
        return Return.model_validate(dict(row._mapping)) if row else None

    def list_returns(
        self,
        conn: Connection,
        clinic_id: Optional[str],
        limit: int = 200,
    ) -> list[Return]:
        stmt = _scoped(select(tiss_return), tiss_return, clinic_id)
        stmt = stmt.order_by(tiss_return.c.created_at.desc()).limit(limit)
        return [Return.model_validate(dict(r._mapping)) for r in conn.execute(stmt)]

    def update_return(self, conn: Connection, return_id: UUID, values: dict[str, Any]) -> None:
        conn.execute(update(tiss_return).where(tiss_return.c.id == return_id).values(**values))

    def update_return_if_status(
        self,
        conn: Connection,
        return_id: UUID,
        expected: tuple[str, ...],
        values: dict[str, Any],
    ) -> bool:
        result = conn.execute(
            update(tiss_return)
            .where(
                and_(
                    tiss_return.c.id == return_id,
                    tiss_return.c.processing_status.in_(expected),
                )
            )
            .values(**values)
        )
        return result.rowcount == 1

    def claim_return(
        self,
        conn: Connection,
        return_id: UUID,
        worker_id: str,
        now: datetime,
    ) -> bool:
        """
        Atomically move a claimable return to PROCESSING.

        A return is claimable when PENDING, or RETRY with its backoff elapsed.
        Exactly one concurrent caller sees rowcount 1.

        Returns:
            True if this caller now owns the return
        """
        result = conn.execute(
            update(tiss_return)
            .where(
                and_(
                    tiss_return.c.id == return_id,
                    or_(
                        tiss_return.c.processing_status == ProcessingStatus.PENDING.value,
                        and_(
                            tiss_return.c.processing_status == ProcessingStatus.RETRY.value,
                            or_(
                                tiss_return.c.next_attempt_at.is_(None),
                                tiss_return.c.next_attempt_at <= now,
                            ),
                        ),
                    ),
                )
            )
            .values(
                processing_status=ProcessingStatus.PROCESSING.value,
                claimed_by=worker_id,
                processing_started_at=now,
                next_attempt_at=None,
            )
        )
        return result.rowcount == 1

    def claimable_return_ids(self, conn: Connection, now: datetime, limit: int) -> list[UUID]:
        stmt = (
            select(tiss_return.c.id)
            .where(
                or_(
                    tiss_return.c.processing_status == ProcessingStatus.PENDING.value,
                    and_(
                        tiss_return.c.processing_status == ProcessingStatus.RETRY.value,
                        or_(
                            tiss_return.c.next_attempt_at.is_(None),
                            tiss_return.c.next_attempt_at <= now,
                        ),
                    ),
                )
            )
            .order_by(tiss_return.c.created_at)
            .limit(limit)
        )
        return [r[0] for r in conn.execute(stmt)]

    def stale_return_ids(self, conn: Connection, cutoff: datetime) -> list[UUID]:
        stmt = select(tiss_return.c.id).where(
            and_(
                tiss_return.c.processing_status == ProcessingStatus.PROCESSING.value,
                tiss_return.c.processing_started_at < cutoff,
            )
        )
        return [r[0] for r in conn.execute(stmt)]

    def append_return_logs(
        self,
        conn: Connection,
        return_id: UUID,
        entries: list[dict[str, Any]],
    ) -> None:
        """Append stage entries; existing entries are never rewritten."""
        if not entries:
            return
        row = conn.execute(
            select(tiss_return.c.processing_logs).where(tiss_return.c.id == return_id)
        ).first()
        existing = list(row[0] or []) if row else []
        self.update_return(conn, return_id, {"processing_logs": existing + list(entries)})

    # -------------------------------------------------------------------------
    # Outcome applications
    # -------------------------------------------------------------------------

    def get_outcome_application(
        self,
        conn: Connection,
        guide_id: UUID,
        return_id: UUID,
    ) -> Optional[dict[str, Any]]:
        row = conn.execute(
            select(tiss_guide_outcome).where(
                and_(
                    tiss_guide_outcome.c.guide_id == guide_id,
                    tiss_guide_outcome.c.return_id == return_id,
                )
            )
        ).first()
        return dict(row._mapping) if row else None

    def insert_outcome_application(self, conn: Connection, values: dict[str, Any]) -> None:
        conn.execute(tiss_guide_outcome.insert().values(**values))

    def revoke_outcome_application(
        self,
        conn: Connection,
        guide_id: UUID,
        return_id: UUID,
        reason: str,
    ) -> None:
        """Mark an earlier application as superseded by a later return."""
        conn.execute(
            update(tiss_guide_outcome)
            .where(
                and_(
                    tiss_guide_outcome.c.guide_id == guide_id,
                    tiss_guide_outcome.c.return_id == return_id,
                )
            )
            .values(applied=False, reason=reason)
        )

    def return_outcome_totals(self, conn: Connection, return_id: UUID) -> dict[str, int]:
        """
        Counts and amounts derived from the outcomes this return applied.

        Derived from stored applications so retries never double count.
        """
        stmt = (
            select(
                tiss_guide_outcome.c.outcome,
                func.count(),
                func.coalesce(func.sum(tiss_guide_outcome.c.paid_value), 0),
                func.coalesce(func.sum(tiss_guide_outcome.c.glosa_value), 0),
            )
            .where(
                and_(
                    tiss_guide_outcome.c.return_id == return_id,
                    tiss_guide_outcome.c.applied.is_(True),
                )
            )
            .group_by(tiss_guide_outcome.c.outcome)
        )
        totals = {
            "total_approved": 0,
            "total_denied": 0,
            "total_partial": 0,
            "amount_approved": 0,
            "amount_denied": 0,
        }
        for outcome, count, paid, glosa in conn.execute(stmt):
            totals[f"total_{outcome.lower()}"] = int(count)
            totals["amount_approved"] += int(paid)
            totals["amount_denied"] += int(glosa)
        totals["total_guides_processed"] = (
            totals["total_approved"] + totals["total_denied"] + totals["total_partial"]
        )
        return totals

    # -------------------------------------------------------------------------
    # Glosas
    # -------------------------------------------------------------------------

    def insert_glosa(self, conn: Connection, glosa: Glosa) -> None:
        data = glosa.model_dump()
        data["glosa_type"] = glosa.glosa_type.value
        data["category"] = glosa.category.value
        conn.execute(tiss_glosa.insert().values(**data))

    def glosa_count_for(self, conn: Connection, guide_id: UUID, return_id: UUID) -> int:
        row = conn.execute(
            select(func.count(tiss_glosa.c.id)).where(
                and_(tiss_glosa.c.guide_id == guide_id, tiss_glosa.c.return_id == return_id)
            )
        ).one()
        return int(row[0])

    def get_glosa(
        self,
        conn: Connection,
        glosa_id: UUID,
        clinic_id: Optional[str] = None,
    ) -> Optional[Glosa]:
        stmt = _scoped(select(tiss_glosa).where(tiss_glosa.c.id == glosa_id), tiss_glosa, clinic_id)
        row = conn.execute(stmt).first()
        return Glosa.model_validate(dict(row._mapping)) if row else None

    def update_glosa(self, conn: Connection, glosa_id: UUID, values: dict[str, Any]) -> None:
        conn.execute(update(tiss_glosa).where(tiss_glosa.c.id == glosa_id).values(**values))

    def supersede_glosas(
        self,
        conn: Connection,
        guide_id: UUID,
        return_id: UUID,
        by_return_id: UUID,
        at: datetime,
    ) -> int:
        """Retire the glosas one return left on a guide. Returns rows touched."""
        result = conn.execute(
            update(tiss_glosa)
            .where(
                and_(
                    tiss_glosa.c.guide_id == guide_id,
                    tiss_glosa.c.return_id == return_id,
                    tiss_glosa.c.superseded_at.is_(None),
                )
            )
            .values(superseded_at=at, superseded_by_return_id=by_return_id)
        )
        return result.rowcount

    def list_glosas(
        self,
        conn: Connection,
        clinic_id: Optional[str],
        guide_id: Optional[UUID] = None,
        return_id: Optional[UUID] = None,
        disputed: Optional[bool] = None,
        include_superseded: bool = False,
        limit: int = 500,
    ) -> list[GlosaView]:
        """Glosas joined with their guide and return summaries."""
        stmt = (
            select(
                tiss_glosa,
                tiss_guide.c.guide_number,
                tiss_guide.c.patient_name,
                tiss_guide.c.procedure_code,
                tiss_guide.c.procedure_name,
                func.coalesce(tiss_batch.c.operator_name, tiss_guide.c.operator_name).label("operator_name"),
                tiss_guide.c.total_value.label("guide_total_value"),
                tiss_guide.c.status.label("guide_status"),
                tiss_return.c.file_name.label("return_file_name"),
                tiss_return.c.created_at.label("return_received_at"),
            )
            .select_from(
                tiss_glosa.join(tiss_guide, tiss_glosa.c.guide_id == tiss_guide.c.id)
                .join(tiss_return, tiss_glosa.c.return_id == tiss_return.c.id)
                .outerjoin(tiss_batch, tiss_guide.c.batch_id == tiss_batch.c.id)
            )
        )
        stmt = _scoped(stmt, tiss_glosa, clinic_id)
        if guide_id:
            stmt = stmt.where(tiss_glosa.c.guide_id == guide_id)
        if return_id:
            stmt = stmt.where(tiss_glosa.c.return_id == return_id)
        if disputed is not None:
            stmt = stmt.where(tiss_glosa.c.disputed.is_(disputed))
        if not include_superseded:
            stmt = stmt.where(tiss_glosa.c.superseded_at.is_(None))
        stmt = stmt.order_by(tiss_glosa.c.created_at.desc()).limit(limit)
        return [GlosaView.model_validate(dict(r._mapping)) for r in conn.execute(stmt)]

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    def insert_audit(
        self,
        conn: Connection,
        entity_type: str,
        entity_id: Any,
        action: str,
        outcome: AuditOutcome,
        user_id: Optional[str] = None,
        clinic_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=uuid4(),
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            outcome=outcome,
            user_id=user_id,
            clinic_id=clinic_id,
            details=details or {},
            created_at=utc_now(),
        )
        data = event.model_dump(mode="json")
        data["id"] = event.id
        data["created_at"] = event.created_at
        conn.execute(tiss_audit_event.insert().values(**data))
        return event

    def list_audit(
        self,
        conn: Connection,
        entity_id: Optional[Any] = None,
        outcome: Optional[AuditOutcome] = None,
    ) -> list[AuditEvent]:
        stmt = select(tiss_audit_event)
        if entity_id is not None:
            stmt = stmt.where(tiss_audit_event.c.entity_id == str(entity_id))
        if outcome is not None:
            stmt = stmt.where(tiss_audit_event.c.outcome == outcome.value)
        stmt = stmt.order_by(tiss_audit_event.c.created_at)
        return [AuditEvent.model_validate(dict(r._mapping)) for r in conn.execute(stmt)]

    # -------------------------------------------------------------------------
    # History and reporting
    # -------------------------------------------------------------------------

    def denial_history(
        self,
        conn: Connection,
        clinic_id: str,
        operator_name: str,
        procedure_code: Optional[str] = None,
    ) -> tuple[int, int]:
        """
        Terminal guide count and denied/partial count for an operator.

        Returns:
            (settled guides, guides with any glosa)
        """
        operator = func.upper(func.coalesce(tiss_batch.c.operator_name, tiss_guide.c.operator_name))
        denied = func.sum(
            case((tiss_guide.c.status.in_(("DENIED", "PARTIAL")), 1), else_=0)
        )
        stmt = (
            select(func.count(tiss_guide.c.id), func.coalesce(denied, 0))
            .select_from(tiss_guide.outerjoin(tiss_batch, tiss_guide.c.batch_id == tiss_batch.c.id))
            .where(
                and_(
                    tiss_guide.c.clinic_id == clinic_id,
                    tiss_guide.c.status.in_(TERMINAL_VALUES),
                    operator == operator_name.upper(),
                )
            )
        )
        if procedure_code:
            stmt = stmt.where(tiss_guide.c.procedure_code == procedure_code)
        row = conn.execute(stmt).one()
        return int(row[0]), int(row[1])

    def settled_guides(
        self,
        conn: Connection,
        clinic_id: Optional[str],
        start: date,
        end: date,
        operator_name: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Terminal guides executed in [start, end] with their operator."""
        operator = func.coalesce(tiss_batch.c.operator_name, tiss_guide.c.operator_name)
        stmt = (
            select(
                tiss_guide.c.id,
                tiss_guide.c.procedure_code,
                tiss_guide.c.procedure_name,
                tiss_guide.c.total_value,
                tiss_guide.c.paid_value,
                tiss_guide.c.glosa_value,
                tiss_guide.c.status,
                operator.label("operator_name"),
            )
            .select_from(tiss_guide.outerjoin(tiss_batch, tiss_guide.c.batch_id == tiss_batch.c.id))
            .where(
                and_(
                    tiss_guide.c.status.in_(TERMINAL_VALUES),
                    tiss_guide.c.execution_date >= start,
                    tiss_guide.c.execution_date <= end,
                )
            )
        )
        stmt = _scoped(stmt, tiss_guide, clinic_id)
        if operator_name:
            stmt = stmt.where(func.upper(operator) == operator_name.upper())
        return [dict(r._mapping) for r in conn.execute(stmt)]

    def count_by_status(self, conn: Connection) -> dict[str, dict[str, int]]:
        """Row counts per status for each lifecycle table."""
        result: dict[str, dict[str, int]] = {}
        for name, column in (
            ("guides", tiss_guide.c.status),
            ("batches", tiss_batch.c.status),
            ("returns", tiss_return.c.processing_status),
        ):
            rows = conn.execute(select(column, func.count()).group_by(column))
            result[name] = {status: int(count) for status, count in rows}
        return result

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _next_number(self, conn: Connection, table, column, clinic_id: str, prefix: str) -> str:
        rows = conn.execute(
            select(column).where(
                and_(table.c.clinic_id == clinic_id, column.like(f"{prefix}%"))
            )
        )
        highest = 0
        for (number,) in rows:
            suffix = number[len(prefix):]
            if len(suffix) == 6 and suffix.isdigit():
                highest = max(highest, int(suffix))
        return f"{prefix}{highest + 1:06d}"
