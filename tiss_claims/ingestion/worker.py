"""
Return Ingestion Worker.

Consumes an uploaded operator return end to end:

    claim -> fetch -> detect encoding -> select strategy -> parse
          -> reconcile outcomes -> close settled batches -> complete

The claim is a conditional update on ``processing_status`` committed on its
own, so only one worker ever owns a return. Reconciliation runs in a single
transaction: a failure rolls back every outcome of the attempt, and the
per-guide applied-returns set makes a second pass over the same return a
no-op.
"""

import time
from datetime import date, datetime, timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy.engine import Connection

from tiss_claims.codec import ParseResult, detect_encoding, parse_return, select_parser_strategy
from tiss_claims.core.audit import AuditTrail
from tiss_claims.core.denial_codes import interpret_denial
from tiss_claims.core.guide_store import SUPERSEDED, GuideStore, OutcomeRecord
from tiss_claims.core.state_machine import BatchStateMachine
from tiss_claims.db.repository import TissRepository
from tiss_claims.domain import (
    AuditOutcome,
    BatchStatus,
    CallerContext,
    Glosa,
    GlosaType,
    GuideOutcome,
    GuideStatus,
    ProcessingStatus,
    Return,
    ReturnStatusView,
)
from tiss_claims.errors import ConflictError, InvalidStateError, NotFoundError
from tiss_claims.events import (
    BATCH_CLOSED,
    BATCH_HIGH_DENIAL,
    GUIDE_OUTCOME_ANOMALY,
    RETURN_COMPLETED,
    RETURN_FAILED,
    DomainEvent,
    EventEmitter,
)
from tiss_claims.ingestion.retry_policy import RetryPolicy
from tiss_claims.storage import BlobStore
from tiss_claims.utils.calendar import BrazilianCalendar
from tiss_claims.utils.dates import utc_now
from tiss_claims.utils.logging import StageLog

logger = structlog.get_logger()


class ReturnIngestionWorker:
    """
    Processes operator return files.

    Usage:
        worker = ReturnIngestionWorker(repo, audit, guides, state_machine, blobs, events)
        worker.process_pending(limit=20)
    """

    def __init__(
        self,
        repo: TissRepository,
        audit: AuditTrail,
        guides: GuideStore,
        state_machine: BatchStateMachine,
        blobs: BlobStore,
        events: EventEmitter,
        policy: Optional[RetryPolicy] = None,
        calendar: Optional[BrazilianCalendar] = None,
        worker_id: str = "worker-0",
        appeal_window_days: int = 30,
        high_denial_threshold: float = 0.40,
    ):
        self.repo = repo
        self.audit = audit
        self.guides = guides
        self.state_machine = state_machine
        self.blobs = blobs
        self.events = events
        self.policy = policy or RetryPolicy()
        self.calendar = calendar or BrazilianCalendar()
        self.worker_id = worker_id
        self.appeal_window_days = appeal_window_days
        self.high_denial_threshold = high_denial_threshold

        self._stats = {
            "returns_completed": 0,
            "returns_failed": 0,
            "claims_lost": 0,
        }

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def process(self, return_id: UUID, caller: Optional[CallerContext] = None) -> Return:
        """
        Claim and process one return.

        A return that cannot be claimed (already processing, finished, or
        waiting out its backoff) is returned unchanged.
        """
        now = utc_now()
        with self.repo.begin() as conn:
            ret = self.repo.get_return(conn, return_id, self.guides.scope(caller) if caller else None)
            if ret is None:
                raise NotFoundError("Return", return_id)
            claimed = self.repo.claim_return(conn, return_id, self.worker_id, now)

        if not claimed:
            self._stats["claims_lost"] += 1
            logger.info(
                "return_not_claimable",
                return_id=str(return_id),
                processing_status=ret.processing_status.value,
                worker_id=self.worker_id,
            )
            return ret

        logger.info(
            "return_claimed",
            return_id=str(return_id),
            worker_id=self.worker_id,
            retry_count=ret.retry_count,
        )
        stages = StageLog(return_id=str(return_id), worker_id=self.worker_id)
        stages.add("claim", f"Claimed by {self.worker_id}", attempt=ret.retry_count + 1)
        started = time.perf_counter()

        try:
            result = self._read(ret, stages)
            events = self._reconcile(ret, result, stages, started)
        except Exception as e:
            logger.error(
                "return_processing_failed",
                return_id=str(return_id),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._fail(ret, e, stages)
        else:
            self._stats["returns_completed"] += 1
            self.events.emit_all(events)

        with self.repo.begin() as conn:
            return self.repo.get_return(conn, return_id)

    def process_pending(self, limit: int = 20) -> list[Return]:
        """Drain up to ``limit`` claimable returns, oldest first."""
        with self.repo.begin() as conn:
            ids = self.repo.claimable_return_ids(conn, utc_now(), limit)
        if ids:
            logger.info("returns_pending", count=len(ids), worker_id=self.worker_id)
        return [self.process(return_id) for return_id in ids]

    def requeue(self, caller: CallerContext, return_id: UUID) -> Return:
        """Manually move an ERROR return back to RETRY with a fresh retry budget."""
        with self.audit.failures("return", return_id, "requeue", caller):
            with self.repo.begin() as conn:
                ret = self.repo.get_return(conn, return_id, self.guides.scope(caller))
                if ret is None:
                    raise NotFoundError("Return", return_id)
                moved = self.repo.update_return_if_status(
                    conn,
                    return_id,
                    (ProcessingStatus.ERROR.value,),
                    {
                        "processing_status": ProcessingStatus.RETRY.value,
                        "retry_count": 0,
                        "next_attempt_at": None,
                        "claimed_by": None,
                    },
                )
                if not moved:
                    raise InvalidStateError(
                        f"Return {return_id} is {ret.processing_status.value}; only ERROR returns can be requeued",
                        current_state=ret.processing_status.value,
                        target_state=ProcessingStatus.RETRY.value,
                    )
                self.repo.append_return_logs(conn, return_id, [
                    _log_entry("requeue", f"Requeued by {caller.user_id}"),
                ])
                self.audit.record(conn, "return", return_id, "requeue", caller, clinic_id=ret.clinic_id)
                ret = self.repo.get_return(conn, return_id)

        logger.info("return_requeued", return_id=str(return_id), user_id=caller.user_id)
        return ret

    def reclaim_stale(self, timeout: timedelta) -> list[UUID]:
        """
        Release returns stuck in PROCESSING longer than ``timeout``.

        Each reclaim counts as a failed attempt, so a return that keeps
        hanging its worker ends in ERROR once the retry budget runs out.
        """
        now = utc_now()
        reclaimed: list[UUID] = []
        failed: list[DomainEvent] = []
        with self.repo.begin() as conn:
            for return_id in self.repo.stale_return_ids(conn, now - timeout):
                ret = self.repo.get_return(conn, return_id)
                retry_count = ret.retry_count + 1
                status, next_attempt_at = self.policy.next_state(retry_count, now)
                moved = self.repo.update_return_if_status(
                    conn,
                    return_id,
                    (ProcessingStatus.PROCESSING.value,),
                    {
                        "processing_status": status.value,
                        "retry_count": retry_count,
                        "next_attempt_at": next_attempt_at,
                        "claimed_by": None,
                        "error_details": f"Reclaimed after exceeding {timeout} in PROCESSING (worker {ret.claimed_by})",
                    },
                )
                if not moved:
                    continue
                self.repo.append_return_logs(conn, return_id, [
                    _log_entry("reclaim", f"Stale claim by {ret.claimed_by} released", level="WARNING"),
                ])
                self.audit.record(
                    conn, "return", return_id, "reclaim",
                    outcome=AuditOutcome.FAILED,
                    clinic_id=ret.clinic_id,
                    claimed_by=ret.claimed_by,
                    status=status.value,
                )
                reclaimed.append(return_id)
                if status == ProcessingStatus.ERROR:
                    failed.append(self.events.event(
                        RETURN_FAILED, return_id, ret.clinic_id,
                        retry_count=retry_count,
                        error="stale claim",
                    ))

        if reclaimed:
            logger.warning("returns_reclaimed", count=len(reclaimed), timeout_seconds=int(timeout.total_seconds()))
        self.events.emit_all(failed)
        return reclaimed

    def status(self, caller: CallerContext, return_id: UUID) -> ReturnStatusView:
        with self.repo.begin() as conn:
            ret = self.repo.get_return(conn, return_id, self.guides.scope(caller))
        if ret is None:
            raise NotFoundError("Return", return_id)
        return ReturnStatusView.from_return(ret)

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _read(self, ret: Return, stages: StageLog) -> ParseResult:
        with stages.stage("fetch", "Fetched return file") as timer:
            data = self.blobs.get(ret.file_url)
            timer.extra = {"bytes": len(data)}

        with stages.stage("detect_encoding", "Detected encoding") as timer:
            encoding = detect_encoding(data)
            timer.extra = {"encoding": encoding}

        with stages.stage("select_strategy", "Selected parser strategy") as timer:
            strategy = select_parser_strategy(data)
            timer.extra = {"strategy": strategy}

        with stages.stage("parse", "Parsed return file") as timer:
            result = parse_return(data, strategy)
            timer.extra = {
                "strategy": result.strategy,
                "outcomes": len(result.guide_outcomes),
                "unmatched": len(result.unmatched_lines),
                "tiss_version": result.tiss_version,
            }

        for warning in result.warnings:
            stages.add("parse", warning, level="WARNING")
        return result

    def _reconcile(
        self,
        ret: Return,
        result: ParseResult,
        stages: StageLog,
        started: float,
    ) -> list[DomainEvent]:
        """Apply outcomes, close batches and complete the return in one transaction."""
        events: list[DomainEvent] = []
        now = utc_now()
        reconcile_start = time.perf_counter()

        with self.repo.begin() as conn:
            batch_ids: set[UUID] = set()
            not_found = 0
            applied = 0
            anomalies = 0

            for outcome in result.guide_outcomes:
                guide = self.repo.find_guide_by_number(conn, ret.clinic_id, outcome.guide_number)
                if guide is None:
                    not_found += 1
                    stages.add(
                        "reconcile",
                        f"Guide {outcome.guide_number} not found in clinic",
                        level="WARNING",
                        line=outcome.source_line,
                    )
                    continue

                record = self.guides.record_outcome(conn, guide.id, ret.id, outcome, ret.created_at)
                if guide.batch_id:
                    batch_ids.add(guide.batch_id)

                if record.result == SUPERSEDED and record.previous_return_id:
                    retired = self.repo.supersede_glosas(
                        conn, guide.id, record.previous_return_id, ret.id, now
                    )
                    if retired:
                        stages.add(
                            "reconcile",
                            f"Retired {retired} glosa(s) of guide {guide.guide_number} "
                            f"from return {record.previous_return_id}",
                            level="WARNING",
                            line=outcome.source_line,
                        )

                if record.changed_guide:
                    applied += 1
                    if record.guide.glosa_value > 0:
                        self._create_glosas(conn, ret, record, outcome, now.date())

                if record.is_anomaly:
                    anomalies += 1
                    events.append(self._anomaly(conn, ret, record, outcome))

            closed, denial_events = self._settle_batches(conn, ret, batch_ids, now)
            events.extend(denial_events)
            for batch in closed:
                events.append(self.events.event(
                    BATCH_CLOSED, batch.id, batch.clinic_id,
                    batch_number=batch.batch_number,
                    return_id=str(ret.id),
                ))

            stages.add(
                "reconcile",
                "Reconciled guide outcomes",
                duration_ms=int((time.perf_counter() - reconcile_start) * 1000),
                applied=applied,
                anomalies=anomalies,
                not_found=not_found,
                batches_closed=len(closed),
            )

            totals = self.repo.return_outcome_totals(conn, ret.id)
            known_batches = {str(b) for b in ret.batch_ids}
            duration_ms = int((time.perf_counter() - started) * 1000)
            stages.add("complete", "Return processed", duration_ms=duration_ms, **totals)

            completed = self.repo.update_return_if_status(
                conn,
                ret.id,
                (ProcessingStatus.PROCESSING.value,),
                {
                    **totals,
                    "processing_status": ProcessingStatus.COMPLETED.value,
                    "parser_strategy": result.strategy,
                    "file_encoding": result.encoding,
                    "tiss_version": result.tiss_version,
                    "total_unmatched": len(result.unmatched_lines) + not_found,
                    "batch_ids": sorted(known_batches | {str(b) for b in batch_ids}),
                    "error_details": None,
                    "next_attempt_at": None,
                    "processing_completed_at": utc_now(),
                    "processing_duration_ms": duration_ms,
                },
            )
            if not completed:
                raise ConflictError(
                    f"Return {ret.id} is no longer owned by {self.worker_id}",
                    {"return_id": str(ret.id)},
                )
            self.repo.append_return_logs(conn, ret.id, stages.entries)
            self.audit.record(
                conn, "return", ret.id, "process",
                clinic_id=ret.clinic_id,
                worker_id=self.worker_id,
                **totals,
            )

        logger.info(
            "return_completed",
            return_id=str(ret.id),
            strategy=result.strategy,
            encoding=result.encoding,
            approved=totals["total_approved"],
            denied=totals["total_denied"],
            partial=totals["total_partial"],
            unmatched=len(result.unmatched_lines) + not_found,
            duration_ms=duration_ms,
        )
        events.insert(0, self.events.event(
            RETURN_COMPLETED, ret.id, ret.clinic_id,
            batch_ids=sorted(str(b) for b in batch_ids),
            **totals,
        ))
        return events

    def _create_glosas(
        self,
        conn: Connection,
        ret: Return,
        record: OutcomeRecord,
        outcome: GuideOutcome,
        processed_on: date,
    ) -> None:
        guide = record.guide
        if self.repo.glosa_count_for(conn, guide.id, ret.id):
            return

        glosa_type = GlosaType.TOTAL if guide.status == GuideStatus.DENIED else GlosaType.PARTIAL
        deadline = self.calendar.add_business_days(processed_on, self.appeal_window_days)

        # One glosa per reported item, or a single one for the whole unpaid amount
        items: list[tuple[Optional[str], Optional[str], int, Optional[bool]]] = [
            (item.code, item.description, item.value if item.value is not None else guide.glosa_value, item.can_appeal)
            for item in outcome.glosas
        ] or [(outcome.denial_code, outcome.denial_reason, guide.glosa_value, outcome.can_appeal)]

        for code, reason, value, can_appeal in items:
            interpretation = interpret_denial(code, reason)
            appealable = can_appeal if can_appeal is not None else (
                outcome.can_appeal if outcome.can_appeal is not None else interpretation.can_appeal
            )
            self.repo.insert_glosa(conn, Glosa(
                id=uuid4(),
                clinic_id=ret.clinic_id,
                guide_id=guide.id,
                return_id=ret.id,
                batch_id=guide.batch_id,
                glosa_type=glosa_type,
                category=interpretation.category,
                denial_code=code,
                denial_reason=reason or interpretation.description,
                glosa_value=min(value, guide.total_value),
                suggested_correction=interpretation.suggested_correction,
                can_appeal=appealable,
                appeal_deadline=deadline if appealable else None,
                created_at=utc_now(),
            ))

    def _anomaly(
        self,
        conn: Connection,
        ret: Return,
        record: OutcomeRecord,
        outcome: GuideOutcome,
    ) -> DomainEvent:
        guide = record.guide
        logger.warning(
            "guide_outcome_anomaly",
            guide_id=str(guide.id),
            guide_number=guide.guide_number,
            return_id=str(ret.id),
            result=record.result,
            reason=record.reason,
        )
        self.audit.record(
            conn, "guide", guide.id, "record_outcome",
            outcome=AuditOutcome.ANOMALY,
            clinic_id=ret.clinic_id,
            return_id=str(ret.id),
            result=record.result,
            offered=outcome.status.value,
            previous_status=record.previous_status.value if record.previous_status else None,
            previous_return_id=str(record.previous_return_id) if record.previous_return_id else None,
            reason=record.reason,
        )
        return self.events.event(
            GUIDE_OUTCOME_ANOMALY, guide.id, ret.clinic_id,
            guide_number=guide.guide_number,
            return_id=str(ret.id),
            result=record.result,
            offered_status=outcome.status.value,
            reason=record.reason,
        )

    def _settle_batches(
        self,
        conn: Connection,
        ret: Return,
        batch_ids: set[UUID],
        now: datetime,
    ) -> tuple[list[Any], list[DomainEvent]]:
        """Close SENT batches whose guides are all terminal; flag high denial ratios."""
        closed = []
        events: list[DomainEvent] = []
        for batch_id in sorted(batch_ids, key=str):
            batch = self.repo.get_batch(conn, batch_id, for_update=True)
            if batch is None:
                continue

            guides = self.repo.guides_in_batch(conn, batch_id)
            settled = [g for g in guides if g.is_terminal]
            with_glosa = [g for g in settled if g.status in (GuideStatus.DENIED, GuideStatus.PARTIAL)]
            ratio = len(with_glosa) / len(settled) if settled else 0.0
            # Alert once per batch, when the ratio first reaches the threshold
            if settled and ratio >= self.high_denial_threshold and batch.high_denial_at is None:
                self.repo.update_batch(conn, batch_id, {"high_denial_at": now})
                logger.warning(
                    "batch_high_denial",
                    batch_id=str(batch_id),
                    denial_ratio=round(ratio, 4),
                    threshold=self.high_denial_threshold,
                )
                events.append(self.events.event(
                    BATCH_HIGH_DENIAL, batch_id, batch.clinic_id,
                    batch_number=batch.batch_number,
                    operator_name=batch.operator_name,
                    denial_ratio=round(ratio, 4),
                    denied_guides=len(with_glosa),
                    settled_guides=len(settled),
                    glosa_value=sum(g.glosa_value for g in settled),
                    return_id=str(ret.id),
                ))

            if batch.status == BatchStatus.SENT and self.repo.open_guide_count(conn, batch_id) == 0:
                closed.append(self.state_machine.transition(conn, batch, BatchStatus.CLOSED, {"closed_at": now}))
                self.audit.record(
                    conn, "batch", batch_id, "close",
                    clinic_id=batch.clinic_id,
                    return_id=str(ret.id),
                )
        return closed, events

    def _fail(self, ret: Return, error: Exception, stages: StageLog) -> None:
        """Record a failed attempt and schedule the next one."""
        now = utc_now()
        with self.repo.begin() as conn:
            current = self.repo.get_return(conn, ret.id)
            retry_count = current.retry_count + 1
            status, next_attempt_at = self.policy.next_state(retry_count, now)
            stages.add(
                "fail",
                f"{type(error).__name__}: {error}",
                level="ERROR",
                retry_count=retry_count,
                next_status=status.value,
            )
            moved = self.repo.update_return_if_status(
                conn,
                ret.id,
                (ProcessingStatus.PROCESSING.value,),
                {
                    "processing_status": status.value,
                    "retry_count": retry_count,
                    "next_attempt_at": next_attempt_at,
                    "claimed_by": None,
                    "error_details": f"{type(error).__name__}: {error}",
                },
            )
            if not moved:
                logger.warning("return_failure_not_recorded", return_id=str(ret.id), worker_id=self.worker_id)
                return
            self.repo.append_return_logs(conn, ret.id, stages.entries)
            self.audit.record(
                conn, "return", ret.id, "process",
                outcome=AuditOutcome.FAILED,
                clinic_id=ret.clinic_id,
                worker_id=self.worker_id,
                retry_count=retry_count,
                error=str(error),
            )

        self._stats["returns_failed"] += 1
        if status == ProcessingStatus.ERROR:
            logger.error("return_failed", return_id=str(ret.id), retry_count=retry_count)
            self.events.emit(
                RETURN_FAILED, ret.id, ret.clinic_id,
                retry_count=retry_count,
                error=f"{type(error).__name__}: {error}",
            )
        else:
            logger.warning(
                "return_retry_scheduled",
                return_id=str(ret.id),
                retry_count=retry_count,
                next_attempt_at=next_attempt_at.isoformat() if next_attempt_at else None,
            )


def _log_entry(stage: str, message: str, level: str = "INFO") -> dict[str, Any]:
    return {"stage": stage, "level": level, "message": message, "at": utc_now().isoformat()}
