"""
Unit tests for the return ingestion worker.
"""

from datetime import timedelta

import pytest

from tiss_claims.domain import (
    AuditOutcome,
    BatchStatus,
    GlosaCategory,
    GlosaType,
    GuideStatus,
    ProcessingStatus,
)
from tiss_claims.errors import InvalidStateError, NotFoundError
from tiss_claims.events import (
    BATCH_CLOSED,
    BATCH_HIGH_DENIAL,
    GUIDE_OUTCOME_ANOMALY,
    RETURN_COMPLETED,
    RETURN_FAILED,
)
from tiss_claims.ingestion import RetryPolicy
from tiss_claims.utils.dates import utc_now


@pytest.fixture
def g1_g2(services, clinic_admin, make_guide, make_batch):
    """Sent batch with G1 billed at R$ 100,00 and G2 at R$ 50,00."""
    g1 = make_guide("2026000001", total_value=10000)
    g2 = make_guide("2026000002", total_value=5000, card_number="6543210987654321")
    batch = make_batch([g1, g2])
    services.batches.generate_file(clinic_admin, batch.id)
    batch = services.batches.submit(clinic_admin, batch.id)
    return batch, g1, g2


@pytest.fixture
def g1_g2_return(pipe_return):
    return pipe_return(
        "2026000001|1|100,00|0,00",
        "2026000002|2|0,00|50,00|201|Valor acima da tabela",
    )


def _make_due(services, return_id):
    with services.repo.begin() as conn:
        services.repo.update_return(conn, return_id, {"next_attempt_at": None})


class TestProcess:
    """Tests for the happy path."""

    def test_outcomes_applied(self, services, clinic_admin, g1_g2, g1_g2_return, upload_return):
        batch, g1, g2 = g1_g2
        ret = upload_return(g1_g2_return)

        processed = services.worker.process(ret.id)

        assert processed.processing_status == ProcessingStatus.COMPLETED
        assert processed.total_approved == 1
        assert processed.total_denied == 1
        assert processed.total_partial == 0
        assert processed.total_guides_processed == 2
        assert processed.amount_approved == 10000
        assert processed.amount_denied == 5000
        assert processed.parser_strategy == "pipe_delimited"
        assert processed.file_encoding == "UTF-8"
        assert processed.retry_count == 0

        first = services.guides.get_guide(clinic_admin, g1.id)
        second = services.guides.get_guide(clinic_admin, g2.id)
        assert first.status == GuideStatus.APPROVED
        assert first.glosa_value == 0
        assert second.status == GuideStatus.DENIED
        assert second.glosa_value == 5000
        assert second.outcome_return_id == ret.id

    def test_settled_batch_closes(self, services, publisher, clinic_admin, g1_g2, g1_g2_return, upload_return):
        batch, _, _ = g1_g2
        ret = upload_return(g1_g2_return)

        processed = services.worker.process(ret.id)

        closed = services.batches.get_batch(clinic_admin, batch.id)
        assert closed.status == BatchStatus.CLOSED
        assert closed.closed_at is not None
        assert processed.batch_ids == [batch.id]
        assert [e.entity_id for e in publisher.get_events_by_type(BATCH_CLOSED)] == [str(batch.id)]
        assert publisher.get_events_by_type(RETURN_COMPLETED)[0].data["total_denied"] == 1

    def test_high_denial_event(self, services, publisher, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)

        services.worker.process(ret.id)

        events = publisher.get_events_by_type(BATCH_HIGH_DENIAL)
        assert len(events) == 1
        assert events[0].data["denial_ratio"] == 0.5

    def test_high_denial_event_fires_once_per_batch(
        self, services, publisher, clinic_admin, g1_g2, pipe_return, upload_return
    ):
        batch, _, _ = g1_g2
        services.worker.process(upload_return(pipe_return("2026000002|2|0,00|50,00|201")).id)
        services.worker.process(upload_return(pipe_return("2026000001|1|100,00|0,00"), file_name="r2.txt").id)

        events = publisher.get_events_by_type(BATCH_HIGH_DENIAL)
        assert [e.data["denial_ratio"] for e in events] == [1.0]
        closed = services.batches.get_batch(clinic_admin, batch.id)
        assert closed.status == BatchStatus.CLOSED
        assert closed.high_denial_at is not None

    def test_bad_record_does_not_sink_the_file(self, services, clinic_admin, g1_g2, pipe_return, upload_return):
        _, g1, g2 = g1_g2
        ret = upload_return(pipe_return(
            "2026000001|1|100,00|0,00",
            "2026000002|3|70,00|-30,00|201",
        ))

        processed = services.worker.process(ret.id)

        assert processed.processing_status == ProcessingStatus.COMPLETED
        assert processed.parser_strategy == "pipe_delimited"
        assert processed.total_approved == 1
        assert processed.total_unmatched == 1
        assert services.guides.get_guide(clinic_admin, g1.id).status == GuideStatus.APPROVED
        assert services.guides.get_guide(clinic_admin, g2.id).status == GuideStatus.SENT

    def test_glosa_created_for_denial(self, services, clinic_admin, g1_g2, g1_g2_return, upload_return):
        _, _, g2 = g1_g2
        ret = upload_return(g1_g2_return)

        services.worker.process(ret.id)

        glosas = services.glosas.list_glosas(clinic_admin)
        assert len(glosas) == 1
        glosa = glosas[0]
        assert glosa.guide_id == g2.id
        assert glosa.glosa_type == GlosaType.TOTAL
        assert glosa.category == GlosaCategory.VALUE
        assert glosa.glosa_value == 5000
        assert glosa.denial_code == "201"
        assert glosa.suggested_correction
        assert glosa.can_appeal
        assert glosa.appeal_deadline > utc_now().date()

    def test_partial_batch_stays_sent(self, services, clinic_admin, g1_g2, pipe_return, upload_return):
        batch, _, _ = g1_g2
        ret = upload_return(pipe_return("2026000001|1|100,00|0,00"))

        services.worker.process(ret.id)

        assert services.batches.get_batch(clinic_admin, batch.id).status == BatchStatus.SENT

    def test_unknown_guides_counted_unmatched(self, services, g1_g2, pipe_return, upload_return):
        ret = upload_return(pipe_return(
            "2026000001|1|100,00|0,00",
            "2099999999|1|10,00|0,00",
            "garbage line",
        ))

        processed = services.worker.process(ret.id)

        assert processed.processing_status == ProcessingStatus.COMPLETED
        assert processed.total_approved == 1
        assert processed.total_unmatched == 2

    def test_processing_logs_per_stage(self, services, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)

        processed = services.worker.process(ret.id)

        stages = [entry["stage"] for entry in processed.processing_logs]
        for stage in ("claim", "fetch", "detect_encoding", "select_strategy", "parse", "reconcile", "complete"):
            assert stage in stages
        fetch = next(e for e in processed.processing_logs if e["stage"] == "fetch")
        assert "duration_ms" in fetch

    def test_other_clinic_return_does_not_touch_guides(
        self, services, clinic_admin, other_clinic, g1_g2, g1_g2_return, upload_return
    ):
        _, g1, _ = g1_g2
        ret = upload_return(g1_g2_return, caller=other_clinic)

        processed = services.worker.process(ret.id)

        assert processed.total_guides_processed == 0
        assert processed.total_unmatched == 2
        assert services.guides.get_guide(clinic_admin, g1.id).status == GuideStatus.SENT


class TestIdempotence:
    """Tests for re-processing the same return."""

    def test_reprocessing_same_return_is_noop(self, services, clinic_admin, g1_g2, g1_g2_return, upload_return):
        _, g1, g2 = g1_g2
        ret = upload_return(g1_g2_return)
        services.worker.process(ret.id)
        before = [services.guides.get_guide(clinic_admin, g.id) for g in (g1, g2)]

        with services.repo.begin() as conn:
            services.repo.update_return(conn, ret.id, {"processing_status": ProcessingStatus.PENDING.value})
        again = services.worker.process(ret.id)

        after = [services.guides.get_guide(clinic_admin, g.id) for g in (g1, g2)]
        assert again.processing_status == ProcessingStatus.COMPLETED
        assert again.total_approved == 1
        assert again.total_denied == 1
        for old, new in zip(before, after):
            assert new.status == old.status
            assert new.paid_value == old.paid_value
            assert new.processed_at == old.processed_at
        assert len(services.glosas.list_glosas(clinic_admin)) == 1

    def test_completed_return_not_reclaimed(self, services, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)
        services.worker.process(ret.id)

        again = services.worker.process(ret.id)

        assert again.processing_status == ProcessingStatus.COMPLETED
        assert services.worker.stats["claims_lost"] == 1

    def test_newer_return_supersedes_with_anomaly(
        self, services, publisher, clinic_admin, g1_g2, g1_g2_return, pipe_return, upload_return
    ):
        _, g1, _ = g1_g2
        services.worker.process(upload_return(g1_g2_return).id)

        correction = upload_return(pipe_return("2026000001|3|80,00|20,00"), file_name="correcao.txt")
        services.worker.process(correction.id)

        guide = services.guides.get_guide(clinic_admin, g1.id)
        assert guide.status == GuideStatus.PARTIAL
        assert guide.paid_value == 8000
        assert guide.glosa_value == 2000
        anomalies = publisher.get_events_by_type(GUIDE_OUTCOME_ANOMALY)
        assert [e.entity_id for e in anomalies] == [str(g1.id)]
        with services.repo.begin() as conn:
            audited = services.repo.list_audit(conn, entity_id=g1.id, outcome=AuditOutcome.ANOMALY)
        assert len(audited) == 1

    def test_superseded_glosas_are_retired(
        self, services, clinic_admin, g1_g2, g1_g2_return, pipe_return, upload_return
    ):
        _, _, g2 = g1_g2
        services.worker.process(upload_return(g1_g2_return).id)
        denial = services.glosas.list_glosas(clinic_admin, guide_id=g2.id)[0]

        correction = upload_return(pipe_return("2026000002|1|50,00|0,00"), file_name="correcao.txt")
        services.worker.process(correction.id)

        assert services.guides.get_guide(clinic_admin, g2.id).status == GuideStatus.APPROVED
        assert services.glosas.list_glosas(clinic_admin, guide_id=g2.id) == []
        retired = services.glosas.list_glosas(clinic_admin, guide_id=g2.id, include_superseded=True)
        assert [(g.id, g.superseded_by_return_id) for g in retired] == [(denial.id, correction.id)]
        with pytest.raises(InvalidStateError):
            services.glosas.dispute(clinic_admin, denial.id)

    def test_newer_denial_replaces_open_glosa(
        self, services, clinic_admin, g1_g2, g1_g2_return, pipe_return, upload_return
    ):
        _, _, g2 = g1_g2
        services.worker.process(upload_return(g1_g2_return).id)

        correction = upload_return(pipe_return("2026000002|3|30,00|20,00|201"), file_name="correcao.txt")
        services.worker.process(correction.id)

        open_glosas = services.glosas.list_glosas(clinic_admin, guide_id=g2.id)
        assert [(g.return_id, g.glosa_value, g.glosa_type) for g in open_glosas] == [
            (correction.id, 2000, GlosaType.PARTIAL),
        ]


class TestRetries:
    """Tests for failure handling and the retry policy."""

    def test_transient_failure_schedules_retry(self, services, blobs, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)
        blobs.fail_reads = 1

        failed = services.worker.process(ret.id)

        assert failed.processing_status == ProcessingStatus.RETRY
        assert failed.retry_count == 1
        assert failed.next_attempt_at > utc_now()
        assert "TransientError" in failed.error_details
        assert any(e["level"] == "ERROR" for e in failed.processing_logs)

    def test_backoff_blocks_early_retry(self, services, blobs, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)
        blobs.fail_reads = 1
        services.worker.process(ret.id)

        early = services.worker.process(ret.id)
        assert early.processing_status == ProcessingStatus.RETRY

        _make_due(services, ret.id)
        done = services.worker.process(ret.id)
        assert done.processing_status == ProcessingStatus.COMPLETED
        assert done.retry_count == 1

    def test_failure_rolls_back_outcomes(self, services, clinic_admin, g1_g2, g1_g2_return, upload_return, monkeypatch):
        _, g1, _ = g1_g2
        ret = upload_return(g1_g2_return)

        def broken_settle(*args, **kwargs):
            raise RuntimeError("settlement failed")

        monkeypatch.setattr(services.worker, "_settle_batches", broken_settle)
        failed = services.worker.process(ret.id)

        assert failed.processing_status == ProcessingStatus.RETRY
        assert services.guides.get_guide(clinic_admin, g1.id).status == GuideStatus.SENT

    def test_exhausted_retries_end_in_error(self, services, blobs, publisher, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)
        blobs.fail_reads = 100

        for _ in range(4):
            current = services.worker.process(ret.id)
            _make_due(services, ret.id)

        assert current.processing_status == ProcessingStatus.ERROR
        assert current.retry_count == 4
        assert current.next_attempt_at is None
        assert [e.entity_id for e in publisher.get_events_by_type(RETURN_FAILED)] == [str(ret.id)]

        # ERROR is not picked up automatically
        assert services.worker.process(ret.id).processing_status == ProcessingStatus.ERROR

    def test_requeue_resets_budget(self, services, blobs, clinic_admin, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)
        blobs.fail_reads = 100
        for _ in range(4):
            services.worker.process(ret.id)
            _make_due(services, ret.id)

        requeued = services.worker.requeue(clinic_admin, ret.id)
        assert requeued.processing_status == ProcessingStatus.RETRY
        assert requeued.retry_count == 0

        blobs.fail_reads = 0
        assert services.worker.process(ret.id).processing_status == ProcessingStatus.COMPLETED

    def test_requeue_only_from_error(self, services, clinic_admin, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)

        with pytest.raises(InvalidStateError):
            services.worker.requeue(clinic_admin, ret.id)

    def test_requeue_other_clinic_not_found(self, services, other_clinic, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)

        with pytest.raises(NotFoundError):
            services.worker.requeue(other_clinic, ret.id)


class TestClaims:
    """Tests for single-writer claims and stale reclamation."""

    def test_only_one_claim_succeeds(self, services, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)
        now = utc_now()

        with services.repo.begin() as conn:
            first = services.repo.claim_return(conn, ret.id, "worker-a", now)
        with services.repo.begin() as conn:
            second = services.repo.claim_return(conn, ret.id, "worker-b", now)

        assert first is True
        assert second is False

    def test_claimed_return_skipped_by_other_worker(self, services, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)
        with services.repo.begin() as conn:
            services.repo.claim_return(conn, ret.id, "worker-a", utc_now())

        result = services.worker.process(ret.id)

        assert result.processing_status == ProcessingStatus.PROCESSING
        assert result.claimed_by == "worker-a"

    def test_reclaim_stale(self, services, clinic_admin, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)
        with services.repo.begin() as conn:
            services.repo.claim_return(conn, ret.id, "worker-a", utc_now() - timedelta(hours=1))

        reclaimed = services.worker.reclaim_stale(timedelta(minutes=15))

        assert reclaimed == [ret.id]
        status = services.worker.status(clinic_admin, ret.id)
        assert status.processing_status == ProcessingStatus.RETRY
        assert status.retry_count == 1

    def test_fresh_claim_not_reclaimed(self, services, g1_g2, g1_g2_return, upload_return):
        ret = upload_return(g1_g2_return)
        with services.repo.begin() as conn:
            services.repo.claim_return(conn, ret.id, "worker-a", utc_now())

        assert services.worker.reclaim_stale(timedelta(minutes=15)) == []

    def test_process_pending_drains_queue(self, services, g1_g2, g1_g2_return, pipe_return, upload_return):
        upload_return(g1_g2_return)
        upload_return(pipe_return("2099999999|1|10,00|0,00"))

        results = services.worker.process_pending(limit=10)

        assert [r.processing_status for r in results] == [ProcessingStatus.COMPLETED] * 2
        assert services.worker.process_pending(limit=10) == []


class TestRetryPolicy:
    """Tests for the retry schedule."""

    def test_backoff_schedule(self):
        policy = RetryPolicy(max_retries=3, backoff_seconds=(30, 120, 600))

        assert policy.delay_for(1) == timedelta(seconds=30)
        assert policy.delay_for(2) == timedelta(seconds=120)
        assert policy.delay_for(3) == timedelta(seconds=600)
        assert policy.delay_for(7) == timedelta(seconds=600)

    def test_next_state(self):
        policy = RetryPolicy(max_retries=3)
        now = utc_now()

        assert policy.next_state(3, now) == (ProcessingStatus.RETRY, now + timedelta(seconds=600))
        assert policy.next_state(4, now) == (ProcessingStatus.ERROR, None)

    def test_zero_retries(self):
        status, _ = RetryPolicy(max_retries=0).next_state(1, utc_now())

        assert status == ProcessingStatus.ERROR
