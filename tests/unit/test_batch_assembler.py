"""
Unit tests for BatchAssembler: membership, validation, file generation and submission.
"""

import hashlib

import pytest

from tiss_claims.domain import BatchCreate, BatchStatus, GuideStatus, SubmissionMeta, ValidationStatus
from tiss_claims.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from tiss_claims.events import BATCH_SUBMITTED


class TestMembership:
    """Tests for adding and removing guides."""

    def test_create_batch_is_draft(self, make_batch):
        batch = make_batch()

        assert batch.status == BatchStatus.DRAFT
        assert batch.tiss_version == "4.02.00"
        assert batch.xml_snapshot_url is None

    def test_add_guides(self, services, make_guide, make_batch, clinic_admin):
        guides = [make_guide("2026000001"), make_guide("2026000002", total_value=5000)]
        batch = make_batch()

        summary = services.batches.add_guides(clinic_admin, batch.id, [g.id for g in guides])

        assert summary.guide_count == 2
        assert summary.total_value == 15000
        assert set(summary.guide_ids) == {g.id for g in guides}

    def test_guide_cannot_join_two_open_batches(self, services, make_guide, make_batch, clinic_admin):
        guide = make_guide("2026000001")
        make_batch([guide])
        other = make_batch()

        with pytest.raises(ConflictError):
            services.batches.add_guides(clinic_admin, other.id, [guide.id])

    def test_add_is_all_or_nothing(self, services, make_guide, make_batch, clinic_admin):
        guide = make_guide("2026000001")
        taken = make_guide("2026000002")
        make_batch([taken])
        batch = make_batch()

        with pytest.raises(ConflictError):
            services.batches.add_guides(clinic_admin, batch.id, [guide.id, taken.id])

        assert services.batches.get_summary(clinic_admin, batch.id).guide_count == 0

    def test_other_clinic_guide_is_not_found(self, services, make_guide, make_batch, clinic_admin, other_clinic):
        foreign = make_guide("2026000001", caller=other_clinic)
        batch = make_batch()

        with pytest.raises(NotFoundError):
            services.batches.add_guides(clinic_admin, batch.id, [foreign.id])

    def test_remove_guides(self, services, make_guide, make_batch, clinic_admin):
        guide = make_guide("2026000001")
        batch = make_batch([guide])

        summary = services.batches.remove_guides(clinic_admin, batch.id, [guide.id])

        assert summary.guide_count == 0
        assert services.guides.get_guide(clinic_admin, guide.id).batch_id is None

    def test_membership_frozen_after_file_generation(self, services, make_guide, make_batch, clinic_admin):
        batch = make_batch([make_guide("2026000001")])
        services.batches.generate_file(clinic_admin, batch.id)

        with pytest.raises(InvalidStateError):
            services.batches.add_guides(clinic_admin, batch.id, [make_guide("2026000002").id])


class TestValidate:
    """Tests for batch validation."""

    def test_clean_batch_promoted_to_valid(self, services, make_guide, make_batch, clinic_admin):
        batch = make_batch([make_guide("2026000001")])

        findings = services.batches.validate(clinic_admin, batch.id)

        assert not [f for f in findings if f.is_error]
        assert services.batches.get_batch(clinic_admin, batch.id).status == BatchStatus.VALID

    def test_invalid_batch_stays_draft(self, services, make_guide, make_batch, clinic_admin):
        batch = make_batch([make_guide("2026000001", card_number="1")])

        findings = services.batches.validate(clinic_admin, batch.id)

        assert any(f.code == "GUIDE_INVALID" for f in findings)
        assert services.batches.get_batch(clinic_admin, batch.id).status == BatchStatus.DRAFT
        assert services.batches.batch_errors(clinic_admin, batch.id)

    def test_validation_refreshes_guide_status(self, services, make_guide, make_batch, clinic_admin):
        guide = make_guide("2026000001", card_number="1")
        batch = make_batch([guide])

        services.batches.validate(clinic_admin, batch.id)

        stored = services.guides.get_guide(clinic_admin, guide.id)
        assert stored.validation_status == ValidationStatus.INVALID
        assert stored.validation_errors


class TestGenerateFile:
    """Tests for interchange file generation."""

    def test_generate_stores_snapshot(self, services, blobs, make_guide, make_batch, clinic_admin):
        batch = make_batch([make_guide("2026000001")])

        batch = services.batches.generate_file(clinic_admin, batch.id)

        content = blobs.get(batch.xml_snapshot_url)
        assert batch.status == BatchStatus.VALID
        assert batch.xml_sha256 == hashlib.sha256(content).hexdigest()
        assert batch.xml_size == len(content)
        assert blobs.content_type(batch.xml_snapshot_url) == "application/xml"
        assert b"<ans:numeroGuiaPrestador>2026000001</ans:numeroGuiaPrestador>" in content

    def test_regenerate_returns_same_snapshot(self, services, make_guide, make_batch, clinic_admin):
        batch = make_batch([make_guide("2026000001")])

        first = services.batches.generate_file(clinic_admin, batch.id)
        second = services.batches.generate_file(clinic_admin, batch.id)

        assert second.xml_snapshot_url == first.xml_snapshot_url
        assert second.xml_sha256 == first.xml_sha256

    def test_generate_rejects_invalid_batch(self, services, make_guide, make_batch, clinic_admin):
        batch = make_batch([make_guide("2026000001", card_number="1")])

        with pytest.raises(ValidationError) as exc_info:
            services.batches.generate_file(clinic_admin, batch.id)

        assert exc_info.value.findings
        assert services.batches.get_batch(clinic_admin, batch.id).xml_snapshot_url is None

    def test_rejected_generation_keeps_findings(self, services, make_guide, make_batch, clinic_admin):
        batch = make_batch([make_guide("2026000001", card_number="1")])

        with pytest.raises(ValidationError):
            services.batches.generate_file(clinic_admin, batch.id)

        errors = services.batches.batch_errors(clinic_admin, batch.id)
        assert "2026000001" in {f.guide_number for f in errors}

    def test_generate_rejects_sent_batch(self, services, sent_batch, clinic_admin):
        batch, _ = sent_batch()

        with pytest.raises(InvalidStateError):
            services.batches.generate_file(clinic_admin, batch.id)


class TestSubmit:
    """Tests for batch submission."""

    def test_submit_marks_batch_and_guides_sent(self, services, publisher, make_guide, make_batch, clinic_admin):
        guides = [make_guide("2026000001"), make_guide("2026000002")]
        batch = make_batch(guides)
        services.batches.generate_file(clinic_admin, batch.id)

        sent = services.batches.submit(clinic_admin, batch.id, SubmissionMeta(protocol_number="PROT-77"))

        assert sent.status == BatchStatus.SENT
        assert sent.protocol_number == "PROT-77"
        assert sent.submitted_by == clinic_admin.user_id
        assert sent.submission_date is not None
        for guide in guides:
            stored = services.guides.get_guide(clinic_admin, guide.id)
            assert stored.status == GuideStatus.SENT
            assert stored.sent_at is not None

        events = publisher.get_events_by_type(BATCH_SUBMITTED)
        assert len(events) == 1
        assert events[0].entity_id == str(batch.id)
        assert events[0].data["guides"] == 2

    def test_submit_without_file_fails(self, services, make_guide, make_batch, clinic_admin):
        batch = make_batch([make_guide("2026000001")])
        services.batches.validate(clinic_admin, batch.id)

        with pytest.raises(PreconditionFailed):
            services.batches.submit(clinic_admin, batch.id)

        assert services.batches.get_batch(clinic_admin, batch.id).status == BatchStatus.VALID

    def test_draft_with_invalid_guide_lists_it(self, services, make_guide, make_batch, clinic_admin):
        good = make_guide("2026000001")
        bad = make_guide("2026000002", card_number="42")
        batch = make_batch([good, bad])

        with pytest.raises(ValidationError) as exc_info:
            services.batches.submit(clinic_admin, batch.id)

        assert exc_info.value.details["invalid_guides"] == ["2026000002"]
        assert services.batches.get_batch(clinic_admin, batch.id).status == BatchStatus.DRAFT

        services.batches.remove_guides(clinic_admin, batch.id, [bad.id])
        services.batches.generate_file(clinic_admin, batch.id)
        sent = services.batches.submit(clinic_admin, batch.id)

        assert sent.status == BatchStatus.SENT

    def test_failed_auto_validation_keeps_findings(self, services, make_guide, make_batch, clinic_admin):
        good = make_guide("2026000001")
        bad = make_guide("2026000002", card_number="42")
        batch = make_batch([good, bad])
        assert services.batches.batch_errors(clinic_admin, batch.id) == []

        with pytest.raises(ValidationError):
            services.batches.submit(clinic_admin, batch.id)

        errors = services.batches.batch_errors(clinic_admin, batch.id)
        assert {f.guide_number for f in errors if f.is_error} == {"2026000002"}
        assert services.guides.get_guide(clinic_admin, bad.id).validation_status == ValidationStatus.INVALID

    def test_submit_twice_keeps_original_snapshot(self, services, blobs, sent_batch, clinic_admin):
        batch, _ = sent_batch()
        snapshot = blobs.get(batch.xml_snapshot_url)

        with pytest.raises(InvalidStateError):
            services.batches.submit(clinic_admin, batch.id)

        again = services.batches.get_batch(clinic_admin, batch.id)
        assert again.status == BatchStatus.SENT
        assert again.xml_snapshot_url == batch.xml_snapshot_url
        assert blobs.get(again.xml_snapshot_url) == snapshot

    def test_other_clinic_cannot_submit(self, services, sent_batch, other_clinic):
        batch, _ = sent_batch()

        with pytest.raises(NotFoundError):
            services.batches.submit(other_clinic, batch.id)

    def test_batch_numbers_are_sequential(self, services, clinic_admin):
        first = services.batches.create_batch(clinic_admin, BatchCreate(operator_name="UNIMED"))
        second = services.batches.create_batch(clinic_admin, BatchCreate(operator_name="UNIMED"))

        assert int(second.batch_number) == int(first.batch_number) + 1
