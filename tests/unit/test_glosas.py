"""
Unit tests for glosa listing, dispute marking and denial code interpretation.
"""

from datetime import date

import pytest

from tiss_claims.core.denial_codes import interpret_denial
from tiss_claims.domain import AuditOutcome, GlosaCategory
from tiss_claims.errors import NotFoundError, PreconditionFailed, ValidationError


@pytest.fixture
def denied_return(services, clinic_admin, make_guide, make_batch, upload_return, pipe_return):
    """Processes a return denying one guide per line and yields a factory."""

    def _denied_return(*lines):
        guides = []
        for n, _ in enumerate(lines, start=1):
            guides.append(make_guide(f"202600000{n}", card_number=f"123456789012345{n}"))
        batch = make_batch(guides)
        services.batches.generate_file(clinic_admin, batch.id)
        services.batches.submit(clinic_admin, batch.id)
        ret = upload_return(pipe_return(*lines))
        return services.worker.process(ret.id)

    return _denied_return


class TestInterpretDenial:
    """Tests for denial code mapping."""

    @pytest.mark.parametrize(
        "code,category",
        [
            ("001", GlosaCategory.TECHNICAL),
            ("4", GlosaCategory.TECHNICAL),
            ("102", GlosaCategory.BUSINESS),
            ("203", GlosaCategory.VALUE),
            ("301", GlosaCategory.DOCUMENTATION),
        ],
    )
    def test_known_codes(self, code, category):
        interpretation = interpret_denial(code)

        assert interpretation.category == category
        assert interpretation.suggested_correction

    def test_technical_not_appealable(self):
        assert interpret_denial("002").can_appeal is False
        assert interpret_denial("201").can_appeal is True

    def test_unknown_code_uses_message_keywords(self):
        interpretation = interpret_denial("999", "Procedimento sem cobertura contratual")

        assert interpretation.category == GlosaCategory.BUSINESS
        assert interpretation.description == "Procedimento sem cobertura contratual"
        assert interpretation.suggested_correction is None

    def test_unknown_everything(self):
        interpretation = interpret_denial(None)

        assert interpretation.category == GlosaCategory.UNKNOWN
        assert interpretation.can_appeal


class TestListGlosas:
    """Tests for glosa listing and scoping."""

    def test_list_joins_guide_summary(self, services, clinic_admin, denied_return):
        denied_return("2026000001|2|0,00|100,00|201|Valor acima da tabela")

        glosas = services.glosas.list_glosas(clinic_admin)

        assert len(glosas) == 1
        assert glosas[0].guide_number == "2026000001"
        assert glosas[0].operator_name == "UNIMED"
        assert glosas[0].guide_total_value == 10000
        assert glosas[0].return_file_name == "retorno.txt"

    def test_partial_with_items(self, services, clinic_admin, denied_return):
        ret = denied_return("2026000001|3|70,00|30,00|201|Valor acima da tabela")

        glosas = services.glosas.list_glosas(clinic_admin, return_id=ret.id)

        assert [g.glosa_value for g in glosas] == [3000]
        assert glosas[0].glosa_type.value == "PARTIAL"

    def test_other_clinic_sees_nothing(self, services, other_clinic, denied_return):
        denied_return("2026000001|2|0,00|100,00|201|Valor")

        assert services.glosas.list_glosas(other_clinic) == []

    def test_foreign_clinic_filter_is_not_found(self, services, clinic_admin, denied_return):
        denied_return("2026000001|2|0,00|100,00|201|Valor")

        with pytest.raises(NotFoundError):
            services.glosas.list_glosas(clinic_admin, clinic_id="clinic-b")

    def test_super_admin_filters_by_clinic(self, services, super_admin, clinic_admin, denied_return):
        denied_return("2026000001|2|0,00|100,00|201|Valor")

        assert len(services.glosas.list_glosas(super_admin, clinic_id=clinic_admin.clinic_id)) == 1
        assert services.glosas.list_glosas(super_admin, clinic_id="clinic-b") == []


class TestDispute:
    """Tests for marking glosas as disputed."""

    def test_dispute_marks_glosa(self, services, clinic_admin, denied_return):
        denied_return("2026000001|2|0,00|100,00|201|Valor")
        glosa = services.glosas.list_glosas(clinic_admin)[0]

        disputed = services.glosas.dispute(clinic_admin, glosa.id)

        assert disputed.disputed is True
        assert disputed.disputed_by == clinic_admin.user_id
        assert disputed.disputed_at is not None

    def test_dispute_is_idempotent(self, services, clinic_admin, clinic_staff, denied_return):
        denied_return("2026000001|2|0,00|100,00|201|Valor")
        glosa = services.glosas.list_glosas(clinic_admin)[0]
        first = services.glosas.dispute(clinic_admin, glosa.id)

        second = services.glosas.dispute(clinic_staff, glosa.id)

        assert second.disputed_at == first.disputed_at
        assert second.disputed_by == clinic_admin.user_id

    def test_technical_glosa_cannot_be_disputed(self, services, clinic_admin, denied_return):
        denied_return("2026000001|2|0,00|100,00|002|Erro de schema")
        glosa = services.glosas.list_glosas(clinic_admin)[0]
        assert glosa.can_appeal is False
        assert glosa.appeal_deadline is None

        with pytest.raises(PreconditionFailed):
            services.glosas.dispute(clinic_admin, glosa.id)

        with services.repo.begin() as conn:
            rejected = services.repo.list_audit(conn, entity_id=glosa.id, outcome=AuditOutcome.REJECTED)
        assert len(rejected) == 1

    def test_expired_deadline(self, services, clinic_admin, denied_return):
        denied_return("2026000001|2|0,00|100,00|201|Valor")
        glosa = services.glosas.list_glosas(clinic_admin)[0]
        with services.repo.begin() as conn:
            services.repo.update_glosa(conn, glosa.id, {"appeal_deadline": date(2020, 1, 31)})

        with pytest.raises(PreconditionFailed):
            services.glosas.dispute(clinic_admin, glosa.id)

    def test_other_clinic_cannot_dispute(self, services, clinic_admin, other_clinic, denied_return):
        denied_return("2026000001|2|0,00|100,00|201|Valor")
        glosa = services.glosas.list_glosas(clinic_admin)[0]

        with pytest.raises(NotFoundError):
            services.glosas.dispute(other_clinic, glosa.id)


class TestUploads:
    """Tests for return registration."""

    def test_upload_stores_blob(self, services, blobs, clinic_admin):
        ret = services.uploads.upload(clinic_admin, b"2026000001|1|100,00|0,00\n", "retorno maio.txt")

        assert ret.file_name == "retorno maio.txt"
        assert ret.file_size == 25
        assert ret.file_url.startswith("memory://clinic-a/returns/")
        assert ret.file_url.endswith("retorno_maio.txt")
        assert blobs.get(ret.file_url) == b"2026000001|1|100,00|0,00\n"

    def test_empty_upload_rejected(self, services, clinic_admin):
        with pytest.raises(ValidationError):
            services.uploads.upload(clinic_admin, b"", "vazio.txt")

    def test_returns_scoped_to_clinic(self, services, clinic_admin, other_clinic):
        ret = services.uploads.upload(clinic_admin, b"x", "a.txt")

        assert [r.id for r in services.uploads.list_returns(clinic_admin)] == [ret.id]
        assert services.uploads.list_returns(other_clinic) == []
        with pytest.raises(NotFoundError):
            services.uploads.get_return(other_clinic, ret.id)
