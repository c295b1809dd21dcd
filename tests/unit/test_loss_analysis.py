"""
Unit tests for the financial loss report.
"""

from datetime import timedelta

import pytest

from tiss_claims.errors import ValidationError
from tiss_claims.utils.dates import today


@pytest.fixture
def settled(services, clinic_admin, make_guide, make_batch, upload_return, pipe_return):
    """Two UNIMED guides settled: one approved, one partially glosa'd."""
    consult = make_guide("2026000001", procedure_name="Consulta em consultorio")
    exam = make_guide(
        "2026000002",
        card_number="6543210987654321",
        procedure_code="40301010",
        procedure_name="Hemograma",
        total_value=20000,
    )
    pending = make_guide("2026000003", card_number="1111222233334444")
    batch = make_batch([consult, exam])
    services.batches.generate_file(clinic_admin, batch.id)
    services.batches.submit(clinic_admin, batch.id)
    ret = upload_return(pipe_return(
        "2026000001|1|100,00|0,00",
        "2026000002|3|150,00|50,00|201|Valor acima da tabela",
    ))
    services.worker.process(ret.id)
    return consult, exam, pending


class TestLossAnalysis:
    """Tests for loss totals and breakdowns."""

    def test_summary(self, services, clinic_admin, settled):
        report = services.reports.loss_analysis(clinic_admin, today() - timedelta(days=30), today())

        assert report.summary.total_guides == 2
        assert report.summary.billed_value == 30000
        assert report.summary.received_value == 25000
        assert report.summary.glosa_value == 5000
        assert report.summary.glosa_rate == pytest.approx(16.67)

    def test_by_operator_and_top_procedures(self, services, clinic_admin, settled):
        report = services.reports.loss_analysis(clinic_admin, today() - timedelta(days=30), today())

        assert [o.name for o in report.by_operator] == ["UNIMED"]
        assert report.by_operator[0].count == 2
        assert [(p.code, p.procedure, p.total) for p in report.top_glosas] == [
            ("40301010", "Hemograma", 5000),
        ]

    def test_operator_filter(self, services, clinic_admin, settled):
        report = services.reports.loss_analysis(
            clinic_admin, today() - timedelta(days=30), today(), operator_name="Bradesco"
        )

        assert report.summary.total_guides == 0
        assert report.summary.glosa_rate == 0.0

    def test_period_excludes_older_guides(self, services, clinic_admin, settled):
        report = services.reports.loss_analysis(clinic_admin, today() - timedelta(days=1), today())

        assert report.summary.total_guides == 0

    def test_other_clinic_sees_nothing(self, services, other_clinic, settled):
        report = services.reports.loss_analysis(other_clinic, today() - timedelta(days=30), today())

        assert report.summary.total_guides == 0
        assert report.by_operator == []

    def test_super_admin_sees_all(self, services, super_admin, settled):
        report = services.reports.loss_analysis(super_admin, today() - timedelta(days=30), today())

        assert report.summary.total_guides == 2

    def test_inverted_period(self, services, clinic_admin):
        with pytest.raises(ValidationError):
            services.reports.loss_analysis(clinic_admin, today(), today() - timedelta(days=1))
