"""
End-to-end lifecycle tests, including the command-line interface.
"""

import json

import pytest
import yaml
from click.testing import CliRunner

from tiss_claims.cli import main
from tiss_claims.config import load_config
from tiss_claims.db.initialize import check_database_exists
from tiss_claims.domain import (
    BatchCreate,
    BatchStatus,
    CallerContext,
    GuideStatus,
    GuideUpdate,
    ProcessingStatus,
    RiskCandidate,
)
from tiss_claims.events import BATCH_CLOSED, BATCH_SUBMITTED, RETURN_COMPLETED
from tiss_claims.services import TissServices

TISS_RETURN = """<?xml version="1.0" encoding="ISO-8859-1"?>
<ans:mensagemTISS xmlns:ans="http://www.ans.gov.br/padroes/tiss/schemas">
  <ans:cabecalho>
    <ans:identificacaoTransacao>
      <ans:identificadorTransacao>PROT-2026-9</ans:identificadorTransacao>
    </ans:identificacaoTransacao>
    <ans:Padrao>4.02.00</ans:Padrao>
  </ans:cabecalho>
  <ans:operadoraParaPrestador>
    <ans:demonstrativoAnaliseConta>
      <ans:guiaRetorno>
        <ans:numeroGuiaPrestador>2026000001</ans:numeroGuiaPrestador>
        <ans:statusProcessamento>1</ans:statusProcessamento>
        <ans:valorLiberado>100,00</ans:valorLiberado>
      </ans:guiaRetorno>
      <ans:guiaRetorno>
        <ans:numeroGuiaPrestador>2026000002</ans:numeroGuiaPrestador>
        <ans:statusProcessamento>3</ans:statusProcessamento>
        <ans:valorLiberado>60,00</ans:valorLiberado>
        <ans:glosas>
          <ans:codigoGlosa>301</ans:codigoGlosa>
          <ans:descricaoGlosa>Relatório médico ausente</ans:descricaoGlosa>
          <ans:valorGlosa>40,00</ans:valorGlosa>
        </ans:glosas>
      </ans:guiaRetorno>
    </ans:demonstrativoAnaliseConta>
  </ans:operadoraParaPrestador>
</ans:mensagemTISS>
"""


class TestLifecycle:
    """Guide to glosa through every component."""

    def test_full_cycle(self, services, publisher, clinic_admin, make_guide):
        guides = [make_guide("2026000001"), make_guide("2026000002", card_number="6543210987654321")]
        risk = services.risk.analyze_guide(clinic_admin, guides[0].id, "UNIMED")
        assert risk.risk_level.value == "LOW"

        batch = services.batches.create_batch(
            clinic_admin, BatchCreate(operator_name="UNIMED", operator_registry="123456")
        )
        services.batches.add_guides(clinic_admin, batch.id, [g.id for g in guides])
        services.batches.validate(clinic_admin, batch.id)
        services.batches.generate_file(clinic_admin, batch.id)
        sent = services.batches.submit(clinic_admin, batch.id)
        assert sent.status == BatchStatus.SENT

        ret = services.uploads.upload(clinic_admin, TISS_RETURN.encode("latin-1"), "retorno.xml")
        processed = services.worker.process(ret.id)

        assert processed.processing_status == ProcessingStatus.COMPLETED
        assert processed.parser_strategy == "tiss_xml"
        assert processed.file_encoding == "ISO-8859-1"
        assert processed.total_approved == 1
        assert processed.total_partial == 1
        assert processed.amount_denied == 4000

        partial = services.guides.get_guide(clinic_admin, guides[1].id)
        assert partial.status == GuideStatus.PARTIAL
        assert partial.paid_value == 6000

        glosa = services.glosas.list_glosas(clinic_admin)[0]
        assert glosa.category.value == "DOCUMENTATION"
        assert glosa.denial_reason == "Relatório médico ausente"
        services.glosas.dispute(clinic_admin, glosa.id)

        assert services.batches.get_batch(clinic_admin, batch.id).status == BatchStatus.CLOSED
        types = [e.event_type for _, e in publisher.events]
        assert types.index(BATCH_SUBMITTED) < types.index(RETURN_COMPLETED)
        assert BATCH_CLOSED in types

    def test_correction_after_invalid_submit(self, services, clinic_admin, make_guide, make_batch):
        bad = make_guide("2026000001", cid_code="J069", card_number="123")
        batch = make_batch([bad])

        fix = services.risk.auto_fix_guide(RiskCandidate.from_guide(bad))
        assert fix.fixed.cid_code == "J06.9"
        assert fix.fixed.card_number == "123"

        services.guides.update_guide(
            clinic_admin, bad.id, GuideUpdate(cid_code=fix.fixed.cid_code, card_number="1234567890123456")
        )
        services.batches.generate_file(clinic_admin, batch.id)

        assert services.batches.submit(clinic_admin, batch.id).status == BatchStatus.SENT


@pytest.fixture
def cli_config(tmp_path):
    """Config file for a SQLite database and local blob storage under tmp_path."""
    data = {
        "database": {"url": f"sqlite:///{tmp_path / 'tiss.db'}"},
        "storage": {"backend": "local", "root_dir": str(tmp_path / "blobs")},
        "events": {"backend": "outbox", "outbox_dir": str(tmp_path / "events")},
        "ingestion": {"worker_id": "cli-worker"},
    }
    path = tmp_path / "tiss.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestCli:
    """Tests for the command-line interface."""

    def test_validate_config(self, cli_config):
        result = CliRunner().invoke(main, ["-c", cli_config, "validate-config"])

        assert result.exit_code == 0
        assert "Configuration is valid." in result.output

    def test_init_db(self, cli_config):
        result = CliRunner().invoke(main, ["-c", cli_config, "init-db"])

        assert result.exit_code == 0
        services = TissServices.from_config(load_config(cli_config))
        try:
            assert check_database_exists(services.engine)
        finally:
            services.close()

    def test_process_returns(self, cli_config, pipe_return):
        runner = CliRunner()
        runner.invoke(main, ["-c", cli_config, "init-db"])

        caller = CallerContext(user_id="u-admin", clinic_id="clinic-a", role="CLINIC_ADMIN")
        services = TissServices.from_config(load_config(cli_config))
        try:
            services.uploads.upload(caller, pipe_return("2099999999|1|10,00|0,00").encode(), "r.txt")
        finally:
            services.close()

        result = runner.invoke(main, ["-c", cli_config, "process-returns", "--limit", "5"])

        assert result.exit_code == 0
        assert "COMPLETED" in result.output
        assert "Processed 1 return(s)." in result.output

        again = runner.invoke(main, ["-c", cli_config, "process-returns"])
        assert "No returns to process." in again.output

    def test_reclaim_stale_nothing_to_do(self, cli_config):
        runner = CliRunner()
        runner.invoke(main, ["-c", cli_config, "init-db"])

        result = runner.invoke(main, ["-c", cli_config, "reclaim-stale", "--timeout-minutes", "5"])

        assert result.exit_code == 0
        assert "Reclaimed 0 return(s)." in result.output

    def test_analyze_risk(self, cli_config, tmp_path):
        guide_file = tmp_path / "guide.json"
        guide_file.write_text(json.dumps({
            "guide_type": "CONSULTATION",
            "patient_name": "Maria da Silva",
            "card_number": "1234567890123456",
            "procedure_code": "10101012",
            "total_value": 60000,
            "cid_code": "J06.9",
            "execution_date": "2026-03-10",
        }))

        result = CliRunner().invoke(main, ["-c", cli_config, "analyze-risk", str(guide_file), "-o", "UNIMED"])

        assert result.exit_code == 0
        report = json.loads(result.output)
        assert "UNI_001" in {r["code"] for r in report["risk"]["reasons"]}
        assert report["risk"]["can_auto_fix"] is False

    def test_analyze_risk_auto_fix_list(self, cli_config, tmp_path):
        guide_file = tmp_path / "guides.yaml"
        guide_file.write_text(yaml.safe_dump([
            {"card_number": "1234567890123456", "procedure_code": "10101012", "total_value": 10000,
             "patient_name": "Ana", "cid_code": "j069", "execution_date": "2026-03-10"},
        ]))

        result = CliRunner().invoke(
            main, ["-c", cli_config, "analyze-risk", str(guide_file), "-o", "Unimed", "--auto-fix"]
        )

        assert result.exit_code == 0
        assert '"cid_code": "J06.9"' in result.output

    def test_missing_config_file(self):
        result = CliRunner().invoke(main, ["-c", "/nonexistent/tiss.yaml", "status"])

        assert result.exit_code != 0
