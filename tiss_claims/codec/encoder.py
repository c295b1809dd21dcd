"""
Interchange file encoder.

Serializes a batch and its guides into a TISS-style XML message. Output is a
pure function of its inputs: no clocks or random identifiers, so the same
batch always encodes to byte-identical content.
"""

import hashlib
import xml.etree.ElementTree as ET
from typing import Iterable, Optional

from tiss_claims.domain import Batch, Guide, GuideType
from tiss_claims.utils.money import format_amount

TISS_NAMESPACE = "http://www.ans.gov.br/padroes/tiss/schemas"
DEFAULT_TISS_VERSION = "4.02.00"

ET.register_namespace("ans", TISS_NAMESPACE)

GUIDE_ELEMENTS = {
    GuideType.CONSULTATION: "guiaConsulta",
    GuideType.SPSADT: "guiaSP-SADT",
    GuideType.HONORARIUM: "guiaHonorarios",
    GuideType.INTERNMENT: "guiaResumoInternacao",
}

# Versions from 4.02 onwards carry patient initials only
INITIALS_ONLY_FROM = (4, 2)


def _q(tag: str) -> str:
    return f"{{{TISS_NAMESPACE}}}{tag}"


def _sub(parent: ET.Element, tag: str, text: Optional[object] = None) -> ET.Element:
    element = ET.SubElement(parent, _q(tag))
    if text is not None:
        element.text = str(text)
    return element


def _version_tuple(version: str) -> tuple[int, int]:
    parts = version.split(".")
    try:
        return int(parts[0]), int(parts[1])
    except (IndexError, ValueError):
        return 0, 0


def initials(name: Optional[str]) -> str:
    """Patient initials, e.g. "Maria da Silva" -> "M.D.S."."""
    if not name:
        return ""
    return "".join(f"{part[0].upper()}." for part in name.split() if part)


def transaction_id(batch: Batch) -> str:
    """Stable transaction identifier derived from the batch identity."""
    digest = hashlib.sha256(f"{batch.id}:{batch.batch_number}".encode("utf-8"))
    return digest.hexdigest()[:20].upper()


def encode(batch: Batch, guides: Iterable[Guide], tiss_version: Optional[str] = None) -> bytes:
    """
    Encode a batch as interchange XML.

    Args:
        batch: The batch being sent
        guides: Member guides (any order; output is sorted by guide number)
        tiss_version: Layout version written to the header

    Returns:
        UTF-8 encoded XML bytes
    """
    version = tiss_version or batch.tiss_version or DEFAULT_TISS_VERSION
    ordered = sorted(guides, key=lambda g: g.guide_number)
    use_initials = _version_tuple(version) >= INITIALS_ONLY_FROM

    root = ET.Element(_q("mensagemTISS"))

    header = _sub(root, "cabecalho")
    ident = _sub(header, "identificacaoTransacao")
    _sub(ident, "tipoTransacao", "ENVIO_LOTE_GUIAS")
    _sub(ident, "sequencialTransacao", batch.batch_number)
    _sub(ident, "identificadorTransacao", transaction_id(batch))
    _sub(ident, "dataRegistroTransacao", batch.created_at.date().isoformat())
    origin = _sub(header, "origem")
    _sub(_sub(origin, "identificacaoPrestador"), "codigoPrestadorNaOperadora", batch.clinic_id)
    _sub(_sub(header, "destino"), "registroANS", batch.operator_registry or "")
    _sub(header, "Padrao", version)

    lot = _sub(_sub(root, "prestadorParaOperadora"), "loteGuias")
    _sub(lot, "numeroLote", batch.batch_number)
    guides_element = _sub(lot, "guiasTISS")
    for guide in ordered:
        _encode_guide(guides_element, guide, batch, use_initials)

    epilogue = _sub(root, "epilogo")
    _sub(epilogue, "hash", content_hash(ordered))

    ET.indent(root, space="  ")
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def _encode_guide(parent: ET.Element, guide: Guide, batch: Batch, use_initials: bool) -> None:
    element = _sub(parent, GUIDE_ELEMENTS.get(guide.guide_type, "guiaConsulta"))

    header = _sub(element, "cabecalhoGuia")
    _sub(header, "registroANS", batch.operator_registry or "")
    _sub(header, "numeroGuiaPrestador", guide.guide_number)
    if guide.authorization_number:
        _sub(element, "senhaAutorizacao", guide.authorization_number)

    beneficiary = _sub(element, "dadosBeneficiario")
    _sub(beneficiary, "numeroCarteira", guide.card_number or "")
    if use_initials:
        _sub(beneficiary, "iniciaisBeneficiario", initials(guide.patient_name))
    else:
        _sub(beneficiary, "nomeBeneficiario", guide.patient_name or "")

    professional = _sub(element, "profissionalExecutante")
    _sub(professional, "numeroConselhoProfissional", guide.provider_council_number or "")
    if guide.cid_code:
        _sub(element, "diagnosticoCID", guide.cid_code)

    procedure = _sub(_sub(element, "procedimentosExecutados"), "procedimentoExecutado")
    _sub(procedure, "dataExecucao", guide.execution_date.isoformat() if guide.execution_date else "")
    _sub(procedure, "codigoProcedimento", guide.procedure_code)
    _sub(procedure, "descricaoProcedimento", guide.procedure_name or "")
    _sub(procedure, "quantidadeExecutada", guide.procedure_quantity)
    unit_value = guide.unit_value if guide.unit_value is not None else guide.total_value // max(guide.procedure_quantity, 1)
    _sub(procedure, "valorUnitario", format_amount(unit_value))
    _sub(procedure, "valorTotal", format_amount(guide.total_value))

    totals = _sub(element, "valorTotal")
    _sub(totals, "valorProcedimentos", format_amount(guide.total_value))
    _sub(totals, "valorTotalGeral", format_amount(guide.total_value))


def content_hash(guides: Iterable[Guide]) -> str:
    """MD5 over the billable content of the guides, as carried in the epilogue."""
    md5 = hashlib.md5()
    for guide in guides:
        md5.update(
            "|".join([
                guide.guide_number,
                guide.procedure_code,
                str(guide.procedure_quantity),
                str(guide.total_value),
                guide.card_number or "",
            ]).encode("utf-8")
        )
    return md5.hexdigest()
