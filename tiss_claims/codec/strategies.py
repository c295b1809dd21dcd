"""
Return file parser strategies.

Strategies are tried in order of specificity; the first whose ``can_handle``
accepts the decoded text parses it:

1. ``tiss_xml``: structured TISS XML (layout versions 3.05 and 4.02)
2. ``pipe_delimited``: operator text exports, ``GUIA|STATUS|VALOR|GLOSA[|CODIGO|MOTIVO]``
3. ``lenient``: extracts guide number / outcome / amount triplets from anything
"""

import re
import xml.etree.ElementTree as ET
from typing import Iterator, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from tiss_claims.codec.models import ParseResult, ReturnHeader
from tiss_claims.domain.enums import OutcomeStatus
from tiss_claims.domain.guide import GlosaItem, GuideOutcome
from tiss_claims.utils.money import parse_amount

logger = structlog.get_logger()

SUPPORTED_TISS_VERSIONS = ("3.05.00", "4.02.00")

# Operator status codes: 1=approved, 2=denied, 3=partial, 4=under audit
STATUS_CODES = {
    "1": OutcomeStatus.APPROVED,
    "APROVADO": OutcomeStatus.APPROVED,
    "APPROVED": OutcomeStatus.APPROVED,
    "LIBERADO": OutcomeStatus.APPROVED,
    "2": OutcomeStatus.DENIED,
    "NEGADO": OutcomeStatus.DENIED,
    "DENIED": OutcomeStatus.DENIED,
    "GLOSADO": OutcomeStatus.DENIED,
    "RECUSADO": OutcomeStatus.DENIED,
    "3": OutcomeStatus.PARTIAL,
    "PARCIAL": OutcomeStatus.PARTIAL,
    "PARTIAL": OutcomeStatus.PARTIAL,
}
PENDING_CODES = frozenset({"4", "AUDITORIA", "EM ANALISE", "EM_ANALISE"})


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = " ".join(text.split())
    return text or None


class ParserStrategy:
    """Base class for return file strategies."""

    name = "base"

    def can_handle(self, text: str) -> bool:
        raise NotImplementedError

    def parse(self, text: str, result: ParseResult) -> None:
        """Fill ``result`` with outcomes, unmatched records and header data."""
        raise NotImplementedError

    @staticmethod
    def map_status(code: Optional[str]) -> Optional[OutcomeStatus]:
        if code is None:
            return None
        return STATUS_CODES.get(code.strip().upper())

    @staticmethod
    def record_failed(
        result: ParseResult,
        error: ValueError,
        line: int,
        content: Optional[str] = None,
    ) -> None:
        """Set aside a record that could not be read and keep going."""
        if isinstance(error, PydanticValidationError):
            first = error.errors(include_url=False)[0]
            field = ".".join(str(p) for p in first["loc"])
            reason = f"invalid {field}: {first['msg']}" if field else first["msg"]
        else:
            reason = str(error)
        logger.debug("return_record_skipped", line=line, reason=reason)
        result.unmatch(reason, line=line, content=content)


class NegativeAmountError(ValueError):
    """An amount in a record is below zero."""

    def __init__(self, raw: str):
        super().__init__(f"negative amount {raw!r}")


def _non_negative(raw: str, value: Optional[int]) -> Optional[int]:
    if value is not None and value < 0:
        raise NegativeAmountError(raw)
    return value


# =============================================================================
# TISS XML
# =============================================================================


class TissXmlStrategy(ParserStrategy):
    """
    Structured TISS XML.

    Namespaces are ignored and every field is looked up through a list of
    tag-name fallbacks, since operators differ in which names they emit.
    """

    name = "tiss_xml"

    GUIDE_TAGS = frozenset({
        "guia",
        "guiaConsulta",
        "guiaSP-SADT",
        "guiaHonorarios",
        "guiaResumoInternacao",
        "guiaRetorno",
    })
    GLOSA_TAGS = frozenset({"glosas", "glosa", "motivoGlosa", "relacaoGlosa"})

    GUIDE_NUMBER = ("numeroGuiaPrestador", "numeroGuia", "numeroGuiaNoReembolso")
    OPERATOR_GUIDE_NUMBER = ("numeroGuiaOperadora",)
    STATUS = ("statusProcessamento", "codigoStatus", "situacaoGuia")
    PRESENTED = ("valorTotalGuia", "valorApresentado", "valorTotalGeral", "valorTotal")
    APPROVED = ("valorLiberado", "valorProcessado", "valorPago", "valorAprovado")
    DENIED = ("valorTotalGlosa", "valorGlosado", "valorGlosa")
    DENIAL_CODE = ("codigoGlosa",)
    DENIAL_REASON = ("descricaoGlosa", "motivoGlosa", "justificativa", "observacao", "mensagemRetorno")
    APPEAL = ("permiteRecurso", "indPermiteRecurso")

    def can_handle(self, text: str) -> bool:
        if "mensagemTISS" not in text and "loteGuias" not in text:
            return False
        try:
            ET.fromstring(text)
        except ET.ParseError:
            return False
        return True

    def parse(self, text: str, result: ParseResult) -> None:
        root = ET.fromstring(text)
        result.header = self._header(root, text)

        guides = list(self._guide_elements(root))
        if not guides:
            result.warnings.append("no guide elements found")

        for index, element in enumerate(guides, start=1):
            try:
                self._parse_guide(element, index, result)
            except ValueError as e:
                self.record_failed(result, e, index, _snippet(element))

    def detect_version(self, root: ET.Element, text: str) -> str:
        version = self._find_text(root, ("versaoPadrao", "Padrao", "padrao", "versaoTISS"))
        if version:
            version = version.replace(",", ".")
            parts = version.split(".")
            if len(parts) == 3 and all(p.isdigit() for p in parts):
                return f"{int(parts[0])}.{int(parts[1]):02d}.{int(parts[2]):02d}"
            return version
        # Namespaced layouts are 4.x, unprefixed legacy layouts 3.x
        return "4.02.00" if "<ans:mensagemTISS" in text else "3.05.00"

    def _header(self, root: ET.Element, text: str) -> ReturnHeader:
        return ReturnHeader(
            batch_number=self._find_text(root, ("numeroLote",), skip=self.GUIDE_TAGS),
            protocol_number=self._find_text(
                root, ("numeroProtocolo", "protocolo", "identificadorTransacao"), skip=self.GUIDE_TAGS
            ),
            operator_code=self._find_text(
                root, ("registroANS", "codigoOperadora", "registro"), skip=self.GUIDE_TAGS
            ),
            operator_name=self._find_text(root, ("nomeOperadora", "razaoSocial"), skip=self.GUIDE_TAGS),
            provider_code=self._find_text(
                root, ("codigoPrestadorNaOperadora", "codigoPrestador"), skip=self.GUIDE_TAGS
            ),
            tiss_version=self.detect_version(root, text),
        )

    def _guide_elements(self, element: ET.Element) -> Iterator[ET.Element]:
        for child in element:
            if _local(child.tag) in self.GUIDE_TAGS:
                yield child
            else:
                yield from self._guide_elements(child)

    def _parse_guide(self, element: ET.Element, index: int, result: ParseResult) -> None:
        number = self._find_text(element, self.GUIDE_NUMBER, skip=self.GLOSA_TAGS)
        if not number:
            result.unmatch("guide without identifying number", line=index, content=_snippet(element))
            return

        code = self._find_text(element, self.STATUS, skip=self.GLOSA_TAGS)
        if code and code.strip().upper() in PENDING_CODES:
            result.unmatch(f"guide {number} has no final verdict (status {code})", line=index)
            return

        presented = self._amount(element, self.PRESENTED, number, index, result)
        approved = self._amount(element, self.APPROVED, number, index, result)
        denied = self._amount(element, self.DENIED, number, index, result)
        glosas = self._glosa_items(element, number, index, result)
        if denied is None and glosas:
            denied = sum(g.value or 0 for g in glosas) or None

        status = self.map_status(code)
        if code and status is None:
            result.unmatch(f"guide {number} has unknown status code {code!r}", line=index)
            return
        if status is None:
            status = OutcomeStatus.PARTIAL if denied else OutcomeStatus.APPROVED

        first = glosas[0] if glosas else None
        result.add_outcome(GuideOutcome(
            guide_number=number,
            status=status,
            presented_value=presented,
            approved_value=approved,
            denied_value=denied,
            denial_code=first.code if first else self._find_text(element, self.DENIAL_CODE),
            denial_reason=(first.description if first else None)
            or self._find_text(element, self.DENIAL_REASON, skip=self.GLOSA_TAGS),
            can_appeal=self._appeal(element),
            glosas=glosas,
            operator_guide_number=self._find_text(element, self.OPERATOR_GUIDE_NUMBER),
            source_line=index,
        ))

    def _glosa_items(
        self,
        element: ET.Element,
        number: str,
        index: int,
        result: ParseResult,
    ) -> list[GlosaItem]:
        items = []
        for node in element.iter():
            if _local(node.tag) not in self.GLOSA_TAGS:
                continue
            children = {_local(c.tag): c for c in node}
            if "codigoGlosa" not in children and "descricaoGlosa" not in children:
                continue
            code = _clean(children["codigoGlosa"].text) if "codigoGlosa" in children else None
            description = None
            for tag in ("descricaoGlosa", "justificativa"):
                if tag in children:
                    description = _clean(children[tag].text)
                    break
            value = None
            if "valorGlosa" in children:
                raw = _clean(children["valorGlosa"].text)
                value = _non_negative(raw, parse_amount(raw)) if raw else None
                if raw and value is None:
                    result.warnings.append(f"guide {number}: unreadable glosa value {raw!r} (record {index})")
            items.append(GlosaItem(
                code=code or "SEM_CODIGO",
                description=description,
                value=value,
                can_appeal=self._appeal(node),
            ))
        return items

    def _amount(
        self,
        element: ET.Element,
        names: tuple[str, ...],
        number: str,
        index: int,
        result: ParseResult,
    ) -> Optional[int]:
        raw = self._find_text(element, names, skip=self.GLOSA_TAGS)
        if raw is None:
            return None
        value = _non_negative(raw, parse_amount(raw))
        if value is None:
            result.warnings.append(f"guide {number}: unreadable amount {raw!r} (record {index})")
        return value

    def _appeal(self, element: ET.Element) -> Optional[bool]:
        flag = self._find_text(element, self.APPEAL, skip=self.GUIDE_TAGS)
        if flag is None:
            return None
        return flag.strip().upper() in ("S", "SIM", "1", "TRUE")

    def _find_text(
        self,
        element: ET.Element,
        names: tuple[str, ...],
        skip: frozenset[str] = frozenset(),
    ) -> Optional[str]:
        """First non-empty text among ``names``, in fallback order."""
        for name in names:
            found = self._search(element, name, skip)
            if found:
                return found
        return None

    def _search(self, element: ET.Element, name: str, skip: frozenset[str]) -> Optional[str]:
        for child in element:
            local = _local(child.tag)
            if local == name and len(child) == 0:
                text = _clean(child.text)
                if text:
                    return text
            if local in skip:
                continue
            found = self._search(child, name, skip)
            if found:
                return found
        return None


def _snippet(element: ET.Element) -> str:
    return ET.tostring(element, encoding="unicode")[:200]


# =============================================================================
# Pipe-delimited text
# =============================================================================


class PipeDelimitedStrategy(ParserStrategy):
    """
    Operator text exports with one guide per line.

    ``GUIA|STATUS|VALOR_LIBERADO|VALOR_GLOSA[|CODIGO_GLOSA|MOTIVO]`` with an
    optional ``HEADER|operator|batch|protocol`` first line.
    """

    name = "pipe_delimited"
    MIN_FIELDS = 4

    def can_handle(self, text: str) -> bool:
        lines = [l for l in text.splitlines() if l.strip() and not self._is_marker(l)]
        if not lines or text.lstrip().startswith("<"):
            return False
        delimited = sum(1 for l in lines if l.count("|") >= self.MIN_FIELDS - 1)
        return delimited * 2 >= len(lines)

    @staticmethod
    def _is_marker(line: str) -> bool:
        return line.strip().upper().startswith(("HEADER", "TRAILER", "FIM"))

    def parse(self, text: str, result: ParseResult) -> None:
        for number, line in enumerate(text.splitlines(), start=1):
            stripped = line.strip()
            if not stripped:
                continue
            upper = stripped.upper()
            if upper.startswith("HEADER"):
                self._header(stripped, result)
                continue
            if upper.startswith(("TRAILER", "FIM")):
                continue
            try:
                self._parse_line(stripped, number, result)
            except ValueError as e:
                self.record_failed(result, e, number, stripped)

    def _header(self, line: str, result: ParseResult) -> None:
        fields = [f.strip() or None for f in line.split("|")]
        fields += [None] * (4 - len(fields))
        result.header = ReturnHeader(
            operator_name=fields[1],
            batch_number=fields[2],
            protocol_number=fields[3],
        )

    def _parse_line(self, line: str, number: int, result: ParseResult) -> None:
        fields = [f.strip() for f in line.split("|")]
        if len(fields) < self.MIN_FIELDS:
            result.unmatch(
                f"expected {self.MIN_FIELDS}+ fields, found {len(fields)}",
                line=number,
                content=line,
            )
            return

        guide_number, code, approved_raw, denied_raw = fields[:4]
        if not guide_number:
            result.unmatch("missing guide number", line=number, content=line)
            return

        status = self.map_status(code)
        if status is None:
            result.unmatch(f"unknown status code {code!r}", line=number, content=line)
            return

        approved = parse_amount(approved_raw) if approved_raw else None
        denied = parse_amount(denied_raw) if denied_raw else None
        if (approved_raw and approved is None) or (denied_raw and denied is None):
            result.unmatch("unreadable amount", line=number, content=line)
            return
        _non_negative(approved_raw, approved)
        _non_negative(denied_raw, denied)

        denial_code = fields[4] if len(fields) > 4 and fields[4] else None
        denial_reason = fields[5] if len(fields) > 5 and fields[5] else None
        glosas = []
        if denial_code and denied:
            glosas.append(GlosaItem(code=denial_code, description=denial_reason, value=denied))

        result.add_outcome(GuideOutcome(
            guide_number=guide_number,
            status=status,
            approved_value=approved,
            denied_value=denied,
            denial_code=denial_code,
            denial_reason=denial_reason,
            glosas=glosas,
            source_line=number,
        ))


# =============================================================================
# Lenient generic
# =============================================================================


_TAG = re.compile(r"<[^>]+>")
_GUIDE_SPLIT = re.compile(r"</?(?:\w+:)?guia[\w-]*[^>]*>", re.IGNORECASE)
_AMOUNT = re.compile(r"(?:R\$\s*)?\d{1,3}(?:\.\d{3})+,\d{2}|(?:R\$\s*)?\d+[.,]\d{2}(?!\d)")
_GUIDE_NUMBER = re.compile(r"(?<![\d.,])\d{6,20}(?![\d.,])")
_OUTCOME = re.compile(
    r"\b(APROVAD[OA]|APPROVED|LIBERAD[OA]|NEGAD[OA]|DENIED|GLOSAD[OA]|RECUSAD[OA]|PARCIAL|PARTIAL)\b",
    re.IGNORECASE,
)
_OUTCOME_WORDS = {
    "APROVAD": OutcomeStatus.APPROVED,
    "APPROVE": OutcomeStatus.APPROVED,
    "LIBERAD": OutcomeStatus.APPROVED,
    "NEGADO": OutcomeStatus.DENIED,
    "NEGADA": OutcomeStatus.DENIED,
    "DENIED": OutcomeStatus.DENIED,
    "GLOSAD": OutcomeStatus.DENIED,
    "RECUSAD": OutcomeStatus.DENIED,
    "PARCIAL": OutcomeStatus.PARTIAL,
    "PARTIAL": OutcomeStatus.PARTIAL,
}


class LenientGenericStrategy(ParserStrategy):
    """
    Last resort for unknown layouts and broken XML.

    Each record (a line, or a guide element's text for XML-like input) must
    yield a guide number and an outcome word; the first amount found is the
    paid value for approvals and partials, the denied value for denials.
    """

    name = "lenient"

    def can_handle(self, text: str) -> bool:
        return True

    def parse(self, text: str, result: ParseResult) -> None:
        for number, record in self._records(text):
            try:
                self._parse_record(record, number, result)
            except ValueError as e:
                self.record_failed(result, e, number, record)

    def _records(self, text: str) -> Iterator[tuple[int, str]]:
        if text.lstrip().startswith("<"):
            chunks = _GUIDE_SPLIT.split(text)
            for index, chunk in enumerate(chunks, start=1):
                flat = " ".join(_TAG.sub(" ", chunk).split())
                if flat:
                    yield index, flat
            return
        for index, line in enumerate(text.splitlines(), start=1):
            if line.strip():
                yield index, line.strip()

    def _parse_record(self, record: str, number: int, result: ParseResult) -> None:
        outcome_match = _OUTCOME.search(record)
        amounts = [m.group(0) for m in _AMOUNT.finditer(record)]
        without_amounts = _AMOUNT.sub(" ", record)
        guide_match = _GUIDE_NUMBER.search(without_amounts)

        if not guide_match and not outcome_match:
            result.unmatch("no guide number or outcome", line=number, content=record)
            return
        if not guide_match:
            result.unmatch("no guide number", line=number, content=record)
            return
        if not outcome_match:
            result.unmatch("no outcome", line=number, content=record)
            return

        word = outcome_match.group(1).upper()
        status = next(s for prefix, s in _OUTCOME_WORDS.items() if word.startswith(prefix))
        amount = parse_amount(amounts[0]) if amounts else None

        outcome = GuideOutcome(
            guide_number=guide_match.group(0),
            status=status,
            source_line=number,
        )
        if amount is not None:
            if status == OutcomeStatus.DENIED:
                outcome.denied_value = amount
            else:
                outcome.approved_value = amount
        result.add_outcome(outcome)


# Most specific first; lenient always last
DEFAULT_STRATEGIES: tuple[ParserStrategy, ...] = (
    TissXmlStrategy(),
    PipeDelimitedStrategy(),
    LenientGenericStrategy(),
)

STRATEGIES_BY_NAME = {s.name: s for s in DEFAULT_STRATEGIES}
