"""
Guide and batch validation rules.

Findings with severity ERROR block submission; WARNING findings are
reported but allowed.
"""

import re
from collections import Counter
from datetime import date
from typing import Any, Iterable, Optional

from tiss_claims.domain import (
    Batch,
    Guide,
    GuideStatus,
    GuideType,
    Severity,
    ValidationFinding,
    ValidationStatus,
)
from tiss_claims.utils.dates import add_months, today as utc_today

CID_PATTERN = re.compile(r"^[A-Z]\d{2}(\.\d{1,2})?$")
CRM_PATTERN = re.compile(r"^\d{4,7}[A-Z]{2}$")
TUSS_LENGTH = 8
CARD_MIN_DIGITS = 16
CARD_MAX_DIGITS = 20
GUIDE_NUMBER_MAX_LENGTH = 20
HIGH_VALUE = 1_000_000  # R$ 10.000,00
MAX_GUIDES_PER_BATCH = 100

# Fields required beyond the always-required ones, per guide type
TYPE_REQUIRED_FIELDS = {
    GuideType.CONSULTATION: ("patient_name",),
    GuideType.SPSADT: ("provider_council_number",),
    GuideType.HONORARIUM: ("provider_council_number",),
    GuideType.INTERNMENT: ("authorization_number",),
}
ALWAYS_REQUIRED = ("card_number", "procedure_code", "execution_date")


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value)


def _error(field: str, code: str, message: str, value: Any = None) -> ValidationFinding:
    return ValidationFinding(
        field=field,
        code=code,
        message=message,
        severity=Severity.ERROR,
        current_value=None if value is None else str(value),
    )


def _warning(field: str, code: str, message: str, value: Any = None) -> ValidationFinding:
    return ValidationFinding(
        field=field,
        code=code,
        message=message,
        severity=Severity.WARNING,
        current_value=None if value is None else str(value),
    )


def validate_guide(guide: Any, as_of: Optional[date] = None) -> list[ValidationFinding]:
    """
    Run field rules over a guide (or guide-shaped create payload).

    Args:
        guide: Object exposing the guide fields as attributes
        as_of: Reference date for date rules (defaults to today, UTC)

    Returns:
        Findings, errors and warnings together
    """
    as_of = as_of or utc_today()
    findings: list[ValidationFinding] = []
    guide_type = getattr(guide, "guide_type", None) or GuideType.CONSULTATION

    for field in ALWAYS_REQUIRED + TYPE_REQUIRED_FIELDS.get(guide_type, ()):
        value = getattr(guide, field, None)
        if value is None or (isinstance(value, str) and not value.strip()):
            findings.append(_error(field, "MISSING_REQUIRED_FIELD", f"Required field {field} is missing"))

    guide_number = getattr(guide, "guide_number", None)
    if guide_number and len(guide_number) > GUIDE_NUMBER_MAX_LENGTH:
        findings.append(_error(
            "guide_number", "INVALID_FORMAT",
            f"Guide number exceeds {GUIDE_NUMBER_MAX_LENGTH} characters", guide_number,
        ))

    card = getattr(guide, "card_number", None)
    if card:
        digits = _digits(card)
        if not CARD_MIN_DIGITS <= len(digits) <= CARD_MAX_DIGITS:
            findings.append(_error(
                "card_number", "INVALID_CARD_NUMBER",
                f"Card number must have {CARD_MIN_DIGITS}-{CARD_MAX_DIGITS} digits", card,
            ))

    cid = getattr(guide, "cid_code", None)
    if cid and not CID_PATTERN.match(cid):
        findings.append(_warning(
            "cid_code", "INVALID_CID_FORMAT",
            f"CID-10 code {cid!r} does not follow the pattern (e.g. J06.9)", cid,
        ))

    procedure = getattr(guide, "procedure_code", None)
    if procedure and len(_digits(procedure)) != TUSS_LENGTH:
        findings.append(_warning(
            "procedure_code", "INVALID_PROCEDURE_CODE",
            f"Procedure code must have {TUSS_LENGTH} digits (TUSS table)", procedure,
        ))

    execution_date = getattr(guide, "execution_date", None)
    if isinstance(execution_date, date):
        if execution_date > as_of:
            findings.append(_error(
                "execution_date", "FUTURE_DATE",
                "Execution date cannot be in the future", execution_date,
            ))
        elif execution_date < add_months(as_of, -12):
            findings.append(_warning(
                "execution_date", "OLD_DATE",
                "Execution date older than one year may be rejected", execution_date,
            ))

    total = getattr(guide, "total_value", None)
    if total is not None:
        if total <= 0:
            findings.append(_error("total_value", "INVALID_VALUE", "Total value must be greater than zero", total))
        elif total > HIGH_VALUE:
            findings.append(_warning("total_value", "HIGH_VALUE", "Unusually high value, check for typos", total))

    unit_value = getattr(guide, "unit_value", None)
    quantity = getattr(guide, "procedure_quantity", None) or 1
    if unit_value is not None and total is not None and unit_value * quantity != total:
        findings.append(_error(
            "total_value", "VALUE_MISMATCH",
            f"unit_value x quantity ({unit_value * quantity}) differs from total_value ({total})",
            total,
        ))

    council = getattr(guide, "provider_council_number", None)
    if council and not CRM_PATTERN.match(council):
        findings.append(_warning(
            "provider_council_number", "INVALID_CRM_FORMAT",
            "Council number must be digits followed by the state (e.g. 123456SP)", council,
        ))

    guide_id = getattr(guide, "id", None)
    for finding in findings:
        finding.guide_id = guide_id
        finding.guide_number = guide_number
    return findings


def validation_status_for(findings: Iterable[ValidationFinding]) -> ValidationStatus:
    if any(f.severity == Severity.ERROR for f in findings):
        return ValidationStatus.INVALID
    return ValidationStatus.VALID


def validate_batch(
    batch: Batch,
    guides: list[Guide],
    as_of: Optional[date] = None,
) -> tuple[list[ValidationFinding], dict[Any, list[ValidationFinding]]]:
    """
    Structural and semantic batch rules.

    Guide field rules are re-run so date-relative rules reflect ``as_of``.

    Returns:
        (batch findings including per-guide errors, fresh findings per guide id)
    """
    findings: list[ValidationFinding] = []
    per_guide: dict[Any, list[ValidationFinding]] = {}

    if not guides:
        findings.append(_error("guides", "EMPTY_BATCH", "Batch has no guides"))
        return findings, per_guide

    if len(guides) > MAX_GUIDES_PER_BATCH:
        findings.append(_error(
            "guides", "BATCH_TOO_LARGE",
            f"Batch has {len(guides)} guides; the limit is {MAX_GUIDES_PER_BATCH}",
        ))

    if not batch.operator_registry:
        findings.append(_warning("operator_registry", "MISSING_OPERATOR_REGISTRY", "Operator ANS registry is not set"))

    for guide in guides:
        guide_findings = validate_guide(guide, as_of)
        per_guide[guide.id] = guide_findings
        errors = [f for f in guide_findings if f.severity == Severity.ERROR]
        if errors:
            findings.append(ValidationFinding(
                field="guides",
                code="GUIDE_INVALID",
                message=f"Guide {guide.guide_number} is invalid: "
                + "; ".join(f"{e.field}: {e.code}" for e in errors),
                severity=Severity.ERROR,
                guide_id=guide.id,
                guide_number=guide.guide_number,
            ))
        findings.extend(f for f in guide_findings if f.severity == Severity.WARNING)

        if guide.status != GuideStatus.PENDING:
            findings.append(_guide_error(guide, "status", "GUIDE_NOT_PENDING", f"Guide status is {guide.status.value}"))

        if guide.operator_name and guide.operator_name.strip().upper() != batch.operator_name.strip().upper():
            findings.append(_guide_error(
                guide, "operator_name", "OPERATOR_MISMATCH",
                f"Guide operator {guide.operator_name} differs from batch operator {batch.operator_name}",
            ))

        if batch.reference_month and batch.reference_year and guide.execution_date:
            if (guide.execution_date.year, guide.execution_date.month) != (batch.reference_year, batch.reference_month):
                findings.append(ValidationFinding(
                    field="execution_date",
                    code="DATE_OUTSIDE_REFERENCE",
                    message=f"Guide {guide.guide_number} executed outside the batch reference month",
                    severity=Severity.WARNING,
                    guide_id=guide.id,
                    guide_number=guide.guide_number,
                ))

    number_counts = Counter(g.guide_number for g in guides)
    for number, count in number_counts.items():
        if count > 1:
            findings.append(_error("guide_number", "DUPLICATE_GUIDE_NUMBER", f"Guide number {number} appears {count} times"))

    billing_keys = Counter(
        (g.card_number, g.procedure_code, g.execution_date)
        for g in guides
        if g.card_number and g.execution_date
    )
    for (card, procedure, when), count in billing_keys.items():
        if count > 1:
            findings.append(_warning(
                "guides", "POSSIBLE_DUPLICATE_BILLING",
                f"Procedure {procedure} billed {count} times for the same card on {when.isoformat()}",
            ))

    if sum(g.total_value for g in guides) <= 0:
        findings.append(_error("total_value", "BATCH_TOTAL_ZERO", "Batch total value must be greater than zero"))

    return findings, per_guide


def _guide_error(guide: Guide, field: str, code: str, message: str) -> ValidationFinding:
    return ValidationFinding(
        field=field,
        code=code,
        message=f"Guide {guide.guide_number}: {message}",
        severity=Severity.ERROR,
        guide_id=guide.id,
        guide_number=guide.guide_number,
    )
