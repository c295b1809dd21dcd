"""
Operator denial code interpretation.

Maps denial codes to a category and a suggested correction. Unknown codes
fall back to keyword matching on the operator's message.
"""

from dataclasses import dataclass
from typing import Optional

from tiss_claims.domain.enums import GlosaCategory


@dataclass(frozen=True)
class DenialInterpretation:
    code: Optional[str]
    category: GlosaCategory
    description: str
    suggested_correction: Optional[str]
    can_appeal: bool


DENIAL_CODES: dict[str, tuple[GlosaCategory, str, str]] = {
    # Technical
    "001": (GlosaCategory.TECHNICAL, "Invalid file format", "Regenerate the interchange file and resubmit"),
    "002": (GlosaCategory.TECHNICAL, "Schema validation error", "Regenerate the interchange file and resubmit"),
    "003": (GlosaCategory.TECHNICAL, "Missing required field", "Fill the missing guide field and resubmit"),
    "004": (GlosaCategory.TECHNICAL, "Invalid date format", "Correct the execution date format"),
    # Business
    "101": (GlosaCategory.BUSINESS, "Procedure not covered", "Review the patient's plan coverage"),
    "102": (GlosaCategory.BUSINESS, "Authorization required", "Request prior authorization and attach its number"),
    "103": (GlosaCategory.BUSINESS, "Expired authorization", "Request a new authorization"),
    "104": (GlosaCategory.BUSINESS, "Patient not covered", "Verify card number and plan eligibility"),
    "105": (GlosaCategory.BUSINESS, "Procedure code mismatch", "Verify the TUSS procedure code"),
    "106": (GlosaCategory.BUSINESS, "Diagnosis code mismatch", "Verify the CID-10 code against the procedure"),
    # Value
    "201": (GlosaCategory.VALUE, "Value above limit", "Adjust the billed value to the contracted table"),
    "202": (GlosaCategory.VALUE, "Value below minimum", "Adjust the billed value to the contracted table"),
    "203": (GlosaCategory.VALUE, "Incorrect calculation", "Recalculate unit value times quantity"),
    # Documentation
    "301": (GlosaCategory.DOCUMENTATION, "Missing documentation", "Attach the supporting documentation"),
    "302": (GlosaCategory.DOCUMENTATION, "Invalid documentation", "Replace the invalid documentation"),
    "303": (GlosaCategory.DOCUMENTATION, "Expired documentation", "Provide updated documentation"),
}

_KEYWORDS: tuple[tuple[GlosaCategory, tuple[str, ...]], ...] = (
    (GlosaCategory.TECHNICAL, ("xml", "xsd", "format", "schema", "validation", "layout")),
    (GlosaCategory.BUSINESS, ("coverage", "cobertura", "authorization", "autoriza", "covered", "plan", "carencia")),
    (GlosaCategory.VALUE, ("valor", "value", "price", "preco", "tabela")),
    (GlosaCategory.DOCUMENTATION, ("document", "laudo", "anexo", "relatorio")),
)


def interpret_denial(code: Optional[str], message: Optional[str] = None) -> DenialInterpretation:
    """
    Interpret an operator denial.

    Args:
        code: Denial code as reported (may be None)
        message: Operator's free-text reason

    Returns:
        DenialInterpretation with category and suggested correction
    """
    normalized = code.strip().zfill(3) if code and code.strip().isdigit() else (code or "").strip()
    known = DENIAL_CODES.get(normalized)
    if known:
        category, description, suggestion = known
        return DenialInterpretation(
            code=code,
            category=category,
            description=description,
            suggested_correction=suggestion,
            # Technical rejections are corrected and resubmitted, not appealed
            can_appeal=category != GlosaCategory.TECHNICAL,
        )

    category = GlosaCategory.UNKNOWN
    if message:
        lowered = message.lower()
        for candidate, words in _KEYWORDS:
            if any(word in lowered for word in words):
                category = candidate
                break

    return DenialInterpretation(
        code=code,
        category=category,
        description=message or f"Unknown denial code: {code}",
        suggested_correction=None,
        can_appeal=True,
    )
