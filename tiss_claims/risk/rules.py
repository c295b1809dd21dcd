"""
Operator-specific content rules.

Each rule flags a guide pattern an operator is known to deny. Violations
need a human correction and are never auto-fixable.
"""

from dataclasses import dataclass
from datetime import date
from typing import Callable

from tiss_claims.domain import RiskCandidate
from tiss_claims.risk.normalize import normalize_card, normalize_crm
from tiss_claims.utils.dates import parse_loose_date

# Denial probability per rule severity
SEVERITY_PROBABILITY = {
    "critical": 0.95,
    "high": 0.75,
    "medium": 0.50,
}

PRIOR_AUTHORIZATION_PROCEDURES = frozenset({"40813010", "40815013"})


@dataclass(frozen=True)
class OperatorRule:
    code: str
    field: str
    description: str
    severity: str
    check: Callable[[RiskCandidate, date], bool]

    @property
    def probability(self) -> float:
        return SEVERITY_PROBABILITY[self.severity]


def _consultation_above_table(g: RiskCandidate, _: date) -> bool:
    # Unimed pays at most R$ 500,00 for a standard consultation
    return g.procedure_code == "10101012" and (g.total_value or 0) > 50000


def _cid_incompatible(g: RiskCandidate, _: date) -> bool:
    # Orthopedic procedures billed with a respiratory diagnosis
    procedure = (g.procedure_code or "").strip()
    cid = (g.cid_code or "").strip().upper()
    return procedure.startswith("407") and cid.startswith("J")


def _card_unusable(g: RiskCandidate, _: date) -> bool:
    return not g.card_number or normalize_card(g.card_number) is None


def _sadt_without_requester(g: RiskCandidate, _: date) -> bool:
    return (g.guide_type or "").upper() == "SPSADT" and not (g.provider_council_number or "").strip()


def _missing_prior_authorization(g: RiskCandidate, _: date) -> bool:
    return (g.procedure_code or "").strip() in PRIOR_AUTHORIZATION_PROCEDURES and not (
        g.authorization_number or ""
    ).strip()


def _crm_unusable(g: RiskCandidate, _: date) -> bool:
    return not g.provider_council_number or normalize_crm(g.provider_council_number) is None


def _future_execution(g: RiskCandidate, as_of: date) -> bool:
    executed = parse_loose_date(g.execution_date) if g.execution_date else None
    return executed is not None and executed > as_of


OPERATOR_RULES: dict[str, tuple[OperatorRule, ...]] = {
    "UNIMED": (
        OperatorRule("UNI_001", "total_value", "Value above the Unimed table for consultations", "high",
                     _consultation_above_table),
        OperatorRule("UNI_002", "cid_code", "CID-10 incompatible with the procedure", "critical",
                     _cid_incompatible),
        OperatorRule("UNI_003", "card_number", "Guide without a valid card number", "critical",
                     _card_unusable),
    ),
    "BRADESCO": (
        OperatorRule("BRA_001", "provider_council_number", "SADT guide without requesting professional", "critical",
                     _sadt_without_requester),
        OperatorRule("BRA_002", "authorization_number", "Procedure requires prior authorization", "critical",
                     _missing_prior_authorization),
    ),
    "SULAMERICA": (
        OperatorRule("SUL_001", "provider_council_number", "Invalid executing professional CRM", "high",
                     _crm_unusable),
        OperatorRule("SUL_002", "execution_date", "Execution date in the future", "critical",
                     _future_execution),
    ),
}


def operator_key(operator_name: str) -> str:
    """'Unimed Campinas' -> 'UNIMED', 'Sul América' -> 'SULAMERICA'."""
    compact = "".join(ch for ch in operator_name.upper() if ch.isalnum())
    compact = compact.replace("É", "E")
    for key in OPERATOR_RULES:
        if compact.startswith(key):
            return key
    return operator_name.strip().upper()


def rules_for(operator_name: str) -> tuple[OperatorRule, ...]:
    return OPERATOR_RULES.get(operator_key(operator_name), ())
