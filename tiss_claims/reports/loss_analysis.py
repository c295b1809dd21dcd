"""
Financial loss report over settled guides.
"""

from collections import defaultdict
from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from tiss_claims.core.guide_store import GuideStore
from tiss_claims.db.repository import TissRepository
from tiss_claims.domain import CallerContext
from tiss_claims.errors import ValidationError

UNKNOWN_OPERATOR = "Not informed"
TOP_PROCEDURES = 5


class LossSummary(BaseModel):
    billed_value: int = 0
    received_value: int = 0
    glosa_value: int = 0
    glosa_rate: float = 0.0
    total_guides: int = 0


class OperatorLoss(BaseModel):
    name: str
    billed: int = 0
    approved: int = 0
    glosa: int = 0
    count: int = 0
    glosa_rate: float = 0.0


class ProcedureLoss(BaseModel):
    code: str
    procedure: str
    count: int = 0
    total: int = 0


class LossAnalysis(BaseModel):
    start: date
    end: date
    operator_name: Optional[str] = None
    summary: LossSummary
    by_operator: list[OperatorLoss] = Field(default_factory=list)
    top_glosas: list[ProcedureLoss] = Field(default_factory=list)


def _rate(glosa: int, billed: int) -> float:
    """Glosa share of the billed value, in percent."""
    return round(glosa / billed * 100, 2) if billed > 0 else 0.0


def loss_analysis(
    repo: TissRepository,
    clinic_id: Optional[str],
    start: date,
    end: date,
    operator_name: Optional[str] = None,
) -> LossAnalysis:
    """
    Billed, received and glosa totals for guides executed in [start, end].

    Only guides with an operator verdict are counted.

    Args:
        repo: Repository
        clinic_id: Clinic scope (None for every clinic)
        start: First execution date, inclusive
        end: Last execution date, inclusive
        operator_name: Restrict to one operator

    Returns:
        LossAnalysis with summary, per-operator breakdown sorted by glosa
        rate and the five procedures with the largest glosa amount
    """
    if end < start:
        raise ValidationError(
            "end date is before start date",
            details={"start": start.isoformat(), "end": end.isoformat()},
        )

    with repo.begin() as conn:
        rows = repo.settled_guides(conn, clinic_id, start, end, operator_name)

    summary = LossSummary(total_guides=len(rows))
    operators: dict[str, OperatorLoss] = {}
    procedures: dict[str, ProcedureLoss] = defaultdict(lambda: ProcedureLoss(code="", procedure=""))

    for row in rows:
        billed = int(row["total_value"])
        paid = int(row["paid_value"])
        glosa = int(row["glosa_value"])
        summary.billed_value += billed
        summary.received_value += paid
        summary.glosa_value += glosa

        name = row["operator_name"] or UNKNOWN_OPERATOR
        entry = operators.setdefault(name, OperatorLoss(name=name))
        entry.billed += billed
        entry.approved += paid
        entry.glosa += glosa
        entry.count += 1

        if glosa > 0:
            code = row["procedure_code"] or "N/A"
            proc = procedures[code]
            proc.code = code
            proc.procedure = row["procedure_name"] or code
            proc.count += 1
            proc.total += glosa

    summary.glosa_rate = _rate(summary.glosa_value, summary.billed_value)
    for entry in operators.values():
        entry.glosa_rate = _rate(entry.glosa, entry.billed)

    return LossAnalysis(
        start=start,
        end=end,
        operator_name=operator_name,
        summary=summary,
        by_operator=sorted(operators.values(), key=lambda o: (-o.glosa_rate, o.name)),
        top_glosas=sorted(procedures.values(), key=lambda p: (-p.total, p.code))[:TOP_PROCEDURES],
    )


class ReportService:
    """Clinic-scoped access to reports."""

    def __init__(self, repo: TissRepository, guides: GuideStore):
        self.repo = repo
        self.guides = guides

    def loss_analysis(
        self,
        caller: CallerContext,
        start: date,
        end: date,
        operator_name: Optional[str] = None,
    ) -> LossAnalysis:
        return loss_analysis(self.repo, self.guides.scope(caller), start, end, operator_name)
