"""
Glosa Risk Predictor.

Scores a candidate guide before submission. The probability of a glosa is

    p = 1 - (1 - base_rate) * prod(1 - weight_i * p_i)

where ``base_rate`` is the historical denial rate for the operator and
procedure, and each ``p_i`` is the denial probability of one detected issue
(operator rule, field completeness or value plausibility) scaled by its
category weight. Issues are independent, so any single strong issue pushes
the score up without the total ever exceeding 1.
"""

from datetime import date
from typing import Any, Optional, Sequence
from uuid import UUID

import structlog

from tiss_claims.config.models import RiskConfig
from tiss_claims.core.guide_store import GuideStore
from tiss_claims.core.validation import TUSS_LENGTH, validate_guide
from tiss_claims.db.repository import TissRepository
from tiss_claims.domain import (
    AutoFixResult,
    BatchRiskAnalysis,
    BatchRiskSummary,
    CallerContext,
    FieldChange,
    GuideRiskResult,
    IssueKind,
    PredictedIssue,
    RiskAssessment,
    RiskCandidate,
    RiskLevel,
)
from tiss_claims.errors import NotFoundError, PreconditionFailed
from tiss_claims.risk.normalize import (
    is_iso_date,
    is_valid_card,
    is_valid_cid,
    is_valid_crm,
    is_valid_registry,
    normalize_card,
    normalize_cid,
    normalize_crm,
    normalize_date,
    normalize_registry,
)
from tiss_claims.risk.rules import operator_key, rules_for
from tiss_claims.utils.dates import parse_loose_date, today

logger = structlog.get_logger()

# Probability that a malformed or missing field leads to a glosa
FIELD_ISSUE_PROBABILITY = 0.85
MISSING_OPTIONAL_PROBABILITY = 0.40
WHITESPACE_PROBABILITY = 0.05
VALUE_OUTLIER_PROBABILITY = 0.60
VALUE_ABOVE_RANGE_PROBABILITY = 0.30

# Formatting fixers in application order
FIXERS = (
    ("card_number", is_valid_card, normalize_card),
    ("cid_code", is_valid_cid, normalize_cid),
    ("provider_council_number", is_valid_crm, normalize_crm),
    ("execution_date", is_iso_date, normalize_date),
    ("operator_registry", is_valid_registry, normalize_registry),
)

# Identifier fields safe to trim; clinical and financial content is never touched
TRIMMABLE_FIELDS = (
    "guide_number",
    "patient_name",
    "card_number",
    "cid_code",
    "provider_council_number",
    "authorization_number",
    "execution_date",
    "operator_registry",
)

COUNCIL_REQUIRED_TYPES = frozenset({"SPSADT", "HONORARIUM"})


class GlosaRiskPredictor:
    """
    Pre-submission glosa scoring and formatting auto-fix.

    Usage:
        predictor = GlosaRiskPredictor(config.risk, repo)
        risk = predictor.analyze_glosa_risk(candidate, "UNIMED", clinic_id="c1")
        if risk.can_auto_fix:
            result = predictor.auto_fix_guide(candidate)
    """

    def __init__(
        self,
        config: Optional[RiskConfig] = None,
        repo: Optional[TissRepository] = None,
        guides: Optional[GuideStore] = None,
    ):
        self.config = config or RiskConfig()
        self.repo = repo
        self.guides = guides

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def analyze_glosa_risk(
        self,
        candidate: RiskCandidate,
        operator_name: str,
        clinic_id: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> RiskAssessment:
        """
        Score a candidate guide for an operator.

        Args:
            candidate: Guide fields as submitted
            operator_name: Operator the guide will be billed to
            clinic_id: Clinic whose settled history refines the base rate
            as_of: Reference date for date rules (defaults to today)

        Returns:
            RiskAssessment with probability, bucket and contributing reasons
        """
        as_of = as_of or today()
        base_rate = self.base_rate(operator_name, candidate.procedure_code, clinic_id)

        reasons: list[PredictedIssue] = []
        reasons.extend(self._rule_issues(candidate, operator_name, as_of))
        reasons.extend(self._completeness_issues(candidate, as_of))
        reasons.extend(self._value_issues(candidate, operator_name))
        if base_rate >= self.config.medium_threshold:
            reasons.append(PredictedIssue(
                field="procedure_code",
                code="HISTORICAL_DENIAL_RATE",
                message=f"{operator_name} denies {base_rate:.0%} of this procedure",
                kind=IssueKind.HISTORICAL,
                probability=base_rate,
            ))

        probability = self._combine(base_rate, reasons)
        total_value = max(candidate.total_value or 0, 0)
        assessment = RiskAssessment(
            risk_level=self.bucket(probability),
            probability=round(probability, 4),
            base_rate=round(base_rate, 4),
            estimated_loss=int(round(total_value * probability)),
            can_auto_fix=bool(reasons) and all(r.kind == IssueKind.FORMATTING for r in reasons),
            reasons=reasons,
            operator_name=operator_name,
        )

        logger.debug(
            "glosa_risk_analyzed",
            guide_number=candidate.guide_number,
            operator=operator_name,
            probability=assessment.probability,
            risk_level=assessment.risk_level.value,
            reasons=[r.code for r in reasons],
        )
        return assessment

    def analyze_guide(
        self,
        caller: CallerContext,
        guide_id: UUID,
        operator_name: Optional[str] = None,
    ) -> RiskAssessment:
        """Score a stored guide, billed to its batch operator unless overridden."""
        if self.repo is None or self.guides is None:
            raise RuntimeError("analyze_guide requires a repository and guide store")
        guide = self.guides.get_guide(caller, guide_id)
        operator = operator_name or guide.operator_name
        registry = None
        if guide.batch_id:
            with self.repo.begin() as conn:
                batch = self.repo.get_batch(conn, guide.batch_id)
            if batch is not None:
                operator = operator_name or batch.operator_name
                registry = batch.operator_registry
        candidate = RiskCandidate.from_guide(guide)
        candidate.operator_registry = registry
        return self.analyze_glosa_risk(candidate, operator or "UNKNOWN", clinic_id=guide.clinic_id)

    def analyze_batch(
        self,
        caller: CallerContext,
        batch_id: Optional[UUID] = None,
        guides: Optional[Sequence[RiskCandidate]] = None,
        operator_name: Optional[str] = None,
        auto_fix: bool = False,
        as_of: Optional[date] = None,
    ) -> BatchRiskAnalysis:
        """
        Validate and score every guide of a stored batch or an ad hoc list.

        With ``auto_fix``, guides whose issues are all formatting are
        corrected and scored again; the stored guides are not changed.
        A guide that fails to score is reported with its error and the
        rest of the batch carries on.

        Args:
            caller: Requesting user, scopes the batch to their clinic
            batch_id: Stored batch to analyze
            guides: Candidates to analyze when no batch is given
            operator_name: Operator override (required for ad hoc guides)
            auto_fix: Apply formatting corrections before the final score
            as_of: Reference date for date rules (defaults to today)

        Raises:
            NotFoundError: batch not visible to the caller
            PreconditionFailed: neither a batch nor guides were given
        """
        entries: list[tuple[Optional[UUID], RiskCandidate, Any]] = []
        clinic_id = caller.clinic_id
        if batch_id is not None:
            if self.repo is None or self.guides is None:
                raise RuntimeError("analyze_batch requires a repository and guide store")
            with self.repo.begin() as conn:
                batch = self.repo.get_batch(conn, batch_id, self.guides.scope(caller))
                if batch is None:
                    raise NotFoundError("Batch", batch_id)
                stored = self.repo.guides_in_batch(conn, batch_id)
            operator_name = operator_name or batch.operator_name
            clinic_id = batch.clinic_id
            for guide in stored:
                candidate = RiskCandidate.from_guide(guide)
                candidate.operator_registry = batch.operator_registry
                entries.append((guide.id, candidate, guide))
        elif guides is not None:
            if not operator_name:
                raise PreconditionFailed("operator_name is required when analyzing guides without a batch")
            entries = [(None, candidate, candidate) for candidate in guides]
        else:
            raise PreconditionFailed("Give a batch_id or a list of guides to analyze")

        results: list[GuideRiskResult] = []
        for guide_id, candidate, source in entries:
            try:
                results.append(self._analyze_entry(
                    guide_id, candidate, source, operator_name, clinic_id, auto_fix, as_of,
                ))
            except Exception as e:
                logger.error(
                    "batch_risk_guide_failed",
                    batch_id=str(batch_id) if batch_id else None,
                    guide_number=candidate.guide_number,
                    error=str(e),
                )
                results.append(GuideRiskResult(
                    guide_id=guide_id,
                    guide_number=candidate.guide_number,
                    success=False,
                    error=str(e),
                ))

        scored = [r for r in results if r.success]
        summary = BatchRiskSummary(
            total=len(results),
            successful=len(scored),
            failed=len(results) - len(scored),
            high_risk=sum(1 for r in scored if r.risk.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)),
            auto_fixed=sum(1 for r in scored if r.auto_fix_applied),
            total_estimated_loss=sum(r.risk.estimated_loss for r in scored),
        )
        logger.info(
            "batch_risk_analyzed",
            batch_id=str(batch_id) if batch_id else None,
            operator=operator_name,
            **summary.model_dump(),
        )
        return BatchRiskAnalysis(
            batch_id=batch_id,
            operator_name=operator_name,
            results=results,
            summary=summary,
        )

    def _analyze_entry(
        self,
        guide_id: Optional[UUID],
        candidate: RiskCandidate,
        source: Any,
        operator_name: str,
        clinic_id: Optional[str],
        auto_fix: bool,
        as_of: Optional[date],
    ) -> GuideRiskResult:
        findings = validate_guide(source, as_of)
        risk = self.analyze_glosa_risk(candidate, operator_name, clinic_id=clinic_id, as_of=as_of)
        result = GuideRiskResult(
            guide_id=guide_id,
            guide_number=candidate.guide_number,
            risk=risk,
            findings=findings,
        )
        if auto_fix and risk.can_auto_fix:
            fix = self.auto_fix_guide(candidate)
            if fix.changes:
                result.auto_fix_applied = True
                result.fixes = fix.changes
                result.risk = self.analyze_glosa_risk(fix.fixed, operator_name, clinic_id=clinic_id, as_of=as_of)
        return result

    def bucket(self, probability: float) -> RiskLevel:
        if probability >= self.config.critical_threshold:
            return RiskLevel.CRITICAL
        if probability >= self.config.high_threshold:
            return RiskLevel.HIGH
        if probability >= self.config.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def base_rate(
        self,
        operator_name: str,
        procedure_code: Optional[str] = None,
        clinic_id: Optional[str] = None,
    ) -> float:
        """
        Denial rate for the operator/procedure pair.

        The configured rate (pair, then operator, then default) is a prior
        that the clinic's settled guides pull towards their observed rate,
        weighted by ``history_min_samples`` pseudo-observations.
        """
        operator = operator_key(operator_name)
        rates = self.config.base_rates
        prior = self.config.default_base_rate
        if procedure_code and f"{operator}:{procedure_code.strip()}" in rates:
            prior = rates[f"{operator}:{procedure_code.strip()}"]
        elif operator in rates:
            prior = rates[operator]

        if self.repo is None or clinic_id is None:
            return prior

        with self.repo.begin() as conn:
            settled, denied = self.repo.denial_history(conn, clinic_id, operator_name, procedure_code)
            if settled < self.config.history_min_samples and procedure_code:
                settled, denied = self.repo.denial_history(conn, clinic_id, operator_name)
        if settled == 0:
            return prior

        weight = self.config.history_min_samples
        return (denied + prior * weight) / (settled + weight)

    # -------------------------------------------------------------------------
    # Auto-fix
    # -------------------------------------------------------------------------

    def auto_fix_guide(self, candidate: RiskCandidate) -> AutoFixResult:
        """
        Apply deterministic formatting corrections.

        Only identifier formatting changes: whitespace, card digits, CID-10
        dot, CRM layout, ISO dates and the ANS registry. Procedure code,
        values, quantity and clinical text are left as they are.
        """
        original = candidate.model_dump()
        fixed = dict(original)

        for field in TRIMMABLE_FIELDS:
            value = fixed.get(field)
            if isinstance(value, str) and value != value.strip():
                fixed[field] = value.strip() or None

        for field, is_valid, normalizer in FIXERS:
            value = fixed.get(field)
            if not value or is_valid(value):
                continue
            corrected = normalizer(value)
            if corrected is not None:
                fixed[field] = corrected

        changes = [
            FieldChange(field=field, old_value=original[field], new_value=fixed[field])
            for field in original
            if fixed[field] != original[field]
        ]
        if changes:
            logger.info(
                "guide_auto_fixed",
                guide_number=fixed.get("guide_number"),
                fields=[c.field for c in changes],
            )
        return AutoFixResult(fixed=RiskCandidate.model_validate(fixed), changes=changes)

    # -------------------------------------------------------------------------
    # Issue detection
    # -------------------------------------------------------------------------

    def _rule_issues(self, candidate: RiskCandidate, operator_name: str, as_of: date) -> list[PredictedIssue]:
        return [
            PredictedIssue(
                field=rule.field,
                code=rule.code,
                message=rule.description,
                kind=IssueKind.CONTENT,
                probability=rule.probability * self.config.weight_rule,
            )
            for rule in rules_for(operator_name)
            if rule.check(candidate, as_of)
        ]

    def _completeness_issues(self, candidate: RiskCandidate, as_of: date) -> list[PredictedIssue]:
        issues: list[PredictedIssue] = []
        weight = self.config.weight_completeness
        guide_type = (candidate.guide_type or "CONSULTATION").upper()

        def content(field: str, code: str, message: str, probability: float = FIELD_ISSUE_PROBABILITY) -> None:
            issues.append(PredictedIssue(
                field=field, code=code, message=message,
                kind=IssueKind.CONTENT, probability=probability * weight,
            ))

        def formatting(field: str, code: str, message: str, suggestion: str) -> None:
            issues.append(PredictedIssue(
                field=field, code=code, message=message,
                kind=IssueKind.FORMATTING, probability=FIELD_ISSUE_PROBABILITY * weight,
                suggestion=suggestion,
            ))

        def check_format(field: str, label: str, value: Optional[str], required: bool) -> None:
            stripped = (value or "").strip()
            if not stripped:
                if required:
                    content(field, f"MISSING_{field.upper()}", f"{label} is missing")
                return
            for name, is_valid, normalizer in FIXERS:
                if name != field:
                    continue
                if is_valid(stripped):
                    break
                corrected = normalizer(stripped)
                if corrected is None:
                    content(field, f"INVALID_{field.upper()}", f"{label} '{stripped}' is malformed")
                else:
                    formatting(field, f"{field.upper()}_FORMAT", f"{label} '{stripped}' is not in standard form", corrected)
                break

        check_format("card_number", "Card number", candidate.card_number, required=True)
        check_format("cid_code", "CID-10 code", candidate.cid_code, required=False)
        check_format(
            "provider_council_number", "Provider CRM", candidate.provider_council_number,
            required=guide_type in COUNCIL_REQUIRED_TYPES,
        )
        check_format("execution_date", "Execution date", candidate.execution_date, required=True)
        check_format("operator_registry", "Operator registry", candidate.operator_registry, required=False)

        if not (candidate.cid_code or "").strip():
            content("cid_code", "MISSING_CID_CODE", "CID-10 code is missing", MISSING_OPTIONAL_PROBABILITY)

        executed = parse_loose_date(candidate.execution_date) if candidate.execution_date else None
        if executed is not None and executed > as_of:
            content("execution_date", "FUTURE_DATE", f"Execution date {executed.isoformat()} is in the future")

        procedure = (candidate.procedure_code or "").strip()
        if not procedure:
            content("procedure_code", "MISSING_PROCEDURE_CODE", "Procedure code is missing")
        elif not (procedure.isdigit() and len(procedure) == TUSS_LENGTH):
            content("procedure_code", "INVALID_TUSS_CODE", f"Procedure code '{procedure}' is not an 8-digit TUSS code")

        if guide_type == "CONSULTATION" and not (candidate.patient_name or "").strip():
            content("patient_name", "MISSING_PATIENT_NAME", "Patient name is missing")
        if guide_type == "INTERNMENT" and not (candidate.authorization_number or "").strip():
            content("authorization_number", "MISSING_AUTHORIZATION_NUMBER", "Authorization number is missing")

        if candidate.total_value is None or candidate.total_value <= 0:
            content("total_value", "INVALID_TOTAL_VALUE", "Total value must be greater than zero")
        elif candidate.unit_value is not None and candidate.procedure_quantity:
            expected = candidate.unit_value * candidate.procedure_quantity
            if expected != candidate.total_value:
                content(
                    "total_value", "VALUE_MISMATCH",
                    f"Unit value x quantity ({expected}) differs from total ({candidate.total_value})",
                )

        flagged = {i.field for i in issues}
        for field in TRIMMABLE_FIELDS:
            value = getattr(candidate, field)
            if isinstance(value, str) and value != value.strip() and field not in flagged:
                issues.append(PredictedIssue(
                    field=field, code="WHITESPACE", message=f"{field} has surrounding whitespace",
                    kind=IssueKind.FORMATTING, probability=WHITESPACE_PROBABILITY * weight,
                    suggestion=value.strip(),
                ))
        return issues

    def _value_issues(self, candidate: RiskCandidate, operator_name: str) -> list[PredictedIssue]:
        procedure = (candidate.procedure_code or "").strip()
        total = candidate.total_value
        if not procedure or not total or total <= 0:
            return []
        ranges = self.config.value_ranges
        typical = ranges.get(f"{operator_key(operator_name)}:{procedure}") or ranges.get(procedure)
        if typical is None:
            return []

        factor = self.config.value_outlier_factor
        weight = self.config.weight_value
        if total > typical.max_value * factor or total < typical.min_value / factor:
            return [PredictedIssue(
                field="total_value",
                code="VALUE_OUTLIER",
                message=(
                    f"Value {total} is far outside the typical range "
                    f"{typical.min_value}-{typical.max_value} for procedure {procedure}"
                ),
                kind=IssueKind.CONTENT,
                probability=VALUE_OUTLIER_PROBABILITY * weight,
            )]
        if total > typical.max_value:
            return [PredictedIssue(
                field="total_value",
                code="VALUE_ABOVE_RANGE",
                message=f"Value {total} is above the typical maximum {typical.max_value} for procedure {procedure}",
                kind=IssueKind.CONTENT,
                probability=VALUE_ABOVE_RANGE_PROBABILITY * weight,
            )]
        return []

    @staticmethod
    def _combine(base_rate: float, reasons: list[PredictedIssue]) -> float:
        keep = 1.0 - base_rate
        for reason in reasons:
            if reason.kind == IssueKind.HISTORICAL:
                continue
            keep *= 1.0 - reason.probability
        return min(max(1.0 - keep, 0.0), 1.0)
