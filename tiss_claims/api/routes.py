"""
HTTP routes.

Handlers are thin: they resolve the caller, call one service operation and
return its model. Engine errors are mapped to status codes in ``app.py``.
"""

from datetime import date
from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from tiss_claims import __version__
from tiss_claims.api.dependencies import get_caller, get_services, require_submit_role
from tiss_claims.api.schemas import (
    BatchRiskRequest,
    GuideIdsRequest,
    HealthResponse,
    RiskAnalyzeRequest,
    RiskAnalyzeResponse,
    ValidationReport,
)
from tiss_claims.domain import (
    Batch,
    BatchCreate,
    BatchRiskAnalysis,
    BatchStatus,
    BatchSummary,
    CallerContext,
    GlosaView,
    Guide,
    GuideCreate,
    GuideStatus,
    GuideUpdate,
    Return,
    ReturnStatusView,
    RiskAssessment,
    Severity,
    SubmissionMeta,
    ValidationFinding,
)
from tiss_claims.errors import InvalidStateError
from tiss_claims.reports import LossAnalysis
from tiss_claims.services import TissServices

logger = structlog.get_logger()

router = APIRouter()


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse)
def health(services: TissServices = Depends(get_services)) -> HealthResponse:
    try:
        with services.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.warning("health_database_unavailable", error=str(e))
        database = "unavailable"
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=__version__,
        database=database,
    )


# -----------------------------------------------------------------------------
# Guides
# -----------------------------------------------------------------------------


@router.post("/guides", response_model=Guide, status_code=status.HTTP_201_CREATED)
def create_guide(
    body: GuideCreate,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> Guide:
    return services.guides.create_guide(caller, body)


@router.get("/guides", response_model=list[Guide])
def list_guides(
    status_filter: Optional[GuideStatus] = Query(None, alias="status"),
    batch_id: Optional[UUID] = None,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> list[Guide]:
    return services.guides.list_guides(caller, status=status_filter, batch_id=batch_id)


@router.get("/guides/{guide_id}", response_model=Guide)
def get_guide(
    guide_id: UUID,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> Guide:
    return services.guides.get_guide(caller, guide_id)


@router.patch("/guides/{guide_id}", response_model=Guide)
def update_guide(
    guide_id: UUID,
    body: GuideUpdate,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> Guide:
    return services.guides.update_guide(caller, guide_id, body)


@router.get("/guides/{guide_id}/risk", response_model=RiskAssessment)
def guide_risk(
    guide_id: UUID,
    operator_name: Optional[str] = None,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> RiskAssessment:
    return services.risk.analyze_guide(caller, guide_id, operator_name)


# -----------------------------------------------------------------------------
# Batches
# -----------------------------------------------------------------------------


@router.post("/batches", response_model=Batch, status_code=status.HTTP_201_CREATED)
def create_batch(
    body: BatchCreate,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> Batch:
    return services.batches.create_batch(caller, body)


@router.get("/batches", response_model=list[Batch])
def list_batches(
    status_filter: Optional[BatchStatus] = Query(None, alias="status"),
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> list[Batch]:
    return services.batches.list_batches(caller, status_filter)


@router.get("/batches/{batch_id}", response_model=BatchSummary)
def get_batch(
    batch_id: UUID,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> BatchSummary:
    return services.batches.get_summary(caller, batch_id)


@router.post("/batches/{batch_id}/guides", response_model=BatchSummary)
def add_guides(
    batch_id: UUID,
    body: GuideIdsRequest,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> BatchSummary:
    return services.batches.add_guides(caller, batch_id, body.guide_ids)


@router.delete("/batches/{batch_id}/guides", response_model=BatchSummary)
def remove_guides(
    batch_id: UUID,
    body: GuideIdsRequest,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> BatchSummary:
    return services.batches.remove_guides(caller, batch_id, body.guide_ids)


@router.post("/batches/{batch_id}/validate", response_model=ValidationReport)
def validate_batch(
    batch_id: UUID,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> ValidationReport:
    findings = services.batches.validate(caller, batch_id)
    batch = services.batches.get_batch(caller, batch_id)
    errors = sum(1 for f in findings if f.severity == Severity.ERROR)
    return ValidationReport(
        batch_id=batch_id,
        status=batch.status,
        valid=errors == 0,
        errors=errors,
        warnings=len(findings) - errors,
        findings=findings,
    )


@router.get("/batches/{batch_id}/errors", response_model=list[ValidationFinding])
def batch_errors(
    batch_id: UUID,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> list[ValidationFinding]:
    return services.batches.batch_errors(caller, batch_id)


@router.get("/batches/{batch_id}/risk", response_model=BatchRiskAnalysis)
def batch_risk(
    batch_id: UUID,
    operator_name: Optional[str] = None,
    auto_fix: bool = False,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> BatchRiskAnalysis:
    return services.risk.analyze_batch(caller, batch_id, operator_name=operator_name, auto_fix=auto_fix)


@router.post("/batches/{batch_id}/generate-file", response_model=Batch)
def generate_file(
    batch_id: UUID,
    caller: CallerContext = Depends(require_submit_role),
    services: TissServices = Depends(get_services),
) -> Batch:
    return services.batches.generate_file(caller, batch_id)


@router.post("/batches/{batch_id}/submit", response_model=Batch)
def submit_batch(
    batch_id: UUID,
    body: Optional[SubmissionMeta] = Body(None),
    caller: CallerContext = Depends(require_submit_role),
    services: TissServices = Depends(get_services),
):
    try:
        return services.batches.submit(caller, batch_id, body)
    except InvalidStateError as e:
        # Re-submission is reported as a bad request on this endpoint
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=e.to_dict())


# -----------------------------------------------------------------------------
# Returns
# -----------------------------------------------------------------------------


@router.post("/returns", response_model=Return, status_code=status.HTTP_202_ACCEPTED)
async def upload_return(
    request: Request,
    background_tasks: BackgroundTasks,
    file_name: Optional[str] = Query(None, max_length=255),
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> Return:
    """Upload raw return bytes; processing is scheduled after the response."""
    data = await request.body()
    ret = await run_in_threadpool(services.uploads.upload, caller, data, file_name)
    if services.config.api.process_on_upload:
        background_tasks.add_task(services.worker.process, ret.id)
    return ret


@router.get("/returns", response_model=list[Return])
def list_returns(
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> list[Return]:
    return services.uploads.list_returns(caller)


@router.get("/returns/{return_id}/status", response_model=ReturnStatusView)
def return_status(
    return_id: UUID,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> ReturnStatusView:
    return services.worker.status(caller, return_id)


@router.post("/returns/{return_id}/process", response_model=ReturnStatusView)
def process_return(
    return_id: UUID,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> ReturnStatusView:
    return ReturnStatusView.from_return(services.worker.process(return_id, caller))


@router.post("/returns/{return_id}/requeue", response_model=ReturnStatusView)
def requeue_return(
    return_id: UUID,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> ReturnStatusView:
    return ReturnStatusView.from_return(services.worker.requeue(caller, return_id))


# -----------------------------------------------------------------------------
# Glosas
# -----------------------------------------------------------------------------


@router.get("/glosas", response_model=list[GlosaView])
def list_glosas(
    clinic_id: Optional[str] = None,
    guide_id: Optional[UUID] = None,
    return_id: Optional[UUID] = None,
    disputed: Optional[bool] = None,
    include_superseded: bool = False,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> list[GlosaView]:
    return services.glosas.list_glosas(
        caller,
        clinic_id=clinic_id,
        guide_id=guide_id,
        return_id=return_id,
        disputed=disputed,
        include_superseded=include_superseded,
    )


@router.post("/glosas/{glosa_id}/dispute", response_model=GlosaView)
def dispute_glosa(
    glosa_id: UUID,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> GlosaView:
    return services.glosas.dispute(caller, glosa_id)


# -----------------------------------------------------------------------------
# Risk and reports
# -----------------------------------------------------------------------------


@router.post("/risk/analyze", response_model=RiskAnalyzeResponse)
def analyze_risk(
    body: RiskAnalyzeRequest,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> RiskAnalyzeResponse:
    risk = services.risk.analyze_glosa_risk(body.guide, body.operator_name, clinic_id=caller.clinic_id)
    response = RiskAnalyzeResponse(risk=risk)
    if body.auto_fix:
        result = services.risk.auto_fix_guide(body.guide)
        response.fixed_guide = result.fixed
        response.applied_fixes = result.changes
        response.risk_after_fix = services.risk.analyze_glosa_risk(
            result.fixed, body.operator_name, clinic_id=caller.clinic_id
        )
    return response


@router.post("/risk/analyze-batch", response_model=BatchRiskAnalysis)
def analyze_batch_risk(
    body: BatchRiskRequest,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> BatchRiskAnalysis:
    return services.risk.analyze_batch(
        caller,
        batch_id=body.batch_id,
        guides=body.guides,
        operator_name=body.operator_name,
        auto_fix=body.auto_fix,
    )


@router.get("/reports/loss-analysis", response_model=LossAnalysis)
def loss_analysis(
    start_date: date,
    end_date: date,
    operator_name: Optional[str] = None,
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> LossAnalysis:
    return services.reports.loss_analysis(caller, start_date, end_date, operator_name)
