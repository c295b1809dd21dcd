"""
Glosa listing and dispute marking.

Glosas are written only by return ingestion; users may only mark them
as disputed.
"""

from typing import Optional
from uuid import UUID

import structlog

from tiss_claims.core.audit import AuditTrail
from tiss_claims.core.guide_store import GuideStore
from tiss_claims.db.repository import TissRepository
from tiss_claims.domain import CallerContext, GlosaView
from tiss_claims.errors import InvalidStateError, NotFoundError, PreconditionFailed
from tiss_claims.utils.dates import utc_now

logger = structlog.get_logger()


class GlosaService:
    def __init__(self, repo: TissRepository, audit: AuditTrail, guides: GuideStore):
        self.repo = repo
        self.audit = audit
        self.guides = guides

    def list_glosas(
        self,
        caller: CallerContext,
        clinic_id: Optional[str] = None,
        guide_id: Optional[UUID] = None,
        return_id: Optional[UUID] = None,
        disputed: Optional[bool] = None,
        include_superseded: bool = False,
    ) -> list[GlosaView]:
        """
        Glosas visible to the caller, optionally narrowed to one clinic.

        Glosas retired by a newer return are left out unless asked for.
        Asking for another clinic is a 404 unless the caller has the super role.
        """
        scope = self.guides.scope(caller)
        if clinic_id is not None:
            if scope is not None and clinic_id != scope:
                raise NotFoundError("Clinic", clinic_id)
            scope = clinic_id
        with self.repo.begin() as conn:
            return self.repo.list_glosas(
                conn,
                scope,
                guide_id=guide_id,
                return_id=return_id,
                disputed=disputed,
                include_superseded=include_superseded,
            )

    def dispute(self, caller: CallerContext, glosa_id: UUID) -> GlosaView:
        """
        Mark a glosa as disputed.

        Marking an already disputed glosa returns it unchanged.

        Raises:
            NotFoundError: glosa not visible to the caller
            InvalidStateError: a newer return already settled the guide
            PreconditionFailed: glosa cannot be appealed or its deadline passed
        """
        with self.audit.failures("glosa", glosa_id, "dispute", caller):
            with self.repo.begin() as conn:
                glosa = self.repo.get_glosa(conn, glosa_id, self.guides.scope(caller))
                if glosa is None:
                    raise NotFoundError("Glosa", glosa_id)
                if glosa.is_superseded:
                    raise InvalidStateError(
                        f"Glosa {glosa_id} was superseded by return {glosa.superseded_by_return_id}",
                        current_state="SUPERSEDED",
                        details={"superseded_at": glosa.superseded_at.isoformat()},
                    )
                if not glosa.disputed:
                    if not glosa.can_appeal:
                        raise PreconditionFailed(
                            f"Glosa {glosa_id} cannot be appealed",
                            {"denial_code": glosa.denial_code},
                        )
                    now = utc_now()
                    if glosa.appeal_deadline and now.date() > glosa.appeal_deadline:
                        raise PreconditionFailed(
                            f"Appeal deadline for glosa {glosa_id} passed on {glosa.appeal_deadline.isoformat()}",
                            {"appeal_deadline": glosa.appeal_deadline.isoformat()},
                        )
                    self.repo.update_glosa(conn, glosa_id, {
                        "disputed": True,
                        "disputed_at": now,
                        "disputed_by": caller.user_id,
                    })
                    self.audit.record(conn, "glosa", glosa_id, "dispute", caller, clinic_id=glosa.clinic_id)
                    logger.info("glosa_disputed", glosa_id=str(glosa_id), user_id=caller.user_id)

                views = self.repo.list_glosas(conn, None, guide_id=glosa.guide_id, return_id=glosa.return_id)
                return next(v for v in views if v.id == glosa_id)
