"""
Return file registration.

Uploaded bytes go to blob storage; the Return row starts PENDING and is
picked up by the ingestion worker.
"""

import re
from typing import Optional
from uuid import UUID, uuid4

import structlog

from tiss_claims.core.audit import AuditTrail
from tiss_claims.core.guide_store import GuideStore
from tiss_claims.db.repository import TissRepository
from tiss_claims.domain import CallerContext, Return, ReturnCreate
from tiss_claims.errors import NotFoundError, ValidationError
from tiss_claims.storage import BlobStore
from tiss_claims.utils.dates import utc_now

logger = structlog.get_logger()

MAX_RETURN_BYTES = 20 * 1024 * 1024
_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class ReturnUploads:
    """Registers operator return files for processing."""

    def __init__(self, repo: TissRepository, audit: AuditTrail, guides: GuideStore, blobs: BlobStore):
        self.repo = repo
        self.audit = audit
        self.guides = guides
        self.blobs = blobs

    def upload(self, caller: CallerContext, data: bytes, file_name: Optional[str] = None) -> Return:
        """Store raw bytes and create a PENDING return."""
        if not data:
            raise ValidationError("Return file is empty")
        if len(data) > MAX_RETURN_BYTES:
            raise ValidationError(
                f"Return file exceeds {MAX_RETURN_BYTES} bytes",
                details={"file_size": len(data)},
            )

        return_id = uuid4()
        safe_name = _UNSAFE_NAME.sub("_", file_name or "return.dat").strip("_") or "return.dat"
        url = self.blobs.put(f"{caller.clinic_id}/returns/{return_id}/{safe_name}", data)
        return self.register(
            caller,
            ReturnCreate(file_url=url, file_name=file_name or safe_name, file_size=len(data)),
            return_id=return_id,
        )

    def register(
        self,
        caller: CallerContext,
        data: ReturnCreate,
        return_id: Optional[UUID] = None,
    ) -> Return:
        """Create a PENDING return for a file already in blob storage."""
        ret = Return(
            id=return_id or uuid4(),
            clinic_id=caller.clinic_id,
            file_url=data.file_url,
            file_name=data.file_name,
            file_size=data.file_size,
            uploaded_by=caller.user_id,
            created_at=utc_now(),
        )
        with self.audit.failures("return", ret.id, "upload", caller):
            with self.repo.begin() as conn:
                self.repo.insert_return(conn, ret)
                self.audit.record(conn, "return", ret.id, "upload", caller, file_name=ret.file_name)

        logger.info(
            "return_uploaded",
            return_id=str(ret.id),
            clinic_id=ret.clinic_id,
            file_name=ret.file_name,
            file_size=ret.file_size,
        )
        return ret

    def get_return(self, caller: CallerContext, return_id: UUID) -> Return:
        with self.repo.begin() as conn:
            ret = self.repo.get_return(conn, return_id, self.guides.scope(caller))
        if ret is None:
            raise NotFoundError("Return", return_id)
        return ret

    def list_returns(self, caller: CallerContext) -> list[Return]:
        with self.repo.begin() as conn:
            return self.repo.list_returns(conn, self.guides.scope(caller))
