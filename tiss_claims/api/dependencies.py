"""
Request-scoped dependencies: services and caller identity.

Identity comes from headers set by the upstream identity layer, which is
trusted; clinic scoping is enforced by the services.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from tiss_claims.domain import CallerContext
from tiss_claims.errors import PermissionDenied
from tiss_claims.services import TissServices


def get_services(request: Request) -> TissServices:
    return request.app.state.services


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_clinic_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> CallerContext:
    if not x_user_id or not x_clinic_id or not x_user_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity headers",
        )
    return CallerContext(user_id=x_user_id, clinic_id=x_clinic_id, role=x_user_role)


def require_submit_role(
    caller: CallerContext = Depends(get_caller),
    services: TissServices = Depends(get_services),
) -> CallerContext:
    """Only configured roles may generate files and submit batches."""
    allowed = set(services.config.api.submit_roles) | {services.config.api.super_role}
    if caller.role not in allowed:
        raise PermissionDenied(
            f"Role {caller.role} cannot submit batches",
            {"role": caller.role, "allowed": sorted(allowed)},
        )
    return caller
