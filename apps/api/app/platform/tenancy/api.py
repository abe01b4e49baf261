from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.core.errors import SalesError
from app.crm.api import sales_error_response
from app.platform.tenancy.schemas import OrganizationCreate, OrganizationRead, UserCreate, UserRead
from app.platform.tenancy.service import TenancyService

router = APIRouter(prefix="/api/platform", tags=["platform.tenancy"])
tenancy_service = TenancyService()

PLATFORM_ADMIN_ROLE = "platform.admin"


def require_platform_admin(user: AuthUser) -> None:
    if PLATFORM_ADMIN_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {PLATFORM_ADMIN_ROLE}")


@router.post("/organizations", response_model=OrganizationRead, status_code=status.HTTP_201_CREATED)
def create_organization(
    request: Request,
    dto: OrganizationCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> OrganizationRead | JSONResponse:
    require_platform_admin(user)
    try:
        return tenancy_service.create_organization(db, dto)
    except SalesError as exc:
        return sales_error_response(request, exc, "platform_organization_create_failed")


@router.post(
    "/organizations/{organization_id}/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
)
def create_user(
    request: Request,
    organization_id: str,
    dto: UserCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    require_platform_admin(user)
    try:
        return tenancy_service.create_user(db, organization_id, dto)
    except SalesError as exc:
        return sales_error_response(request, exc, "platform_user_create_failed")
