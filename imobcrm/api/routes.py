from fastapi import APIRouter, Depends
from fastapi.responses import Response

from imobcrm.core.config import get_settings
from imobcrm.core.errors import ForbiddenError, NotFoundError
from imobcrm.crm.api import (
    audit_router,
    get_principal,
    leads_router,
    public_router,
    statuses_router,
    tenants_router,
    users_router,
)
from imobcrm.crm.schemas import PrincipalRead
from imobcrm.metrics import generate_metrics_payload, metrics_content_type
from imobcrm.security.context import Principal

router = APIRouter()
router.include_router(leads_router)
router.include_router(statuses_router)
router.include_router(audit_router)
router.include_router(tenants_router)
router.include_router(users_router)
router.include_router(public_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", response_model=PrincipalRead, tags=["auth"])
def me(principal: Principal = Depends(get_principal)) -> PrincipalRead:
    return PrincipalRead(
        user_id=principal.user_id,
        role=principal.role,
        tenant_id=principal.tenant_id,
        team_id=principal.team_id,
    )


@router.get("/metrics", tags=["system"])
def metrics(principal: Principal = Depends(get_principal)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("not found")
    if not principal.is_platform_admin:
        raise ForbiddenError("metrics are restricted to platform administrators")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
