from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from solarcrm.core.auth import AuthUser, get_current_user
from solarcrm.core.config import get_settings
from solarcrm.documents.api import lead_documents_router, router as documents_router
from solarcrm.leads.api import router as leads_router
from solarcrm.metrics import generate_metrics_payload, metrics_content_type
from solarcrm.timeline.api import admin_router as timeline_admin_router
from solarcrm.timeline.api import catalog_router as step_catalog_router
from solarcrm.timeline.api import router as timeline_router

router = APIRouter()
router.include_router(leads_router)
router.include_router(timeline_router)
router.include_router(timeline_admin_router)
router.include_router(step_catalog_router)
router.include_router(lead_documents_router)
router.include_router(documents_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not {"admin", "system.metrics.read"} & set(user.roles):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="metrics are restricted to admins")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
