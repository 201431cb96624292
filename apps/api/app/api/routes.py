from fastapi import APIRouter, Depends
from fastapi.responses import Response

from app.company.api import (
    companies_router,
    contacts_router,
    get_caller_context,
    my_projects_router,
    projects_router,
)
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.errors import ForbiddenError, NotFoundError, UnauthorizedError
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.security.context import CallerContext
from app.platform.security.policies import Role

router = APIRouter()
router.include_router(companies_router)
router.include_router(contacts_router)
router.include_router(projects_router)
router.include_router(my_projects_router)


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
def metrics(caller: CallerContext = Depends(get_caller_context)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("not found")
    if not caller.is_authenticated:
        raise UnauthorizedError("authentication required")
    if not caller.has_any_role(Role.ADMIN):
        raise ForbiddenError("missing role: ADMIN")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
