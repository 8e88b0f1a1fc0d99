import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.clients.api import clients_router, intake_router, invitations_router, submissions_router
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import get_db
from app.metrics import generate_metrics_payload, metrics_content_type

logger = logging.getLogger("app.system")

METRICS_ROLES = frozenset({"admin", "system.metrics.read"})

router = APIRouter()
router.include_router(intake_router)
router.include_router(submissions_router)
router.include_router(clients_router)
router.include_router(invitations_router)


@router.get("/health", tags=["system"])
def health(db: Session = Depends(get_db)) -> dict[str, str]:
    settings = get_settings()
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.error("system.database_unreachable", extra={"error": str(exc)})
        database = "unavailable"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "identity_backend": settings.identity_backend,
        "environment": settings.app_env,
    }


@router.get("/api/portal/session", tags=["portal"])
async def portal_session(user: AuthUser = Depends(get_current_user)) -> dict[str, object]:
    """Who the bearer token belongs to, as the portal front end sees it."""
    roles = [role.lower() for role in user.roles]
    return {
        "sub": user.sub,
        "roles": roles,
        "authenticated": user.sub != "anonymous",
        "is_admin": "admin" in roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not METRICS_ROLES.intersection(role.lower() for role in user.roles):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
