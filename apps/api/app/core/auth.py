import logging
from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


logger = logging.getLogger("app.auth")

ANONYMOUS_ROLES = ["guest"]


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""


def decode_claims(token: str) -> dict[str, Any] | None:
    """Verified claims of a portal token, or None when it is missing or invalid."""
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.warning("auth.token_rejected", extra={"error": str(exc)})
        return None


def _roles_from_claims(payload: dict[str, Any]) -> list[str]:
    roles = payload.get("roles")
    if isinstance(roles, list):
        return [str(role) for role in roles]
    # Portal tokens carry a single `role` claim (admin or client).
    role = payload.get("role")
    if isinstance(role, str) and role:
        return [role]
    return ["user"]


async def get_current_user(request: Request) -> AuthUser:
    payload = decode_claims(bearer_token(request))
    if payload is None:
        return AuthUser(sub="anonymous", roles=list(ANONYMOUS_ROLES))

    subject = str(payload.get("sub", "anonymous"))
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=_roles_from_claims(payload))
