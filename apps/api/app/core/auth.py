from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings
from app.core.context import get_request_context


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)


ANONYMOUS = AuthUser(sub="", roles=[])


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""


def decode_user(token: str) -> AuthUser:
    """Decode a bearer token. Missing or undecodable tokens give ``ANONYMOUS``."""
    if not token:
        return ANONYMOUS

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return ANONYMOUS

    subject = str(payload.get("email") or payload.get("sub") or "").strip()
    roles = payload.get("roles", [])
    if isinstance(roles, str):
        roles = [roles]
    if not isinstance(roles, list):
        roles = []
    return AuthUser(sub=subject, roles=[str(role) for role in roles])


async def get_current_user(request: Request) -> AuthUser:
    user = decode_user(bearer_token(request))
    context = get_request_context(request)
    if context is not None and user.sub:
        context.user_id = user.sub
        context.roles = list(user.roles)
    return user
