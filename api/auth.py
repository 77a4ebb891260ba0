"""Request authentication for API routes.

``get_current_user`` resolves the caller from a Supabase access token in
the ``Authorization: Bearer`` header. With ``DEV_MODE`` enabled the caller
is the fixed development user. Outside production the literal token
``dev-mode`` also selects that user.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.shared.logger import get_logger
from api.shared.settings import get_settings
from api.store_adapter import get_store

logger = get_logger(__name__)

DEV_TOKEN = "dev-mode"

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthUser:
    id: str
    email: str | None = None
    user_metadata: dict[str, Any] = field(default_factory=dict)
    is_dev: bool = False


def _dev_user() -> AuthUser:
    settings = get_settings()
    return AuthUser(id=settings.dev_user_id, email="dev@localhost", is_dev=True)


def resolve_user(credentials: HTTPAuthorizationCredentials | None) -> AuthUser | None:
    """Resolve the caller, or ``None`` when unauthenticated."""
    settings = get_settings()
    if settings.dev_mode:
        return _dev_user()

    if credentials is None or not credentials.credentials:
        return None

    token = credentials.credentials
    if token == DEV_TOKEN:
        if settings.is_production:
            logger.warning("Rejected dev-mode token in production")
            return None
        return _dev_user()

    user = get_store().get_user_for_token(token)
    if not user:
        return None
    return AuthUser(
        id=user["id"],
        email=user.get("email"),
        user_metadata=user.get("user_metadata") or {},
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthUser:
    """FastAPI dependency: the authenticated caller, or 401."""
    user = resolve_user(credentials)
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthUser | None:
    """FastAPI dependency: the caller if authenticated, else ``None``."""
    return resolve_user(credentials)
