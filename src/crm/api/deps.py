"""FastAPI dependency injection for authentication and authorization.

get_current_principal() resolves every protected request to an immutable
Principal: a Bearer JWT in Authorization is tried first, then the API key
header. Failures raise AuthenticationError subclasses, which the handlers
in src.crm.api.errors turn into ``{"error": ...}`` responses before any
endpoint code runs.
"""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any

import structlog
from fastapi import Depends, HTTPException, Request, status

from src.crm.auth.authenticator import ApiKeyAuthenticator, describe
from src.crm.auth.errors import (
    AuthenticationUnavailable,
    InvalidCredential,
    PermissionDenied,
)
from src.crm.auth.principal import MANAGER_ROLES, AuthMethod, Principal, Role
from src.crm.config import get_settings
from src.crm.core.security import verify_token

logger = structlog.get_logger(__name__)


def get_authenticator(request: Request) -> ApiKeyAuthenticator:
    """ApiKeyAuthenticator from app.state (set in the lifespan)."""
    authenticator = getattr(request.app.state, "api_key_authenticator", None)
    if authenticator is None:
        raise AuthenticationUnavailable("api key authenticator not initialized")
    return authenticator


def _principal_from_jwt(token: str) -> Principal:
    payload = verify_token(token, token_type="access")
    try:
        role = Role(payload.get("role"))
    except ValueError as exc:
        raise InvalidCredential(f"jwt carries unknown role {payload.get('role')!r}") from exc
    return Principal(
        user_id=str(payload["sub"]),
        role=role,
        auth_method=AuthMethod.JWT,
        email=payload.get("email"),
    )


async def get_current_principal(request: Request) -> Principal:
    """Authenticate the request from a Bearer JWT or the API key header.

    Raises:
        MissingCredential / InvalidCredential / ExpiredCredential (401)
        AuthenticationUnavailable (500): key store unreachable.
    """
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return _principal_from_jwt(auth_header[7:])

    settings = get_settings()
    raw_key = request.headers.get(settings.API_KEY_HEADER)
    result = await get_authenticator(request).authenticate(raw_key)
    logger.debug("auth.api_key_accepted", **describe(result))
    return result.principal


def require_roles(
    *roles: Role,
) -> Callable[..., Coroutine[Any, Any, Principal]]:
    """Dependency factory: the principal must hold one of ``roles``."""
    allowed = tuple(roles)

    async def _check(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            logger.info(
                "auth.permission_denied",
                user_id=principal.user_id,
                role=principal.role.value,
                required=[r.value for r in allowed],
            )
            raise PermissionDenied(tuple(r.value for r in allowed), principal.role.value)
        return principal

    return _check


require_manager = require_roles(*MANAGER_ROLES)


def get_deal_repository(request: Request) -> Any:
    """Retrieve DealRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "deal_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal management not initialized",
        )
    return repo
