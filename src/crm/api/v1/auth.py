"""Authentication API endpoints.

Provides password login, token refresh, and current principal info.
Login is throttled per client address with the Redis fixed-window limiter
configured in the lifespan.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.crm.api.deps import get_current_principal
from src.crm.auth.errors import InvalidCredential
from src.crm.auth.principal import Principal
from src.crm.auth.user_store import UserRecord
from src.crm.config import get_settings
from src.crm.core.monitoring import login_attempts_total
from src.crm.core.security import (
    create_access_token,
    create_refresh_token,
    verify_password,
    verify_token,
)
from src.crm.schemas.auth import (
    LoginRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _get_user_store(request: Request) -> Any:
    """Retrieve the user store from app.state, 503 if not available."""
    store = getattr(request.app.state, "user_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="User store not initialized",
        )
    return store


def _issue_tokens(user: UserRecord) -> TokenResponse:
    settings = get_settings()
    token_data = {
        "sub": user.id,
        "email": user.email,
        "role": user.role.value,
    }
    return TokenResponse(
        access_token=create_access_token(token_data),
        refresh_token=create_refresh_token(token_data),
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, request: Request) -> TokenResponse:
    """Authenticate with email and password and return JWT tokens."""
    users = _get_user_store(request)
    limiter = getattr(request.app.state, "login_rate_limiter", None)
    client_ip = request.client.host if request.client else "unknown"

    if limiter is not None:
        verdict = await limiter.hit(client_ip)
        if not verdict.allowed:
            login_attempts_total.labels(outcome="throttled").inc()
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many login attempts, please try again later",
                headers={"Retry-After": str(verdict.retry_after)},
            )

    user = await users.get_by_email(body.email)
    if user is None or not user.is_active or not verify_password(body.password, user.hashed_password):
        login_attempts_total.labels(outcome="failed").inc()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    await users.record_login(user.id, datetime.now(timezone.utc))
    if limiter is not None:
        await limiter.reset(client_ip)

    login_attempts_total.labels(outcome="ok").inc()
    logger.info("auth.login", user_id=user.id, role=user.role.value)
    return _issue_tokens(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(body: TokenRefreshRequest, request: Request) -> TokenResponse:
    """Exchange a valid refresh token for a new token pair.

    The user is re-read so a deactivated account or a changed role takes
    effect at the next refresh.
    """
    payload = verify_token(body.refresh_token, token_type="refresh")
    users = _get_user_store(request)
    user = await users.get(payload["sub"])
    if user is None or not user.is_active:
        raise InvalidCredential("refresh for missing or inactive user")
    return _issue_tokens(user)


@router.get("/me", response_model=UserResponse)
async def get_me(principal: Principal = Depends(get_current_principal)) -> UserResponse:
    """Return the authenticated principal."""
    return UserResponse(
        id=principal.user_id,
        email=principal.email,
        role=principal.role.value,
        auth_method=principal.auth_method.value,
        api_key_id=principal.api_key_id,
    )
