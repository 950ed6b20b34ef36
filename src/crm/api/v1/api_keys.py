"""API key management endpoints.

Managers (admin, sales_manager) issue and revoke keys; any authenticated
user can list their own. The raw key appears exactly once, in the creation
response. Only its 12-character prefix and SHA-256 digest are stored.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from src.crm.api.deps import get_current_principal, require_manager
from src.crm.auth.principal import ApiKeyRecord, Principal
from src.crm.core.security import api_key_prefix, generate_api_key, hash_api_key
from src.crm.schemas.auth import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api-keys", tags=["api-keys"])


def _get_key_store(request: Request) -> Any:
    """Retrieve the API key store from app.state, 503 if not available."""
    store = getattr(request.app.state, "api_key_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API key store not initialized",
        )
    return store


def _record_to_response(record: ApiKeyRecord) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=record.id,
        name=record.name,
        key_prefix=record.key_prefix,
        permissions=list(record.permissions),
        is_active=record.is_active,
        expires_at=record.expires_at,
        last_used_at=record.last_used_at,
        created_at=record.created_at,
    )


@router.post("", response_model=ApiKeyCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    body: ApiKeyCreate,
    request: Request,
    principal: Principal = Depends(require_manager),
) -> ApiKeyCreatedResponse:
    """Issue a new API key owned by the caller.

    The raw key is returned only once at creation time. Store it securely.
    """
    store = _get_key_store(request)

    expires_at = body.expires_at
    if expires_at is not None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= datetime.now(timezone.utc):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="expires_at must be in the future",
            )

    raw_key = generate_api_key()
    record = await store.create(
        user_id=principal.user_id,
        name=body.name,
        key_prefix=api_key_prefix(raw_key),
        key_hash=hash_api_key(raw_key),
        permissions=body.permissions,
        expires_at=expires_at,
    )

    return ApiKeyCreatedResponse(**_record_to_response(record).model_dump(), key=raw_key)


@router.get("", response_model=list[ApiKeyResponse])
async def list_api_keys(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> list[ApiKeyResponse]:
    """List the caller's API keys, newest first."""
    store = _get_key_store(request)
    records = await store.list_for_user(principal.user_id)
    return [_record_to_response(r) for r in records]


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_api_key(
    key_id: uuid.UUID,
    request: Request,
    principal: Principal = Depends(require_manager),
) -> Response:
    """Revoke a key. Revoked keys stay listed but no longer authenticate."""
    store = _get_key_store(request)
    if not await store.revoke(str(key_id)):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"API key not found: {key_id}",
        )
    logger.info("api_keys.revoke_requested", key_id=str(key_id), by=principal.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
