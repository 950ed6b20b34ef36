"""API key persistence.

ApiKeyStore is the contract the authenticator and the key management
endpoints depend on; SqlApiKeyStore is the PostgreSQL implementation using
the session_factory callable pattern shared with DealRepository.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Sequence
from datetime import datetime
from typing import Protocol

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm.auth.principal import ApiKeyRecord, KeyOwner, Role
from src.crm.models.user import ApiKey, User

logger = structlog.get_logger(__name__)


class ApiKeyStore(Protocol):
    async def find_active(self, key_prefix: str, key_hash: str) -> ApiKeyRecord | None: ...

    async def get_owner(self, user_id: str) -> KeyOwner | None: ...

    async def touch_last_used(self, key_id: str, used_at: datetime) -> None: ...

    async def create(
        self,
        user_id: str,
        name: str,
        key_prefix: str,
        key_hash: str,
        permissions: Sequence[str] = (),
        expires_at: datetime | None = None,
    ) -> ApiKeyRecord: ...

    async def list_for_user(self, user_id: str) -> list[ApiKeyRecord]: ...

    async def revoke(self, key_id: str) -> bool: ...


def _model_to_record(model: ApiKey) -> ApiKeyRecord:
    """Convert ApiKey model to an immutable ApiKeyRecord."""
    return ApiKeyRecord(
        id=str(model.id),
        user_id=str(model.user_id),
        name=model.name,
        key_prefix=model.key_prefix,
        key_hash=model.key_hash,
        is_active=model.is_active,
        expires_at=model.expires_at,
        last_used_at=model.last_used_at,
        created_at=model.created_at,
        permissions=tuple(model.permissions or ()),
    )


class SqlApiKeyStore:
    """ApiKeyStore backed by the api_keys and users tables.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def find_active(self, key_prefix: str, key_hash: str) -> ApiKeyRecord | None:
        """Return the active key whose prefix and digest both match, if any."""
        async for session in self._session_factory():
            stmt = (
                select(ApiKey)
                .where(
                    ApiKey.key_prefix == key_prefix,
                    ApiKey.key_hash == key_hash,
                    ApiKey.is_active.is_(True),
                )
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_record(model) if model is not None else None

    async def get_owner(self, user_id: str) -> KeyOwner | None:
        async for session in self._session_factory():
            user = await session.get(User, uuid.UUID(user_id))
            if user is None:
                return None
            return KeyOwner(
                user_id=str(user.id),
                role=Role(user.role),
                email=user.email,
                is_active=user.is_active,
            )

    async def touch_last_used(self, key_id: str, used_at: datetime) -> None:
        """Advance last_used_at to ``used_at``.

        Never moves the timestamp backwards, so a retried or reordered write
        from an older request is a no-op.
        """
        async for session in self._session_factory():
            stmt = (
                update(ApiKey)
                .where(
                    ApiKey.id == uuid.UUID(key_id),
                    or_(ApiKey.last_used_at.is_(None), ApiKey.last_used_at < used_at),
                )
                .values(last_used_at=used_at)
            )
            await session.execute(stmt)
            await session.commit()

    async def create(
        self,
        user_id: str,
        name: str,
        key_prefix: str,
        key_hash: str,
        permissions: Sequence[str] = (),
        expires_at: datetime | None = None,
    ) -> ApiKeyRecord:
        async for session in self._session_factory():
            model = ApiKey(
                user_id=uuid.UUID(user_id),
                name=name,
                key_prefix=key_prefix,
                key_hash=key_hash,
                permissions=list(permissions),
                expires_at=expires_at,
                is_active=True,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("api_keys.created", key_id=str(model.id), user_id=user_id)
            return _model_to_record(model)

    async def list_for_user(self, user_id: str) -> list[ApiKeyRecord]:
        """All keys owned by ``user_id``, newest first, revoked ones included."""
        async for session in self._session_factory():
            stmt = (
                select(ApiKey)
                .where(ApiKey.user_id == uuid.UUID(user_id))
                .order_by(ApiKey.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_record(m) for m in result.scalars().all()]

    async def revoke(self, key_id: str) -> bool:
        """Deactivate a key. Returns False when no such key exists."""
        async for session in self._session_factory():
            stmt = (
                update(ApiKey)
                .where(ApiKey.id == uuid.UUID(key_id))
                .values(is_active=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            revoked = result.rowcount > 0
            if revoked:
                logger.info("api_keys.revoked", key_id=key_id)
            return revoked
