"""User lookups needed by login, token refresh and the operator script."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm.auth.principal import Role
from src.crm.models.user import User

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: str
    hashed_password: str
    first_name: str
    last_name: str
    role: Role
    is_active: bool = True
    last_login_at: datetime | None = None
    created_at: datetime | None = None


def _model_to_user(model: User) -> UserRecord:
    return UserRecord(
        id=str(model.id),
        email=model.email,
        hashed_password=model.hashed_password,
        first_name=model.first_name,
        last_name=model.last_name,
        role=Role(model.role),
        is_active=model.is_active,
        last_login_at=model.last_login_at,
        created_at=model.created_at,
    )


class SqlUserStore:
    """User persistence.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: str) -> UserRecord | None:
        async for session in self._session_factory():
            model = await session.get(User, uuid.UUID(user_id))
            return _model_to_user(model) if model is not None else None

    async def get_by_email(self, email: str) -> UserRecord | None:
        """Case-insensitive email lookup."""
        async for session in self._session_factory():
            stmt = select(User).where(func.lower(User.email) == email.lower())
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_user(model) if model is not None else None

    async def record_login(self, user_id: str, at: datetime) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(User).where(User.id == uuid.UUID(user_id)).values(last_login_at=at)
            )
            await session.commit()

    async def create(
        self,
        email: str,
        hashed_password: str,
        first_name: str,
        last_name: str,
        role: Role = Role.SALES_REP,
    ) -> UserRecord:
        async for session in self._session_factory():
            model = User(
                email=email.lower(),
                hashed_password=hashed_password,
                first_name=first_name,
                last_name=last_name,
                role=role,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("users.created", user_id=str(model.id), role=role.value)
            return _model_to_user(model)
