"""Shared test fixtures and in-memory test doubles.

Provides:
- InMemoryApiKeyStore / InMemoryUserStore / InMemoryDealRepository: stores
  with the same async interface as the SQL implementations
- FakeRedis: the handful of commands the login rate limiter uses
- build_app(): minimal FastAPI app with the v1 router and auth handlers,
  stores injected on app.state the way the lifespan does it
- api: fixture bundling the app, its stores and an httpx AsyncClient
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import replace
from datetime import date, datetime, timezone
from types import SimpleNamespace
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from tenacity import wait_none

from src.crm.api.errors import register_exception_handlers
from src.crm.api.v1.router import router as v1_router
from src.crm.auth.authenticator import ApiKeyAuthenticator, LastUsedRecorder
from src.crm.auth.principal import ApiKeyRecord, AuthMethod, KeyOwner, Principal, Role
from src.crm.auth.user_store import UserRecord
from src.crm.core.security import api_key_prefix, hash_api_key, hash_password
from src.crm.deals.repository import DealNotFoundError, close_date_after_move
from src.crm.deals.schemas import DealCreate, DealRead, DealStage, DealUpdate


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── In-Memory Test Doubles ───────────────────────────────────────────────────


class InMemoryApiKeyStore:
    """In-memory ApiKeyStore for testing without database."""

    def __init__(self) -> None:
        self.keys: dict[str, ApiKeyRecord] = {}
        self.owners: dict[str, KeyOwner] = {}
        self.touches: list[tuple[str, datetime]] = []
        self.fail_lookups = False
        self.touch_failures_remaining = 0

    def add_owner(self, role: Role = Role.SALES_REP, is_active: bool = True) -> KeyOwner:
        user_id = str(uuid.uuid4())
        owner = KeyOwner(
            user_id=user_id,
            role=role,
            email=f"{role.value}-{user_id[:8]}@example.com",
            is_active=is_active,
        )
        self.owners[user_id] = owner
        return owner

    def add_key(
        self,
        raw_key: str,
        user_id: str,
        is_active: bool = True,
        expires_at: datetime | None = None,
        name: str = "test key",
    ) -> ApiKeyRecord:
        record = ApiKeyRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            key_prefix=api_key_prefix(raw_key),
            key_hash=hash_api_key(raw_key),
            is_active=is_active,
            expires_at=expires_at,
            created_at=utcnow(),
        )
        self.keys[record.id] = record
        return record

    async def find_active(self, key_prefix: str, key_hash: str) -> ApiKeyRecord | None:
        if self.fail_lookups:
            raise ConnectionError("database is down")
        for record in self.keys.values():
            if record.key_prefix == key_prefix and record.key_hash == key_hash and record.is_active:
                return record
        return None

    async def get_owner(self, user_id: str) -> KeyOwner | None:
        if self.fail_lookups:
            raise ConnectionError("database is down")
        return self.owners.get(user_id)

    async def touch_last_used(self, key_id: str, used_at: datetime) -> None:
        if self.touch_failures_remaining > 0:
            self.touch_failures_remaining -= 1
            raise ConnectionError("transient write failure")
        self.touches.append((key_id, used_at))
        record = self.keys[key_id]
        if record.last_used_at is None or record.last_used_at < used_at:
            self.keys[key_id] = replace(record, last_used_at=used_at)

    async def create(
        self,
        user_id: str,
        name: str,
        key_prefix: str,
        key_hash: str,
        permissions: Sequence[str] = (),
        expires_at: datetime | None = None,
    ) -> ApiKeyRecord:
        record = ApiKeyRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            key_prefix=key_prefix,
            key_hash=key_hash,
            expires_at=expires_at,
            created_at=utcnow(),
            permissions=tuple(permissions),
        )
        self.keys[record.id] = record
        return record

    async def list_for_user(self, user_id: str) -> list[ApiKeyRecord]:
        owned = [r for r in self.keys.values() if r.user_id == user_id]
        return sorted(owned, key=lambda r: r.created_at, reverse=True)

    async def revoke(self, key_id: str) -> bool:
        record = self.keys.get(key_id)
        if record is None:
            return False
        self.keys[key_id] = replace(record, is_active=False)
        return True


class InMemoryUserStore:
    """In-memory user store for testing login and refresh."""

    def __init__(self) -> None:
        self.users: dict[str, UserRecord] = {}
        self.logins: list[str] = []

    def add_user(
        self,
        email: str,
        password: str,
        role: Role = Role.SALES_REP,
        is_active: bool = True,
    ) -> UserRecord:
        user = UserRecord(
            id=str(uuid.uuid4()),
            email=email,
            hashed_password=hash_password(password),
            first_name="Test",
            last_name="User",
            role=role,
            is_active=is_active,
        )
        self.users[user.id] = user
        return user

    async def get(self, user_id: str) -> UserRecord | None:
        return self.users.get(user_id)

    async def get_by_email(self, email: str) -> UserRecord | None:
        for user in self.users.values():
            if user.email.lower() == email.lower():
                return user
        return None

    async def record_login(self, user_id: str, at: datetime) -> None:
        self.logins.append(user_id)
        self.users[user_id] = replace(self.users[user_id], last_login_at=at)


class InMemoryDealRepository:
    """In-memory DealRepository for testing without database."""

    def __init__(self) -> None:
        self._deals: dict[str, DealRead] = {}
        self.fail_reads = False

    def seed(self, owner_id: str, stage: str, value: str, title: str = "Seeded deal") -> DealRead:
        deal = DealRead(
            id=str(uuid.uuid4()),
            title=title,
            value=value,
            stage=stage,
            owner_id=owner_id,
            created_at=utcnow(),
        )
        self._deals[deal.id] = deal
        return deal

    async def create(self, owner_id: str, data: DealCreate) -> DealRead:
        now = utcnow()
        deal = DealRead(
            id=str(uuid.uuid4()),
            title=data.title,
            description=data.description,
            value=data.value,
            stage=data.stage.value,
            probability=data.probability,
            expected_close_date=data.expected_close_date,
            actual_close_date=close_date_after_move(None, data.stage, None, now.date()),
            contact_id=data.contact_id,
            company_id=data.company_id,
            owner_id=owner_id,
            created_at=now,
            updated_at=now,
        )
        self._deals[deal.id] = deal
        return deal

    async def get(self, deal_id: str) -> DealRead | None:
        return self._deals.get(deal_id)

    async def list_visible(self, principal: Principal) -> list[DealRead]:
        if self.fail_reads:
            raise ConnectionError("database is down")
        deals = [
            d for d in self._deals.values()
            if principal.is_manager or d.owner_id == principal.user_id
        ]
        return list(reversed(deals))

    async def update(self, deal_id: str, data: DealUpdate) -> DealRead:
        deal = self._deals.get(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        changes = data.model_dump(exclude_unset=True)
        target = changes.pop("stage", None)
        # Revalidate like the NOT NULL columns would
        updated = DealRead.model_validate({**deal.model_dump(), **changes, "updated_at": utcnow()})
        self._deals[deal_id] = updated
        if target is not None:
            return await self.move_stage(deal_id, DealStage(target))
        return updated

    async def move_stage(self, deal_id: str, stage: DealStage) -> DealRead:
        deal = self._deals.get(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        moved = deal.model_copy(
            update={
                "stage": stage.value,
                "actual_close_date": close_date_after_move(
                    DealStage(deal.stage), stage, deal.actual_close_date, date.today()
                ),
                "updated_at": utcnow(),
            }
        )
        self._deals[deal_id] = moved
        return moved

    async def delete(self, deal_id: str) -> bool:
        return self._deals.pop(deal_id, None) is not None


class FakeRedis:
    """Just enough of redis.asyncio.Redis for FixedWindowRateLimiter."""

    def __init__(self) -> None:
        self.values: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.down = False
        self.failing_commands: set[str] = set()

    def _check(self, command: str = "") -> None:
        if self.down or command in self.failing_commands:
            raise RedisConnectionError("redis unavailable")

    async def incr(self, key: str) -> int:
        self._check()
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self._check("expire")
        self.ttls[key] = seconds
        return True

    async def ttl(self, key: str) -> int:
        self._check()
        if key not in self.values:
            return -2
        return self.ttls.get(key, -1)

    async def delete(self, key: str) -> int:
        self._check()
        self.ttls.pop(key, None)
        return 1 if self.values.pop(key, None) is not None else 0


# ── App Helpers ──────────────────────────────────────────────────────────────


def make_principal(role: Role = Role.SALES_REP, user_id: str | None = None) -> Principal:
    return Principal(
        user_id=user_id or str(uuid.uuid4()),
        role=role,
        auth_method=AuthMethod.JWT,
        email=f"{role.value}@example.com",
    )


def build_app(
    key_store: InMemoryApiKeyStore,
    user_store: InMemoryUserStore | None = None,
    deal_repository: Any = None,
    rate_limiter: Any = None,
) -> FastAPI:
    """Create a minimal FastAPI app wired like the lifespan does."""
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(v1_router)

    recorder = LastUsedRecorder(key_store, max_attempts=3, wait=wait_none())
    app.state.api_key_store = key_store
    app.state.last_used_recorder = recorder
    app.state.api_key_authenticator = ApiKeyAuthenticator(key_store, recorder)
    app.state.user_store = user_store
    app.state.deal_repository = deal_repository
    app.state.login_rate_limiter = rate_limiter
    return app


@pytest.fixture
def key_store() -> InMemoryApiKeyStore:
    return InMemoryApiKeyStore()


@pytest.fixture
def user_store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def deal_repo() -> InMemoryDealRepository:
    return InMemoryDealRepository()


@pytest_asyncio.fixture
async def api(key_store, user_store, deal_repo):
    """App with in-memory stores and an AsyncClient bound to it."""
    app = build_app(key_store, user_store=user_store, deal_repository=deal_repo)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield SimpleNamespace(
            app=app,
            client=client,
            key_store=key_store,
            user_store=user_store,
            deal_repo=deal_repo,
            recorder=app.state.last_used_recorder,
        )


@pytest.fixture
def principal_factory():
    return make_principal


@pytest.fixture
def app_factory():
    return build_app


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
