"""API key authentication.

ApiKeyAuthenticator resolves a raw ``X-API-Key`` value to a Principal:

1. Empty or absent key -> MissingCredential
2. Look up (first 12 chars, sha256(full key)) among active keys -> InvalidCredential
3. Non-null expires_at in the past -> ExpiredCredential
4. Owning user gone or deactivated -> InvalidCredential
5. Schedule last_used_at = now on the LastUsedRecorder, return AuthenticatedKey

Any exception from the store while resolving is re-raised as
AuthenticationUnavailable. Nothing is written on failure.

LastUsedRecorder runs the last-used write as a tracked background task:
retried with exponential backoff (at-least-once; the write is idempotent and
never moves the timestamp backwards), failures logged and counted but never
surfaced to the request, and drained on shutdown so in-flight writes finish
instead of being dropped with the event loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from src.crm.auth.errors import (
    AuthenticationError,
    AuthenticationUnavailable,
    ExpiredCredential,
    InvalidCredential,
    MissingCredential,
)
from src.crm.auth.key_store import ApiKeyStore
from src.crm.auth.principal import AuthenticatedKey, AuthMethod, Principal
from src.crm.core.monitoring import api_key_auth_total, last_used_writes_total
from src.crm.core.security import api_key_prefix, hash_api_key

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Last-used bookkeeping ───────────────────────────────────────────────────


class LastUsedRecorder:
    """Owns the background tasks that write api_keys.last_used_at.

    Args:
        store: Key store providing touch_last_used().
        max_attempts: Total tries per write before giving up.
        wait: tenacity wait strategy between tries.
    """

    def __init__(
        self,
        store: ApiKeyStore,
        max_attempts: int = 3,
        wait: wait_base | None = None,
    ) -> None:
        self._store = store
        self._max_attempts = max_attempts
        self._wait = wait or wait_exponential(multiplier=0.05, max=1)
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def record(self, key_id: str, used_at: datetime) -> asyncio.Task[None]:
        """Schedule the write and return immediately."""
        task = asyncio.create_task(
            self._write(key_id, used_at),
            name=f"api_key_last_used:{key_id}",
        )
        # The loop only keeps weak references to tasks
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _write(self, key_id: str, used_at: datetime) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=self._wait,
                reraise=True,
            ):
                with attempt:
                    await self._store.touch_last_used(key_id, used_at)
        except Exception:
            last_used_writes_total.labels(outcome="failed").inc()
            logger.warning(
                "auth.last_used_write_failed",
                key_id=key_id,
                attempts=self._max_attempts,
                exc_info=True,
            )
            return
        last_used_writes_total.labels(outcome="ok").inc()

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for pending writes, including ones scheduled while draining.

        Writes still running after ``timeout`` seconds are cancelled and
        logged so the shutdown is bounded.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._tasks:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)

        if self._tasks:
            logger.warning("auth.last_used_drain_timeout", abandoned=len(self._tasks))
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)


# ── Authenticator ───────────────────────────────────────────────────────────


class ApiKeyAuthenticator:
    """Validates raw API keys against an ApiKeyStore.

    Args:
        store: Key store used for lookup.
        recorder: Schedules the last-used write for successful lookups.
        clock: Returns the current aware UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        store: ApiKeyStore,
        recorder: LastUsedRecorder,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._clock = clock

    async def _consult(self, call: Awaitable[T]) -> T:
        try:
            return await call
        except Exception as exc:
            raise AuthenticationUnavailable(f"key store error: {exc!r}") from exc

    async def authenticate(self, raw_key: str | None) -> AuthenticatedKey:
        """Resolve ``raw_key`` or raise an AuthenticationError subclass."""
        try:
            result = await self._authenticate(raw_key)
        except AuthenticationError as exc:
            api_key_auth_total.labels(outcome=exc.reason).inc()
            log_method = logger.error if exc.status_code >= 500 else logger.info
            log_method(
                "auth.api_key_rejected",
                reason=exc.reason,
                detail=exc.detail,
                key_prefix=api_key_prefix(raw_key) if raw_key else None,
            )
            raise
        api_key_auth_total.labels(outcome="ok").inc()
        return result

    async def _authenticate(self, raw_key: str | None) -> AuthenticatedKey:
        if not raw_key:
            raise MissingCredential("api key header absent or empty")

        prefix = api_key_prefix(raw_key)
        digest = hash_api_key(raw_key)

        record = await self._consult(self._store.find_active(prefix, digest))
        if record is None:
            raise InvalidCredential("no active key matches prefix and digest")

        now = self._clock()
        if record.expires_at is not None and record.expires_at < now:
            raise ExpiredCredential(f"key {record.id} expired at {record.expires_at.isoformat()}")

        owner = await self._consult(self._store.get_owner(record.user_id))
        if owner is None or not owner.is_active:
            raise InvalidCredential(f"owner of key {record.id} missing or inactive")

        self._recorder.record(record.id, now)

        principal = Principal(
            user_id=record.user_id,
            role=owner.role,
            auth_method=AuthMethod.API_KEY,
            email=owner.email,
            api_key_id=record.id,
        )
        return AuthenticatedKey(principal=principal, key=record)


def describe(result: AuthenticatedKey) -> dict[str, Any]:
    """Log-safe summary of an authentication result."""
    return {
        "user_id": result.principal.user_id,
        "role": result.principal.role.value,
        "key_id": result.key.id,
        "key_prefix": result.key.key_prefix,
    }
