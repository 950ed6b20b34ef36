"""Tests for ApiKeyAuthenticator and LastUsedRecorder.

Uses InMemoryApiKeyStore; no database or HTTP layer involved.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from tenacity import wait_none

from src.crm.auth.authenticator import ApiKeyAuthenticator, LastUsedRecorder
from src.crm.auth.errors import (
    AuthenticationUnavailable,
    ExpiredCredential,
    InvalidCredential,
    MissingCredential,
)
from src.crm.auth.principal import AuthMethod, Role

RAW_KEY = "abcd1234wxyzSECRETSUFFIX"


def _make(key_store, max_attempts: int = 3):
    recorder = LastUsedRecorder(key_store, max_attempts=max_attempts, wait=wait_none())
    return ApiKeyAuthenticator(key_store, recorder), recorder


# ── Success ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_valid_key_resolves_owner_and_records_last_used(key_store):
    """Known key -> principal for the owning user, last_used_at advanced."""
    owner = key_store.add_owner(role=Role.SALES_MANAGER)
    record = key_store.add_key(RAW_KEY, owner.user_id)
    authenticator, recorder = _make(key_store)

    before = datetime.now(timezone.utc)
    result = await authenticator.authenticate(RAW_KEY)
    await recorder.drain()

    assert result.principal.user_id == owner.user_id
    assert result.principal.role is Role.SALES_MANAGER
    assert result.principal.auth_method is AuthMethod.API_KEY
    assert result.principal.api_key_id == record.id
    assert result.key.id == record.id
    assert key_store.keys[record.id].last_used_at >= before


@pytest.mark.asyncio
async def test_wrong_suffix_with_same_prefix_is_rejected(key_store):
    """Same 12-char prefix but a different secret must not authenticate."""
    owner = key_store.add_owner()
    key_store.add_key(RAW_KEY, owner.user_id)
    authenticator, recorder = _make(key_store)

    with pytest.raises(InvalidCredential):
        await authenticator.authenticate("abcd1234wxyzWRONGSUFFIX")
    await recorder.drain()
    assert key_store.touches == []


@pytest.mark.asyncio
async def test_key_with_future_expiry_is_accepted(key_store):
    owner = key_store.add_owner()
    key_store.add_key(
        RAW_KEY, owner.user_id, expires_at=datetime.now(timezone.utc) + timedelta(days=1)
    )
    authenticator, recorder = _make(key_store)

    result = await authenticator.authenticate(RAW_KEY)
    await recorder.drain()
    assert result.principal.user_id == owner.user_id


@pytest.mark.asyncio
async def test_authentication_result_is_immutable(key_store):
    owner = key_store.add_owner()
    key_store.add_key(RAW_KEY, owner.user_id)
    authenticator, recorder = _make(key_store)

    result = await authenticator.authenticate(RAW_KEY)
    await recorder.drain()
    with pytest.raises(AttributeError):
        result.principal.user_id = "someone-else"  # type: ignore[misc]


# ── Rejections ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [None, ""])
async def test_missing_key(key_store, raw):
    authenticator, _ = _make(key_store)
    with pytest.raises(MissingCredential):
        await authenticator.authenticate(raw)


@pytest.mark.asyncio
async def test_unknown_key(key_store):
    authenticator, _ = _make(key_store)
    with pytest.raises(InvalidCredential):
        await authenticator.authenticate("crm_" + "0" * 64)


@pytest.mark.asyncio
async def test_inactive_key_is_rejected(key_store):
    owner = key_store.add_owner()
    key_store.add_key(RAW_KEY, owner.user_id, is_active=False)
    authenticator, recorder = _make(key_store)

    with pytest.raises(InvalidCredential):
        await authenticator.authenticate(RAW_KEY)
    await recorder.drain()
    assert key_store.touches == []


@pytest.mark.asyncio
async def test_expired_key_is_rejected_even_when_digest_matches(key_store):
    owner = key_store.add_owner()
    key_store.add_key(
        RAW_KEY, owner.user_id, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1)
    )
    authenticator, recorder = _make(key_store)

    with pytest.raises(ExpiredCredential):
        await authenticator.authenticate(RAW_KEY)
    await recorder.drain()
    assert key_store.touches == []


@pytest.mark.asyncio
async def test_expiry_uses_injected_clock(key_store):
    owner = key_store.add_owner()
    expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
    key_store.add_key(RAW_KEY, owner.user_id, expires_at=expires)
    recorder = LastUsedRecorder(key_store, wait=wait_none())
    authenticator = ApiKeyAuthenticator(
        key_store, recorder, clock=lambda: expires + timedelta(microseconds=1)
    )

    with pytest.raises(ExpiredCredential):
        await authenticator.authenticate(RAW_KEY)


@pytest.mark.asyncio
async def test_key_of_deactivated_user_is_rejected(key_store):
    owner = key_store.add_owner(is_active=False)
    key_store.add_key(RAW_KEY, owner.user_id)
    authenticator, _ = _make(key_store)

    with pytest.raises(InvalidCredential):
        await authenticator.authenticate(RAW_KEY)


@pytest.mark.asyncio
async def test_store_failure_is_authentication_unavailable(key_store):
    owner = key_store.add_owner()
    key_store.add_key(RAW_KEY, owner.user_id)
    key_store.fail_lookups = True
    authenticator, _ = _make(key_store)

    with pytest.raises(AuthenticationUnavailable) as exc_info:
        await authenticator.authenticate(RAW_KEY)
    assert exc_info.value.status_code == 500
    assert isinstance(exc_info.value.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_credential_failures_share_public_message(key_store):
    """Missing, invalid and expired differ only internally."""
    owner = key_store.add_owner()
    key_store.add_key(
        RAW_KEY, owner.user_id, expires_at=datetime.now(timezone.utc) - timedelta(days=1)
    )
    authenticator, _ = _make(key_store)

    errors = []
    for raw in (None, "crm_unknown_key_value", RAW_KEY):
        with pytest.raises((MissingCredential, InvalidCredential, ExpiredCredential)) as exc_info:
            await authenticator.authenticate(raw)
        errors.append(exc_info.value)

    assert {e.reason for e in errors} == {"missing", "invalid", "expired"}
    assert {e.public_message for e in errors} == {"Unauthorized"}
    assert {e.status_code for e in errors} == {401}


# ── Last-used recorder ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_last_used_write_failure_does_not_fail_request(key_store):
    owner = key_store.add_owner()
    record = key_store.add_key(RAW_KEY, owner.user_id)
    key_store.touch_failures_remaining = 10
    authenticator, recorder = _make(key_store, max_attempts=3)

    result = await authenticator.authenticate(RAW_KEY)
    await recorder.drain()

    assert result.principal.user_id == owner.user_id
    assert key_store.keys[record.id].last_used_at is None
    assert recorder.pending == 0


@pytest.mark.asyncio
async def test_last_used_write_is_retried(key_store):
    owner = key_store.add_owner()
    record = key_store.add_key(RAW_KEY, owner.user_id)
    key_store.touch_failures_remaining = 2
    authenticator, recorder = _make(key_store, max_attempts=3)

    await authenticator.authenticate(RAW_KEY)
    await recorder.drain()

    assert key_store.keys[record.id].last_used_at is not None
    assert len(key_store.touches) == 1


@pytest.mark.asyncio
async def test_drain_waits_for_pending_writes():
    """Writes still in flight at shutdown complete before drain returns."""
    written: list[str] = []
    gate = asyncio.Event()

    class SlowStore:
        async def touch_last_used(self, key_id, used_at):
            await gate.wait()
            written.append(key_id)

    recorder = LastUsedRecorder(SlowStore(), wait=wait_none())
    recorder.record("k1", datetime.now(timezone.utc))
    recorder.record("k2", datetime.now(timezone.utc))
    assert recorder.pending == 2

    asyncio.get_running_loop().call_later(0.01, gate.set)
    await recorder.drain(timeout=2.0)

    assert sorted(written) == ["k1", "k2"]
    assert recorder.pending == 0


@pytest.mark.asyncio
async def test_drain_cancels_writes_past_timeout():
    class StuckStore:
        async def touch_last_used(self, key_id, used_at):
            await asyncio.sleep(3600)

    recorder = LastUsedRecorder(StuckStore(), wait=wait_none())
    task = recorder.record("k1", datetime.now(timezone.utc))

    await recorder.drain(timeout=0.01)

    assert task.cancelled()
    assert recorder.pending == 0
