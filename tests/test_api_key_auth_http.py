"""HTTP-level tests for credential resolution on protected endpoints."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from src.crm.auth.principal import Role
from src.crm.core.security import create_access_token

RAW_KEY = "abcd1234wxyzSECRETSUFFIX"
UNAUTHORIZED = {"error": "Unauthorized"}


@pytest.mark.asyncio
async def test_api_key_header_authenticates(api):
    owner = api.key_store.add_owner(role=Role.SALES_MANAGER)
    record = api.key_store.add_key(RAW_KEY, owner.user_id)

    resp = await api.client.get("/api/v1/auth/me", headers={"X-API-Key": RAW_KEY})
    await api.recorder.drain()

    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == owner.user_id
    assert body["role"] == "sales_manager"
    assert body["auth_method"] == "api_key"
    assert body["api_key_id"] == record.id
    assert api.key_store.keys[record.id].last_used_at is not None


@pytest.mark.asyncio
async def test_missing_invalid_and_expired_look_identical(api):
    """Clients cannot tell which check failed."""
    owner = api.key_store.add_owner()
    expired_raw = "expired00000EXPIREDSUFFIX"
    api.key_store.add_key(
        expired_raw, owner.user_id, expires_at=datetime.now(timezone.utc) - timedelta(hours=1)
    )

    responses = [
        await api.client.get("/api/v1/auth/me"),
        await api.client.get("/api/v1/auth/me", headers={"X-API-Key": "crm_not_a_real_key"}),
        await api.client.get("/api/v1/auth/me", headers={"X-API-Key": expired_raw}),
    ]

    for resp in responses:
        assert resp.status_code == 401
        assert resp.json() == UNAUTHORIZED
        assert resp.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_revoked_key_is_unauthorized(api):
    owner = api.key_store.add_owner()
    api.key_store.add_key(RAW_KEY, owner.user_id, is_active=False)

    resp = await api.client.get("/api/v1/auth/me", headers={"X-API-Key": RAW_KEY})

    assert resp.status_code == 401
    assert resp.json() == UNAUTHORIZED


@pytest.mark.asyncio
async def test_store_outage_is_500_not_401(api):
    owner = api.key_store.add_owner()
    api.key_store.add_key(RAW_KEY, owner.user_id)
    api.key_store.fail_lookups = True

    resp = await api.client.get("/api/v1/auth/me", headers={"X-API-Key": RAW_KEY})

    assert resp.status_code == 500
    assert resp.json() == {"error": "Authentication unavailable"}
    assert "WWW-Authenticate" not in resp.headers


@pytest.mark.asyncio
async def test_uninitialized_authenticator_is_500(key_store, app_factory):
    app = app_factory(key_store)
    app.state.api_key_authenticator = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/api/v1/auth/me", headers={"X-API-Key": RAW_KEY})

    assert resp.status_code == 500
    assert resp.json() == {"error": "Authentication unavailable"}


@pytest.mark.asyncio
async def test_bearer_jwt_authenticates(api):
    token = create_access_token({"sub": "user-42", "email": "rep@example.com", "role": "sales_rep"})

    resp = await api.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == "user-42"
    assert body["auth_method"] == "jwt"
    assert body["api_key_id"] is None


@pytest.mark.asyncio
async def test_bearer_takes_precedence_over_api_key(api):
    token = create_access_token({"sub": "user-42", "email": "rep@example.com", "role": "sales_rep"})

    resp = await api.client.get(
        "/api/v1/auth/me",
        headers={"Authorization": f"Bearer {token}", "X-API-Key": "crm_not_a_real_key"},
    )

    assert resp.status_code == 200
    assert resp.json()["auth_method"] == "jwt"


@pytest.mark.asyncio
async def test_jwt_with_unknown_role_is_unauthorized(api):
    token = create_access_token({"sub": "user-42", "role": "superuser"})

    resp = await api.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})

    assert resp.status_code == 401
    assert resp.json() == UNAUTHORIZED


@pytest.mark.asyncio
async def test_sales_rep_cannot_issue_keys(api):
    owner = api.key_store.add_owner(role=Role.SALES_REP)
    api.key_store.add_key(RAW_KEY, owner.user_id)

    resp = await api.client.post(
        "/api/v1/api-keys", json={"name": "integration"}, headers={"X-API-Key": RAW_KEY}
    )
    await api.recorder.drain()

    assert resp.status_code == 403
    assert resp.json() == {"error": "Insufficient permissions"}
