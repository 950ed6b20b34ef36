"""Pydantic schemas for authentication and API key endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class LoginRequest(BaseModel):
    """Request schema for user login."""

    email: EmailStr = Field(..., description="User email address")
    password: str = Field(..., min_length=1, description="User password")


class TokenResponse(BaseModel):
    """Response schema with access and refresh tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Access token lifetime in seconds")


class TokenRefreshRequest(BaseModel):
    """Request schema to refresh an access token."""

    refresh_token: str = Field(..., description="Valid refresh token")


class UserResponse(BaseModel):
    """The authenticated principal as seen by the client."""

    id: str
    email: str | None = None
    role: str
    auth_method: str
    api_key_id: str | None = None


class ApiKeyCreate(BaseModel):
    """Request schema for creating a new API key."""

    name: str = Field(..., min_length=1, max_length=200, description="Human-readable name for the API key")
    permissions: list[str] = Field(default_factory=list, description="Informational scopes")
    expires_at: datetime | None = Field(default=None, description="Optional expiry (timezone-aware)")


class ApiKeyResponse(BaseModel):
    """Stored API key metadata. Never includes the key or its hash."""

    id: str
    name: str
    key_prefix: str
    permissions: list[str] = Field(default_factory=list)
    is_active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Response for a newly created API key.

    The `key` field is only returned at creation time; it cannot be
    retrieved later.
    """

    key: str
