"""Immutable authentication results handed to request handlers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """User roles, highest privilege first."""

    ADMIN = "admin"
    SALES_MANAGER = "sales_manager"
    SALES_REP = "sales_rep"


MANAGER_ROLES: tuple[Role, ...] = (Role.ADMIN, Role.SALES_MANAGER)


class AuthMethod(str, Enum):
    JWT = "jwt"
    API_KEY = "api_key"


@dataclass(frozen=True)
class Principal:
    """The identity a request acts as.

    Resolved once per request by the auth dependencies and passed to
    endpoints as a value; nothing is stashed on the request object.
    """

    user_id: str
    role: Role
    auth_method: AuthMethod
    email: str | None = None
    api_key_id: str | None = None

    @property
    def is_manager(self) -> bool:
        return self.role in MANAGER_ROLES


@dataclass(frozen=True)
class ApiKeyRecord:
    """Stored API key as seen by the authenticator. Never holds the raw key."""

    id: str
    user_id: str
    name: str
    key_prefix: str
    key_hash: str
    is_active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None
    permissions: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class KeyOwner:
    """Owning user of an API key, as needed to build a Principal."""

    user_id: str
    role: Role
    email: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class AuthenticatedKey:
    """Result of a successful API key authentication."""

    principal: Principal
    key: ApiKeyRecord
