"""Request authentication and authorization.

Exports:
    Principal: Immutable identity a request acts as (user id + role).
    Role: Closed set of user roles.
    AuthenticationError: Base of MissingCredential, InvalidCredential,
        ExpiredCredential (401) and AuthenticationUnavailable (500).
    PermissionDenied: Authenticated but lacking the required role (403).

The authenticator and key store live in their own modules and are imported
from there; they depend on core.security, which itself imports the errors
defined here.
"""

from __future__ import annotations

from src.crm.auth.errors import (
    AuthenticationError,
    AuthenticationUnavailable,
    ExpiredCredential,
    InvalidCredential,
    MissingCredential,
    PermissionDenied,
)
from src.crm.auth.principal import (
    MANAGER_ROLES,
    ApiKeyRecord,
    AuthenticatedKey,
    AuthMethod,
    KeyOwner,
    Principal,
    Role,
)

__all__ = [
    "MANAGER_ROLES",
    "ApiKeyRecord",
    "AuthMethod",
    "AuthenticatedKey",
    "AuthenticationError",
    "AuthenticationUnavailable",
    "ExpiredCredential",
    "InvalidCredential",
    "KeyOwner",
    "MissingCredential",
    "PermissionDenied",
    "Principal",
    "Role",
]
