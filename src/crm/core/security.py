"""JWT tokens, password hashing, and API key material.

Provides the core security primitives used by the auth endpoints, the API
key authenticator, and the request dependencies.

Uses bcrypt directly (not passlib) for Python 3.13 compatibility. API keys
are hashed with SHA-256 rather than bcrypt: they are 256-bit random
secrets, and lookup has to be an indexed equality match on every request.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from src.crm.auth.errors import ExpiredCredential, InvalidCredential
from src.crm.config import get_settings

API_KEY_LOOKUP_PREFIX_LENGTH = 12

# ── Password Hashing ──────────────────────────────────────────────────────────


def hash_password(password: str) -> str:
    """Hash a plaintext password using bcrypt."""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a plaintext password against its bcrypt hash."""
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


# ── API Key Material ──────────────────────────────────────────────────────────


def generate_api_key() -> str:
    """Return a new raw API key: configured prefix + 32 random bytes as hex."""
    settings = get_settings()
    return f"{settings.API_KEY_PREFIX}{secrets.token_hex(32)}"


def api_key_prefix(raw_key: str) -> str:
    """Public lookup prefix: the first 12 characters of the raw key."""
    return raw_key[:API_KEY_LOOKUP_PREFIX_LENGTH]


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hex digest of the full raw key. This is all that is stored."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


# ── JWT Token Creation ────────────────────────────────────────────────────────


def _encode(data: dict, token_type: str, expire: datetime, now: datetime) -> str:
    settings = get_settings()
    to_encode = data.copy()
    to_encode.update({
        "exp": expire,
        "iat": now,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "type": token_type,
    })
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token.

    The data dict should contain at minimum:
    - sub: user_id (str)
    - email: user email (str)
    - role: user role value (str)
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))
    return _encode(data, "access", expire, now)


def create_refresh_token(data: dict) -> str:
    """Create a JWT refresh token with longer expiry."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS)
    return _encode(data, "refresh", expire, now)


# ── JWT Token Verification ────────────────────────────────────────────────────


def verify_token(token: str, token_type: str = "access") -> dict:
    """Decode and validate a JWT token.

    Args:
        token: The JWT string.
        token_type: Expected token type ("access" or "refresh").

    Returns:
        The decoded payload dict.

    Raises:
        ExpiredCredential: If the token's exp is in the past.
        InvalidCredential: If the signature, issuer, audience, type or
            subject is wrong.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )
    except ExpiredSignatureError as exc:
        raise ExpiredCredential("jwt expired") from exc
    except JWTError as exc:
        raise InvalidCredential(f"jwt rejected: {exc}") from exc

    if payload.get("type") != token_type:
        raise InvalidCredential(f"expected {token_type} token")
    if not payload.get("sub"):
        raise InvalidCredential("jwt missing subject")
    return payload
