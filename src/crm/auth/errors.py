"""Authentication and authorization failures.

Every credential failure maps to one outward response per status code. The
``reason`` attribute carries the internal distinction (missing, invalid,
expired) for logs and metrics only; it is never rendered to the caller, so
a client probing keys cannot tell which check rejected it.
"""

from __future__ import annotations


class AuthenticationError(Exception):
    """Base class for credential failures raised before any handler runs."""

    status_code: int = 401
    public_message: str = "Unauthorized"
    reason: str = "unauthorized"

    def __init__(self, detail: str | None = None) -> None:
        # detail is for logs; public_message is what the client sees
        self.detail = detail or self.reason
        super().__init__(self.detail)


class MissingCredential(AuthenticationError):
    reason = "missing"


class InvalidCredential(AuthenticationError):
    reason = "invalid"


class ExpiredCredential(AuthenticationError):
    reason = "expired"


class AuthenticationUnavailable(AuthenticationError):
    """The credential store could not be consulted."""

    status_code = 500
    public_message = "Authentication unavailable"
    reason = "unavailable"


class PermissionDenied(Exception):
    """Authenticated principal lacks the role required by the endpoint."""

    status_code = 403
    public_message = "Insufficient permissions"

    def __init__(self, required: tuple[str, ...] = (), actual: str | None = None) -> None:
        self.required = required
        self.actual = actual
        super().__init__(f"role {actual!r} not in {required!r}")
