"""
core/errors.py -- Domain exception taxonomy for Inkwell.

Every failure the API can report maps to exactly one class here. Each class
carries a stable machine-readable `code` and the HTTP status the API layer
should use, so api/main.py needs a single exception handler instead of one
per type.

Propagation policy:
  Authentication failures (CredentialMissing, CredentialInvalid,
      RotationFailed) surface as 401 with the reason code, never as 500.
  CredentialExpired is raised by token verification only; the request
      authenticator turns it into a rotation attempt.
  Store failures surface as ResourceNotFound (404) or DuplicateResource /
      SessionAlreadyEnded (409).
  Password recovery failures (ResetCodeInvalid, ResetCodeExpired) are 400;
      an unknown email is never reported as such.
  CacheBackendUnavailable is raised by cache/store.py and absorbed by the
      read-through layer. It never reaches a client.

Layer rule: core/ is the kernel. No imports from api/, auth/, blog/, or cache/.
"""

from __future__ import annotations

from typing import Any


class InkwellError(Exception):
    """Base class. Subclasses override code, status_code and message."""

    code = "internal_error"
    status_code = 500
    message = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.detail = detail


class CredentialMissing(InkwellError):
    code = "missing_credential"
    status_code = 401
    message = "Authorization token required."


class CredentialInvalid(InkwellError):
    code = "invalid_credential"
    status_code = 401
    message = "Invalid token."


class CredentialExpired(InkwellError):
    """The token signature is valid but its expiry has passed.

    claims holds the verified payload so the caller can rotate without
    decoding the token a second time.
    """

    code = "expired_credential"
    status_code = 401
    message = "Token has expired."

    def __init__(self, claims: dict[str, Any] | None = None) -> None:
        super().__init__()
        self.claims = claims or {}


class RotationFailed(InkwellError):
    code = "invalid_or_expired_refresh"
    status_code = 401
    message = "Invalid or expired refresh token."


class SessionAlreadyEnded(InkwellError):
    code = "session_already_ended"
    status_code = 409
    message = "You are already logged out."


class ResetCodeInvalid(InkwellError):
    code = "invalid_reset_code"
    status_code = 400
    message = "Reset code is invalid."


class ResetCodeExpired(InkwellError):
    code = "reset_code_expired"
    status_code = 400
    message = "Reset code has expired."


class ResourceNotFound(InkwellError):
    code = "not_found"
    status_code = 404
    message = "Resource not found."


class DuplicateResource(InkwellError):
    code = "conflict"
    status_code = 409
    message = "Resource already exists."


class CacheBackendUnavailable(InkwellError):
    code = "cache_unavailable"
    status_code = 503
    message = "Cache backend unavailable."
