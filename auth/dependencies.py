"""
auth/dependencies.py -- Per-request authentication and FastAPI Depends() helpers.

RequestAuthenticator runs a small state machine for every protected request:

  Unauthenticated --no bearer token----------------------> Rejected(missing_credential)
  Unauthenticated --valid access token-------------------> Authenticated
  Unauthenticated --bad signature / malformed------------> Rejected(invalid_credential)
  Unauthenticated --signature ok, expired----------------> Rotating
  Rotating        --no refresh cookie / body field-------> Rejected(no_refresh_provided)
  Rotating        --rotate() ok--------------------------> Authenticated (+ new token)
  Rotating        --rotate() failed----------------------> Rejected(invalid_or_expired_refresh)

Tampered tokens never reach Rotating. A successful rotation hands the new
access token back in the x-access-token response header and the request
proceeds with the claims of the expired token. Nothing is retried; the client
must switch to the new token on its next request.

The refresh token is read from the refreshToken cookie, or from a refreshToken
field of a JSON body. Never from a header.

get_current_principal() is the FastAPI dependency. require_admin() wraps it and
raises HTTP 403 for non-admins.

Layer rule: no imports from api/, blog/, or cache/.
  auth/dependencies.py may import from fastapi because this module is part of
  the FastAPI dependency injection system.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, Response

from auth.models import AccessClaims
from auth.store import UserStore
from auth.tokens import REFRESH_COOKIE, TokenAuthority
from core.errors import CredentialExpired, CredentialInvalid, CredentialMissing, InkwellError, RotationFailed

logger = logging.getLogger("inkwell.auth")

ROTATED_TOKEN_HEADER = "x-access-token"


class AuthRejected(InkwellError):
    """Terminal Rejected state. code is the stable reason reported to the client."""

    status_code = 401

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class AuthOutcome:
    claims: AccessClaims
    rotated_token: str | None = None


class RequestAuthenticator:
    def __init__(self, authority: TokenAuthority, store: UserStore) -> None:
        self.authority = authority
        self.store = store

    async def authenticate(self, bearer_token: str | None, refresh_token: str | None) -> AuthOutcome:
        """Resolve a request to Authenticated or raise AuthRejected."""
        if not bearer_token:
            raise AuthRejected(CredentialMissing.code, CredentialMissing.message)

        try:
            return AuthOutcome(self.authority.verify_access_token(bearer_token))
        except CredentialInvalid:
            raise AuthRejected(CredentialInvalid.code, "Invalid or expired token.") from None
        except CredentialExpired as exc:
            expired_claims = exc.claims

        if not refresh_token:
            raise AuthRejected("no_refresh_provided", "Access token expired and no refresh token provided.")
        try:
            new_token = await self.authority.rotate(
                bearer_token, refresh_token, self.store, expired_claims=expired_claims
            )
        except RotationFailed as exc:
            logger.info("Rotation rejected: %s", exc.detail or exc.message)
            raise AuthRejected(RotationFailed.code, exc.message) from None

        # The refresh proved the expired claims are still current.
        claims = self.authority.verify_access_token(new_token)
        return AuthOutcome(claims, rotated_token=new_token)


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


async def _refresh_token(request: Request) -> str | None:
    """Cookie first, then a refreshToken field of a JSON body.

    Starlette caches the body, so reading it here does not starve the route
    handler's own body parsing.
    """
    token = request.cookies.get(REFRESH_COOKIE)
    if token:
        return token
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        body = json.loads(await request.body() or b"null")
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get(REFRESH_COOKIE), str):
        return body[REFRESH_COOKIE]
    return None


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


async def get_current_principal(request: Request, response: Response) -> AccessClaims:
    """Require authentication. Raises HTTP 401 with the rejection reason code.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: AccessClaims = Depends(get_current_principal)): ...
    """
    authenticator: RequestAuthenticator = request.app.state.authenticator
    try:
        outcome = await authenticator.authenticate(_bearer_token(request), await _refresh_token(request))
    except AuthRejected as exc:
        logger.info("Auth rejected on %s %s: %s", request.method, request.url.path, exc.code)
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code, "message": exc.message},
        ) from None
    if outcome.rotated_token:
        response.headers[ROTATED_TOKEN_HEADER] = outcome.rotated_token
        # Also kept on request.state for handlers that build their own Response.
        request.state.rotated_access_token = outcome.rotated_token
    return outcome.claims


async def require_admin(principal: AccessClaims = Depends(get_current_principal)) -> AccessClaims:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin.

    Depends on get_current_principal (rather than calling it) so FastAPI's
    per-request dependency cache runs authentication, and any rotation, once.
    """
    if principal.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return principal
