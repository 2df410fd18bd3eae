"""
auth/tokens.py -- JWT issuance, verification and rotation; password hashing.

Security design decisions:
  JWT: python-jose with HS256. Two token kinds, two keys:
       access  -- {sub, role, iat, exp, type="access"} signed with SECRET_KEY,
                  lifetime in minutes, never persisted.
       refresh -- {sub, iat, exp, jti, type="refresh"} signed with
                  REFRESH_SECRET_KEY, lifetime in days.
       Separate keys bound the blast radius of either key leaking. The "type"
       claim stops a refresh token being replayed as an access token even if
       an operator configures the same key twice.

  Expiry is checked by hand after the signature check (jose's verify_exp is
       turned off) so that (a) a bad signature and an expired token are always
       distinguished -- only expiry may trigger rotation, tampering never does
       -- and (b) the clock is injectable for tests.

  Refresh fingerprint: HMAC-SHA256(REFRESH_SECRET_KEY, raw_token). Only the
       fingerprint is stored, so a read-only leak of the user table cannot be
       replayed as a session. Comparison uses hmac.compare_digest.

  Rotation: rotate() finds the principal through the claims of the expired
       access token. The request authenticator passes the payload that
       verify_access_token() already signature-checked; other callers fall back
       to the UNVERIFIED claims. That lookup is not a security boundary; the
       fingerprint comparison is. A forged access token can only name a
       principal, it cannot produce that principal's refresh token.
       rotate() never writes: two concurrent rotations with the same refresh
       token both succeed and both get an access token, and no refresh token
       is ever re-issued outside login.

  Passwords: bcrypt directly. _DUMMY_HASH enables timing equalization in
       authenticate_user() so response time does not reveal whether an email
       is registered.

Layer rule: no imports from api/, blog/, or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import JWTError, jwt

from auth.models import AccessClaims
from core.errors import CredentialExpired, CredentialInvalid, RotationFailed

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore
    from core.config import Settings

logger = logging.getLogger("inkwell.auth")

_ALGORITHM = "HS256"
_ACCESS = "access"
_REFRESH = "refresh"

REFRESH_COOKIE = "refreshToken"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates at 72 bytes; the API layer caps passwords well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("inkwell_timing_dummy")


async def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = await store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Token authority
# ---------------------------------------------------------------------------


class TokenAuthority:
    """Issues, verifies and rotates access / refresh tokens.

    Holds no per-principal state. The only persistent artefact of a session
    is the refresh fingerprint, which SessionManager writes.
    """

    def __init__(
        self,
        access_key: str,
        refresh_key: str,
        access_ttl: int,
        refresh_ttl: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if access_key == refresh_key:
            raise ValueError("access and refresh signing keys must differ")
        self._access_key = access_key
        self._refresh_key = refresh_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = _utcnow) -> TokenAuthority:
        return cls(
            access_key=settings.secret_key,
            refresh_key=settings.refresh_secret_key,
            access_ttl=settings.access_token_expire_seconds,
            refresh_ttl=settings.refresh_token_expire_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access_token(self, principal_id: int, role: str) -> str:
        now = self._clock()
        payload = {
            "sub": str(principal_id),
            "role": role,
            "type": _ACCESS,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.access_ttl)).timestamp()),
        }
        return jwt.encode(payload, self._access_key, algorithm=_ALGORITHM)

    def issue_refresh_token(self, principal_id: int) -> str:
        """Sign a refresh token. The caller must persist fingerprint(token)."""
        now = self._clock()
        payload = {
            "sub": str(principal_id),
            "type": _REFRESH,
            # jti keeps two logins within the same second from producing
            # identical tokens (and therefore identical fingerprints).
            "jti": secrets.token_hex(16),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.refresh_ttl)).timestamp()),
        }
        return jwt.encode(payload, self._refresh_key, algorithm=_ALGORITHM)

    def fingerprint(self, refresh_token: str) -> str:
        return hmac.new(self._refresh_key.encode(), refresh_token.encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def _decode(self, token: str, key: str, token_type: str) -> dict[str, Any]:
        """Signature check, then claim shape, then expiry.

        Raises CredentialInvalid for anything that is not a well-formed token of
        the expected type signed with key, CredentialExpired (with the verified
        claims) when only the expiry fails.
        """
        try:
            payload = jwt.decode(token, key, algorithms=[_ALGORITHM], options={"verify_exp": False})
        except JWTError as exc:
            raise CredentialInvalid(detail=str(exc)) from exc
        if payload.get("type") != token_type or "sub" not in payload or "exp" not in payload:
            raise CredentialInvalid(detail="unexpected claim set")
        try:
            expires_at = int(payload["exp"])
        except (TypeError, ValueError) as exc:
            raise CredentialInvalid(detail="malformed exp claim") from exc
        if expires_at <= int(self._clock().timestamp()):
            raise CredentialExpired(payload)
        return payload

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode(token, self._access_key, _ACCESS)
        return _claims_from_payload(payload)

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        return self._decode(token, self._refresh_key, _REFRESH)

    # ------------------------------------------------------------------
    # Rotate
    # ------------------------------------------------------------------

    async def rotate(
        self,
        expired_access_token: str,
        refresh_token: str,
        store: UserStore,
        *,
        expired_claims: dict[str, Any] | None = None,
    ) -> str:
        """Mint a new access token from an expired one plus the matching refresh token.

        expired_claims is the payload carried by CredentialExpired, already
        signature-checked by verify_access_token(). When given, the token
        string is not decoded again. Returns the new access token. Raises
        RotationFailed on any mismatch; nothing is written in either case.
        """
        try:
            payload = expired_claims or jwt.get_unverified_claims(expired_access_token)
            claims = _claims_from_payload(payload)
        except (JWTError, CredentialInvalid) as exc:
            raise RotationFailed(detail="malformed access token") from exc

        stored = await store.get_refresh_hash(claims.principal_id)
        if not stored:
            raise RotationFailed("Refresh token missing in store.")

        try:
            refresh_claims = self.verify_refresh_token(refresh_token)
        except (CredentialInvalid, CredentialExpired) as exc:
            raise RotationFailed(detail=exc.code) from exc
        if refresh_claims["sub"] != str(claims.principal_id):
            raise RotationFailed(detail="principal mismatch")

        if not hmac.compare_digest(stored, self.fingerprint(refresh_token)):
            raise RotationFailed(detail="fingerprint mismatch")

        logger.info("Access token rotated for principal %s", claims.principal_id)
        return self.issue_access_token(claims.principal_id, claims.role)


def _claims_from_payload(payload: dict[str, Any]) -> AccessClaims:
    try:
        return AccessClaims(principal_id=int(payload["sub"]), role=str(payload["role"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise CredentialInvalid(detail="missing identity claims") from exc


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Write the refresh token as an httpOnly, same-site cookie.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests.
    max_age: matches the refresh token lifetime so both expire together.
    """
    response.set_cookie(
        REFRESH_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=secure,
        max_age=max_age,
    )


def clear_refresh_cookie(response) -> None:
    response.delete_cookie(REFRESH_COOKIE, httponly=True, samesite="strict")
