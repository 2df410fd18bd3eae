"""
auth/recovery.py -- Password reset with a short-lived one-time code.

Flow:
  request_reset(email)   -- generate a 6-digit code, store its fingerprint and
                            expiry on the principal, hand the code to the
                            notifier. Unknown emails return silently so the
                            endpoint cannot be used to discover accounts.
  reset_password(...)    -- check the code, write the new bcrypt hash and
                            consume the code in one conditional UPDATE, then
                            end the principal's session so the old refresh
                            token stops rotating.

Only HMAC(REFRESH_SECRET_KEY, "reset:<id>:<code>") is stored, the same way the
refresh token is stored. Binding the principal id into the fingerprint means a
code issued to one account never matches another account's row.

Delivery is pluggable. The default LoggingNotifier writes to the
"inkwell.auth" logger; a mail or SMS sender only needs send_reset_code().

Layer rule: no imports from api/, blog/, or cache/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol

from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenAuthority, hash_password
from core.errors import ResetCodeExpired, ResetCodeInvalid, SessionAlreadyEnded

logger = logging.getLogger("inkwell.auth")

_CODE_DIGITS = 6


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Notifier(Protocol):
    async def send_reset_code(self, email: str, code: str, expires_in: int) -> None: ...


class LoggingNotifier:
    """Development notifier. The code itself is only logged when reveal_codes is set."""

    def __init__(self, reveal_codes: bool = False) -> None:
        self.reveal_codes = reveal_codes

    async def send_reset_code(self, email: str, code: str, expires_in: int) -> None:
        if self.reveal_codes:
            logger.info("Password reset code for %s: %s (valid %ss)", email, code, expires_in)
        else:
            logger.info("Password reset code issued for %s (no delivery channel configured)", email)


class PasswordRecovery:
    def __init__(
        self,
        authority: TokenAuthority,
        store: UserStore,
        sessions: SessionManager,
        notifier: Notifier,
        code_ttl: int = 120,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.authority = authority
        self.store = store
        self.sessions = sessions
        self.notifier = notifier
        self.code_ttl = code_ttl
        self._clock = clock

    def _code_hash(self, user_id: int, code: str) -> str:
        return self.authority.fingerprint(f"reset:{user_id}:{code}")

    async def request_reset(self, email: str) -> None:
        user = await self.store.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return
        code = f"{secrets.randbelow(10**_CODE_DIGITS):0{_CODE_DIGITS}d}"
        expires_at = int(self._clock().timestamp()) + self.code_ttl
        await self.store.set_reset_code(user.id, self._code_hash(user.id, code), expires_at)
        await self.notifier.send_reset_code(user.email, code, self.code_ttl)

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        """Replace the password if code is the pending one and still valid.

        Raises ResetCodeInvalid for an unknown email, a wrong code or a code
        that was already used, and ResetCodeExpired once the code's ttl passed.
        """
        user = await self.store.get_by_email(email)
        pending = await self.store.get_reset_code(user.id) if user is not None else None
        if pending is None:
            raise ResetCodeInvalid()
        stored_hash, expires_at = pending
        if not hmac.compare_digest(stored_hash, self._code_hash(user.id, code)):
            raise ResetCodeInvalid()
        if expires_at <= int(self._clock().timestamp()):
            raise ResetCodeExpired()

        if not await self.store.complete_password_reset(user.id, stored_hash, hash_password(new_password)):
            # Consumed by a concurrent reset.
            raise ResetCodeInvalid()
        logger.info("Password reset for principal %s", user.id)

        try:
            await self.sessions.end_session(user.id)
        except SessionAlreadyEnded:
            logger.debug("Principal %s had no active session to end", user.id)
