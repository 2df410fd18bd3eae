"""
auth/sessions.py -- Binds a principal to its single active refresh token.

start_session() is the only code path that writes a new refresh fingerprint,
so "one active refresh token per principal" holds by construction: a second
login replaces the first fingerprint and the earlier refresh token stops
rotating. end_session() clears it with a conditional UPDATE so a second logout
reports SessionAlreadyEnded instead of silently succeeding.

Layer rule: no imports from api/, blog/, or cache/.
"""

from __future__ import annotations

import logging

from auth.store import UserStore
from auth.tokens import TokenAuthority
from core.errors import ResourceNotFound, SessionAlreadyEnded

logger = logging.getLogger("inkwell.auth")


class SessionManager:
    def __init__(self, authority: TokenAuthority, store: UserStore) -> None:
        self.authority = authority
        self.store = store

    async def start_session(self, principal_id: int) -> str:
        """Issue a refresh token and persist its fingerprint. Returns the raw token."""
        token = self.authority.issue_refresh_token(principal_id)
        if not await self.store.set_refresh_hash(principal_id, self.authority.fingerprint(token)):
            raise ResourceNotFound("User not found.")
        logger.info("Session started for principal %s", principal_id)
        return token

    async def end_session(self, principal_id: int) -> None:
        if not await self.store.clear_refresh_hash(principal_id):
            raise SessionAlreadyEnded()
        logger.info("Session ended for principal %s", principal_id)

    async def current_fingerprint(self, principal_id: int) -> str | None:
        return await self.store.get_refresh_hash(principal_id)
