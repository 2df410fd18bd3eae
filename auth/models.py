"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in blog/models.py -- dataclasses own domain shape; stores and routes do the
work.

Layer rule: no imports from api/, blog/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """A principal that can log in to Inkwell.

    refresh_token_hash is the fingerprint of the single active refresh token,
    or None when the user is logged out. It is written only by
    SessionManager.start_session() and cleared only by end_session(); the raw
    refresh token is never stored.
    """

    username: str
    email: str
    role: str = "user"  # "user" or "admin"
    id: int | None = None
    hashed_password: str | None = None
    refresh_token_hash: str | None = None
    created_at: str | None = None

    def to_public(self) -> dict:
        """Serializable view without credential material. Safe to cache."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class AccessClaims:
    """Verified identity attached to an authenticated request."""

    principal_id: int
    role: str
