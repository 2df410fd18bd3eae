"""
auth/store.py -- SQLAlchemy Core persistence layer for principals.

Pattern: Repository + Data Mapper (same as blog/store.py).
UserStore is the repository; _row_to_user is the mapper.
Route and service code never touches SQL directly.

This is the Credential Store. The token core only needs three operations on
the refresh fingerprint column:
  get_refresh_hash()   -- read the current fingerprint
  set_refresh_hash()   -- replace it in one UPDATE (login is the only caller)
  clear_refresh_hash() -- conditional UPDATE ... WHERE refresh_token_hash IS NOT NULL,
                          so two concurrent logouts cannot both succeed

Password recovery adds a pending reset code (fingerprint plus expiry) that
complete_password_reset() consumes in the same UPDATE that writes the new
hash, so a code can be used once.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, blog/, or cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from auth.models import User
from core.database import make_engine
from core.errors import DuplicateResource

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("refresh_token_hash", String(64)),  # HMAC-SHA256 hex, NULL = logged out
    Column("reset_code_hash", String(64)),  # HMAC-SHA256 hex of the pending reset code
    Column("reset_code_expires_at", Integer),  # unix seconds
    Column("created_at", String(32), nullable=False),
)

# Columns that PATCH /users/{id} may change. Credential columns are excluded
# so the session invariant has exactly one writer.
_UPDATABLE_FIELDS = frozenset({"username", "role"})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore("sqlite+aiosqlite:///:memory:")
        await store.init()
        uid = await store.create_user(User(username="ada", email="ada@example.com", hashed_password=h))
        user = await store.get_by_email("ada@example.com")
        await store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: AsyncEngine = make_engine(db_url)

    async def init(self) -> None:
        """Create tables. Idempotent; call from the lifespan before serving."""
        async with self.engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    async def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises DuplicateResource if the email is already registered.
        """
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    _users.insert().values(
                        username=user.username,
                        email=user.email.lower(),
                        hashed_password=user.hashed_password,
                        role=user.role,
                        created_at=_now_iso(),
                    )
                )
        except IntegrityError as exc:
            raise DuplicateResource("User email already exists.") from exc
        return result.inserted_primary_key[0]

    async def get_by_id(self, user_id: int) -> User | None:
        async with self.engine.connect() as conn:
            row = (await conn.execute(_users.select().where(_users.c.id == user_id))).fetchone()
        return _row_to_user(row) if row is not None else None

    async def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        async with self.engine.connect() as conn:
            row = (await conn.execute(_users.select().where(_users.c.email == email.lower()))).fetchone()
        return _row_to_user(row) if row is not None else None

    async def list_users(self, page: int = 1, limit: int = 10, search: str = "") -> tuple[list[User], int]:
        """Return one page of users ordered by id, plus the total match count.

        search matches a substring of username or email.
        """
        query = _users.select()
        count_query = select(func.count()).select_from(_users)
        if search:
            pattern = f"%{search}%"
            cond = or_(_users.c.username.ilike(pattern), _users.c.email.ilike(pattern))
            query = query.where(cond)
            count_query = count_query.where(cond)
        query = query.order_by(_users.c.id).offset((page - 1) * limit).limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
            total = (await conn.execute(count_query)).scalar() or 0
        return [_row_to_user(r) for r in rows], total

    async def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields on an existing user.

        Accepted fields: username, role. Unknown keys raise ValueError.
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        async with self.engine.begin() as conn:
            result = await conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    async def delete_user(self, user_id: int) -> bool:
        async with self.engine.begin() as conn:
            result = await conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh fingerprint
    # ------------------------------------------------------------------

    async def get_refresh_hash(self, user_id: int) -> str | None:
        async with self.engine.connect() as conn:
            return (
                await conn.execute(select(_users.c.refresh_token_hash).where(_users.c.id == user_id))
            ).scalar()

    async def set_refresh_hash(self, user_id: int, fingerprint: str) -> bool:
        """Replace the stored fingerprint. Returns False if the user does not exist."""
        async with self.engine.begin() as conn:
            result = await conn.execute(
                _users.update().where(_users.c.id == user_id).values(refresh_token_hash=fingerprint)
            )
        return result.rowcount > 0

    async def clear_refresh_hash(self, user_id: int) -> bool:
        """Clear the fingerprint. Returns False if it was already NULL (or the user is gone)."""
        async with self.engine.begin() as conn:
            result = await conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.refresh_token_hash.is_not(None)))
                .values(refresh_token_hash=None)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Password reset codes
    # ------------------------------------------------------------------

    async def set_reset_code(self, user_id: int, code_hash: str, expires_at: int) -> bool:
        """Store a pending reset code, replacing any earlier one."""
        async with self.engine.begin() as conn:
            result = await conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(reset_code_hash=code_hash, reset_code_expires_at=expires_at)
            )
        return result.rowcount > 0

    async def get_reset_code(self, user_id: int) -> tuple[str, int] | None:
        """Return (code_hash, expires_at) of the pending reset, or None."""
        async with self.engine.connect() as conn:
            row = (
                await conn.execute(
                    select(_users.c.reset_code_hash, _users.c.reset_code_expires_at).where(_users.c.id == user_id)
                )
            ).fetchone()
        if row is None or row.reset_code_hash is None:
            return None
        return row.reset_code_hash, row.reset_code_expires_at

    async def complete_password_reset(self, user_id: int, code_hash: str, hashed_password: str) -> bool:
        """Write the new password hash only if code_hash is still the pending code.

        The code is cleared in the same UPDATE; of two concurrent resets with
        the same code only one succeeds.
        """
        async with self.engine.begin() as conn:
            result = await conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.reset_code_hash == code_hash))
                .values(hashed_password=hashed_password, reset_code_hash=None, reset_code_expires_at=None)
            )
        return result.rowcount > 0

    async def close(self) -> None:
        await self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        refresh_token_hash=row.refresh_token_hash,
        created_at=row.created_at,
    )
