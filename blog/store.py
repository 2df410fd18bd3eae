"""
blog/store.py -- SQLAlchemy Core persistence layer for posts.

This is the system-of-record behind the cache. It knows nothing about Redis:
blog/service.py decides what to cache and what to invalidate after each
method here returns.

Pattern: Repository + Data Mapper. PostStore is the repository; the _row_to_*
functions are the mappers. Every mutation runs in one transaction
(engine.begin()), so by the time a method returns the write is committed and
it is safe to invalidate cache keys.

Derived numbers (comment_count, likes, dislikes) are computed with correlated
subqueries at read time rather than stored as counters, so there is no second
write that could drift from the comments and reactions tables.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = PostStore("sqlite+aiosqlite:///:memory:")
    await store.init()
    await store.create_post(Post(id="p1", title="Hello", content="First post", user_id=1))
    posts, total = await store.list_posts(page=1, limit=10, search="hello")
    await store.close()
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    func,
    or_,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from blog.models import Comment, Post, ReactionCounts
from core.database import make_engine
from core.errors import DuplicateResource, ResourceNotFound

REACTION_KINDS = ("like", "dislike")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_posts = Table(
    "posts",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("title", String(200), nullable=False),
    Column("content", Text, nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_comments = Table(
    "comments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("post_id", String(64), nullable=False, index=True),
    Column("user_id", Integer, nullable=False),
    Column("text", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_reactions = Table(
    "reactions",
    metadata,
    Column("post_id", String(64), nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("kind", String(10), nullable=False),  # "like" | "dislike"
    PrimaryKeyConstraint("post_id", "user_id", name="pk_reaction"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _comment_count():
    return (
        select(func.count())
        .select_from(_comments)
        .where(_comments.c.post_id == _posts.c.id)
        .scalar_subquery()
    )


def _reaction_count(kind: str):
    return (
        select(func.count())
        .select_from(_reactions)
        .where((_reactions.c.post_id == _posts.c.id) & (_reactions.c.kind == kind))
        .scalar_subquery()
    )


def _post_query():
    return select(
        _posts,
        _comment_count().label("comment_count"),
        _reaction_count("like").label("likes"),
        _reaction_count("dislike").label("dislikes"),
    )


def _search_clause(search: str):
    pattern = f"%{search}%"
    return or_(_posts.c.title.ilike(pattern), _posts.c.content.ilike(pattern))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PostStore:
    def __init__(self, db_url: str) -> None:
        self.engine: AsyncEngine = make_engine(db_url)

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    async def create_post(self, post: Post) -> Post:
        """Insert a post. Raises DuplicateResource if the id is taken."""
        now = _now_iso()
        try:
            async with self.engine.begin() as conn:
                await conn.execute(
                    _posts.insert().values(
                        id=post.id,
                        title=post.title,
                        content=post.content,
                        user_id=post.user_id,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateResource("Post with this id already exists.") from exc
        post.created_at = post.updated_at = now
        return post

    async def get_post(self, post_id: str) -> Post | None:
        """Return the post with its comments (oldest first), or None."""
        async with self.engine.connect() as conn:
            row = (await conn.execute(_post_query().where(_posts.c.id == post_id))).fetchone()
            if row is None:
                return None
            comment_rows = (
                await conn.execute(
                    _comments.select().where(_comments.c.post_id == post_id).order_by(_comments.c.id)
                )
            ).fetchall()
        post = _row_to_post(row)
        post.comments = [_row_to_comment(r) for r in comment_rows]
        return post

    async def get_owner(self, post_id: str) -> int | None:
        async with self.engine.connect() as conn:
            return (await conn.execute(select(_posts.c.user_id).where(_posts.c.id == post_id))).scalar()

    async def list_posts(self, page: int = 1, limit: int = 10, search: str = "") -> tuple[list[Post], int]:
        """Return one page of posts (newest first) and the total match count."""
        query = _post_query()
        count_query = select(func.count()).select_from(_posts)
        if search:
            query = query.where(_search_clause(search))
            count_query = count_query.where(_search_clause(search))
        query = query.order_by(_posts.c.created_at.desc(), _posts.c.id).offset((page - 1) * limit).limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
            total = (await conn.execute(count_query)).scalar() or 0
        return [_row_to_post(r) for r in rows], total

    async def update_post(self, post_id: str, **fields) -> bool:
        """Update title and/or content. Returns False if the post does not exist."""
        unknown = set(fields) - {"title", "content"}
        if unknown:
            raise ValueError(f"Unknown post fields: {unknown!r}")
        async with self.engine.begin() as conn:
            result = await conn.execute(
                _posts.update().where(_posts.c.id == post_id).values(updated_at=_now_iso(), **fields)
            )
        return result.rowcount > 0

    async def delete_post(self, post_id: str) -> bool:
        """Delete a post and its comments and reactions in one transaction."""
        async with self.engine.begin() as conn:
            result = await conn.execute(_posts.delete().where(_posts.c.id == post_id))
            if result.rowcount == 0:
                return False
            await conn.execute(_comments.delete().where(_comments.c.post_id == post_id))
            await conn.execute(_reactions.delete().where(_reactions.c.post_id == post_id))
        return True

    async def delete_all_posts(self) -> int:
        async with self.engine.begin() as conn:
            result = await conn.execute(_posts.delete())
            await conn.execute(_comments.delete())
            await conn.execute(_reactions.delete())
        return result.rowcount

    # ------------------------------------------------------------------
    # Comments and reactions
    # ------------------------------------------------------------------

    async def add_comment(self, comment: Comment) -> Comment:
        """Attach a comment to an existing post. Raises ResourceNotFound otherwise."""
        now = _now_iso()
        async with self.engine.begin() as conn:
            exists = (await conn.execute(select(_posts.c.id).where(_posts.c.id == comment.post_id))).scalar()
            if exists is None:
                raise ResourceNotFound("Post not found.")
            result = await conn.execute(
                _comments.insert().values(
                    post_id=comment.post_id,
                    user_id=comment.user_id,
                    text=comment.text,
                    created_at=now,
                )
            )
        comment.id = result.inserted_primary_key[0]
        comment.created_at = now
        return comment

    async def toggle_reaction(self, post_id: str, user_id: int, kind: str) -> ReactionCounts:
        """Toggle a like or dislike.

        Same kind again removes the reaction; the opposite kind switches it.
        One reaction per (post, user) is enforced by the primary key.
        """
        if kind not in REACTION_KINDS:
            raise ValueError(f"Unknown reaction kind: {kind!r}")
        where = (_reactions.c.post_id == post_id) & (_reactions.c.user_id == user_id)
        async with self.engine.begin() as conn:
            exists = (await conn.execute(select(_posts.c.id).where(_posts.c.id == post_id))).scalar()
            if exists is None:
                raise ResourceNotFound("Post not found.")
            current = (await conn.execute(select(_reactions.c.kind).where(where))).scalar()
            if current == kind:
                await conn.execute(_reactions.delete().where(where))
                reaction = None
            elif current is not None:
                await conn.execute(_reactions.update().where(where).values(kind=kind))
                reaction = kind
            else:
                await conn.execute(_reactions.insert().values(post_id=post_id, user_id=user_id, kind=kind))
                reaction = kind
            counts = (
                await conn.execute(
                    select(_reaction_count("like"), _reaction_count("dislike"))
                    .select_from(_posts)
                    .where(_posts.c.id == post_id)
                )
            ).fetchone()
        return ReactionCounts(post_id=post_id, reaction=reaction, likes=counts[0], dislikes=counts[1])

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def top_posts(self, metric: str, limit: int = 5) -> list[Post]:
        """Posts ranked by comment count ("commented") or likes ("liked").

        Posts with a zero score are left out, so an empty blog yields [].
        """
        if metric == "commented":
            score = _comment_count()
        elif metric == "liked":
            score = _reaction_count("like")
        else:
            raise ValueError(f"Unknown ranking metric: {metric!r}")
        query = (
            _post_query()
            .where(score > 0)
            .order_by(score.desc(), _posts.c.created_at.desc(), _posts.c.id)
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [_row_to_post(r) for r in rows]

    async def close(self) -> None:
        await self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_post(row) -> Post:
    return Post(
        id=row.id,
        title=row.title,
        content=row.content,
        user_id=row.user_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        comment_count=row.comment_count or 0,
        likes=row.likes or 0,
        dislikes=row.dislikes or 0,
    )


def _row_to_comment(row) -> Comment:
    return Comment(
        id=row.id,
        post_id=row.post_id,
        user_id=row.user_id,
        text=row.text,
        created_at=row.created_at,
    )
