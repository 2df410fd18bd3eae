"""
blog/service.py -- Cache-consistent read and write paths for posts and users.

Route handlers call these services, never the stores directly. Every read
goes through ReadThroughCache.read(); every write first commits to the store
and only then invalidates, following the table below.

  mutation              exact keys                                   prefixes
  --------------------  -------------------------------------------  ----------
  create post           posts:<id>                                   posts:all:
  update / delete post  posts:<id>, top:commented:post, top:liked:post  posts:all:
  delete all posts      top:commented:post, top:liked:post            posts:all:
  add comment           posts:<id>, top:commented:post                posts:all:
  like / dislike        posts:<id>, top:liked:post                    posts:all:
  register user         users:<id>                                   users:all:
  update / delete user  users:<id>                                   users:all:

Aggregates are deleted, not recomputed; the next read rebuilds them.

delete_all_posts() cannot enumerate the posts:<id> keys of the rows it removed
without a scan that would also hit the listing keys, so single-post entries
may be served stale until their ttl runs out. This is accepted and bounded by
cache_default_ttl.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from blog.models import Comment, Post
from blog.store import PostStore
from cache import keys
from cache.store import CachedRead, ReadThroughCache
from core.errors import ResourceNotFound

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("inkwell.blog")


def _page_is_empty(payload: dict) -> bool:
    return not payload["items"]


class PostService:
    def __init__(self, store: PostStore, cache: ReadThroughCache, top_limit: int = 5) -> None:
        self.store = store
        self.cache = cache
        self.top_limit = top_limit

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_post(self, post_id: str) -> CachedRead:
        async def load() -> dict:
            post = await self.store.get_post(post_id)
            if post is None:
                raise ResourceNotFound("Post not found.")
            return post.to_dict(with_comments=True)

        return await self.cache.read(keys.entity_key(keys.POSTS, post_id), load)

    async def list_posts(self, page: int = 1, limit: int = 10, search: str = "") -> CachedRead:
        term = keys.normalize_search(search)

        async def load() -> dict:
            posts, total = await self.store.list_posts(page=page, limit=limit, search=term)
            return {"page": page, "limit": limit, "search": term, "total": total, "items": [p.to_dict() for p in posts]}

        return await self.cache.read(keys.listing_key(keys.POSTS, page, limit, term), load, is_empty=_page_is_empty)

    async def top_commented(self) -> CachedRead:
        return await self._top("commented")

    async def top_liked(self) -> CachedRead:
        return await self._top("liked")

    async def _top(self, metric: str) -> CachedRead:
        async def load() -> list[dict]:
            return [p.to_dict() for p in await self.store.top_posts(metric, self.top_limit)]

        return await self.cache.read(keys.aggregate_key(metric, "post"), load)

    async def owner_of(self, post_id: str) -> int:
        """Author id of a post, straight from the store (authorization must not trust the cache)."""
        owner = await self.store.get_owner(post_id)
        if owner is None:
            raise ResourceNotFound("Post not found.")
        return owner

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_post(self, post: Post) -> dict:
        created = await self.store.create_post(post)
        logger.info("Post created: %s", created.id)
        await self.cache.invalidate(
            keys=[keys.entity_key(keys.POSTS, created.id)],
            prefixes=[keys.listing_prefix(keys.POSTS)],
        )
        return created.to_dict()

    async def update_post(self, post_id: str, **fields) -> dict:
        if not await self.store.update_post(post_id, **fields):
            raise ResourceNotFound("Post not found.")
        logger.info("Post updated: %s", post_id)
        await self._invalidate_post(post_id, *keys.POST_AGGREGATES)
        post = await self.store.get_post(post_id)
        if post is None:
            # Deleted by a concurrent request between the update and this read.
            raise ResourceNotFound("Post not found.")
        return post.to_dict(with_comments=True)

    async def delete_post(self, post_id: str) -> None:
        if not await self.store.delete_post(post_id):
            raise ResourceNotFound("Post not found.")
        logger.info("Post deleted: %s", post_id)
        await self._invalidate_post(post_id, *keys.POST_AGGREGATES)

    async def delete_all_posts(self) -> int:
        deleted = await self.store.delete_all_posts()
        logger.info("All posts deleted (%d)", deleted)
        await self.cache.invalidate(
            keys=list(keys.POST_AGGREGATES),
            prefixes=[keys.listing_prefix(keys.POSTS)],
        )
        return deleted

    async def add_comment(self, post_id: str, user_id: int, text: str) -> dict:
        comment = await self.store.add_comment(Comment(post_id=post_id, user_id=user_id, text=text))
        logger.info("Comment %s added to post %s", comment.id, post_id)
        await self._invalidate_post(post_id, keys.TOP_COMMENTED_POST)
        return comment.to_dict()

    async def toggle_like(self, post_id: str, user_id: int) -> dict:
        return await self._react(post_id, user_id, "like")

    async def toggle_dislike(self, post_id: str, user_id: int) -> dict:
        return await self._react(post_id, user_id, "dislike")

    async def _react(self, post_id: str, user_id: int, kind: str) -> dict:
        counts = await self.store.toggle_reaction(post_id, user_id, kind)
        # Dislikes are not ranked, but a switch from like -> dislike lowers the like count.
        await self._invalidate_post(post_id, keys.TOP_LIKED_POST)
        return counts.to_dict()

    async def _invalidate_post(self, post_id: str, *aggregates: str) -> None:
        await self.cache.invalidate(
            keys=[keys.entity_key(keys.POSTS, post_id), *aggregates],
            prefixes=[keys.listing_prefix(keys.POSTS)],
        )


class UserDirectory:
    """Cached, credential-free views of principals for the /users routes.

    Payloads come from User.to_public(), so password hashes and refresh
    fingerprints never enter the cache. Login and logout only touch the
    fingerprint, so they need no invalidation here.
    """

    def __init__(self, store: UserStore, cache: ReadThroughCache) -> None:
        self.store = store
        self.cache = cache

    async def get_user(self, user_id: int) -> CachedRead:
        async def load() -> dict:
            user = await self.store.get_by_id(user_id)
            if user is None:
                raise ResourceNotFound("User not found.")
            return user.to_public()

        return await self.cache.read(keys.entity_key(keys.USERS, user_id), load)

    async def list_users(self, page: int = 1, limit: int = 10, search: str = "") -> CachedRead:
        term = keys.normalize_search(search)

        async def load() -> dict:
            users, total = await self.store.list_users(page=page, limit=limit, search=term)
            return {"page": page, "limit": limit, "search": term, "total": total, "items": [u.to_public() for u in users]}

        return await self.cache.read(keys.listing_key(keys.USERS, page, limit, term), load, is_empty=_page_is_empty)

    async def register(self, user: User) -> dict:
        user.id = await self.store.create_user(user)
        logger.info("User registered: %s (role: %s)", user.email, user.role)
        # SQLite may hand out the id of a deleted user again.
        await self._invalidate_user(user.id)
        created = await self.store.get_by_id(user.id)
        return (created or user).to_public()

    async def update_user(self, user_id: int, **fields) -> dict:
        if not await self.store.update_user(user_id, **fields):
            raise ResourceNotFound("User not found.")
        logger.info("User updated: %s", user_id)
        await self._invalidate_user(user_id)
        user = await self.store.get_by_id(user_id)
        if user is None:
            raise ResourceNotFound("User not found.")
        return user.to_public()

    async def delete_user(self, user_id: int) -> None:
        if not await self.store.delete_user(user_id):
            raise ResourceNotFound("User not found.")
        logger.info("User deleted: %s", user_id)
        await self._invalidate_user(user_id)

    async def _invalidate_user(self, user_id: int) -> None:
        await self.cache.invalidate(
            keys=[keys.entity_key(keys.USERS, user_id)],
            prefixes=[keys.listing_prefix(keys.USERS)],
        )
