"""
cache/keys.py -- Cache key builders. Single place for the key grammar.

The grammar is fixed so keys stay interoperable with any cache population
written by earlier deployments:

  <entity>:<id>                               single entity     posts:p1
  <entity>:all:<page>:<limit>:<search>        listing page      posts:all:1:10:
  top:<metric>:<entity>                       aggregate         top:liked:post

Every listing variant of an entity lives under listing_prefix(entity), which is
what write paths pass to prefix invalidation. Key components must not contain
the separator, otherwise two different queries could share a key.
"""

from __future__ import annotations

SEP = ":"

POSTS = "posts"
USERS = "users"

TOP_COMMENTED_POST = "top:commented:post"
TOP_LIKED_POST = "top:liked:post"
POST_AGGREGATES = (TOP_COMMENTED_POST, TOP_LIKED_POST)


def _check(value: str, name: str) -> str:
    if SEP in value:
        raise ValueError(f"Cache key component {name!r} must not contain separator {SEP!r}")
    return value


def normalize_search(search: str | None) -> str:
    """Trim and lower-case a search term so equivalent queries share one key."""
    return (search or "").strip().lower()


def entity_key(entity: str, entity_id: str | int) -> str:
    return f"{_check(entity, 'entity')}{SEP}{_check(str(entity_id), 'id')}"


def listing_key(entity: str, page: int, limit: int, search: str | None = "") -> str:
    term = _check(normalize_search(search), "search")
    return f"{listing_prefix(entity)}{page}{SEP}{limit}{SEP}{term}"


def listing_prefix(entity: str) -> str:
    return f"{_check(entity, 'entity')}{SEP}all{SEP}"


def aggregate_key(metric: str, entity: str) -> str:
    return f"top{SEP}{_check(metric, 'metric')}{SEP}{_check(entity, 'entity')}"
