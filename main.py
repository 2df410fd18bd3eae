#!/usr/bin/env python3
"""
Inkwell -- Blog API with rotating refresh sessions and a Redis read cache.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080 --reload
  python main.py create-admin --username alice --email alice@example.com
  python main.py flush-cache
  python main.py flush-cache posts:all: top:liked:post

Environment variables (see core/config.py for the full list):
  SECRET_KEY           Access token signing key (>= 32 chars). Required unless DEBUG=true.
  REFRESH_SECRET_KEY   Refresh token signing key (>= 32 chars, must differ from SECRET_KEY).
  REDIS_URL            Cache backend, default redis://127.0.0.1:6379/0.
  AUTH_DB_URL          SQLAlchemy URL of the principal store.
  POSTS_DB_URL         SQLAlchemy URL of the post store.
"""

import argparse
import asyncio
import getpass
import re
import sys

from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from blog.service import UserDirectory
from cache import keys
from cache.store import RedisCache, ReadThroughCache
from core.config import get_settings
from core.errors import CacheBackendUnavailable, DuplicateResource

_EMAIL_RE = re.compile(r"^[^@\s:]+@[^@\s:]+\.[^@\s:]+$")

# Every key family Inkwell writes (entities, listings, aggregates). Flushing is
# always safe: the next read of each key rebuilds it from the store.
_DEFAULT_FLUSH_PREFIXES = (
    keys.POSTS + keys.SEP,
    keys.USERS + keys.SEP,
    "top" + keys.SEP,
)


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


async def _create_admin(users: UserDirectory, username: str, email: str, password: str) -> dict:
    """Register an admin through the same write path as the API, listings included."""
    return await users.register(
        User(username=username, email=email, role="admin", hashed_password=hash_password(password))
    )


async def _create_admin_with_settings(username: str, email: str, password: str) -> dict:
    settings = get_settings()
    store = UserStore(settings.auth_db_url)
    backend = RedisCache.from_url(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
    await store.init()
    try:
        # A Redis outage only costs the invalidation; ReadThroughCache logs each skipped key.
        users = UserDirectory(store, ReadThroughCache(backend, settings.cache_default_ttl))
        return await _create_admin(users, username, email, password)
    finally:
        await backend.close()
        await store.close()


def _create_admin_cmd(args: argparse.Namespace) -> int:
    if not _EMAIL_RE.match(args.email):
        print(f"  [!] '{args.email}' doesn't look like a valid email address.")
        return 2
    password = args.password or getpass.getpass("  Password: ")
    if len(password) < 6:
        print("  [!] Password must be at least 6 characters.")
        return 2
    try:
        created = asyncio.run(_create_admin_with_settings(args.username, args.email, password))
    except DuplicateResource:
        print(f"  [!] A user with email {args.email} already exists.")
        return 1
    print(f"  Admin '{args.username}' created (id {created['id']}).")
    return 0


async def _flush(prefixes: list[str]) -> int:
    settings = get_settings()
    backend = RedisCache.from_url(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
    removed = 0
    try:
        for prefix in prefixes:
            removed += await backend.delete_prefix(prefix)
    finally:
        await backend.close()
    return removed


def _flush_cache_cmd(args: argparse.Namespace) -> int:
    prefixes = list(args.prefixes) or list(_DEFAULT_FLUSH_PREFIXES)
    try:
        removed = asyncio.run(_flush(prefixes))
    except CacheBackendUnavailable as exc:
        print(f"  [!] Cache backend unavailable: {exc.detail}")
        return 1
    print(f"  Removed {removed} cache key(s) under {', '.join(p + '*' for p in prefixes)}.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="inkwell",
        description="Blog API with rotating refresh sessions and a Redis read cache.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  DEBUG=true python main.py create-admin --username root --email root@example.com
  python main.py flush-cache posts:all:
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the API under uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Reload on source changes (development only)")
    serve.set_defaults(func=_serve)

    admin = sub.add_parser("create-admin", help="Create an admin account in the principal store")
    admin.add_argument("--username", required=True, help="Display name, 3-50 characters")
    admin.add_argument("--email", required=True, help="Login email")
    admin.add_argument(
        "--password",
        default=None,
        help="Password (prompted for when omitted; avoid passing it on the command line)",
    )
    admin.set_defaults(func=_create_admin_cmd)

    flush = sub.add_parser("flush-cache", help="Delete cached reads by key prefix")
    flush.add_argument(
        "prefixes",
        nargs="*",
        metavar="PREFIX",
        help="Key prefixes to delete, e.g. posts:all: (default: every Inkwell key family)",
    )
    flush.set_defaults(func=_flush_cache_cmd)

    args = parser.parse_args()
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
