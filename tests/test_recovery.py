"""Unit tests for auth/recovery.py -- one-time reset codes.

Covers:
- unknown emails are accepted silently and nothing is sent
- only a fingerprint of the code is stored, with an expiry from the clock
- a successful reset replaces the password, consumes the code and ends the session
- wrong, reused, superseded and expired codes are rejected
"""

from datetime import datetime, timedelta, timezone

import pytest
from conftest import RecordingNotifier, make_user_store

from auth.models import User
from auth.recovery import LoggingNotifier, PasswordRecovery
from auth.sessions import SessionManager
from auth.tokens import TokenAuthority, authenticate_user, hash_password
from core.errors import ResetCodeExpired, ResetCodeInvalid

EMAIL = "ada@example.com"


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


async def _setup(clock=None):
    store = await make_user_store()
    uid = await store.create_user(User(username="ada", email=EMAIL, hashed_password=hash_password("oldpass1")))
    authority = TokenAuthority("a" * 40, "r" * 40, access_ttl=900, refresh_ttl=3600)
    sessions = SessionManager(authority, store)
    outbox = RecordingNotifier()
    kwargs = {"clock": clock} if clock is not None else {}
    recovery = PasswordRecovery(authority, store, sessions, outbox, code_ttl=120, **kwargs)
    return recovery, outbox, uid


def _other_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.mark.asyncio
async def test_unknown_email_sends_nothing():
    recovery, outbox, _uid = await _setup()
    await recovery.request_reset("nobody@example.com")
    assert outbox.sent == []
    await recovery.store.close()


@pytest.mark.asyncio
async def test_request_stores_fingerprint_and_expiry():
    clock = _Clock()
    recovery, outbox, uid = await _setup(clock)

    await recovery.request_reset(EMAIL)

    [(to, code, expires_in)] = outbox.sent
    assert to == EMAIL
    assert len(code) == 6 and code.isdigit()
    assert expires_in == 120
    stored_hash, expires_at = await recovery.store.get_reset_code(uid)
    assert stored_hash != code
    assert len(stored_hash) == 64
    assert expires_at == int(clock.now.timestamp()) + 120
    await recovery.store.close()


@pytest.mark.asyncio
async def test_reset_replaces_password_and_ends_session():
    recovery, outbox, uid = await _setup()
    await recovery.sessions.start_session(uid)
    await recovery.request_reset(EMAIL)

    await recovery.reset_password(EMAIL, outbox.last_code(EMAIL), "newpass1")

    store = recovery.store
    assert await authenticate_user(store, EMAIL, "newpass1") is not None
    assert await authenticate_user(store, EMAIL, "oldpass1") is None
    assert await recovery.sessions.current_fingerprint(uid) is None
    assert await store.get_reset_code(uid) is None
    await store.close()


@pytest.mark.asyncio
async def test_reset_without_active_session_succeeds():
    recovery, outbox, _uid = await _setup()
    await recovery.request_reset(EMAIL)
    await recovery.reset_password(EMAIL, outbox.last_code(EMAIL), "newpass1")
    assert await authenticate_user(recovery.store, EMAIL, "newpass1") is not None
    await recovery.store.close()


@pytest.mark.asyncio
async def test_code_is_single_use():
    recovery, outbox, _uid = await _setup()
    await recovery.request_reset(EMAIL)
    code = outbox.last_code(EMAIL)
    await recovery.reset_password(EMAIL, code, "newpass1")

    with pytest.raises(ResetCodeInvalid):
        await recovery.reset_password(EMAIL, code, "newpass2")
    assert await authenticate_user(recovery.store, EMAIL, "newpass1") is not None
    await recovery.store.close()


@pytest.mark.asyncio
async def test_wrong_code_leaves_password_unchanged():
    recovery, outbox, _uid = await _setup()
    await recovery.request_reset(EMAIL)

    with pytest.raises(ResetCodeInvalid):
        await recovery.reset_password(EMAIL, _other_code(outbox.last_code(EMAIL)), "newpass1")
    assert await authenticate_user(recovery.store, EMAIL, "oldpass1") is not None
    await recovery.store.close()


@pytest.mark.asyncio
async def test_reset_without_request_or_for_unknown_email():
    recovery, _outbox, _uid = await _setup()
    with pytest.raises(ResetCodeInvalid):
        await recovery.reset_password(EMAIL, "123456", "newpass1")
    with pytest.raises(ResetCodeInvalid):
        await recovery.reset_password("nobody@example.com", "123456", "newpass1")
    await recovery.store.close()


@pytest.mark.asyncio
async def test_new_request_supersedes_earlier_code():
    recovery, outbox, _uid = await _setup()
    await recovery.request_reset(EMAIL)
    first = outbox.last_code(EMAIL)
    await recovery.request_reset(EMAIL)
    second = outbox.last_code(EMAIL)

    if first != second:
        with pytest.raises(ResetCodeInvalid):
            await recovery.reset_password(EMAIL, first, "newpass1")
    await recovery.reset_password(EMAIL, second, "newpass2")
    assert await authenticate_user(recovery.store, EMAIL, "newpass2") is not None
    await recovery.store.close()


@pytest.mark.asyncio
async def test_expired_code_is_rejected():
    clock = _Clock()
    recovery, outbox, _uid = await _setup(clock)
    await recovery.request_reset(EMAIL)
    code = outbox.last_code(EMAIL)

    clock.advance(121)
    with pytest.raises(ResetCodeExpired):
        await recovery.reset_password(EMAIL, code, "newpass1")
    assert await authenticate_user(recovery.store, EMAIL, "oldpass1") is not None
    await recovery.store.close()


@pytest.mark.asyncio
async def test_logging_notifier_hides_code_unless_asked(caplog):
    with caplog.at_level("INFO", logger="inkwell.auth"):
        await LoggingNotifier().send_reset_code(EMAIL, "482913", 120)
        await LoggingNotifier(reveal_codes=True).send_reset_code(EMAIL, "731204", 120)
    assert "482913" not in caplog.text
    assert "731204" in caplog.text
