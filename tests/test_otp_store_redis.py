from __future__ import annotations

import asyncio
from datetime import timedelta

import fakeredis
import pytest

from utils.otp_errors import OtpAttemptsExhausted, OtpInvalid, OtpNotFound
from utils.otp_service import otp_issue, otp_verify
from utils.otp_store import MemoryOtpStore, RedisOtpStore, make_store, utc_now


@pytest.fixture
def redis_store():
    return RedisOtpStore(fakeredis.FakeAsyncRedis(decode_responses=True))


async def test_record_round_trips_through_hash(redis_store):
    expires = utc_now().replace(microsecond=0) + timedelta(minutes=5)
    created = await redis_store.create("a@b.com", "123456", expires)

    loaded = await redis_store.latest("a@b.com")
    assert loaded == created
    assert loaded.id == "otp:a@b.com"


async def test_stale_version_is_rejected(redis_store):
    expires = utc_now() + timedelta(minutes=5)
    created = await redis_store.create("a@b.com", "123456", expires)

    assert await redis_store.save_attempts(created, 1)
    assert not await redis_store.delete(created)

    current = await redis_store.latest("a@b.com")
    assert (current.attempts, current.version) == (1, 2)
    assert await redis_store.delete(current)
    assert not await redis_store.overwrite(current, "999999", expires)


async def test_lifecycle_against_redis(redis_store, options, sender):
    await otp_issue(redis_store, email="a@b.com", options=options)
    wrong = "000000" if sender.last_code != "000000" else "111111"

    with pytest.raises(OtpInvalid):
        await otp_verify(redis_store, email="a@b.com", otp=wrong, options=options)
    await otp_issue(redis_store, email="a@b.com", options=options)
    assert (await redis_store.latest("a@b.com")).attempts == 1

    with pytest.raises(OtpInvalid):
        await otp_verify(redis_store, email="a@b.com", otp=wrong, options=options)
    with pytest.raises(OtpAttemptsExhausted):
        await otp_verify(redis_store, email="a@b.com", otp=wrong, options=options)
    with pytest.raises(OtpNotFound):
        await otp_verify(redis_store, email="a@b.com", otp=sender.last_code, options=options)


async def test_concurrent_verify_single_success(redis_store, options, sender):
    await otp_issue(redis_store, email="a@b.com", options=options)
    code = sender.last_code

    results = await asyncio.gather(
        *[otp_verify(redis_store, email="a@b.com", otp=code, options=options) for _ in range(5)],
        return_exceptions=True,
    )
    assert results.count(True) == 1
    assert all(isinstance(r, OtpNotFound) for r in results if r is not True)


async def test_purge_expired(redis_store):
    now = utc_now()
    await redis_store.create("old@b.com", "111111", now - timedelta(seconds=1))
    await redis_store.create("new@b.com", "222222", now + timedelta(minutes=5))

    assert await redis_store.purge_expired(now) == 1
    assert await redis_store.latest("old@b.com") is None


def test_make_store_backends(monkeypatch):
    assert isinstance(make_store("memory"), MemoryOtpStore)

    monkeypatch.delenv("REDIS_URL", raising=False)
    with pytest.raises(RuntimeError):
        make_store("redis")
    with pytest.raises(RuntimeError):
        make_store("cassandra")
