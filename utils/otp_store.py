"""
Record stores behind the OTP issuer/verifier.

Every backend offers the same small surface: newest-record lookup by email,
create, unconditional overwrite (challenge re-issue), and version-conditional
attempt updates and deletes. The conditional calls return False when the
record changed or vanished since it was read; the verifier treats that as a
conflict and re-reads.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import WatchError
from sqlalchemy import delete, inspect, select, update
from sqlalchemy.exc import SQLAlchemyError

from database import make_engine, make_session_factory
from models import OTP_TABLE_NAME, Otp


logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = {"email", "otp", "expires_at", "attempts", "version"}


def utc_now() -> datetime:
    """Naive UTC, the form DateTime columns round-trip through."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class OtpRecord:
    id: object
    email: str
    code: str
    expires_at: datetime
    attempts: int
    created_at: datetime
    version: int = 1


class OtpStore(Protocol):
    async def ensure_schema(self) -> None:
        ...

    async def latest(self, email: str) -> Optional[OtpRecord]:
        ...

    async def create(self, email: str, code: str, expires_at: datetime) -> OtpRecord:
        ...

    async def overwrite(self, record: OtpRecord, code: str, expires_at: datetime) -> bool:
        ...

    async def save_attempts(self, record: OtpRecord, attempts: int) -> bool:
        ...

    async def delete(self, record: OtpRecord) -> bool:
        ...

    async def purge_expired(self, now: datetime) -> int:
        ...


class MemoryOtpStore:
    """Process-local store for development and tests."""

    def __init__(self):
        self._rows: Dict[int, OtpRecord] = {}
        self._ids = itertools.count(1)

    async def ensure_schema(self) -> None:
        return None

    async def latest(self, email: str) -> Optional[OtpRecord]:
        rows = [r for r in self._rows.values() if r.email == email]
        found = max(rows, key=lambda r: (r.created_at, r.id)) if rows else None
        # Hand control back like a network round-trip would, after the read.
        await asyncio.sleep(0)
        return found

    async def create(self, email: str, code: str, expires_at: datetime) -> OtpRecord:
        record = OtpRecord(
            id=next(self._ids),
            email=email,
            code=code,
            expires_at=expires_at,
            attempts=0,
            created_at=utc_now(),
        )
        self._rows[record.id] = record
        return record

    async def overwrite(self, record: OtpRecord, code: str, expires_at: datetime) -> bool:
        current = self._rows.get(record.id)
        if current is None:
            return False
        self._rows[record.id] = replace(
            current, code=code, expires_at=expires_at, version=current.version + 1
        )
        return True

    async def save_attempts(self, record: OtpRecord, attempts: int) -> bool:
        current = self._rows.get(record.id)
        if current is None or current.version != record.version:
            return False
        self._rows[record.id] = replace(current, attempts=attempts, version=current.version + 1)
        return True

    async def delete(self, record: OtpRecord) -> bool:
        current = self._rows.get(record.id)
        if current is None or current.version != record.version:
            return False
        del self._rows[record.id]
        return True

    async def purge_expired(self, now: datetime) -> int:
        stale = [rid for rid, r in self._rows.items() if r.expires_at < now]
        for rid in stale:
            del self._rows[rid]
        return len(stale)

    def all(self) -> list[OtpRecord]:
        return list(self._rows.values())


def _to_record(row: Otp) -> OtpRecord:
    return OtpRecord(
        id=row.id,
        email=row.email,
        code=row.otp,
        expires_at=row.expires_at,
        attempts=row.attempts or 0,
        created_at=row.created_at,
        version=row.version,
    )


class SqlOtpStore:
    def __init__(self, engine, session_factory):
        self._engine = engine
        self._session_factory = session_factory

    async def ensure_schema(self) -> None:
        logger.info("Creating %s table ...", OTP_TABLE_NAME)
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Otp.metadata.create_all, tables=[Otp.__table__], checkfirst=True)
        except SQLAlchemyError as e:
            logger.warning("%s table setup failed: %s", OTP_TABLE_NAME, e)
            async with self._engine.connect() as conn:
                columns = await conn.run_sync(_existing_columns)
            missing = REQUIRED_COLUMNS - columns
            if missing:
                raise
            logger.info("%s table already present, continuing", OTP_TABLE_NAME)
            return
        logger.info("%s table ready", OTP_TABLE_NAME)

    async def latest(self, email: str) -> Optional[OtpRecord]:
        stmt = (
            select(Otp)
            .where(Otp.email == email)
            .order_by(Otp.created_at.desc(), Otp.id.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _to_record(row) if row else None

    async def create(self, email: str, code: str, expires_at: datetime) -> OtpRecord:
        async with self._session_factory() as session:
            row = Otp(
                email=email,
                otp=code,
                expires_at=expires_at,
                attempts=0,
                version=1,
                created_at=utc_now(),
            )
            session.add(row)
            await session.commit()
            return _to_record(row)

    async def _execute(self, stmt) -> int:
        async with self._session_factory() as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()
            return result.rowcount

    async def overwrite(self, record: OtpRecord, code: str, expires_at: datetime) -> bool:
        stmt = (
            update(Otp)
            .where(Otp.id == record.id)
            .values(otp=code, expires_at=expires_at, version=Otp.version + 1)
        )
        return await self._execute(stmt) == 1

    async def save_attempts(self, record: OtpRecord, attempts: int) -> bool:
        stmt = (
            update(Otp)
            .where(Otp.id == record.id, Otp.version == record.version)
            .values(attempts=attempts, version=Otp.version + 1)
        )
        return await self._execute(stmt) == 1

    async def delete(self, record: OtpRecord) -> bool:
        stmt = delete(Otp).where(Otp.id == record.id, Otp.version == record.version)
        return await self._execute(stmt) == 1

    async def purge_expired(self, now: datetime) -> int:
        return int(await self._execute(delete(Otp).where(Otp.expires_at < now)) or 0)


def _existing_columns(sync_conn) -> set[str]:
    insp = inspect(sync_conn)
    if not insp.has_table(OTP_TABLE_NAME):
        return set()
    return {c["name"] for c in insp.get_columns(OTP_TABLE_NAME)}


class RedisOtpStore:
    """
    One hash per email at ``otp:<email>``; the key itself is the record id.

    Conditional writes WATCH the key, re-check the version and run the
    write in MULTI/EXEC. A WatchError means someone else wrote first.
    """

    def __init__(self, client, prefix: str = "otp:"):
        self._r = client
        self._prefix = prefix

    def _key(self, email: str) -> str:
        return f"{self._prefix}{email}"

    @staticmethod
    def _decode(key: str, data: dict) -> Optional[OtpRecord]:
        if not data:
            return None
        return OtpRecord(
            id=key,
            email=data["email"],
            code=data["otp"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            attempts=int(data.get("attempts") or 0),
            created_at=datetime.fromisoformat(data["created_at"]),
            version=int(data.get("version") or 1),
        )

    async def ensure_schema(self) -> None:
        return None

    async def latest(self, email: str) -> Optional[OtpRecord]:
        key = self._key(email)
        return self._decode(key, await self._r.hgetall(key))

    async def create(self, email: str, code: str, expires_at: datetime) -> OtpRecord:
        key = self._key(email)
        record = OtpRecord(
            id=key,
            email=email,
            code=code,
            expires_at=expires_at,
            attempts=0,
            created_at=utc_now(),
        )
        # Replace the whole hash so no field from an older record survives.
        async with self._r.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(
                key,
                mapping={
                    "email": email,
                    "otp": code,
                    "expires_at": expires_at.isoformat(),
                    "attempts": 0,
                    "version": 1,
                    "created_at": record.created_at.isoformat(),
                },
            )
            await pipe.execute()
        return record

    async def _conditional(self, record: OtpRecord, *, check_version: bool, write) -> bool:
        key = record.id
        async with self._r.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.hget(key, "version")
                if current is None:
                    return False
                if check_version and int(current) != record.version:
                    return False
                pipe.multi()
                write(pipe, key, int(current) + 1)
                await pipe.execute()
                return True
            except WatchError:
                return False

    async def overwrite(self, record: OtpRecord, code: str, expires_at: datetime) -> bool:
        def write(pipe, key, version):
            pipe.hset(key, mapping={"otp": code, "expires_at": expires_at.isoformat(), "version": version})

        return await self._conditional(record, check_version=False, write=write)

    async def save_attempts(self, record: OtpRecord, attempts: int) -> bool:
        def write(pipe, key, version):
            pipe.hset(key, mapping={"attempts": attempts, "version": version})

        return await self._conditional(record, check_version=True, write=write)

    async def delete(self, record: OtpRecord) -> bool:
        def write(pipe, key, version):
            pipe.delete(key)

        return await self._conditional(record, check_version=True, write=write)

    async def purge_expired(self, now: datetime) -> int:
        removed = 0
        async for key in self._r.scan_iter(match=f"{self._prefix}*"):
            record = self._decode(key, await self._r.hgetall(key))
            if record and record.expires_at < now and await self.delete(record):
                removed += 1
        return removed


def make_store(backend: str | None = None) -> OtpStore:
    """
    Picks a backend from OTP_STORE: "sql" (default), "redis" (REDIS_URL) or "memory".
    """
    backend = (backend or os.getenv("OTP_STORE") or "sql").strip().lower()
    if backend == "memory":
        return MemoryOtpStore()
    if backend == "redis":
        url = os.getenv("REDIS_URL")
        if not url:
            raise RuntimeError("OTP_STORE=redis but REDIS_URL is not set")
        return RedisOtpStore(aioredis.Redis.from_url(url, decode_responses=True))
    if backend == "sql":
        engine = make_engine()
        return SqlOtpStore(engine, make_session_factory(engine))
    raise RuntimeError(f"Unknown OTP_STORE backend: {backend!r}")
