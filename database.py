from __future__ import annotations

import os

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base


def _database_url() -> str:
    # Prefer the platform-provided env var (Render sets DATABASE_URL).
    url = os.getenv("DATABASE_URL")
    if url:
        # psycopg (v3) ships an asyncio driver; psycopg2 does not.
        # Render commonly provides "postgres://..."; normalize and select driver.
        if "://" in url and "+" not in url.split("://", 1)[0]:
            if url.startswith("postgres://"):
                return url.replace("postgres://", "postgresql+psycopg://", 1)
            if url.startswith("postgresql://"):
                return url.replace("postgresql://", "postgresql+psycopg://", 1)
            if url.startswith("sqlite://"):
                return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url
    # Local/dev fallback (keeps repo runnable without Postgres).
    return "sqlite+aiosqlite:///./app.db"


Base = declarative_base()


def make_engine(url: str | None = None):
    url = url or _database_url()
    return create_async_engine(url, pool_pre_ping=True)


def make_session_factory(engine):
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
