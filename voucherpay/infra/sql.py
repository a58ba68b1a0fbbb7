"""
Database access for the voucher pool and the transaction ledger.

One `Database` per process: the async engine, the session factory and the
connection gate every SQL store call passes through. PostgreSQL goes
through asyncpg, SQLite (tests, local demo) through aiosqlite.
"""
import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession, AsyncConnection,
)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA synchronous=NORMAL",
)


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        # Heroku / Supabase style URLs
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def is_sqlite(db_url: str) -> bool:
    return db_url.startswith("sqlite+aiosqlite://")


def sqlite_path(db_url: str) -> Optional[Path]:
    """File behind a SQLite URL, None for in-memory databases."""
    if not is_sqlite(db_url) or ":///" not in db_url:
        return None
    rest = db_url.split(":///", 1)[1].split("?", 1)[0]
    if not rest or rest == ":memory:":
        return None
    return Path(rest)


@dataclass(frozen=True)
class PoolSettings:
    pool_size: Optional[int]   # None: driver default (sqlite)
    max_overflow: int
    pool_timeout: int
    gate_limit: int

    @classmethod
    def from_env(cls, db_url: str) -> "PoolSettings":
        if is_sqlite(db_url):
            return cls(None, 0, 0, int(os.getenv("DB_GATE_LIMIT", "10")))
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        return cls(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            # more waiters than pooled connections only queue inside the pool
            gate_limit=int(os.getenv("DB_GATE_LIMIT", pool_size)),
        )

    def engine_kwargs(self) -> Dict[str, Any]:
        if self.pool_size is None:
            return {}
        return dict(pool_size=self.pool_size, max_overflow=self.max_overflow,
                    pool_timeout=self.pool_timeout)


def _apply_sqlite_pragmas(dbapi_connection, _record) -> None:
    cur = dbapi_connection.cursor()
    for pragma in SQLITE_PRAGMAS:
        cur.execute(pragma)
    cur.close()


class Database:
    """
    Engine + sessions + gate.

    `gated` is handed to the SQL store; each store call holds one gate slot
    while it has a pooled connection checked out, so a burst of checkouts
    waits here instead of timing out in the pool.
    """

    def __init__(self, database_url: str,
                 settings: Optional[PoolSettings] = None) -> None:
        self.url = normalize_async_url(database_url)
        self.settings = settings or PoolSettings.from_env(self.url)

        path = sqlite_path(self.url)
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_async_engine(
            self.url, future=True, pool_pre_ping=True,
            **self.settings.engine_kwargs(),
        )
        if is_sqlite(self.url):
            event.listen(self.engine.sync_engine, "connect",
                         _apply_sqlite_pragmas)

        self.SessionAsync = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self.gate = asyncio.Semaphore(max(1, self.settings.gate_limit))

    @asynccontextmanager
    async def gated(self):
        await self.gate.acquire()
        try:
            yield
        finally:
            self.gate.release()

    @asynccontextmanager
    async def session(self):
        async with self.SessionAsync() as session:
            yield session

    async def run_ddl(
        self, fn: Callable[[AsyncConnection], Awaitable[None]]
    ) -> None:
        async with self.engine.begin() as conn:
            await fn(conn)

    async def dispose(self) -> None:
        await self.engine.dispose()
