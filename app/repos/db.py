"""PostgreSQL access -- asyncpg pool, dead-connection retries, transactions.

Single statements issued on the pool (``fetch``, ``fetchrow``, ``fetchval``,
``execute``) are retried when the TCP connection underneath was reset.
Multi-statement work goes through :func:`transaction` and is never retried:
the server has already rolled it back, and the caller decides what to do.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from app.config import settings

logger = logging.getLogger(__name__)

# Failures that mean the connection is gone, not that the statement is bad.
_CONNECTION_LOST = (
    asyncpg.ConnectionDoesNotExistError,
    asyncpg.InterfaceError,
    ConnectionResetError,
    OSError,
)

_MAX_ATTEMPTS = 4
_BACKOFF_BASE = 0.5
_BACKOFF_CAP = 5.0

_pool: asyncpg.Pool | None = None
_pool_loop: asyncio.AbstractEventLoop | None = None
_wrapper: "_ResilientPool | None" = None


def _backoff(attempt: int) -> float:
    return min(_BACKOFF_BASE * (2 ** attempt), _BACKOFF_CAP)


def _forget_pool() -> None:
    """Drop the cached pool; the next get_pool() builds a new one."""
    global _pool, _pool_loop, _wrapper
    _pool = None
    _pool_loop = None
    _wrapper = None


class _ResilientPool:
    """Pool proxy whose one-shot queries survive a dropped connection.

    Anything not overridden here (``acquire``, ``close``, ``terminate`` ...)
    goes straight to the wrapped :class:`asyncpg.Pool`.
    """

    __slots__ = ("_pool",)

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    def __getattr__(self, name: str):
        return getattr(self._pool, name)

    async def _with_retry(self, method: str, query: str, *args: Any, **kw: Any):
        call = getattr(self._pool, method)
        attempt = 0
        while True:
            try:
                return await call(query, *args, **kw)
            except _CONNECTION_LOST as exc:
                attempt += 1
                if attempt >= _MAX_ATTEMPTS:
                    logger.error("DB %s failed after %d attempts: %s", method, attempt, exc)
                    _forget_pool()
                    raise
                delay = _backoff(attempt - 1)
                logger.warning("DB connection lost during %s (%s), retry %d in %.1fs", method, exc, attempt, delay)
                await asyncio.sleep(delay)

    async def fetch(self, query: str, *args: Any, **kw: Any) -> list:
        return await self._with_retry("fetch", query, *args, **kw)

    async def fetchrow(self, query: str, *args: Any, **kw: Any):
        return await self._with_retry("fetchrow", query, *args, **kw)

    async def fetchval(self, query: str, *args: Any, **kw: Any):
        return await self._with_retry("fetchval", query, *args, **kw)

    async def execute(self, query: str, *args: Any, **kw: Any) -> str:
        return await self._with_retry("execute", query, *args, **kw)


async def _create_pool() -> asyncpg.Pool:
    return await asyncio.wait_for(
        asyncpg.create_pool(
            dsn=settings.DATABASE_URL,
            min_size=settings.DB_POOL_MIN_SIZE,
            max_size=settings.DB_POOL_MAX_SIZE,
            command_timeout=settings.DB_COMMAND_TIMEOUT,
            max_inactive_connection_lifetime=300.0,
            server_settings={
                "statement_timeout": "15000",
                "idle_in_transaction_session_timeout": "30000",
            },
        ),
        timeout=20,
    )


async def get_pool() -> _ResilientPool:
    """Return the process pool, creating it on first use.

    A pool bound to a different event loop (test suites start one per test)
    is terminated and replaced.
    """
    global _pool, _pool_loop, _wrapper
    loop = asyncio.get_running_loop()
    if _pool is not None and _pool_loop is not loop:
        try:
            _pool.terminate()
        except Exception:
            logger.debug("Ignoring error while terminating stale pool", exc_info=True)
        _forget_pool()
    if _wrapper is None:
        _pool = await _create_pool()
        _pool_loop = loop
        _wrapper = _ResilientPool(_pool)
    return _wrapper


async def executor(conn=None):
    """Return *conn* when the caller is inside a transaction, else the pool."""
    if conn is not None:
        return conn
    return await get_pool()


@asynccontextmanager
async def transaction() -> AsyncIterator[asyncpg.Connection]:
    """Acquire a connection and run the block in one transaction on it.

    Commits when the block exits normally; rolls back when it raises.
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn


async def close_pool() -> None:
    """Close the pool (lifespan shutdown)."""
    if _pool is not None:
        await _pool.close()
    _forget_pool()
