"""Alembic environment for the migrator schema.

Revisions are hand-written SQL run through ``op.execute``; there is no
SQLAlchemy model layer, so autogenerate is off (``target_metadata=None``).
The database URL is the service's own ``DATABASE_URL`` setting, rewritten to
the ``postgresql+asyncpg`` dialect.
"""

import asyncio
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from app.config import settings  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def asyncpg_url(url: str) -> str:
    """Map a libpq-style DSN onto SQLAlchemy's asyncpg dialect."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        raise RuntimeError(f"DATABASE_URL is not a URL: {url!r}")
    if scheme in ("postgres", "postgresql"):
        scheme = "postgresql+asyncpg"
    return f"{scheme}://{rest}"


def _database_url() -> str:
    url = config.get_main_option("sqlalchemy.url") or settings.DATABASE_URL
    if not url:
        raise RuntimeError("DATABASE_URL is not set; export it or add it to .env")
    return asyncpg_url(url)


def _migrate(connection: Connection | None = None) -> None:
    if connection is None:
        context.configure(
            url=_database_url(),
            target_metadata=None,
            literal_binds=True,
            dialect_opts={"paramstyle": "named"},
        )
    else:
        context.configure(connection=connection, target_metadata=None)
    with context.begin_transaction():
        context.run_migrations()


async def _migrate_online() -> None:
    engine = create_async_engine(_database_url(), poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    _migrate()
else:
    asyncio.run(_migrate_online())
