"""Job repository -- migrations and migration_jobs tables.

Write functions take the transaction's connection as their first argument;
they are only ever called from inside ``conn.transaction()`` blocks owned by
the job tracker.  Rows come back as plain dicts with ``files_changed``
decoded from JSONB.
"""

import json
from uuid import UUID

from app.repos.db import executor

_JOB_COLUMNS = """
    id, repository_id, user_id, migration_id, status, progress,
    files_changed, created_at, updated_at
"""

# Statuses after which a job never changes again.
TERMINAL_STATUSES = ("COMPLETED", "FAILED")


# ---------------------------------------------------------------------------
# migrations
# ---------------------------------------------------------------------------


async def insert_migration(
    conn,
    repository_id: int,
    user_id: UUID,
    name: str,
    description: str | None,
    migration_type: str,
    source_version: str | None,
    target_version: str | None,
) -> dict:
    """Insert a migration descriptor. Returns the created row as a dict."""
    row = await conn.fetchrow(
        """
        INSERT INTO migrations (repository_id, user_id, name, description, type,
                                source_version, target_version)
        VALUES ($1, $2, $3, $4, $5, $6, $7)
        RETURNING id, repository_id, user_id, name, description, type,
                  source_version, target_version, created_at
        """,
        repository_id,
        user_id,
        name,
        description,
        migration_type,
        source_version,
        target_version,
    )
    return dict(row)


# ---------------------------------------------------------------------------
# migration_jobs
# ---------------------------------------------------------------------------


async def insert_job(
    conn,
    repository_id: int,
    user_id: UUID,
    migration_id: UUID,
    status: str,
    progress: int = 0,
    files_changed: list[dict] | None = None,
) -> dict:
    """Insert a migration job. Returns the created row as a dict."""
    row = await conn.fetchrow(
        f"""
        INSERT INTO migration_jobs (repository_id, user_id, migration_id, status,
                                    progress, files_changed)
        VALUES ($1, $2, $3, $4, $5, $6::jsonb)
        RETURNING {_JOB_COLUMNS}
        """,
        repository_id,
        user_id,
        migration_id,
        status,
        progress,
        json.dumps(files_changed or []),
    )
    return _job_to_dict(row)


async def update_job(
    conn,
    job_id: UUID,
    status: str,
    progress: int,
    files_changed: list[dict] | None = None,
) -> dict | None:
    """Set status/progress and, when given, replace ``files_changed`` wholesale."""
    if files_changed is None:
        row = await conn.fetchrow(
            f"""
            UPDATE migration_jobs
               SET status = $2, progress = $3, updated_at = now()
             WHERE id = $1
            RETURNING {_JOB_COLUMNS}
            """,
            job_id,
            status,
            progress,
        )
    else:
        row = await conn.fetchrow(
            f"""
            UPDATE migration_jobs
               SET status = $2, progress = $3, files_changed = $4::jsonb, updated_at = now()
             WHERE id = $1
            RETURNING {_JOB_COLUMNS}
            """,
            job_id,
            status,
            progress,
            json.dumps(files_changed),
        )
    return _job_to_dict(row) if row else None


async def get_job_by_id(job_id: UUID, conn=None, *, for_update: bool = False) -> dict | None:
    """Fetch a job by primary key.  ``for_update`` locks the row (needs *conn*)."""
    db = await executor(conn)
    lock = " FOR UPDATE" if for_update else ""
    row = await db.fetchrow(
        f"SELECT {_JOB_COLUMNS} FROM migration_jobs WHERE id = $1{lock}",
        job_id,
    )
    return _job_to_dict(row) if row else None


async def get_open_job(repository_id: int, user_id: UUID, conn=None) -> dict | None:
    """Most recent non-terminal job for the repository, locked when in a transaction."""
    db = await executor(conn)
    lock = " FOR UPDATE" if conn is not None else ""
    row = await db.fetchrow(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM migration_jobs
        WHERE repository_id = $1 AND user_id = $2
          AND status <> ALL($3::text[])
        ORDER BY created_at DESC
        LIMIT 1{lock}
        """,
        repository_id,
        user_id,
        list(TERMINAL_STATUSES),
    )
    return _job_to_dict(row) if row else None


async def list_jobs(repository_id: int, limit: int = 50) -> list[dict]:
    """Job history for a repository, newest first."""
    db = await executor()
    rows = await db.fetch(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM migration_jobs
        WHERE repository_id = $1
        ORDER BY created_at DESC
        LIMIT $2
        """,
        repository_id,
        limit,
    )
    return [_job_to_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _job_to_dict(row) -> dict:
    """Convert a job row to a dict, parsing the JSONB column."""
    d = dict(row)
    files = d.get("files_changed")
    if isinstance(files, str):
        d["files_changed"] = json.loads(files)
    elif files is None:
        d["files_changed"] = []
    return d
