"""Repository repository -- reads and writes for the repositories table."""

from uuid import UUID

from app.repos.db import executor

_COLUMNS = """
    id, user_id, owner, name, full_name, default_branch,
    migration_status, created_at, updated_at
"""


async def get_repositories_by_user(user_id: UUID) -> list[dict]:
    """Fetch all connected repositories for a user, most recently updated first."""
    db = await executor()
    rows = await db.fetch(
        f"""
        SELECT {_COLUMNS}
        FROM repositories
        WHERE user_id = $1
        ORDER BY updated_at DESC
        """,
        user_id,
    )
    return [dict(r) for r in rows]


async def get_repository(user_id: UUID, owner: str, name: str, conn=None) -> dict | None:
    """Fetch one of the user's repositories by ``owner/name``."""
    db = await executor(conn)
    row = await db.fetchrow(
        f"""
        SELECT {_COLUMNS}
        FROM repositories
        WHERE user_id = $1 AND owner = $2 AND name = $3
        """,
        user_id,
        owner,
        name,
    )
    return dict(row) if row else None


async def get_repository_by_id(repository_id: int, conn=None) -> dict | None:
    """Fetch a repository by primary key. Returns None if not found."""
    db = await executor(conn)
    row = await db.fetchrow(
        f"SELECT {_COLUMNS} FROM repositories WHERE id = $1",
        repository_id,
    )
    return dict(row) if row else None


async def update_migration_status(repository_id: int, status: str, conn=None) -> bool:
    """Set ``migration_status`` on a repository. Returns True if a row changed.

    Callers that mirror a job status pass the transaction's *conn* so the
    repository row and the job row commit together.
    """
    db = await executor(conn)
    result = await db.execute(
        """
        UPDATE repositories SET migration_status = $2, updated_at = now()
        WHERE id = $1
        """,
        repository_id,
        status,
    )
    return result == "UPDATE 1"
