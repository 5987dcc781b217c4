"""Job tracker -- migration job state machine and transactional writer.

Lifecycle::

    PENDING → ANALYZING → READY → MIGRATING → COMPLETED
        └──────────┴─────────┴─────────┴──────→ FAILED

Saving edits completes a job directly from any non-terminal state.
``MIGRATING`` is declared for the product roadmap but nothing enters it yet.

Every write that touches a job also writes ``repositories.migration_status``
in the same asyncpg transaction, so the denormalised repository status never
disagrees with the job it mirrors.  Jobs are never deleted; each save yields
its own job row.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

import asyncpg

from app.errors import (
    BadRequestError,
    InvalidTransitionError,
    JobTransactionError,
    MigratorError,
    NotFoundError,
)
from app.repos.db import transaction
from app.repos.job_repo import (
    get_job_by_id,
    get_open_job,
    insert_job,
    insert_migration,
    list_jobs as list_job_rows,
    update_job,
)
from app.repos.repo_repo import (
    get_repository,
    get_repository_by_id,
    update_migration_status,
)
from app.services.content_cache import get_content_cache
from app.services.repo_content_service import get_file_content

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    ANALYZING = "ANALYZING"
    READY = "READY"
    MIGRATING = "MIGRATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.ANALYZING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.ANALYZING: frozenset({JobStatus.READY, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.READY: frozenset({JobStatus.MIGRATING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.MIGRATING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

COMPLETE_PROGRESS = 100

# Descriptor recorded for jobs provisioned implicitly by a save.
_EDIT_SESSION_TYPE = "MANUAL_EDIT"

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def can_transition(current: str, target: str) -> bool:
    try:
        return JobStatus(target) in _TRANSITIONS[JobStatus(current)]
    except ValueError:
        return False


def ensure_transition(current: str, target: str) -> None:
    """Raise :class:`InvalidTransitionError` unless *current* → *target* is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


# ---------------------------------------------------------------------------
# Tagged result for "open job, or provision one"
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExistingJob:
    """An open job was found for the repository and will be reused."""

    job: dict


@dataclass(frozen=True)
class NewJob:
    """No open job existed; a migration and a PENDING job were inserted."""

    job: dict
    migration: dict


@dataclass(frozen=True)
class MigrationMeta:
    name: str
    description: str | None = None
    type: str = _EDIT_SESSION_TYPE
    source_version: str | None = None
    target_version: str | None = None


def _edit_session_meta(repository: dict) -> MigrationMeta:
    return MigrationMeta(
        name=f"Edits to {repository['full_name']}",
        description="File edits saved from the editor",
    )


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


def job_view(job: dict) -> dict:
    """Client-facing projection of a migration_jobs row."""
    created_at = job.get("created_at")
    updated_at = job.get("updated_at")
    return {
        "id": str(job["id"]),
        "repositoryId": job["repository_id"],
        "userId": str(job["user_id"]),
        "migrationId": str(job["migration_id"]),
        "status": job["status"],
        "progress": job["progress"],
        "filesChanged": job.get("files_changed") or [],
        "createdAt": created_at.isoformat() if created_at else None,
        "updatedAt": updated_at.isoformat() if updated_at else None,
    }


# ---------------------------------------------------------------------------
# Transaction helpers
# ---------------------------------------------------------------------------


async def _provision_job(conn, repository: dict, user_id: UUID, meta: MigrationMeta) -> NewJob:
    """Insert migration + PENDING job and mark the repository ANALYZING."""
    migration = await insert_migration(
        conn,
        repository["id"],
        user_id,
        meta.name,
        meta.description,
        meta.type,
        meta.source_version,
        meta.target_version,
    )
    job = await insert_job(
        conn,
        repository["id"],
        user_id,
        migration["id"],
        JobStatus.PENDING.value,
        progress=0,
        files_changed=[],
    )
    await update_migration_status(repository["id"], JobStatus.ANALYZING.value, conn=conn)
    return NewJob(job=job, migration=migration)


async def _open_or_provision(conn, repository: dict, user_id: UUID) -> ExistingJob | NewJob:
    job = await get_open_job(repository["id"], user_id, conn=conn)
    if job is not None:
        return ExistingJob(job=job)
    return await _provision_job(conn, repository, user_id, _edit_session_meta(repository))


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def _refresh_cached_status(repository: dict) -> None:
    """Cached listings embed the repository status; drop them after a status write."""
    await get_content_cache().invalidate_all(repository["owner"], repository["name"])


async def create_job(repository_id: int, user_id: UUID, meta: MigrationMeta) -> dict:
    """Create a migration descriptor and a PENDING job for a repository.

    Migration insert, job insert and ``migration_status = ANALYZING`` commit
    together or not at all.
    """
    try:
        async with transaction() as conn:
            repository = await get_repository_by_id(repository_id, conn=conn)
            if repository is None or repository["user_id"] != user_id:
                raise NotFoundError("Repository not found")
            result = await _provision_job(conn, repository, user_id, meta)
    except MigratorError:
        raise
    except _DB_ERRORS as exc:
        logger.exception("create_job rolled back for repository %s", repository_id)
        raise JobTransactionError() from exc

    logger.info("Created migration job %s for repository %s", result.job["id"], repository_id)
    await _refresh_cached_status(repository)
    return job_view(result.job)


def _validate_changes(files: list[dict]) -> list[dict]:
    if not files:
        raise BadRequestError("No files to save")
    changes = []
    for entry in files:
        path = entry.get("path")
        content = entry.get("content")
        original = entry.get("originalContent")
        if not isinstance(path, str) or not path.strip("/"):
            raise BadRequestError("Every file needs a path")
        if not isinstance(content, str):
            raise BadRequestError(f"File {path} has no content")
        if original is not None and not isinstance(original, str):
            raise BadRequestError(f"File {path} has an invalid originalContent")
        changes.append({"path": path, "content": content, "originalContent": original})
    return changes


async def _reconcile_originals(user_id: UUID, owner: str, repo: str, changes: list[dict]) -> list[dict]:
    """Fill in missing ``originalContent`` from the repository.  Any failure propagates."""
    reconciled = []
    for change in changes:
        if change["originalContent"] is None:
            upstream = await get_file_content(user_id, owner, repo, change["path"])
            change = {**change, "originalContent": upstream["content"]}
        reconciled.append(change)
    return reconciled


async def save_edits(user_id: UUID, owner: str, repo: str, files: list[dict]) -> dict:
    """Record a batch of file edits as a completed job.

    Reuses the repository's open job or provisions one, replaces its
    ``files_changed`` with *files*, and completes both the job and the
    repository status inside one transaction.  Returns
    ``{"success", "migrationId", "jobId"}``.
    """
    changes = _validate_changes(files)

    repository = await get_repository(user_id, owner, repo)
    if repository is None:
        raise NotFoundError(f"Repository {owner}/{repo} not found")

    # Upstream reads happen before the transaction opens; a failure here
    # rejects the save with nothing written.
    changes = await _reconcile_originals(user_id, owner, repo, changes)

    try:
        async with transaction() as conn:
            opened = await _open_or_provision(conn, repository, user_id)
            job = opened.job
            ensure_transition(job["status"], JobStatus.COMPLETED.value)
            job = await update_job(
                conn,
                job["id"],
                JobStatus.COMPLETED.value,
                COMPLETE_PROGRESS,
                files_changed=changes,
            )
            if job is None:
                raise JobTransactionError("Migration job vanished during save")
            await update_migration_status(repository["id"], JobStatus.COMPLETED.value, conn=conn)
    except MigratorError:
        raise
    except _DB_ERRORS as exc:
        logger.exception("save_edits rolled back for %s/%s", owner, repo)
        raise JobTransactionError() from exc

    logger.info(
        "Saved %d file(s) to %s/%s as job %s (%s)",
        len(changes), owner, repo, job["id"],
        "new job" if isinstance(opened, NewJob) else "existing job",
    )

    await _refresh_cached_status(repository)

    return {
        "success": True,
        "migrationId": str(job["migration_id"]),
        "jobId": str(job["id"]),
    }


async def fail_job(user_id: UUID, job_id: UUID, reason: str | None = None) -> dict:
    """Move a non-terminal job to FAILED and mirror it onto the repository."""
    try:
        async with transaction() as conn:
            job = await get_job_by_id(job_id, conn=conn, for_update=True)
            if job is None or job["user_id"] != user_id:
                raise NotFoundError("Migration job not found")
            ensure_transition(job["status"], JobStatus.FAILED.value)
            job = await update_job(conn, job_id, JobStatus.FAILED.value, job["progress"])
            await update_migration_status(job["repository_id"], JobStatus.FAILED.value, conn=conn)
            repository = await get_repository_by_id(job["repository_id"], conn=conn)
    except MigratorError:
        raise
    except _DB_ERRORS as exc:
        logger.exception("fail_job rolled back for job %s", job_id)
        raise JobTransactionError() from exc

    logger.warning("Migration job %s failed: %s", job_id, reason or "no reason given")
    if repository is not None:
        await _refresh_cached_status(repository)
    return job_view(job)


async def list_jobs(user_id: UUID, owner: str, repo: str) -> list[dict]:
    """Job history for one of the user's repositories, newest first."""
    repository = await get_repository(user_id, owner, repo)
    if repository is None:
        raise NotFoundError(f"Repository {owner}/{repo} not found")
    rows = await list_job_rows(repository["id"])
    return [job_view(r) for r in rows]
