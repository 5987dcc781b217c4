"""Migration router -- file access, tree, edit saves and job bookkeeping."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from app.api.deps import get_current_user
from app.services.job_tracker import (
    MigrationMeta,
    create_job,
    fail_job,
    list_jobs,
    save_edits,
)
from app.services.repo_content_service import get_file_content, get_repository_tree

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/migration", tags=["migration"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateJobRequest(_CamelModel):
    """Request body for creating a migration job."""

    repository_id: int = Field(..., ge=1, alias="repositoryId")
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=2000)
    type: str = Field(..., min_length=1, max_length=50)
    source_version: str | None = Field(None, max_length=50, alias="sourceVersion")
    target_version: str | None = Field(None, max_length=50, alias="targetVersion")


class FileChange(_CamelModel):
    path: str = Field(..., min_length=1, max_length=1024)
    content: str
    original_content: str | None = Field(None, alias="originalContent")


class SaveChangesRequest(BaseModel):
    files: list[FileChange] = Field(..., min_length=1)


class FailJobRequest(BaseModel):
    reason: str | None = Field(None, max_length=2000)


@router.post("/create-job")
async def create_migration_job(
    body: CreateJobRequest,
    current_user: dict = Depends(get_current_user),
) -> dict:
    """Create a migration descriptor plus a PENDING job."""
    meta = MigrationMeta(
        name=body.name,
        description=body.description,
        type=body.type,
        source_version=body.source_version,
        target_version=body.target_version,
    )
    return await create_job(body.repository_id, current_user["id"], meta)


@router.get("/{owner}/{name}/contents/{path:path}")
async def file_content(
    owner: str,
    name: str,
    path: str,
    current_user: dict = Depends(get_current_user),
) -> dict:
    """Decoded text of one file."""
    return await get_file_content(current_user["id"], owner, name, path)


@router.get("/{owner}/{name}/tree")
async def repository_tree(
    owner: str,
    name: str,
    branch: str | None = Query(None, max_length=255),
    current_user: dict = Depends(get_current_user),
) -> list[dict]:
    """Nested file tree: directories first, then files, each sorted by name."""
    return await get_repository_tree(current_user["id"], owner, name, branch)


@router.post("/{owner}/{name}/save")
async def save_file_changes(
    owner: str,
    name: str,
    body: SaveChangesRequest,
    current_user: dict = Depends(get_current_user),
) -> dict:
    """Record edited files (new and original content) as a completed job."""
    files = [
        {"path": f.path, "content": f.content, "originalContent": f.original_content}
        for f in body.files
    ]
    return await save_edits(current_user["id"], owner, name, files)


@router.get("/{owner}/{name}/jobs")
async def job_history(
    owner: str,
    name: str,
    current_user: dict = Depends(get_current_user),
) -> dict:
    """Migration jobs for the repository, newest first."""
    items = await list_jobs(current_user["id"], owner, name)
    return {"items": items}


@router.post("/jobs/{job_id}/fail")
async def mark_job_failed(
    job_id: UUID,
    body: FailJobRequest,
    current_user: dict = Depends(get_current_user),
) -> dict:
    """Move a non-terminal job to FAILED."""
    return await fail_job(current_user["id"], job_id, body.reason)
