"""Repositories router -- list repositories, browse contents, drop cached content."""

import logging

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_user
from app.services.repo_content_service import (
    get_repository_contents,
    invalidate_repository,
    list_repositories,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/repositories", tags=["repositories"])


@router.get("")
async def list_repos(current_user: dict = Depends(get_current_user)) -> list[dict]:
    """Connected repositories for the authenticated user."""
    return await list_repositories(current_user["id"])


@router.get("/{owner}/{name}")
async def repository_contents(
    owner: str,
    name: str,
    path: str | None = Query(None, max_length=1024, description="Directory or file path"),
    current_user: dict = Depends(get_current_user),
) -> dict:
    """Directory listing (or single file) at *path*, root when omitted."""
    return await get_repository_contents(current_user["id"], owner, name, path)


@router.delete("/{owner}/{name}/cache")
async def drop_repository_cache(
    owner: str,
    name: str,
    current_user: dict = Depends(get_current_user),
) -> dict:
    """Forget every cached listing, file and tree for the repository."""
    removed = await invalidate_repository(current_user["id"], owner, name)
    return {"removed": removed}
