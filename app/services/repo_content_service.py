"""Repository content service -- read-through gateway over GitHub + ContentCache.

Every read consults the ContentCache first.  Cached payloads are re-validated
before being trusted; a structurally invalid blob is a miss, and the fresh
upstream result overwrites it.  Cache failures never fail a request (the
cache logs and reports a miss); upstream failures surface as
:class:`UpstreamError` carrying GitHub's status.
"""

import logging
from uuid import UUID

from app.clients.github_client import (
    get_file,
    get_raw_file,
    get_repo_contents,
    get_repo_metadata,
    get_repo_tree,
)
from app.config import settings
from app.errors import AuthError, NotFoundError
from app.repos.repo_repo import get_repositories_by_user, get_repository
from app.repos.user_repo import get_user_by_id
from app.services.content_cache import (
    KIND_CONTENTS,
    KIND_FILE,
    KIND_TREE,
    get_content_cache,
)
from app.services.tree_builder import build_tree, entries_from_git_tree, tree_to_dicts

logger = logging.getLogger(__name__)

_ENTRY_TYPES = ("file", "dir")


# ---------------------------------------------------------------------------
# Payload validation
# ---------------------------------------------------------------------------


def validate_repo_payload(value: object) -> bool:
    """Shape check for a cached ``{repository, contents, currentContent?}`` payload."""
    if not isinstance(value, dict):
        return False
    if not value.get("repository"):
        return False
    if not isinstance(value.get("contents"), list):
        return False
    current = value.get("currentContent")
    if current is None:
        return True
    return (
        isinstance(current, dict)
        and isinstance(current.get("content"), str)
        and isinstance(current.get("path"), str)
        and current.get("type") in _ENTRY_TYPES
    )


def validate_file_payload(value: object) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("path"), str)
        and isinstance(value.get("content"), str)
    )


def _validate_tree_payload(value: object) -> bool:
    return isinstance(value, list) and all(
        isinstance(item, dict) and "path" in item and "type" in item for item in value
    )


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


def repository_view(row: dict) -> dict:
    """Client-facing projection of a repositories row."""
    updated_at = row.get("updated_at")
    return {
        "id": row["id"],
        "owner": row["owner"],
        "name": row["name"],
        "fullName": row["full_name"],
        "defaultBranch": row.get("default_branch") or "main",
        "migrationStatus": row.get("migration_status") or "PENDING",
        "updatedAt": updated_at.isoformat() if updated_at else None,
    }


def _entry_view(item: dict) -> dict:
    return {
        "name": item.get("name"),
        "path": item.get("path"),
        "type": item.get("type"),
        "size": item.get("size", 0),
        "sha": item.get("sha"),
        "download_url": item.get("download_url"),
    }


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def _access_token(user_id: UUID) -> str:
    user = await get_user_by_id(user_id)
    if user is None or not user.get("access_token"):
        raise AuthError("No GitHub token on file for this user")
    return user["access_token"]


async def _require_repository(user_id: UUID, owner: str, repo: str) -> dict:
    repository = await get_repository(user_id, owner, repo)
    if repository is None:
        raise NotFoundError(f"Repository {owner}/{repo} not found")
    return repository


async def _remember_file(owner: str, repo: str, file_payload: dict) -> None:
    """Cache a loaded file under its repository and under the chat namespace."""
    cache = get_content_cache()
    path = file_payload["path"]
    await cache.put(owner, repo, path, file_payload, kind=KIND_FILE)
    await cache.put(
        settings.CHAT_CACHE_OWNER,
        settings.CHAT_CACHE_REPO,
        path,
        file_payload,
        kind=KIND_FILE,
    )


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def list_repositories(user_id: UUID) -> list[dict]:
    """The user's connected repositories, with their migration status."""
    rows = await get_repositories_by_user(user_id)
    return [repository_view(r) for r in rows]


async def get_repository_contents(
    user_id: UUID,
    owner: str,
    repo: str,
    path: str | None = None,
) -> dict:
    """Directory listing (or single file) at *path*, cache-aside.

    Returns ``{"repository", "contents", "currentContent"?}``.  When *path*
    names a file its raw text is downloaded and returned as
    ``currentContent``.
    """
    cache = get_content_cache()
    normalized = cache.normalize(owner, repo, path)
    repository = await _require_repository(user_id, owner, repo)

    cached = await cache.get(owner, repo, normalized, kind=KIND_CONTENTS, validate=validate_repo_payload)
    if cached is not None:
        # Listings are shared between users; the repository row is not.
        return {**cached, "repository": repository_view(repository)}

    token = await _access_token(user_id)

    data = await get_repo_contents(token, owner, repo, normalized)

    payload: dict = {"repository": repository_view(repository)}
    if isinstance(data, list):
        payload["contents"] = [_entry_view(item) for item in data]
    else:
        payload["contents"] = [_entry_view(data)]
        if normalized and data.get("type") == "file" and data.get("download_url"):
            content = await get_raw_file(token, data["download_url"])
            current = {"content": content, "path": data.get("path", normalized), "type": "file"}
            payload["currentContent"] = current
            await _remember_file(owner, repo, {**current, "sha": data.get("sha")})

    await cache.put(owner, repo, normalized, payload, kind=KIND_CONTENTS)
    return payload


async def get_file_content(user_id: UUID, owner: str, repo: str, path: str) -> dict:
    """One file's decoded text: ``{"path", "content", "sha", "type"}``."""
    cache = get_content_cache()
    normalized = cache.normalize(owner, repo, path)
    if not normalized:
        raise NotFoundError("A file path is required")
    await _require_repository(user_id, owner, repo)

    cached = await cache.get(owner, repo, normalized, kind=KIND_FILE, validate=validate_file_payload)
    if cached is not None:
        return cached

    token = await _access_token(user_id)

    file_payload = await get_file(token, owner, repo, normalized)
    await _remember_file(owner, repo, file_payload)
    return file_payload


async def get_repository_tree(
    user_id: UUID,
    owner: str,
    repo: str,
    branch: str | None = None,
) -> list[dict]:
    """Nested file tree for the repository at *branch* (default branch if omitted)."""
    cache = get_content_cache()
    repository = await _require_repository(user_id, owner, repo)
    ref = branch or repository.get("default_branch")
    token = None
    if not ref:
        token = await _access_token(user_id)
        meta = await get_repo_metadata(token, owner, repo)
        ref = meta["default_branch"]

    tree_key = f"@{ref}"
    items = await cache.get(owner, repo, tree_key, kind=KIND_TREE, validate=_validate_tree_payload)
    if items is None:
        token = token or await _access_token(user_id)
        items = await get_repo_tree(token, owner, repo, ref)
        await cache.put(owner, repo, tree_key, items, kind=KIND_TREE)

    return tree_to_dicts(build_tree(entries_from_git_tree(items)))


async def invalidate_repository(user_id: UUID, owner: str, repo: str) -> int:
    """Drop every cached entry for the repository.  Returns the count removed."""
    await _require_repository(user_id, owner, repo)
    removed = await get_content_cache().invalidate_all(owner, repo)
    logger.info("Cache invalidated for %s/%s (%d entries)", owner, repo, removed)
    return removed
