"""GitHub API client -- repository contents, raw files, and git trees."""

import base64
import logging
from urllib.parse import quote

import httpx
from cachetools import TTLCache

from app.config import settings
from app.errors import UpstreamError

logger = logging.getLogger(__name__)

# ── Response caches (reduces GitHub API rate-limit pressure) ────────────────
# Key format: (access_token, full_name)
# TTL = 300 s (5 min) — repo metadata barely changes; content is cached
# separately (and invalidated explicitly) by the ContentCache.

_repo_meta_cache: TTLCache[tuple[str, str], dict] = TTLCache(maxsize=500, ttl=300)

# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client for GitHub API calls."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=30.0)
    return _client


async def close_client() -> None:
    """Close the shared HTTP client.  Called during app shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


# ── Helpers ──────────────────────────────────────────────────────────────────


def _auth_headers(access_token: str) -> dict:
    """Return standard GitHub API auth headers."""
    return {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/vnd.github+json",
    }


def _contents_url(owner: str, repo: str, path: str) -> str:
    base = f"{settings.GITHUB_API_BASE}/repos/{owner}/{repo}/contents"
    path = path.strip("/")
    return f"{base}/{quote(path)}" if path else base


def _raise_for_upstream(response: httpx.Response, action: str) -> None:
    """Raise :class:`UpstreamError` for any non-2xx GitHub response."""
    if response.is_success:
        return
    try:
        message = response.json().get("message", "")
    except ValueError:
        message = response.text[:200]
    logger.error("GitHub %s returned %d: %s", action, response.status_code, message)
    raise UpstreamError(action, response.status_code, message)


async def _get(url: str, action: str, access_token: str | None, params: dict | None = None) -> httpx.Response:
    client = _get_client()
    headers = _auth_headers(access_token) if access_token else {}
    try:
        response = await client.get(url, params=params, headers=headers)
    except httpx.RequestError as exc:
        logger.error("GitHub %s request error: %s", action, exc)
        raise UpstreamError(action, 0, str(exc)) from exc
    _raise_for_upstream(response, action)
    return response


# ── Endpoints ────────────────────────────────────────────────────────────────


async def get_repo_metadata(access_token: str, owner: str, repo: str) -> dict:
    """Fetch top-level metadata for a repo (cached 5 min).

    Returns dict with full_name, default_branch, private, archived.
    """
    full_name = f"{owner}/{repo}"
    key = (access_token, full_name)
    cached = _repo_meta_cache.get(key)
    if cached is not None:
        return cached

    response = await _get(
        f"{settings.GITHUB_API_BASE}/repos/{full_name}",
        "Get repository",
        access_token,
    )
    data = response.json()
    result = {
        "full_name": data.get("full_name", full_name),
        "default_branch": data.get("default_branch", "main"),
        "private": data.get("private", False),
        "archived": data.get("archived", False),
    }
    _repo_meta_cache[key] = result
    return result


async def get_repo_contents(
    access_token: str,
    owner: str,
    repo: str,
    path: str = "",
    ref: str | None = None,
) -> list[dict] | dict:
    """GET /repos/{owner}/{repo}/contents/{path}.

    Returns the raw JSON: a list of entries for a directory, a single
    object for a file.
    """
    params = {"ref": ref} if ref else None
    response = await _get(_contents_url(owner, repo, path), "Get repository contents", access_token, params)
    return response.json()


async def get_raw_file(access_token: str, download_url: str) -> str:
    """Download a file's raw text from its ``download_url``."""
    response = await _get(download_url, "Download file", access_token)
    return response.text


async def get_file(
    access_token: str,
    owner: str,
    repo: str,
    path: str,
    ref: str | None = None,
) -> dict:
    """Fetch one file and decode it.

    Returns dict with path, content, sha, type.  Large files come back from
    the contents API without inline content; those are fetched through
    their download_url instead.
    """
    data = await get_repo_contents(access_token, owner, repo, path, ref)
    if isinstance(data, list) or data.get("type") != "file":
        raise UpstreamError("Get file", 422, f"{path} is not a file")

    if data.get("encoding") == "base64" and data.get("content"):
        content = base64.b64decode(data["content"]).decode("utf-8", errors="replace")
    elif data.get("download_url"):
        content = await get_raw_file(access_token, data["download_url"])
    else:
        content = data.get("content") or ""

    return {
        "path": data.get("path", path),
        "content": content,
        "sha": data.get("sha"),
        "type": "file",
    }


async def get_repo_tree(
    access_token: str,
    owner: str,
    repo: str,
    branch: str,
    recursive: bool = True,
) -> list[dict]:
    """Fetch the file tree for a repo at a branch (or SHA).

    Returns list of dicts with path, type ('blob'|'tree'|'commit'), sha,
    size (bytes, blobs only) and url.  Truncated trees (>100k entries)
    return whatever GitHub provides.
    """
    params: dict[str, str] = {}
    if recursive:
        params["recursive"] = "1"
    response = await _get(
        f"{settings.GITHUB_API_BASE}/repos/{owner}/{repo}/git/trees/{quote(branch, safe='')}",
        "Get repository tree",
        access_token,
        params,
    )
    data = response.json()
    if data.get("truncated"):
        logger.warning("Git tree for %s/%s@%s was truncated by GitHub", owner, repo, branch)
    return [
        {
            "path": item["path"],
            "type": item["type"],
            "sha": item.get("sha"),
            "size": item.get("size", 0),
            "url": item.get("url"),
        }
        for item in data.get("tree", [])
    ]
