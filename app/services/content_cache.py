"""Content cache -- cache-aside store in front of the source-control API.

Keys look like ``repo:{owner}:{repo}:{kind}[:{path}]`` where *path* has its
``/`` separators replaced by ``:``.  The repository root has no path
segment at all, so it can never collide with a real file or directory
(even one literally named ``root``).

Every backend call is bounded by ``CACHE_OP_TIMEOUT`` and every backend
failure is logged and absorbed: a broken cache degrades to "always miss",
it never fails the request that consulted it.
"""

import asyncio
import json
import logging
from typing import Any, Callable

from app.clients.cache_client import CacheBackend, get_cache_backend
from app.config import settings

logger = logging.getLogger(__name__)

KEY_DELIMITER = ":"

# Kinds of cached payload.  Each gets its own key namespace per repo.
KIND_CONTENTS = "contents"
KIND_FILE = "file"
KIND_TREE = "tree"

_GLOB_SPECIALS = "*?[]"


def _escape_glob(text: str) -> str:
    """Escape glob metacharacters so *text* only matches itself.

    ``[x]`` is understood by both Redis MATCH and :mod:`fnmatch`, unlike a
    backslash escape.
    """
    return "".join(f"[{ch}]" if ch in _GLOB_SPECIALS else ch for ch in text)


def _strip_prefix(path: str, prefix: str) -> str:
    """Remove every leading occurrence of ``prefix/`` from *path*."""
    prefix = prefix.strip("/")
    if not prefix:
        return path
    marker = prefix + "/"
    while path.startswith(marker):
        path = path[len(marker):].lstrip("/")
    if path == prefix:
        return ""
    return path


def normalize_path(
    path: str | None,
    owner: str | None = None,
    repo: str | None = None,
    stripped_prefix: str | None = None,
) -> str:
    """Normalise a repository-relative path for key construction.

    Strips surrounding slashes, then any leading canonical repository name
    a caller may have glued on: the configured ``CACHE_STRIPPED_REPO_PREFIX``
    and ``{owner}/{repo}`` itself.  Stripping repeats until nothing changes,
    so ``normalize_path(normalize_path(p)) == normalize_path(p)``.

    Returns ``""`` for the repository root.
    """
    if stripped_prefix is None:
        stripped_prefix = settings.CACHE_STRIPPED_REPO_PREFIX
    prefixes = [p for p in (stripped_prefix, f"{owner}/{repo}" if owner and repo else "") if p]

    current = (path or "").strip().strip("/")
    while True:
        previous = current
        for prefix in prefixes:
            current = _strip_prefix(current, prefix)
        if current == previous:
            return current


class ContentCache:
    """Key/value cache of repository content with TTL and invalidation."""

    def __init__(
        self,
        backend: CacheBackend | None = None,
        *,
        default_ttl: int | None = None,
        key_prefix: str | None = None,
        stripped_prefix: str | None = None,
        op_timeout: float | None = None,
    ) -> None:
        self._backend = backend
        self.default_ttl = default_ttl or settings.REDIS_CACHE_TTL
        self.key_prefix = key_prefix or settings.CACHE_KEY_PREFIX
        self.stripped_prefix = (
            settings.CACHE_STRIPPED_REPO_PREFIX if stripped_prefix is None else stripped_prefix
        )
        self.op_timeout = op_timeout or settings.CACHE_OP_TIMEOUT

    @property
    def backend(self) -> CacheBackend:
        if self._backend is None:
            self._backend = get_cache_backend()
        return self._backend

    # ── keys ──────────────────────────────────────────────────

    def normalize(self, owner: str, repo: str, path: str | None) -> str:
        return normalize_path(path, owner, repo, stripped_prefix=self.stripped_prefix)

    def make_key(self, owner: str, repo: str, path: str | None = "", kind: str = KIND_CONTENTS) -> str:
        """Build the cache key for ``(owner, repo, path)`` under *kind*."""
        parts = [self.key_prefix, owner, repo, kind]
        normalized = self.normalize(owner, repo, path)
        if normalized:
            parts.append(normalized)
        key = KEY_DELIMITER.join(parts).replace("/", KEY_DELIMITER)
        logger.debug("Cache key %s", key)
        return key

    def repo_pattern(self, owner: str, repo: str) -> str:
        """Glob matching every key that belongs to ``owner/repo``."""
        return KEY_DELIMITER.join(
            [_escape_glob(self.key_prefix), _escape_glob(owner), _escape_glob(repo), "*"]
        )

    # ── operations ────────────────────────────────────────────

    async def get(
        self,
        owner: str,
        repo: str,
        path: str | None = "",
        *,
        kind: str = KIND_CONTENTS,
        validate: Callable[[Any], bool] | None = None,
    ) -> Any | None:
        """Return the cached value, or ``None`` on a miss.

        Backend errors, undecodable blobs, and values rejected by *validate*
        are all reported as misses.
        """
        key = self.make_key(owner, repo, path, kind)
        try:
            raw = await asyncio.wait_for(self.backend.get(key), timeout=self.op_timeout)
        except Exception as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None

        if raw is None:
            logger.debug("Cache miss %s", key)
            return None

        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

        if validate is not None and not validate(value):
            logger.warning("Discarding cache entry with invalid shape %s", key)
            return None

        logger.debug("Cache hit %s", key)
        return value

    async def put(
        self,
        owner: str,
        repo: str,
        path: str | None,
        value: Any,
        ttl: int | None = None,
        *,
        kind: str = KIND_CONTENTS,
    ) -> bool:
        """Store *value* (overwriting any previous entry).  Returns success.

        Write failures are logged and swallowed; the caller already holds
        the fresh value and must not be failed by the cache.
        """
        if value is None:
            raise ValueError("Cannot cache None — it is indistinguishable from a miss")
        effective_ttl = ttl if ttl is not None else self.default_ttl
        if effective_ttl < 1:
            raise ValueError("Cache TTL must be at least one second")

        key = self.make_key(owner, repo, path, kind)
        payload = json.dumps(value, default=str)
        try:
            await asyncio.wait_for(
                self.backend.setex(key, effective_ttl, payload),
                timeout=self.op_timeout,
            )
        except Exception as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)
            return False
        logger.debug("Cached %s (ttl=%ds)", key, effective_ttl)
        return True

    async def invalidate(
        self,
        owner: str,
        repo: str,
        path: str | None = "",
        *,
        kind: str = KIND_CONTENTS,
    ) -> bool:
        """Delete one entry.  Returns True if something was removed."""
        key = self.make_key(owner, repo, path, kind)
        try:
            removed = await asyncio.wait_for(self.backend.delete(key), timeout=self.op_timeout)
        except Exception as exc:
            logger.warning("Cache invalidation failed for %s: %s", key, exc)
            return False
        return removed > 0

    async def invalidate_all(self, owner: str, repo: str) -> int:
        """Delete every entry for ``owner/repo``.  Returns the number removed."""
        pattern = self.repo_pattern(owner, repo)
        logger.debug("Invalidating cache with pattern %s", pattern)
        try:
            removed = await asyncio.wait_for(
                self.backend.delete_matching(pattern),
                timeout=self.op_timeout,
            )
        except Exception as exc:
            logger.warning("Cache invalidation failed for %s: %s", pattern, exc)
            return 0
        if removed:
            logger.info("Invalidated %d cache entries for %s/%s", removed, owner, repo)
        return removed


_content_cache: ContentCache | None = None


def get_content_cache() -> ContentCache:
    """Return the process-wide ContentCache (built on the shared backend)."""
    global _content_cache
    if _content_cache is None:
        _content_cache = ContentCache()
    return _content_cache
