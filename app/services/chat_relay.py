"""Chat relay -- streams a language-model answer to one chat connection.

Wire protocol (outbound frames are ``{"type": <event>, "payload": {...}}``):

- ``chat-start``      the request was accepted and the model is being called
- ``chat-response``   ``{"content": <cumulative text so far>}``, repeatable
- ``chat-complete``   the answer is finished
- ``chat-error``      ``{"message": ...}``, terminal, never follows complete

Upstream fragments are buffered and flushed once the buffer holds a word
boundary (space or newline), so the client sees roughly one event per word.
Whatever is left in the buffer is flushed when the upstream stream ends.

The channel's liveness is checked before every emit and before waiting on
the next fragment; once the client is gone the upstream stream is closed and
nothing more is sent.
"""

import asyncio
import logging
import posixpath
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Protocol

from app.clients.llm_client import stream_completion
from app.config import settings
from app.errors import ChatRelayError, MigratorError
from app.services.content_cache import KIND_FILE, ContentCache, get_content_cache

logger = logging.getLogger(__name__)

EVENT_START = "chat-start"
EVENT_RESPONSE = "chat-response"
EVENT_COMPLETE = "chat-complete"
EVENT_ERROR = "chat-error"

_GENERIC_ERROR = "Failed to process chat message"
_FILES_NOT_LOADED = (
    "Could not find the file content in cache. "
    "Please make sure the file is properly loaded first."
)

# Trailing path segments kept by the lookup fallback.
FALLBACK_SEGMENTS = 3

_LANGUAGE_TAGS = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "py": "python",
    "java": "java",
    "cpp": "cpp",
    "cs": "csharp",
    "go": "go",
    "rs": "rust",
    "rb": "ruby",
    "php": "php",
    "html": "html",
    "css": "css",
    "json": "json",
    "yml": "yaml",
    "yaml": "yaml",
    "md": "markdown",
}


class ChatChannel(Protocol):
    """The slice of a client connection the relay needs."""

    @property
    def is_open(self) -> bool: ...

    async def send_event(self, event: str, payload: dict | None = None) -> bool: ...


StreamFactory = Callable[[str, str | None], AsyncIterator[str]]


# ---------------------------------------------------------------------------
# Prompt construction
# ---------------------------------------------------------------------------


def language_tag(path: str) -> str:
    """Fence language for *path*, derived from its extension."""
    ext = posixpath.splitext(posixpath.basename(path))[1].lstrip(".").lower()
    return _LANGUAGE_TAGS.get(ext, ext)


def format_file_block(path: str, content: str) -> str:
    return f"File: {path}\n```{language_tag(path)}\n{content.strip()}\n```"


def build_prompt(message: str, files: list[tuple[str, str]]) -> str:
    """Embed resolved ``(path, content)`` pairs ahead of the user's question."""
    if not files:
        return message
    blocks = "\n\n".join(format_file_block(path, content) for path, content in files)
    return f"Please analyze these file(s):\n\n{blocks}\n\nUser question: {message}"


@dataclass(frozen=True)
class ChatRequest:
    message: str
    files: list[str] = field(default_factory=list)
    model: str | None = None

    @classmethod
    def from_payload(cls, payload: object) -> "ChatRequest":
        if not isinstance(payload, dict):
            raise ChatRelayError("Chat payload must be an object")
        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ChatRelayError("Chat message is empty")
        files = payload.get("files") or []
        if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
            raise ChatRelayError("files must be a list of paths")
        model = payload.get("model")
        if model is not None and not isinstance(model, str):
            raise ChatRelayError("model must be a string")
        return cls(message=message, files=files, model=model or None)


# ---------------------------------------------------------------------------
# File resolution
# ---------------------------------------------------------------------------


def _has_content(value: object) -> bool:
    return isinstance(value, dict) and isinstance(value.get("content"), str)


def fallback_path(path: str) -> str:
    """The last few segments of *path*, for callers that sent a longer prefix."""
    segments = [s for s in path.strip("/").split("/") if s]
    return "/".join(segments[-FALLBACK_SEGMENTS:])


async def _resolve_one(cache: ContentCache, path: str) -> tuple[str, str] | None:
    owner, repo = settings.CHAT_CACHE_OWNER, settings.CHAT_CACHE_REPO
    cached = await cache.get(owner, repo, path, kind=KIND_FILE, validate=_has_content)
    if cached is None:
        alt = fallback_path(path)
        if alt and alt != cache.normalize(owner, repo, path):
            logger.debug("File %s not cached, trying %s", path, alt)
            cached = await cache.get(owner, repo, alt, kind=KIND_FILE, validate=_has_content)
    if cached is None:
        logger.warning("File content not found for %s", path)
        return None
    return path, cached["content"]


async def resolve_files(paths: list[str], cache: ContentCache | None = None) -> list[tuple[str, str]]:
    """Look up each path in the content cache; unresolved paths are dropped."""
    cache = cache or get_content_cache()
    results = await asyncio.gather(*(_resolve_one(cache, p) for p in paths))
    return [r for r in results if r is not None]


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


def _has_boundary(text: str) -> bool:
    return " " in text or "\n" in text


class StreamRelay:
    """Serves one chat request on one channel.  Not reused across requests."""

    def __init__(
        self,
        channel: ChatChannel,
        *,
        stream_factory: StreamFactory | None = None,
        cache: ContentCache | None = None,
        idle_timeout: float | None = None,
    ) -> None:
        self.channel = channel
        self._stream_factory = stream_factory or stream_completion
        self._cache = cache
        self.idle_timeout = idle_timeout or settings.CHAT_STREAM_IDLE_TIMEOUT

    async def _emit(self, event: str, payload: dict | None = None) -> bool:
        if not self.channel.is_open:
            return False
        return await self.channel.send_event(event, payload)

    async def prepare_prompt(self, request: ChatRequest) -> str:
        if not request.files:
            return request.message
        resolved = await resolve_files(request.files, self._cache)
        if not resolved:
            raise ChatRelayError(_FILES_NOT_LOADED)
        logger.debug("Resolved %d of %d file(s) for chat", len(resolved), len(request.files))
        return build_prompt(request.message, resolved)

    async def handle_chat(self, payload: object) -> None:
        """Run one request to completion, error, cancellation or disconnect."""
        try:
            request = ChatRequest.from_payload(payload)
            prompt = await self.prepare_prompt(request)
            if not await self._emit(EVENT_START):
                return
            await self._relay(prompt, request.model)
        except asyncio.CancelledError:
            raise
        except MigratorError as exc:
            logger.warning("Chat request failed: %s", exc)
            await self._emit(EVENT_ERROR, {"message": str(exc)})
        except Exception:
            logger.exception("Chat relay error")
            await self._emit(EVENT_ERROR, {"message": _GENERIC_ERROR})

    async def _relay(self, prompt: str, model: str | None) -> None:
        response = ""
        buffer = ""
        stream = self._stream_factory(prompt, model)
        try:
            while True:
                if not self.channel.is_open:
                    logger.info("Chat client gone, abandoning stream")
                    return
                try:
                    fragment = await asyncio.wait_for(stream.__anext__(), timeout=self.idle_timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as exc:
                    raise ChatRelayError("The language model stopped responding") from exc

                buffer += fragment
                if _has_boundary(buffer):
                    response += buffer
                    buffer = ""
                    if not await self._emit(EVENT_RESPONSE, {"content": response}):
                        return

            if buffer:
                response += buffer
                if not await self._emit(EVENT_RESPONSE, {"content": response}):
                    return
            await self._emit(EVENT_COMPLETE)
        finally:
            await stream.aclose()


# ---------------------------------------------------------------------------
# Per-connection session
# ---------------------------------------------------------------------------


class ChatSession:
    """Owns at most one in-flight relay for a connection.

    A new request cancels the one in flight; closing the session cancels
    whatever is running.
    """

    def __init__(self, channel: ChatChannel, relay_factory: Callable[[ChatChannel], StreamRelay] = StreamRelay) -> None:
        self.channel = channel
        self._relay_factory = relay_factory
        self._task: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    async def submit(self, payload: object) -> asyncio.Task:
        await self.cancel()
        relay = self._relay_factory(self.channel)
        self._task = asyncio.create_task(relay.handle_chat(payload))
        return self._task

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        await self.cancel()
