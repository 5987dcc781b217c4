"""LLM client -- OpenAI-compatible completions endpoint (LM Studio et al.)."""

import asyncio
import json as _json
import logging
from typing import AsyncIterator

import httpx

from app.config import get_model_name, settings
from app.errors import ChatRelayError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful programming assistant. Provide clear, concise responses "
    "without unnecessary markdown formatting or code block labels. When showing "
    "code, use appropriate syntax highlighting but avoid explanatory text unless "
    "specifically asked."
)

STOP_SEQUENCES = ["\nUser:", "\n\nHuman:"]

_DONE_MARKER = "[DONE]"

# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client for LLM API calls."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=300.0)
    return _client


async def close_client() -> None:
    """Close the shared LLM HTTP client.  Called during app shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None

# ---------------------------------------------------------------------------
# Retry configuration
# ---------------------------------------------------------------------------

MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 2.0  # seconds — exponential: 2, 4, 8
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503})


def _compute_wait(exc: httpx.HTTPStatusError | None, attempt: int) -> float:
    """Return seconds to wait before retrying.

    Prefers the ``retry-after`` header for 429s. Falls back to exponential
    backoff capped at 30 seconds.
    """
    if exc is not None and exc.response is not None:
        retry_after = exc.response.headers.get("retry-after")
        if retry_after:
            try:
                return min(float(retry_after), 60.0)
            except (ValueError, TypeError):
                pass
    return min(RETRY_BACKOFF_BASE ** (attempt + 1), 30.0)


async def _retry_on_transient(
    coro_factory,
    *,
    max_retries: int = MAX_RETRIES,
    backoff_base: float = RETRY_BACKOFF_BASE,
):
    """Retry a coroutine factory on transient HTTP / timeout errors.

    ``coro_factory`` is a zero-arg callable that returns a new awaitable each
    time (so we can retry fresh).
    """
    last_exc: Exception | None = None
    for attempt in range(max_retries + 1):
        try:
            return await coro_factory()
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            last_exc = exc
            if attempt < max_retries:
                wait = min(backoff_base ** (attempt + 1), 30.0)
                logger.warning(
                    "LLM request %s (attempt %d/%d), retrying in %.1fs",
                    type(exc).__name__, attempt + 1, max_retries + 1, wait,
                )
                await asyncio.sleep(wait)
            else:
                raise
        except httpx.HTTPStatusError as exc:
            last_exc = exc
            if exc.response.status_code in _RETRYABLE_STATUS_CODES and attempt < max_retries:
                wait = _compute_wait(exc, attempt)
                logger.warning(
                    "LLM request %d (attempt %d/%d), retrying in %.1fs",
                    exc.response.status_code, attempt + 1, max_retries + 1, wait,
                )
                await asyncio.sleep(wait)
            else:
                raise
    raise last_exc  # type: ignore[misc]  # pragma: no cover

# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------


def _completions_url() -> str:
    return f"{settings.LLM_API_URL.rstrip('/')}/completions"


def _headers() -> dict:
    headers = {"Content-Type": "application/json"}
    if settings.LLM_API_KEY:
        headers["Authorization"] = f"Bearer {settings.LLM_API_KEY}"
    return headers


def build_request_body(prompt: str, model: str | None = None, *, stream: bool = False) -> dict:
    """Body for POST /completions, wrapping *prompt* in the assistant preamble."""
    return {
        "prompt": f"{SYSTEM_PROMPT}\n\nUser: {prompt}\n\nAssistant:",
        "model": get_model_name(model),
        "temperature": settings.LLM_TEMPERATURE,
        "max_tokens": settings.LLM_MAX_TOKENS,
        "stop": STOP_SEQUENCES,
        "stream": stream,
    }


def _extract_text(data: dict) -> str:
    choices = data.get("choices") or []
    if not choices:
        return ""
    return choices[0].get("text") or ""


def _completion_text(raw: bytes | str) -> str:
    """Text of a whole (non-streamed) JSON completion body."""
    try:
        data = _json.loads(raw)
    except ValueError as exc:
        raise ChatRelayError("Failed to parse language model response") from exc
    text = _extract_text(data) if isinstance(data, dict) else ""
    if not text:
        raise ChatRelayError("Invalid response format from language model backend")
    return text


def _is_json_body(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "")
    return content_type.split(";")[0].strip().lower() == "application/json"


# ---------------------------------------------------------------------------
# Single completion
# ---------------------------------------------------------------------------


async def complete(prompt: str, model: str | None = None) -> str:
    """Send one non-streaming completion request and return the text."""
    body = build_request_body(prompt, model)

    async def _call():
        client = _get_client()
        try:
            response = await client.post(_completions_url(), headers=_headers(), json=body)
        except httpx.ConnectError as exc:
            raise ChatRelayError(
                "Could not connect to the language model backend. Make sure it is running."
            ) from exc
        if response.status_code in _RETRYABLE_STATUS_CODES:
            response.raise_for_status()
        if response.status_code >= 400:
            raise ChatRelayError(f"LLM API {response.status_code}: {response.text[:200]}")

        return _completion_text(response.content).strip()

    return await _retry_on_transient(_call)


# ---------------------------------------------------------------------------
# Streaming completion
# ---------------------------------------------------------------------------


def parse_stream_line(line: str) -> str | None:
    """Decode one line of the ``data: {...}`` event stream.

    Returns the text fragment (possibly empty), or ``None`` for lines that
    carry no data (blank lines, comments, the ``[DONE]`` marker).
    Raises :class:`ChatRelayError` for a data line that is not valid JSON.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if not payload or payload == _DONE_MARKER:
        return None
    try:
        data = _json.loads(payload)
    except ValueError as exc:
        raise ChatRelayError("Could not decode language model stream") from exc
    if not isinstance(data, dict):
        raise ChatRelayError("Unexpected language model stream event")
    return _extract_text(data)


async def stream_completion(prompt: str, model: str | None = None) -> AsyncIterator[str]:
    """Yield text fragments as the backend generates them.

    Backends that ignore ``stream`` answer with one JSON completion instead;
    its text is yielded as a single fragment.

    No retry — a partially consumed stream cannot be replayed.  Closing the
    generator (``aclose``) releases the HTTP connection immediately.
    """
    body = build_request_body(prompt, model, stream=True)
    client = _get_client()
    logger.debug("Opening LLM stream (model=%s)", body["model"])

    try:
        async with client.stream("POST", _completions_url(), headers=_headers(), json=body) as response:
            if response.status_code >= 400:
                error_body = await response.aread()
                raise ChatRelayError(
                    f"LLM API {response.status_code}: {error_body.decode(errors='replace')[:200]}"
                )

            if _is_json_body(response):
                logger.debug("LLM backend answered without streaming")
                yield _completion_text(await response.aread())
                return

            async for raw_line in response.aiter_lines():
                if raw_line.strip() == f"data: {_DONE_MARKER}":
                    break
                fragment = parse_stream_line(raw_line)
                if fragment:
                    yield fragment
    except httpx.ConnectError as exc:
        raise ChatRelayError(
            "Could not connect to the language model backend. Make sure it is running."
        ) from exc
    except httpx.HTTPError as exc:
        raise ChatRelayError(f"Language model stream failed: {exc}") from exc
