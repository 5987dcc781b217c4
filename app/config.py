"""Application configuration loaded from environment variables.

Uses ``pydantic-settings`` for automatic env-var loading, type coercion,
and ``.env`` file support.  Validates required settings on import — fails
fast if critical vars are missing outside of tests.
"""

VERSION = "0.1.0"

import sys

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ---------------------------------------------------------------------------
# Required var names — checked after instantiation (not during), so tests
# that leave them blank still work.
# ---------------------------------------------------------------------------
_REQUIRED_VARS: list[str] = [
    "DATABASE_URL",
    "JWT_SECRET",
]


class Settings(BaseSettings):
    """Application settings — sourced from environment / ``.env`` file.

    Required vars (must be set in production, may be blank in test):
      DATABASE_URL, JWT_SECRET
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- required in production (default empty so tests don't fail) --
    DATABASE_URL: str = ""
    JWT_SECRET: str = ""

    # -- optional with sensible defaults --
    FRONTEND_URL: str = "http://localhost:4200"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    DB_POOL_MIN_SIZE: int = Field(default=1, ge=1)
    DB_POOL_MAX_SIZE: int = Field(default=10, ge=1)
    DB_COMMAND_TIMEOUT: float = Field(default=30.0, gt=0)

    GITHUB_API_BASE: str = "https://api.github.com"

    # -------------------------------------------------------------------------
    # Content cache.
    #
    # REDIS_URL empty → in-process TTL cache (single worker / tests only).
    # REDIS_CACHE_TTL is the default lifetime of every entry, in seconds.
    # CACHE_STRIPPED_REPO_PREFIX is an "owner/repo" string that clients
    # sometimes prepend to file paths; it is removed before keys are built.
    # -------------------------------------------------------------------------
    REDIS_URL: str = ""
    REDIS_CACHE_TTL: int = Field(default=7200, ge=1)
    CACHE_KEY_PREFIX: str = "repo"
    CACHE_STRIPPED_REPO_PREFIX: str = ""
    CACHE_MEMORY_MAXSIZE: int = Field(default=4096, ge=1)
    # Upper bound on any single cache round-trip; a slow cache is a miss.
    CACHE_OP_TIMEOUT: float = Field(default=2.0, gt=0)

    # Namespace the chat relay reads file content from.
    CHAT_CACHE_OWNER: str = "current"
    CHAT_CACHE_REPO: str = "repo"

    # -------------------------------------------------------------------------
    # Language model backend (OpenAI-compatible /completions endpoint,
    # e.g. LM Studio).  LLM_DEFAULT_MODEL is a selector, not a model name —
    # see get_model_name below.
    # -------------------------------------------------------------------------
    LLM_API_URL: str = "http://localhost:1234/v1"
    LLM_API_KEY: str = ""
    LLM_DEFAULT_MODEL: str = "deepseek"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 2000

    # Seconds to wait for the next streamed fragment before abandoning
    # the upstream call.
    CHAT_STREAM_IDLE_TIMEOUT: float = Field(default=60.0, gt=0)


settings = Settings()

# ---------------------------------------------------------------------------
# Model selector resolution
# ---------------------------------------------------------------------------
# Maps the selector a chat client sends → model name the backend expects.
_MODEL_MAP: dict[str, str] = {
    "deepseek": "deepseek-coder-6.7b-instruct",
    "codellama": "codellama-7b-instruct",
    "qwen": "qwen2.5-coder-7b-instruct",
    "starcoder": "starcoder2-7b",
}


def get_model_name(selector: str | None) -> str:
    """Return the backend model name for a chat model selector.

    Unknown or empty selectors resolve through LLM_DEFAULT_MODEL; if that
    is not a known selector either, the deepseek model is used.
    """
    if selector and selector in _MODEL_MAP:
        return _MODEL_MAP[selector]
    return _MODEL_MAP.get(settings.LLM_DEFAULT_MODEL, _MODEL_MAP["deepseek"])


# Validate at import time — but only when NOT running under pytest.
if "pytest" not in sys.modules:
    _missing = [v for v in _REQUIRED_VARS if not getattr(settings, v)]
    if _missing:
        print(
            f"[config] FATAL: missing required environment variables: "
            f"{', '.join(_missing)}",
            file=sys.stderr,
        )
        sys.exit(1)
