"""Code migrator -- FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routers.health import router as health_router
from app.api.routers.migration import router as migration_router
from app.api.routers.repositories import router as repositories_router
from app.api.routers.ws import router as ws_router
from app.clients import cache_client, github_client, llm_client
from app.config import VERSION, settings
from app.middleware import RequestIDMiddleware
from app.middleware.exception_handler import setup_exception_handlers
from app.repos.db import close_pool, get_pool
from app.ws_manager import manager as ws_manager

logger = logging.getLogger(__name__)


class _ColorFormatter(logging.Formatter):
    """ANSI-colored log formatter for terminal output."""

    _COLORS = {
        logging.DEBUG:    "\033[36m",     # cyan
        logging.INFO:     "\033[32m",     # green
        logging.WARNING:  "\033[33m",     # yellow
        logging.ERROR:    "\033[31m",     # red
        logging.CRITICAL: "\033[1;31m",   # bold red
    }
    _RESET = "\033[0m"
    _DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self._COLORS.get(record.levelno, "")
        ts = self.formatTime(record, "%H:%M:%S")
        name = record.name.split(".")[-1][:20]
        msg = record.getMessage()
        if record.exc_info:
            msg = f"{msg}\n{self.formatException(record.exc_info)}"
        return (
            f"{self._DIM}{ts}{self._RESET} "
            f"{color}{record.levelname:<8s}{self._RESET} "
            f"{self._DIM}[{name:>20s}]{self._RESET} "
            f"{color}{msg}{self._RESET}"
        )


class _PlainFormatter(logging.Formatter):
    """Plain-text formatter for file logs (no ANSI codes)."""

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        name = record.name.split(".")[-1][:20]
        msg = record.getMessage()
        if record.exc_info:
            msg = f"{msg}\n{self.formatException(record.exc_info)}"
        return f"{ts} {record.levelname:<8s} [{name:>20s}] {msg}"


def configure_logging() -> None:
    """Colored stderr logging plus an optional rotating file log (LOG_FILE)."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_ColorFormatter())
    handlers: list[logging.Handler] = [stderr_handler]

    if settings.LOG_FILE:
        from logging.handlers import RotatingFileHandler
        from pathlib import Path

        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(_PlainFormatter())
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers)

    # Quiet noisy loggers — uvicorn access logs flood the terminal
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Application lifespan: startup and shutdown hooks."""
    configure_logging()

    if "pytest" not in sys.modules:
        try:
            await get_pool()
            logger.info("Database pool initialised.")
        except Exception as db_exc:
            logger.warning("DB unavailable at startup (%s) — will retry on first request.", db_exc)
        if await cache_client.get_cache_backend().ping():
            logger.info("Cache backend reachable.")
        else:
            logger.warning("Cache backend unreachable — content reads will go upstream.")

    await ws_manager.start_heartbeat()
    yield
    # Shutdown: stop pings first, then release clients, then the pool.
    await ws_manager.stop_heartbeat()
    await github_client.close_client()
    await llm_client.close_client()
    await cache_client.close_client()
    await close_pool()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Code Migrator",
        version=VERSION,
        description="Repository browsing, edit tracking and AI-assisted code review",
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    setup_exception_handlers(application)

    application.add_middleware(RequestIDMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    application.include_router(health_router)
    application.include_router(repositories_router)
    application.include_router(migration_router)
    application.include_router(ws_router)
    return application


app = create_app()
