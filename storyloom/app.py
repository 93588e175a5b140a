"""FastAPI application factory, CORS, domain error mapping and the librarian scheduler."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storyloom.agents.builtin import register_builtin_agents
from storyloom.config import get_settings
from storyloom.errors import (
    ConcurrentWriteConflict,
    InvalidOperation,
    NotFound,
    StoryloomError,
    WorkerInvocationError,
)
from storyloom.librarian.scheduler import LibrarianScheduler
from storyloom.utils.logging_config import get_logger

_logger = get_logger("storyloom.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Ensure tables exist
    from storyloom.database import create_all
    await create_all()

    register_builtin_agents()
    app.state.librarian = LibrarianScheduler()
    _logger.info("StoryLoom started", extra={"event_type": "startup"})
    yield
    await app.state.librarian.shutdown()
    _logger.info("StoryLoom stopped", extra={"event_type": "shutdown"})


def _status_for(exc: StoryloomError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ConcurrentWriteConflict):
        return 409
    if isinstance(exc, InvalidOperation):
        return 400
    if isinstance(exc, WorkerInvocationError):
        return 502
    return 500


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.3.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoryloomError)
async def storyloom_error_handler(request: Request, exc: StoryloomError):
    status = _status_for(exc)
    if status >= 500:
        _logger.error("Unhandled domain error on %s", request.url.path, exc_info=exc,
                      extra={"event_type": "request_failed", "error": str(exc)})
    return JSONResponse(status_code=status, content={"detail": str(exc)})


def get_scheduler(request: Request) -> LibrarianScheduler:
    """Dependency: the app-wide librarian scheduler."""
    return request.app.state.librarian
