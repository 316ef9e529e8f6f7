"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Ensure backend/ is on sys.path for absolute imports
_backend_dir = str(Path(__file__).resolve().parent)
if _backend_dir not in sys.path:  # pragma: no cover
    sys.path.insert(0, _backend_dir)

try:
    __version__ = (Path(__file__).resolve().parent.parent / "VERSION").read_text().strip()
except OSError:  # pragma: no cover
    __version__ = "0.0.0-dev"

import redis as redis_lib
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api import api_router
from config import settings
from database import SessionLocal, init_db
from services.errors import ConversationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure unified logging before anything else
    from logging_config import setup_logging
    setup_logging("Server")

    if not settings.DEBUG and settings.SECRET_KEY == "change-me-in-production":
        raise RuntimeError("SECRET_KEY must be set when DEBUG is off")

    # Startup: create tables if they don't exist (no migrations)
    init_db()
    logger.info("Database ready, conversation lock backend: %s", settings.CONVERSATION_LOCK_BACKEND)

    yield


app = FastAPI(title="MedMind Conversation API", version=__version__, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL_ORIGINS else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error handlers ────────────────────────────────────────────────────────────


@app.exception_handler(ConversationError)
async def conversation_error_handler(request: Request, exc: ConversationError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "detail": "The given data was invalid.",
            "code": "validation_failed",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception in %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "code": "internal_error"})


# API routes
app.include_router(api_router)


@app.get("/health")
def health():
    database_ok = True
    try:
        with SessionLocal() as session:
            session.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Health check: database unreachable", exc_info=True)
        database_ok = False

    redis_ok = None
    if settings.CONVERSATION_LOCK_BACKEND == "redis":
        try:
            redis_ok = bool(redis_lib.from_url(settings.REDIS_URL, decode_responses=True).ping())
        except Exception:
            logger.warning("Health check: redis unreachable", exc_info=True)
            redis_ok = False

    healthy = database_ok and redis_ok is not False
    return {
        "status": "ok" if healthy else "degraded",
        "database": database_ok,
        "redis": redis_ok,
        "version": __version__,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True, log_config=None)
