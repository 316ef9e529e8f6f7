"""Centralised logging configuration for the API server.

Usage:
    from logging_config import setup_logging, conversation_id_var, user_id_var

    # At process startup:
    setup_logging("Server")

    # Inside a request that acts on a conversation:
    conversation_id_var.set("1a2b3c4d-...")
    user_id_var.set("7")

All ``logging.getLogger(__name__).info(...)`` calls pick up the context
automatically through ContextFilter.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from contextvars import ContextVar
from pathlib import Path

conversation_id_var: ContextVar[str] = ContextVar("conversation_id_var", default="")
user_id_var: ContextVar[str] = ContextVar("user_id_var", default="")


class ContextFilter(logging.Filter):
    """Injects ``role``, ``conversation_id``, and ``user_id`` onto each record."""

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.role = self.role  # type: ignore[attr-defined]
        record.conversation_id = conversation_id_var.get("")  # type: ignore[attr-defined]
        record.user_id = user_id_var.get("")  # type: ignore[attr-defined]
        return True


class ContextFormatter(logging.Formatter):
    """Produces lines like:

    2026-02-17 14:30:00 [Server][INFO] main:52 - Database ready
    2026-02-17 14:30:01 [Server][Conv 1a2b3c4d][User 7][INFO] services.conversations:180 - Exchange recorded
    """

    def format(self, record: logging.LogRecord) -> str:
        role = getattr(record, "role", "")
        conversation_id = getattr(record, "conversation_id", "")
        user_id = getattr(record, "user_id", "")

        parts = [f"[{role}]"] if role else []
        if conversation_id:
            parts.append(f"[Conv {conversation_id[:8]}]")
        if user_id:
            parts.append(f"[User {user_id}]")
        parts.append(f"[{record.levelname}]")

        prefix = "".join(parts)
        timestamp = self.formatTime(record, self.datefmt)
        location = f"{record.name}:{record.lineno}"
        formatted = f"{timestamp} {prefix} {location} - {record.getMessage()}"

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            formatted += "\n" + record.exc_text
        if record.stack_info:
            formatted += "\n" + record.stack_info
        return formatted


def setup_logging(role: str) -> None:
    """Configure the root logger for *role* (e.g. ``"Server"``).

    - Adds a stderr StreamHandler (always).
    - Adds a RotatingFileHandler when ``settings.LOG_FILE`` is set.
    - Tames noisy third-party loggers.
    - Makes uvicorn loggers propagate through root.

    Safe to call multiple times.
    """
    from config import settings

    root = logging.getLogger()

    if any(getattr(h, "name", None) == "_medmind_stream" for h in root.handlers):
        return

    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    ctx_filter = ContextFilter(role)
    formatter = ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.name = "_medmind_stream"
    stream_handler.addFilter(ctx_filter)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.name = "_medmind_file"
        file_handler.addFilter(ctx_filter)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in ("httpx", "httpcore", "openai", "urllib3", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)

    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
