"""Root conftest: shared fixtures for all backend tests."""

from __future__ import annotations

import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path

# Ensure backend/ is on sys.path
_backend_dir = str(Path(__file__).resolve().parent)
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)

# Keep tests away from the developer's .env secrets and ~/.config/medmind
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("MEDMIND_DIR", tempfile.mkdtemp(prefix="medmind-test-"))
os.environ.setdefault("CONVERSATION_LOCK_BACKEND", "local")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
import models  # noqa: F401  register all models with Base
from services.provider import (
    PROVIDER_ROLE_ASSISTANT,
    PROVIDER_ROLE_USER,
    STATUS_COMPLETED,
    JobStatus,
    ProviderError,
    ProviderMessage,
    SessionProvider,
)
from services.token_usage import TokenUsage

# Use in-memory SQLite for tests; StaticPool ensures all connections share the same DB
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@event.listens_for(TEST_ENGINE, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


TestSession = sessionmaker(bind=TEST_ENGINE, autoflush=False, expire_on_commit=False)


@pytest.fixture(autouse=True)
def _setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db():
    """Yield a test database session."""
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db):
    from models.user import SUBSCRIPTION_TRIAL, User
    from services.quota import utcnow

    u = User(
        email="student@example.com",
        full_name="Test Student",
        subscription_status=SUBSCRIPTION_TRIAL,
        subscription_expires_at=utcnow() + timedelta(days=30),
        total_tokens_used=0,
    )
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@pytest.fixture
def other_user(db):
    from models.user import SUBSCRIPTION_ACTIVE, User

    u = User(email="other@example.com", full_name="Other Student", subscription_status=SUBSCRIPTION_ACTIVE)
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@pytest.fixture
def api_key(db, user):
    from models.user import APIKey

    key = APIKey(user_id=user.id)
    db.add(key)
    db.commit()
    db.refresh(key)
    return key


@pytest.fixture
def assistant(db):
    from models.assistant import Assistant

    a = Assistant(
        name="Cardiology Tutor",
        specialty="cardiology",
        description="Explains cardiac physiology",
        external_profile_id="asst_cardio",
        model="gpt-4-turbo-preview",
        is_active=True,
    )
    db.add(a)
    db.commit()
    db.refresh(a)
    return a


# ── Scripted provider ─────────────────────────────────────────────────────────


class ScriptedProvider(SessionProvider):
    """In-memory SessionProvider whose behaviour tests set through attributes.

    - ``statuses``: statuses returned by successive polls of a job; the last
      one repeats.
    - ``usage``: usage reported once a job completes.
    - ``reply``: assistant text appended when a job completes.
    - ``fail_on``: method names that raise ``ProviderError``.
    - ``messages_override``: when set, returned by ``fetch_messages`` as-is.
    """

    def __init__(self):
        self.sessions: dict[str, list[ProviderMessage]] = {}
        self.statuses = [STATUS_COMPLETED]
        self.usage: TokenUsage | None = TokenUsage(prompt_tokens=120, completion_tokens=80, total_tokens=200)
        self.reply = "The left ventricle pumps oxygenated blood into the aorta."
        self.fail_on: set[str] = set()
        self.messages_override: list[ProviderMessage] | None = None
        self.calls: list[str] = []
        self.closed: list[str] = []
        self._counter = 0
        self._jobs: dict[str, list[str]] = {}
        self._answered: set[str] = set()

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise ProviderError(f"{name} failed")

    def open_session(self) -> str:
        self._enter("open_session")
        session_id = self._next_id("thread")
        self.sessions[session_id] = []
        return session_id

    def close_session(self, session_id: str) -> None:
        self._enter("close_session")
        self.closed.append(session_id)
        self.sessions.pop(session_id, None)

    def submit_turn(self, session_id: str, text: str) -> str:
        self._enter("submit_turn")
        message_id = self._next_id("msg")
        self.sessions.setdefault(session_id, []).append(ProviderMessage(message_id, PROVIDER_ROLE_USER, text))
        return message_id

    def start_execution(self, session_id: str, profile_id: str) -> str:
        self._enter("start_execution")
        job_id = self._next_id("run")
        self._jobs[job_id] = list(self.statuses)
        return job_id

    def poll_job(self, session_id: str, job_id: str) -> JobStatus:
        self._enter("poll_job")
        queue = self._jobs[job_id]
        status = queue.pop(0) if len(queue) > 1 else queue[0]
        if status != STATUS_COMPLETED:
            return JobStatus(status=status)
        if job_id not in self._answered:
            self._answered.add(job_id)
            self.sessions.setdefault(session_id, []).append(
                ProviderMessage(self._next_id("msg"), PROVIDER_ROLE_ASSISTANT, self.reply)
            )
        return JobStatus(status=status, usage=self.usage)

    def fetch_messages(self, session_id: str, limit: int) -> list[ProviderMessage]:
        self._enter("fetch_messages")
        if self.messages_override is not None:
            return list(self.messages_override)
        return list(reversed(self.sessions.get(session_id, [])))[:limit]


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def service(provider):
    from services.conversation_lock import LocalConversationLock
    from services.conversations import ConversationService

    return ConversationService(
        provider,
        LocalConversationLock(wait_seconds=1.0),
        execution_timeout=0.5,
        poll_interval=0.01,
        fetch_limit=10,
        max_message_length=4000,
        token_limits={"TRIAL": 10_000, "ACTIVE": 100_000, "PREMIUM": 500_000},
        pricing={"gpt-4-turbo": (0.01, 0.03), "gpt-4": (0.03, 0.06), "gpt-3.5-turbo": (0.0015, 0.002)},
    )


@pytest.fixture
def conversation(db, service, user, assistant):
    return service.create_conversation(db, user.id, assistant.id).conversation
