"""External session provider contract and the bounded completion wait.

A provider hosts one remote session per conversation. A turn is submitted to
the session, an execution job is started against an assistant profile, and
the job is polled until it reaches a terminal status. The orchestrator only
talks to this interface; ``services/openai_provider.py`` implements it for the
OpenAI Assistants API and the tests use a scripted double.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from services.token_usage import ZERO_USAGE, TokenUsage

logger = logging.getLogger(__name__)

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_IN_PROGRESS = "in_progress"
STATUS_REQUIRES_ACTION = "requires_action"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
STATUS_INCOMPLETE = "incomplete"  # completion token cap reached

FAILED_STATUSES = frozenset({STATUS_FAILED, STATUS_CANCELLED, STATUS_EXPIRED, STATUS_INCOMPLETE})

PROVIDER_ROLE_USER = "user"
PROVIDER_ROLE_ASSISTANT = "assistant"


class ProviderError(Exception):
    """Any failure talking to the external provider."""


class ExecutionFailedError(ProviderError):
    def __init__(self, status: str):
        self.status = status
        super().__init__(f"execution failed: {status}")


class ExecutionTimeoutError(ProviderError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"execution did not finish within {timeout:g}s")


class ExecutionCancelledError(ProviderError):
    pass


@dataclass(frozen=True)
class JobStatus:
    status: str
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class ProviderMessage:
    id: str
    role: str
    content: str


@dataclass(frozen=True)
class CompletionResult:
    messages: list[ProviderMessage] = field(default_factory=list)
    usage: TokenUsage = ZERO_USAGE


class SessionProvider(ABC):
    @abstractmethod
    def open_session(self) -> str:
        """Create a remote session and return its id."""

    @abstractmethod
    def close_session(self, session_id: str) -> None:
        """Delete a remote session. Callers treat failures as best-effort."""

    @abstractmethod
    def submit_turn(self, session_id: str, text: str) -> str:
        """Append a user message to the session and return its provider id."""

    @abstractmethod
    def start_execution(self, session_id: str, profile_id: str) -> str:
        """Start a job that produces the assistant reply; returns the job id."""

    @abstractmethod
    def poll_job(self, session_id: str, job_id: str) -> JobStatus:
        ...

    @abstractmethod
    def fetch_messages(self, session_id: str, limit: int) -> list[ProviderMessage]:
        """Most recent messages of the session, newest first."""


def wait_for_completion(
    provider: SessionProvider,
    session_id: str,
    job_id: str,
    *,
    timeout: float = 60.0,
    interval: float = 1.0,
    fetch_limit: int = 10,
    cancel_event: threading.Event | None = None,
) -> CompletionResult:
    """Poll *job_id* until it completes, fails, times out or is cancelled.

    Failed terminal statuses are reported as ``ExecutionFailedError`` and are
    never retried. Sleeping goes through ``Event.wait`` so a set
    *cancel_event* interrupts the wait immediately.
    """
    event = cancel_event or threading.Event()
    deadline = time.monotonic() + timeout
    polls = 0

    while True:
        if event.is_set():
            raise ExecutionCancelledError("execution wait was cancelled")

        job = provider.poll_job(session_id, job_id)
        polls += 1

        if job.status == STATUS_COMPLETED:
            messages = provider.fetch_messages(session_id, fetch_limit)
            logger.debug("Job %s completed after %d polls", job_id, polls)
            return CompletionResult(messages=messages, usage=job.usage or ZERO_USAGE)

        if job.status in FAILED_STATUSES:
            logger.warning("Job %s ended with status %s", job_id, job.status)
            raise ExecutionFailedError(job.status)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning("Job %s still %s after %.1fs, giving up", job_id, job.status, timeout)
            raise ExecutionTimeoutError(timeout)

        if event.wait(min(interval, remaining)):
            raise ExecutionCancelledError("execution wait was cancelled")
