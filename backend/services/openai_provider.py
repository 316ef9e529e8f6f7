"""SessionProvider backed by the OpenAI Assistants API (threads and runs)."""

from __future__ import annotations

import logging

import openai

from services.provider import (
    JobStatus,
    ProviderError,
    ProviderMessage,
    SessionProvider,
)
from services.token_usage import TokenUsage

logger = logging.getLogger(__name__)


def _flatten_content(blocks) -> str:
    """Join the text blocks of an Assistants message; other block types are skipped."""
    parts = []
    for block in blocks or []:
        if getattr(block, "type", None) == "text":
            text = getattr(block, "text", None)
            value = getattr(text, "value", None)
            if value:
                parts.append(value)
    return "\n".join(parts)


def _usage_from_run(run) -> TokenUsage | None:
    usage = getattr(run, "usage", None)
    if usage is None:
        return None
    return TokenUsage.from_counts(
        getattr(usage, "prompt_tokens", 0),
        getattr(usage, "completion_tokens", 0),
        getattr(usage, "total_tokens", 0),
    )


class OpenAIAssistantsProvider(SessionProvider):
    """Maps sessions to threads, turns to thread messages and jobs to runs."""

    def __init__(
        self,
        client: openai.OpenAI | None = None,
        *,
        api_key: str = "",
        organization: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
        max_completion_tokens: int | None = None,
    ):
        if client is None:
            if not api_key:
                raise ValueError("OPENAI_API_KEY is required for the OpenAI provider")
            client = openai.OpenAI(
                api_key=api_key,
                organization=organization,
                base_url=base_url,
                timeout=timeout,
            )
        self.client = client
        self.max_completion_tokens = max_completion_tokens

    @classmethod
    def from_settings(cls) -> OpenAIAssistantsProvider:
        from config import settings

        return cls(
            api_key=settings.OPENAI_API_KEY,
            organization=settings.OPENAI_ORGANIZATION,
            base_url=settings.OPENAI_BASE_URL,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
            max_completion_tokens=settings.OPENAI_MAX_COMPLETION_TOKENS,
        )

    def open_session(self) -> str:
        try:
            thread = self.client.beta.threads.create()
        except openai.OpenAIError as exc:
            raise ProviderError(f"could not create thread: {exc}") from exc
        logger.debug("Created thread %s", thread.id)
        return thread.id

    def close_session(self, session_id: str) -> None:
        try:
            self.client.beta.threads.delete(session_id)
        except openai.OpenAIError as exc:
            raise ProviderError(f"could not delete thread {session_id}: {exc}") from exc

    def submit_turn(self, session_id: str, text: str) -> str:
        try:
            message = self.client.beta.threads.messages.create(session_id, role="user", content=text)
        except openai.OpenAIError as exc:
            raise ProviderError(f"could not add message to thread {session_id}: {exc}") from exc
        return message.id

    def start_execution(self, session_id: str, profile_id: str) -> str:
        kwargs = {"thread_id": session_id, "assistant_id": profile_id}
        if self.max_completion_tokens:
            kwargs["max_completion_tokens"] = self.max_completion_tokens
        try:
            run = self.client.beta.threads.runs.create(**kwargs)
        except openai.OpenAIError as exc:
            raise ProviderError(f"could not start run on thread {session_id}: {exc}") from exc
        logger.debug("Started run %s on thread %s", run.id, session_id)
        return run.id

    def poll_job(self, session_id: str, job_id: str) -> JobStatus:
        try:
            run = self.client.beta.threads.runs.retrieve(job_id, thread_id=session_id)
        except openai.OpenAIError as exc:
            raise ProviderError(f"could not retrieve run {job_id}: {exc}") from exc
        return JobStatus(status=run.status, usage=_usage_from_run(run))

    def fetch_messages(self, session_id: str, limit: int) -> list[ProviderMessage]:
        try:
            page = self.client.beta.threads.messages.list(session_id, limit=limit, order="desc")
        except openai.OpenAIError as exc:
            raise ProviderError(f"could not list messages of thread {session_id}: {exc}") from exc
        return [
            ProviderMessage(id=msg.id, role=msg.role, content=_flatten_content(msg.content))
            for msg in page.data
        ]
