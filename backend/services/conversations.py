"""Conversation lifecycle: create, send, archive, delete, list, usage.

``ConversationService`` coordinates the quota gate, the external session
provider and the conversation store. It knows nothing about HTTP; routers in
``api/conversations.py`` translate its domain errors into responses.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from logging_config import conversation_id_var, user_id_var
from models.assistant import Assistant
from models.conversation import Conversation, Message
from models.user import User
from services import conversation_store as store
from services.assistants import get_active_assistant
from services.errors import (
    AdmissionDeniedError,
    ArchivedConversationError,
    AssistantNotFoundError,
    ConversationNotFoundError,
    ExternalCommunicationError,
    ExternalTimeoutError,
    InvalidInputError,
    MalformedResponseError,
    PersistenceError,
)
from services.provider import (
    PROVIDER_ROLE_ASSISTANT,
    ExecutionTimeoutError,
    ProviderError,
    SessionProvider,
    wait_for_completion,
)
from services.quota import check_admission, describe_limits
from services.token_usage import TokenUsage, calculate_cost

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200


@dataclass
class ConversationDetail:
    conversation: Conversation
    assistant: Assistant
    messages: list[Message]


@dataclass
class SendResult:
    user_message: Message
    assistant_message: Message
    conversation: Conversation
    usage: TokenUsage
    cost_usd: float


class ConversationService:
    def __init__(
        self,
        provider: SessionProvider,
        lock=None,
        *,
        execution_timeout: float | None = None,
        poll_interval: float | None = None,
        fetch_limit: int | None = None,
        max_message_length: int | None = None,
        token_limits: dict[str, int] | None = None,
        pricing: dict[str, tuple[float, float]] | None = None,
        default_model: str | None = None,
    ):
        from config import settings

        if lock is None:
            from services.conversation_lock import get_conversation_lock

            lock = get_conversation_lock()

        self.provider = provider
        self.lock = lock
        self.execution_timeout = (
            execution_timeout if execution_timeout is not None else settings.EXECUTION_TIMEOUT_SECONDS
        )
        self.poll_interval = poll_interval if poll_interval is not None else settings.EXECUTION_POLL_INTERVAL_SECONDS
        self.fetch_limit = fetch_limit or settings.MESSAGE_FETCH_LIMIT
        self.max_message_length = max_message_length or settings.MAX_MESSAGE_LENGTH
        self.token_limits = token_limits if token_limits is not None else settings.token_limits
        self.pricing = pricing if pricing is not None else settings.MODEL_PRICING
        self.default_model = default_model or settings.DEFAULT_MODEL

    # ── Queries ───────────────────────────────────────────────────────────────

    def _owned(self, db: Session, conversation_id: str, user_id: int) -> Conversation:
        conversation = store.get_owned_conversation(db, conversation_id, user_id)
        if conversation is None:
            raise ConversationNotFoundError()
        return conversation

    def _user(self, db: Session, user_id: int) -> User:
        user = db.query(User).filter(User.id == user_id).populate_existing().first()
        if user is None:
            raise ConversationNotFoundError("User not found.")
        return user

    def list_conversations(self, db: Session, user_id: int, include_archived: bool = False) -> list[Conversation]:
        return store.list_conversations(db, user_id, include_archived=include_archived)

    def get_conversation(self, db: Session, conversation_id: str, user_id: int) -> ConversationDetail:
        conversation = self._owned(db, conversation_id, user_id)
        return ConversationDetail(
            conversation=conversation,
            assistant=conversation.assistant,
            messages=store.list_messages(db, conversation.id),
        )

    def get_user_limits(self, db: Session, user_id: int) -> dict:
        return describe_limits(self._user(db, user_id), self.token_limits)

    def get_user_stats(self, db: Session, user_id: int) -> dict:
        return store.conversation_stats(db, user_id)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def create_conversation(
        self, db: Session, user_id: int, assistant_id: str, title: str | None = None
    ) -> ConversationDetail:
        assistant = get_active_assistant(db, assistant_id)
        if assistant is None:
            raise AssistantNotFoundError()

        if title is not None:
            title = title.strip() or None
        if title is not None and len(title) > TITLE_MAX_LENGTH:
            raise InvalidInputError(f"Title must be at most {TITLE_MAX_LENGTH} characters.")

        try:
            session_id = self.provider.open_session()
        except ProviderError as exc:
            logger.warning("Could not open provider session for assistant %s: %s", assistant_id, exc)
            raise ExternalCommunicationError() from exc

        try:
            conversation = store.create_conversation(db, user_id, assistant.id, session_id, title=title)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to persist conversation for session %s", session_id, exc_info=True)
            self._close_session_quietly(session_id)
            raise PersistenceError("Failed to create the conversation.") from exc

        logger.info("Created conversation %s with assistant %s", conversation.id, assistant.name)
        return ConversationDetail(conversation=conversation, assistant=assistant, messages=[])

    def archive_conversation(self, db: Session, conversation_id: str, user_id: int) -> Conversation:
        with self.lock.hold(conversation_id):
            conversation = self._owned(db, conversation_id, user_id)
            return store.set_archived(db, conversation, True)

    def delete_conversation(self, db: Session, conversation_id: str, user_id: int) -> None:
        with self.lock.hold(conversation_id):
            conversation = self._owned(db, conversation_id, user_id)
            self._close_session_quietly(conversation.external_session_id)
            store.delete_conversation(db, conversation)
        logger.info("Deleted conversation %s", conversation_id)

    def _close_session_quietly(self, session_id: str) -> None:
        try:
            self.provider.close_session(session_id)
        except ProviderError as exc:
            logger.warning("Could not close provider session %s, it may already be gone: %s", session_id, exc)

    # ── Sending ───────────────────────────────────────────────────────────────

    def _validate_content(self, content) -> str:
        if not isinstance(content, str) or not content.strip():
            raise InvalidInputError("Message content must not be empty.")
        if len(content) > self.max_message_length:
            raise InvalidInputError(f"Message content must be at most {self.max_message_length} characters.")
        return content

    def send_message(
        self,
        db: Session,
        conversation_id: str,
        user_id: int,
        content: str,
        cancel_event: threading.Event | None = None,
    ) -> SendResult:
        content = self._validate_content(content)

        conv_token = conversation_id_var.set(conversation_id)
        user_token = user_id_var.set(str(user_id))
        try:
            with self.lock.hold(conversation_id):
                return self._send_locked(db, conversation_id, user_id, content, cancel_event)
        finally:
            conversation_id_var.reset(conv_token)
            user_id_var.reset(user_token)

    def _send_locked(
        self,
        db: Session,
        conversation_id: str,
        user_id: int,
        content: str,
        cancel_event: threading.Event | None,
    ) -> SendResult:
        conversation = self._owned(db, conversation_id, user_id)
        if conversation.is_archived:
            raise ArchivedConversationError()

        admission = check_admission(self._user(db, user_id), limits=self.token_limits)
        if not admission.allowed:
            logger.info("Send refused: %s (%d/%d tokens)", admission.code, admission.used, admission.limit)
            raise AdmissionDeniedError(admission.reason, code=admission.code)

        assistant = conversation.assistant
        session_id = conversation.external_session_id
        first_exchange = conversation.total_messages == 0 and conversation.title is None
        # No transaction stays open across the provider round-trip
        db.commit()

        try:
            user_external_id = self.provider.submit_turn(session_id, content)
            job_id = self.provider.start_execution(session_id, assistant.external_profile_id)
            result = wait_for_completion(
                self.provider,
                session_id,
                job_id,
                timeout=self.execution_timeout,
                interval=self.poll_interval,
                fetch_limit=self.fetch_limit,
                cancel_event=cancel_event,
            )
        except ExecutionTimeoutError as exc:
            logger.warning("Assistant did not answer in time: %s", exc)
            raise ExternalTimeoutError() from exc
        except ProviderError as exc:
            logger.warning("Provider error while sending: %s", exc)
            raise ExternalCommunicationError() from exc

        messages = result.messages
        if len(messages) < 2 or messages[0].role != PROVIDER_ROLE_ASSISTANT:
            logger.error("Provider returned %d messages without a trailing assistant reply", len(messages))
            raise MalformedResponseError()
        reply = messages[0]

        usage = TokenUsage.from_counts(result.usage.prompt_tokens, result.usage.completion_tokens)
        model = assistant.model or self.default_model
        cost = calculate_cost(model, usage.prompt_tokens, usage.completion_tokens, self.pricing)

        exchange = store.record_exchange(
            db,
            conversation_id,
            user_id,
            store.MessageDraft(
                content=content,
                input_tokens=usage.prompt_tokens,
                external_message_id=user_external_id,
            ),
            store.MessageDraft(
                content=reply.content,
                output_tokens=usage.completion_tokens,
                cost_usd=cost,
                external_message_id=reply.id,
            ),
            usage,
            first_message_title=store.derive_title(content) if first_exchange else None,
        )
        logger.info(
            "Exchange recorded: %d prompt + %d completion tokens, $%.6f",
            usage.prompt_tokens,
            usage.completion_tokens,
            cost,
        )
        return SendResult(
            user_message=exchange.user_message,
            assistant_message=exchange.assistant_message,
            conversation=exchange.conversation,
            usage=usage,
            cost_usd=cost,
        )


# ---------------------------------------------------------------------------
# Process-wide service built from settings
# ---------------------------------------------------------------------------

_service: ConversationService | None = None
_service_lock = threading.Lock()


def get_conversation_service() -> ConversationService:
    """FastAPI dependency returning the lazily built service singleton."""
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                from services.openai_provider import OpenAIAssistantsProvider

                _service = ConversationService(OpenAIAssistantsProvider.from_settings())
                logger.info("Initialized conversation service")
    return _service
