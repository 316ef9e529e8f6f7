"""Domain errors raised at the conversation-service boundary.

Each error carries a stable ``code`` and an HTTP ``status_code``. ``main.py``
registers a single handler that renders them as ``{"detail", "code"}``.
Provider-level exceptions (see ``services/provider.py``) are translated into
these before they leave ``services/conversations.py``.
"""

from __future__ import annotations


class ConversationError(Exception):
    code = "internal_error"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ConversationNotFoundError(ConversationError):
    code = "not_found"
    status_code = 404
    default_message = "Conversation not found."


class AssistantNotFoundError(ConversationError):
    code = "not_found"
    status_code = 404
    default_message = "Assistant not found or inactive."


class InvalidInputError(ConversationError):
    code = "validation_failed"
    status_code = 422
    default_message = "The given data was invalid."


class ArchivedConversationError(ConversationError):
    code = "conversation_archived"
    status_code = 409
    default_message = "Cannot send messages to an archived conversation."


class AdmissionDeniedError(ConversationError):
    """Subscription expired or token quota exhausted."""

    status_code = 403
    default_message = "Usage not allowed for the current subscription."

    def __init__(self, message: str | None = None, code: str = "quota_exceeded"):
        super().__init__(message)
        self.code = code


class ConversationBusyError(ConversationError):
    code = "conversation_busy"
    status_code = 409
    default_message = "Another message is still being processed for this conversation."


class ExternalCommunicationError(ConversationError):
    code = "external_communication"
    status_code = 502
    default_message = "Communication error with the assistant, please retry."


class ExternalTimeoutError(ExternalCommunicationError):
    code = "external_timeout"
    status_code = 504


class MalformedResponseError(ConversationError):
    code = "malformed_response"
    status_code = 502
    default_message = "The assistant returned an incomplete response."


class PersistenceError(ConversationError):
    code = "persistence_failed"
    status_code = 500
    default_message = "Failed to save the conversation exchange."
