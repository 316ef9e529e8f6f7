"""SQLAlchemy models: re-export all."""

from models.user import APIKey, User  # noqa: F401
from models.assistant import Assistant  # noqa: F401
from models.conversation import Conversation, Message  # noqa: F401
