"""Persistence for conversations and their messages.

``record_exchange`` is the only writer of the counters on ``Conversation``
and ``User``. It uses SQL-side increments (``col = col + n``) inside a single
transaction, so concurrent exchanges on different conversations of the same
user never lose an update.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.orm import Session

from models.conversation import ROLE_ASSISTANT, ROLE_USER, Conversation, Message
from models.user import User
from services.errors import ArchivedConversationError, ConversationError, PersistenceError
from services.quota import utcnow
from services.token_usage import TokenUsage

logger = logging.getLogger(__name__)

TITLE_MAX_WORDS_LENGTH = 47
TITLE_ELLIPSIS = "..."
DEFAULT_TITLE = "New conversation"


@dataclass
class MessageDraft:
    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    external_message_id: str | None = None


@dataclass
class Exchange:
    user_message: Message
    assistant_message: Message
    conversation: Conversation


def derive_title(text: str) -> str:
    """Build a title from the first user message, at most 50 characters."""
    title = ""
    for word in (text or "").split():
        candidate = f"{title} {word}" if title else word
        if len(candidate) > TITLE_MAX_WORDS_LENGTH:
            if not title:
                return word[:TITLE_MAX_WORDS_LENGTH] + TITLE_ELLIPSIS
            return title + TITLE_ELLIPSIS
        title = candidate
    return title or DEFAULT_TITLE


# ── Conversations ─────────────────────────────────────────────────────────────


def create_conversation(
    db: Session,
    user_id: int,
    assistant_id: str,
    external_session_id: str,
    title: str | None = None,
) -> Conversation:
    conversation = Conversation(
        user_id=user_id,
        assistant_id=assistant_id,
        external_session_id=external_session_id,
        title=title,
        last_message_at=utcnow(),
        total_messages=0,
        total_tokens_used=0,
        is_archived=False,
    )
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def get_owned_conversation(db: Session, conversation_id: str, user_id: int) -> Conversation | None:
    """Conversation by id scoped to its owner, always re-read from the database."""
    return (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.user_id == user_id)
        .populate_existing()
        .first()
    )


def list_conversations(db: Session, user_id: int, include_archived: bool = False) -> list[Conversation]:
    q = db.query(Conversation).filter(Conversation.user_id == user_id)
    if not include_archived:
        q = q.filter(Conversation.is_archived.is_(False))
    return q.order_by(Conversation.last_message_at.desc(), Conversation.created_at.desc()).all()


def set_archived(db: Session, conversation: Conversation, archived: bool = True) -> Conversation:
    if conversation.is_archived != archived:
        conversation.is_archived = archived
        db.commit()
    return conversation


def delete_conversation(db: Session, conversation: Conversation) -> None:
    # Messages first so the delete does not depend on FK cascade being enabled
    db.query(Message).filter(Message.conversation_id == conversation.id).delete(synchronize_session=False)
    db.delete(conversation)
    db.commit()


def conversation_stats(db: Session, user_id: int) -> dict:
    total, messages, tokens = (
        db.query(
            func.count(Conversation.id),
            func.coalesce(func.sum(Conversation.total_messages), 0),
            func.coalesce(func.sum(Conversation.total_tokens_used), 0),
        )
        .filter(Conversation.user_id == user_id)
        .one()
    )
    active = (
        db.query(func.count(Conversation.id))
        .filter(Conversation.user_id == user_id, Conversation.is_archived.is_(False))
        .scalar()
    )
    return {
        "total_conversations": total or 0,
        "active_conversations": active or 0,
        "total_messages": int(messages or 0),
        "total_tokens_used": int(tokens or 0),
    }


# ── Messages ──────────────────────────────────────────────────────────────────


def list_messages(db: Session, conversation_id: str) -> list[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.id)
        .all()
    )


def latest_messages(db: Session, conversation_ids: list[str]) -> dict[str, Message]:
    """Newest message of each conversation in one query, keyed by conversation id."""
    if not conversation_ids:
        return {}
    newest = (
        select(func.max(Message.id).label("message_id"))
        .where(Message.conversation_id.in_(conversation_ids))
        .group_by(Message.conversation_id)
        .subquery()
    )
    rows = db.query(Message).join(newest, Message.id == newest.c.message_id).all()
    return {message.conversation_id: message for message in rows}


def latest_message(db: Session, conversation_id: str) -> Message | None:
    return latest_messages(db, [conversation_id]).get(conversation_id)


def record_exchange(
    db: Session,
    conversation_id: str,
    user_id: int,
    user_message: MessageDraft,
    assistant_message: MessageDraft,
    usage: TokenUsage,
    first_message_title: str | None = None,
) -> Exchange:
    """Persist one user/assistant pair and bump every counter, all or nothing.

    A conversation archived after the send started takes no new messages:
    the counter update matches no row and ``ArchivedConversationError`` is raised.
    """
    now = utcnow()
    try:
        user_row = Message(
            conversation_id=conversation_id,
            role=ROLE_USER,
            content=user_message.content,
            input_tokens=user_message.input_tokens,
            output_tokens=user_message.output_tokens,
            cost_usd=user_message.cost_usd,
            external_message_id=user_message.external_message_id,
            created_at=now,
        )
        db.add(user_row)
        db.flush()

        assistant_row = Message(
            conversation_id=conversation_id,
            role=ROLE_ASSISTANT,
            content=assistant_message.content,
            input_tokens=assistant_message.input_tokens,
            output_tokens=assistant_message.output_tokens,
            cost_usd=assistant_message.cost_usd,
            external_message_id=assistant_message.external_message_id,
            created_at=now,
        )
        db.add(assistant_row)
        db.flush()

        values = {
            "total_messages": Conversation.total_messages + 2,
            "total_tokens_used": Conversation.total_tokens_used + usage.total_tokens,
            "last_message_at": now,
        }
        if first_message_title is not None:
            values["title"] = case(
                (and_(Conversation.total_messages == 0, Conversation.title.is_(None)), first_message_title),
                else_=Conversation.title,
            )
        result = db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.user_id == user_id,
                Conversation.is_archived.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            archived = db.query(Conversation.is_archived).filter(Conversation.id == conversation_id).scalar()
            if archived:
                raise ArchivedConversationError()
            raise PersistenceError("Conversation disappeared while recording the exchange.")

        db.execute(
            update(User)
            .where(User.id == user_id)
            .values(total_tokens_used=User.total_tokens_used + usage.total_tokens)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except ConversationError as exc:
        db.rollback()
        logger.error(
            "Exchange not recorded: %s (%d tokens already spent at the provider)", exc.code, usage.total_tokens
        )
        raise
    except Exception as exc:
        db.rollback()
        logger.error(
            "Failed to record exchange (%d tokens already spent at the provider)",
            usage.total_tokens,
            exc_info=True,
        )
        raise PersistenceError() from exc

    conversation = (
        db.query(Conversation).filter(Conversation.id == conversation_id).populate_existing().one()
    )
    db.refresh(user_row)
    db.refresh(assistant_row)
    return Exchange(user_message=user_row, assistant_message=assistant_row, conversation=conversation)
