"""Conversation API endpoints: lifecycle, messaging, usage."""

from __future__ import annotations

import asyncio
import logging
import threading

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from models.user import User
from schemas.conversation import (
    ConversationCountersOut,
    ConversationCreateIn,
    ConversationDetailOut,
    ConversationOut,
    MessageCreateIn,
    MessageOut,
    SendMessageOut,
    UsageOut,
    UserLimitsOut,
    UserStatsOut,
)
from services import conversation_store as store
from services.conversations import ConversationDetail, ConversationService, get_conversation_service

logger = logging.getLogger(__name__)

router = APIRouter()

DISCONNECT_POLL_SECONDS = 0.5


def _serialize_detail(detail: ConversationDetail) -> ConversationDetailOut:
    out = ConversationDetailOut.model_validate(detail.conversation)
    out.messages = [MessageOut.model_validate(m) for m in detail.messages]
    out.last_message = out.messages[-1] if out.messages else None
    return out


# ── Usage ─────────────────────────────────────────────────────────────────────


@router.get("/limits/", response_model=UserLimitsOut)
def get_user_limits(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    return service.get_user_limits(db, user.id)


@router.get("/stats/", response_model=UserStatsOut)
def get_user_stats(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    return service.get_user_stats(db, user.id)


# ── Conversations ─────────────────────────────────────────────────────────────


@router.get("/", response_model=list[ConversationOut])
def list_conversations(
    include_archived: bool = Query(False),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    conversations = service.list_conversations(db, user.id, include_archived=include_archived)
    latest = store.latest_messages(db, [c.id for c in conversations])
    items = []
    for conversation in conversations:
        out = ConversationOut.model_validate(conversation)
        last = latest.get(conversation.id)
        out.last_message = MessageOut.model_validate(last) if last else None
        items.append(out)
    return items


@router.post("/", response_model=ConversationDetailOut, status_code=201)
def create_conversation(
    payload: ConversationCreateIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    detail = service.create_conversation(db, user.id, payload.assistant_id, title=payload.title)
    return _serialize_detail(detail)


@router.get("/{conversation_id}/", response_model=ConversationDetailOut)
def get_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    return _serialize_detail(service.get_conversation(db, conversation_id, user.id))


@router.patch("/{conversation_id}/archive/", status_code=204)
def archive_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    service.archive_conversation(db, conversation_id, user.id)


@router.delete("/{conversation_id}/", status_code=204)
def delete_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    service.delete_conversation(db, conversation_id, user.id)


# ── Messages ──────────────────────────────────────────────────────────────────


async def _cancel_on_disconnect(request: Request, cancel_event: threading.Event) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
    logger.info("Client disconnected, cancelling the assistant wait")
    cancel_event.set()


@router.post("/{conversation_id}/messages/", response_model=SendMessageOut, status_code=201)
async def send_message(
    conversation_id: str,
    payload: MessageCreateIn,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    cancel_event = threading.Event()
    watcher = asyncio.create_task(_cancel_on_disconnect(request, cancel_event))
    try:
        result = await run_in_threadpool(
            service.send_message, db, conversation_id, user.id, payload.content, cancel_event
        )
    finally:
        watcher.cancel()
    return SendMessageOut(
        user_message=MessageOut.model_validate(result.user_message),
        assistant_message=MessageOut.model_validate(result.assistant_message),
        conversation=ConversationCountersOut.model_validate(result.conversation),
        usage=UsageOut(**result.usage.to_dict(), cost_usd=result.cost_usd),
    )
