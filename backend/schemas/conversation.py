"""Pydantic request/response schemas for conversation endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from schemas.assistant import AssistantSummaryOut


class ConversationCreateIn(BaseModel):
    assistant_id: str
    title: str | None = Field(None, max_length=200)


class MessageCreateIn(BaseModel):
    content: str = Field(..., min_length=1, max_length=4000)


class MessageOut(BaseModel):
    id: int
    role: str
    content: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    is_edited: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class ConversationOut(BaseModel):
    id: str
    assistant_id: str
    title: str | None
    last_message_at: datetime
    total_messages: int
    total_tokens_used: int
    is_archived: bool
    created_at: datetime
    assistant: AssistantSummaryOut
    last_message: MessageOut | None = None

    model_config = {"from_attributes": True}


class ConversationDetailOut(ConversationOut):
    messages: list[MessageOut] = []


class ConversationCountersOut(BaseModel):
    id: str
    total_messages: int
    total_tokens_used: int

    model_config = {"from_attributes": True}


class UsageOut(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float


class SendMessageOut(BaseModel):
    user_message: MessageOut
    assistant_message: MessageOut
    conversation: ConversationCountersOut
    usage: UsageOut


class UserLimitsOut(BaseModel):
    subscription: str
    tokens_used: int
    token_limit: int
    tokens_remaining: int
    percentage_used: int
    subscription_expires_at: datetime | None


class UserStatsOut(BaseModel):
    total_conversations: int
    active_conversations: int
    total_messages: int
    total_tokens_used: int
