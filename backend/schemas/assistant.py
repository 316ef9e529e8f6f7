"""Pydantic response schemas for assistant endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class AssistantSummaryOut(BaseModel):
    id: str
    name: str
    specialty: str

    model_config = {"from_attributes": True}


class AssistantOut(AssistantSummaryOut):
    description: str | None
    model: str
    created_at: datetime
