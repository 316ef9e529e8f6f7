"""Assistant model (read-only from the conversation core)."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from database import Base

DEFAULT_ASSISTANT_MODEL = "gpt-4-turbo-preview"


class Assistant(Base):
    __tablename__ = "assistants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(150))
    specialty: Mapped[str] = mapped_column(String(100), index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Identifier of the assistant definition at the external provider
    external_profile_id: Mapped[str] = mapped_column(String(255))
    model: Mapped[str] = mapped_column(String(100), default=DEFAULT_ASSISTANT_MODEL)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<Assistant {self.name} ({self.specialty})>"
