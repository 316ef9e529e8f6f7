"""User and API key models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base

# Subscription tiers. The quota gate maps each one to a token limit.
SUBSCRIPTION_TRIAL = "TRIAL"
SUBSCRIPTION_ACTIVE = "ACTIVE"
SUBSCRIPTION_PREMIUM = "PREMIUM"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    full_name: Mapped[str] = mapped_column(String(255), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    subscription_status: Mapped[str] = mapped_column(String(20), default=SUBSCRIPTION_TRIAL)
    subscription_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # Only ever changed through an atomic SQL increment in services/conversation_store.py
    total_tokens_used: Mapped[int] = mapped_column(BigInteger, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    api_key: Mapped[APIKey | None] = relationship(
        "APIKey", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    conversations: Mapped[list["Conversation"]] = relationship(  # noqa: F821
        "Conversation", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self):
        return f"<User {self.email} ({self.subscription_status})>"


class APIKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True)
    key: Mapped[str] = mapped_column(String(36), default=lambda: str(uuid.uuid4()), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    user: Mapped[User] = relationship("User", back_populates="api_key")

    def __repr__(self):
        return f"<APIKey for user_id={self.user_id}>"
