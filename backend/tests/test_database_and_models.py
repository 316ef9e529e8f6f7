"""Tests for database.py and the SQLAlchemy models."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from models.assistant import DEFAULT_ASSISTANT_MODEL, Assistant
from models.conversation import Conversation, Message
from models.user import APIKey, User


# ── database.py ───────────────────────────────────────────────────────────────

class TestGetDb:
    def test_yields_session_and_closes(self):
        from database import get_db

        gen = get_db()
        db = next(gen)
        assert db is not None
        try:
            next(gen)
        except StopIteration:
            pass

    def test_closes_on_exception(self):
        from database import get_db

        gen = get_db()
        next(gen)
        with pytest.raises(RuntimeError):
            gen.throw(RuntimeError("test error"))


# ── models ────────────────────────────────────────────────────────────────────

class TestModels:
    def test_user_defaults(self, db):
        u = User(email="defaults@example.com")
        db.add(u)
        db.commit()
        db.refresh(u)
        assert u.subscription_status == "TRIAL"
        assert u.total_tokens_used == 0
        assert u.is_active is True
        assert u.created_at is not None

    def test_email_unique(self, db, user):
        db.add(User(email=user.email))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_api_key_generated(self, api_key):
        assert len(api_key.key) == 36

    def test_api_key_relationship(self, db, user, api_key):
        db.refresh(user)
        assert user.api_key.id == api_key.id

    def test_assistant_defaults(self, db):
        a = Assistant(name="Pharm Tutor", specialty="pharmacology", external_profile_id="asst_pharm")
        db.add(a)
        db.commit()
        db.refresh(a)
        assert a.model == DEFAULT_ASSISTANT_MODEL
        assert a.is_active is True
        assert len(a.id) == 36

    def test_conversation_defaults_and_messages_order(self, db, user, assistant):
        c = Conversation(user_id=user.id, assistant_id=assistant.id, external_session_id="thread_m")
        db.add(c)
        db.commit()
        db.refresh(c)
        assert c.total_messages == 0
        assert c.total_tokens_used == 0
        assert c.is_archived is False
        assert c.last_message_at is not None

        db.add(Message(conversation_id=c.id, role="USER", content="q"))
        db.add(Message(conversation_id=c.id, role="ASSISTANT", content="a"))
        db.commit()
        db.refresh(c)
        assert [m.role for m in c.messages] == ["USER", "ASSISTANT"]
        assert c.messages[0].is_edited is False
        assert c.messages[0].edited_at is None

    def test_message_requires_existing_conversation(self, db):
        db.add(Message(conversation_id="missing", role="USER", content="q"))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_init_db_creates_tables(self, monkeypatch):
        import database
        from sqlalchemy import create_engine, inspect

        engine = create_engine("sqlite:///:memory:")
        monkeypatch.setattr(database, "engine", engine)
        database.init_db()
        tables = set(inspect(engine).get_table_names())
        assert {"users", "api_keys", "assistants", "conversations", "messages"} <= tables
