"""Read-only assistant lookups."""

from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.orm import Session

from models.assistant import Assistant


def get_active_assistant(db: Session, assistant_id: str) -> Assistant | None:
    return (
        db.query(Assistant)
        .filter(Assistant.id == assistant_id, Assistant.is_active.is_(True))
        .first()
    )


def list_active_assistants(db: Session, specialty: str | None = None) -> list[Assistant]:
    q = db.query(Assistant).filter(Assistant.is_active.is_(True))
    if specialty:
        q = q.filter(func.lower(Assistant.specialty) == specialty.lower())
    return q.order_by(Assistant.specialty, Assistant.name).all()
