"""Assistant catalogue endpoint (read-only)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from models.user import User
from schemas.assistant import AssistantOut
from services.assistants import list_active_assistants

router = APIRouter()


@router.get("/", response_model=list[AssistantOut])
def list_assistants(
    specialty: str | None = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return [AssistantOut.model_validate(a) for a in list_active_assistants(db, specialty=specialty)]
