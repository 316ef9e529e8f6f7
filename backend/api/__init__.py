"""FastAPI router aggregation."""

from fastapi import APIRouter

from api.assistants import router as assistants_router
from api.conversations import router as conversations_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(conversations_router, prefix="/conversations", tags=["conversations"])
api_router.include_router(assistants_router, prefix="/assistants", tags=["assistants"])
