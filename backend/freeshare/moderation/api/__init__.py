"""FastAPI routers for the moderation domain."""

from __future__ import annotations

from fastapi import APIRouter

from freeshare.moderation.api import chat, memberships, messages

router = APIRouter(prefix="/api/v2")

router.include_router(messages.router)
router.include_router(chat.router)
router.include_router(memberships.router)

__all__ = ["router"]
