"""Chat message moderation and review queue endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query

from freeshare.infra.auth import AuthenticatedUser, get_optional_user
from freeshare.moderation.api._errors import to_http_error
from freeshare.moderation.domain.chat_service import ChatModerationService
from freeshare.moderation.schemas import dto

router = APIRouter(tags=["moderation:chat"])
_service = ChatModerationService()


@router.post("/chatmessages/moderation", response_model=dto.ActionResponse, response_model_exclude_none=True)
async def chat_moderation_endpoint(
	payload: Any = Body(default=None),
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> dto.ActionResponse:
	try:
		return await _service.dispatch(auth_user, payload)
	except Exception as exc:
		raise to_http_error(exc) from exc


@router.get("/chatmessages/review", response_model=dto.ChatReviewResponse)
async def chat_review_queue_endpoint(
	limit: Optional[int] = Query(default=None, ge=1, le=1000),
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> dto.ChatReviewResponse:
	try:
		return await _service.review_queue(auth_user, limit=limit)
	except Exception as exc:
		raise to_http_error(exc) from exc


__all__ = ["router"]
