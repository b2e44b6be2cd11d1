"""Message action, edit, create and delete endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends

from freeshare.infra.auth import AuthenticatedUser, get_optional_user
from freeshare.moderation.api._errors import to_http_error
from freeshare.moderation.domain.messages_service import MessagesService
from freeshare.moderation.schemas import dto

router = APIRouter(tags=["moderation:messages"])
_service = MessagesService()


@router.post("/message", response_model=dto.ActionResponse, response_model_exclude_none=True)
async def message_action_endpoint(
	payload: Any = Body(default=None),
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> dto.ActionResponse:
	try:
		return await _service.dispatch(auth_user, payload)
	except Exception as exc:
		raise to_http_error(exc) from exc


@router.patch("/message", response_model=dto.ActionResponse, response_model_exclude_none=True)
async def message_edit_endpoint(
	payload: Any = Body(default=None),
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> dto.ActionResponse:
	try:
		return await _service.edit(auth_user, payload)
	except Exception as exc:
		raise to_http_error(exc) from exc


@router.put("/message", response_model=dto.ActionResponse, response_model_exclude_none=True)
async def message_create_endpoint(
	payload: Any = Body(default=None),
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> dto.ActionResponse:
	try:
		return await _service.create(auth_user, payload)
	except Exception as exc:
		raise to_http_error(exc) from exc


@router.delete("/message/{message_id}", response_model=dto.ActionResponse, response_model_exclude_none=True)
async def message_delete_endpoint(
	message_id: str,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> dto.ActionResponse:
	try:
		return await _service.delete(auth_user, message_id)
	except Exception as exc:
		raise to_http_error(exc) from exc


__all__ = ["router"]
