"""Membership moderation endpoints."""

from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query

from freeshare.infra.auth import AuthenticatedUser, get_optional_user
from freeshare.moderation.api._errors import to_http_error
from freeshare.moderation.domain.memberships_service import MembershipsService
from freeshare.moderation.schemas import dto

router = APIRouter(tags=["moderation:memberships"])
_service = MembershipsService()


@router.post("/memberships", response_model=dto.ActionResponse, response_model_exclude_none=True)
async def membership_action_endpoint(
	payload: Any = Body(default=None),
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> dto.ActionResponse:
	try:
		return await _service.dispatch(auth_user, payload)
	except Exception as exc:
		raise to_http_error(exc) from exc


@router.get("/memberships", response_model=list[dto.MemberListItem])
async def list_memberships_endpoint(
	groupid: UUID,
	collection: str = Query(default="approved", pattern="^(pending|approved|banned)$"),
	limit: int = Query(default=100, ge=1, le=1000),
	search: Optional[str] = Query(default=None, max_length=100),
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> list[dto.MemberListItem]:
	try:
		return await _service.list_members(auth_user, groupid, collection=collection, limit=limit, search=search)
	except Exception as exc:
		raise to_http_error(exc) from exc


__all__ = ["router"]
