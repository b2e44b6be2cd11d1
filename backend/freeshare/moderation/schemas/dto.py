"""Pydantic schemas for the moderation API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional, Type, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from freeshare.moderation.domain.exceptions import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)

MessageAction = Literal[
	"Hold",
	"Release",
	"Approve",
	"Reject",
	"Delete",
	"Spam",
	"ApproveEdits",
	"RevertEdits",
	"PartnerConsent",
	"Reply",
	"Promise",
	"Renege",
	"OutcomeIntended",
	"Outcome",
	"AddBy",
	"RemoveBy",
	"View",
]
ChatAction = Literal["Approve", "ApproveAllFuture", "Reject", "Hold", "Release", "Redact"]
MembershipAction = Literal[
	"Hold",
	"Release",
	"ReviewHold",
	"ReviewRelease",
	"Approve",
	"Leave Approved Member",
	"Reject",
	"Delete Approved Member",
	"Ban",
	"Unban",
	"HappinessReviewed",
]
Outcome = Literal["Taken", "Received", "Withdrawn"]
Happiness = Literal["Happy", "Fine", "Unhappy"]
MessageType = Literal["Offer", "Wanted"]


def parse_payload(model: Type[ModelT], raw: Any) -> ModelT:
	"""Validate a raw JSON body, raising the domain ``ValidationError``.

	The status names the first offending field: ``missing_<field>`` or
	``invalid_<field>``.
	"""
	if not isinstance(raw, dict):
		raise ValidationError("invalid_body")
	try:
		return model.model_validate(raw)
	except PydanticValidationError as exc:
		first = exc.errors()[0]
		field = ".".join(str(part) for part in first.get("loc", ())) or "body"
		prefix = "missing" if first.get("type") == "missing" else "invalid"
		raise ValidationError(f"{prefix}_{field}") from exc


class _Request(BaseModel):
	model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class MessageActionRequest(_Request):
	id: UUID
	action: MessageAction
	userid: Optional[UUID] = None
	count: Optional[int] = Field(default=None, ge=0)
	outcome: Optional[Outcome] = None
	happiness: Optional[Happiness] = None
	comment: Optional[str] = Field(default=None, max_length=4000)
	message: Optional[str] = Field(default=None, max_length=4000)
	subject: Optional[str] = Field(default=None, max_length=255)
	body: Optional[str] = Field(default=None, max_length=40000)
	stdmsgid: Optional[int] = None
	partner: Optional[str] = Field(default=None, max_length=255)


class MessagePatchRequest(_Request):
	id: UUID
	subject: Optional[str] = Field(default=None, min_length=1, max_length=255)
	textbody: Optional[str] = Field(default=None, max_length=40000)
	type: Optional[MessageType] = None
	availablenow: Optional[int] = Field(default=None, ge=0)


class MessageCreateRequest(_Request):
	groupid: UUID
	type: MessageType
	subject: str = Field(..., min_length=1, max_length=255)
	textbody: str = Field(default="", max_length=40000)
	availableinitially: int = Field(default=1, ge=1)


class ChatModerationRequest(_Request):
	id: UUID
	action: ChatAction


class MembershipActionRequest(_Request):
	userid: UUID
	groupid: UUID
	action: MembershipAction
	subject: Optional[str] = Field(default=None, max_length=255)
	body: Optional[str] = Field(default=None, max_length=40000)
	stdmsgid: Optional[int] = None
	happiness: Optional[int] = Field(default=None, ge=1)


class ActionResponse(BaseModel):
	ret: int = 0
	status: str = "Success"
	id: Optional[UUID] = None
	changed: Optional[bool] = None
	heldby: Optional[UUID] = None
	availablenow: Optional[int] = None


class ChatReviewItem(BaseModel):
	id: UUID
	chatid: UUID
	userid: UUID
	type: str
	message: str
	heldby: Optional[UUID] = None
	refmsgid: Optional[UUID] = None
	date: datetime


class ChatReviewResponse(BaseModel):
	ret: int = 0
	status: str = "Success"
	chatmessages: List[ChatReviewItem]


class MemberListItem(BaseModel):
	userid: UUID
	role: str
	collection: str
	added: datetime
	heldby: Optional[UUID] = None
	displayname: Optional[str] = None
