"""Domain models for moderatable entities and their side records."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

# Collections an item can sit in.
PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
DELETED = "deleted"
SPAM = "spam"
BANNED = "banned"
# Reported once a ban marker row has been removed.
UNBANNED = "unbanned"

SYSTEM_ROLE_USER = "user"
SYSTEM_ROLE_SUPPORT = "support"
SYSTEM_ROLE_ADMIN = "admin"

GROUP_ROLE_MEMBER = "member"
GROUP_ROLE_MODERATOR = "moderator"
GROUP_ROLE_OWNER = "owner"

MESSAGE_TYPES = ("Offer", "Wanted")

OUTCOME_TAKEN = "Taken"
OUTCOME_RECEIVED = "Received"
OUTCOME_WITHDRAWN = "Withdrawn"
OUTCOME_EXPIRED = "Expired"

CHAT_USER2USER = "User2User"
CHAT_USER2MOD = "User2Mod"
CHAT_MOD2MOD = "Mod2Mod"

CHAT_MSG_DEFAULT = "Default"
CHAT_MSG_MODMAIL = "ModMail"
CHAT_MSG_PROMISED = "Promised"
CHAT_MSG_RENEGED = "Reneged"

CHAT_MODERATED = "moderated"
CHAT_UNMODERATED = "unmoderated"


class Message(BaseModel):
	"""An Offer/Wanted post."""

	id: UUID
	from_user: UUID
	message_type: str
	subject: str
	text_body: str
	available_initially: int
	available_now: int
	held_by: Optional[UUID] = None
	edited_by: Optional[UUID] = None
	created_at: datetime
	deleted_at: Optional[datetime] = None

	model_config = ConfigDict(from_attributes=True)


class MessageOutcome(BaseModel):
	id: int
	message_id: UUID
	outcome: str
	happiness: Optional[str] = None
	comments: Optional[str] = None
	reviewed: bool = False
	created_at: datetime

	model_config = ConfigDict(from_attributes=True)


class ChatMessage(BaseModel):
	id: UUID
	chat_id: UUID
	seq: int = 0
	user_id: UUID
	message_type: str
	message: str
	review_required: bool
	review_rejected: bool
	reviewed_by: Optional[UUID] = None
	held_by: Optional[UUID] = None
	ref_message_id: Optional[UUID] = None
	created_at: datetime

	model_config = ConfigDict(from_attributes=True)

