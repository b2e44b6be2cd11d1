"""Authorization policies for moderation operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping
from uuid import UUID

from freeshare.moderation.domain import models
from freeshare.moderation.domain.exceptions import NotAuthorizedError

ROLE_HIERARCHY = {
	models.GROUP_ROLE_OWNER: 3,
	models.GROUP_ROLE_MODERATOR: 2,
	models.GROUP_ROLE_MEMBER: 1,
}
ELEVATED_SYSTEM_ROLES = frozenset({models.SYSTEM_ROLE_ADMIN, models.SYSTEM_ROLE_SUPPORT})


@dataclass(slots=True, frozen=True)
class ActorContext:
	"""The resolved caller for a single request.

	``group_roles`` only holds groups the caller is an approved member of;
	a missing key means no role in that group.
	"""

	user_id: UUID
	system_role: str = models.SYSTEM_ROLE_USER
	group_roles: Mapping[UUID, str] = field(default_factory=dict)

	def group_role(self, group_id: UUID | None) -> str | None:
		if group_id is None:
			return None
		return self.group_roles.get(group_id)


def is_admin_or_support(ctx: ActorContext) -> bool:
	return ctx.system_role in ELEVATED_SYSTEM_ROLES


def is_owner_of(ctx: ActorContext, owner_id: UUID | None) -> bool:
	return owner_id is not None and ctx.user_id == owner_id


def can_moderate(ctx: ActorContext, group_id: UUID | None) -> bool:
	if is_admin_or_support(ctx):
		return True
	role = ctx.group_role(group_id)
	return role is not None and ROLE_HIERARCHY.get(role, 0) >= ROLE_HIERARCHY[models.GROUP_ROLE_MODERATOR]


def can_moderate_any(ctx: ActorContext, group_ids: Iterable[UUID]) -> bool:
	if is_admin_or_support(ctx):
		return True
	return any(can_moderate(ctx, group_id) for group_id in group_ids)


def assert_can_moderate(ctx: ActorContext, group_ids: Iterable[UUID]) -> None:
	if not can_moderate_any(ctx, group_ids):
		raise NotAuthorizedError("moderator_role_required")


def assert_owner(ctx: ActorContext, owner_id: UUID | None) -> None:
	if not is_owner_of(ctx, owner_id):
		raise NotAuthorizedError("not_your_message")


def assert_owner_or_moderator(ctx: ActorContext, owner_id: UUID | None, group_ids: Iterable[UUID]) -> None:
	if is_owner_of(ctx, owner_id):
		return
	if not can_moderate_any(ctx, group_ids):
		raise NotAuthorizedError("owner_or_moderator_required")
