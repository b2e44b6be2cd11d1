"""Identity and role resolution for moderation requests."""

from __future__ import annotations

from typing import Iterable, Protocol
from uuid import UUID

from freeshare.infra.auth import AuthenticatedUser
from freeshare.moderation.domain import models
from freeshare.moderation.domain.exceptions import NotAuthenticatedError
from freeshare.moderation.domain.policies import ActorContext
from freeshare.moderation.infra import roles_repo


class RolesRepository(Protocol):
	async def get_system_role(self, user_id: UUID) -> str | None: ...

	async def get_group_roles(self, user_id: UUID, group_ids: Iterable[UUID] | None = None) -> dict[UUID, str]: ...


def parse_user_id(user: AuthenticatedUser | None) -> UUID:
	"""Return the caller's id, raising ``NotAuthenticatedError`` for anonymous or malformed identities."""
	if user is None:
		raise NotAuthenticatedError()
	try:
		return UUID(str(user.id))
	except ValueError as exc:
		raise NotAuthenticatedError("invalid_identity") from exc


class RoleResolver:
	"""Builds an ``ActorContext`` from storage on every call.

	Roles can change between requests, so nothing is cached here.
	"""

	def __init__(self, repository: RolesRepository | None = None) -> None:
		self.repo = repository or roles_repo.PostgresRolesRepository()

	async def resolve(
		self,
		user: AuthenticatedUser | None,
		group_ids: Iterable[UUID] | None = None,
	) -> ActorContext:
		user_id = parse_user_id(user)
		system_role = await self.repo.get_system_role(user_id) or models.SYSTEM_ROLE_USER
		group_roles = await self.repo.get_group_roles(user_id, list(group_ids) if group_ids is not None else None)
		return ActorContext(user_id=user_id, system_role=system_role, group_roles=group_roles)
