"""Moderator actions on group memberships."""

from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from freeshare.infra.auth import AuthenticatedUser
from freeshare.moderation.domain import models
from freeshare.moderation.domain import tasks as task_types
from freeshare.moderation.domain.exceptions import NotFoundError, ValidationError
from freeshare.moderation.domain.holds import HoldLockEngine, HoldSnapshot
from freeshare.moderation.domain.policies import ActorContext
from freeshare.moderation.domain.roles import RoleResolver, parse_user_id
from freeshare.moderation.domain.tasks import PendingTask, TaskQueue
from freeshare.moderation.infra import membership_repo
from freeshare.moderation.infra.membership_repo import MembershipKey
from freeshare.moderation.schemas import dto
from freeshare.settings import settings

_MEMBER_STATES = frozenset({models.PENDING, models.APPROVED})
LIST_COLLECTIONS = (models.PENDING, models.APPROVED, models.BANNED)


class MembershipsService:
	"""Dispatches ``POST /memberships`` actions for group moderators."""

	def __init__(
		self,
		*,
		repository: membership_repo.MembershipRepository | None = None,
		resolver: RoleResolver | None = None,
		tasks: TaskQueue | None = None,
	) -> None:
		self.repo = repository or membership_repo.MembershipRepository()
		self.resolver = resolver or RoleResolver()
		self.engine = HoldLockEngine(self.repo, resolver=self.resolver, tasks=tasks)

	async def dispatch(self, user: AuthenticatedUser | None, raw: Any) -> dto.ActionResponse:
		parse_user_id(user)
		payload = dto.parse_payload(dto.MembershipActionRequest, raw)
		key = MembershipKey(payload.userid, payload.groupid)
		async with self.engine.track(payload.action):
			ctx = await self.engine.authorize(user, [payload.groupid])
			action = payload.action
			if action in ("Hold", "ReviewHold"):
				held = await self.engine.hold(ctx, key)
				return dto.ActionResponse(heldby=held.held_by)
			if action in ("Release", "ReviewRelease"):
				await self.engine.release(ctx, key)
				return dto.ActionResponse()
			if action in ("Approve", "Leave Approved Member"):
				return await self._approve(ctx, key, payload)
			if action in ("Reject", "Delete Approved Member"):
				return await self._reject(ctx, key, payload)
			if action == "Ban":
				return await self._ban(ctx, key)
			if action == "Unban":
				return await self._unban(ctx, key)
			return await self._happiness_reviewed(payload.happiness, payload.groupid)

	@staticmethod
	def _notice(ctx: ActorContext, key: MembershipKey, payload: dto.MembershipActionRequest) -> dict[str, Any]:
		data: dict[str, Any] = {"userid": key.user_id, "groupid": key.group_id, "byuser": ctx.user_id}
		if payload.subject is not None:
			data["subject"] = payload.subject
		if payload.body is not None:
			data["body"] = payload.body
		return data

	async def _approve(
		self, ctx: ActorContext, key: MembershipKey, payload: dto.MembershipActionRequest
	) -> dto.ActionResponse:
		snapshot = await self.engine.load(key)

		async def on_approved(conn: Any, before: HoldSnapshot, after: HoldSnapshot) -> list[PendingTask]:
			await self.repo.accept_invitations(conn, key.user_id, bonus=settings.invite_accept_bonus)
			return [PendingTask(task_types.TASK_EMAIL_MEMBERSHIP_APPROVED, self._notice(ctx, key, payload))]

		result = await self.engine.transition(
			ctx,
			snapshot,
			from_states={models.PENDING},
			to_state=models.APPROVED,
			on_transition=on_approved,
		)
		return dto.ActionResponse(changed=result.changed)

	async def _reject(
		self, ctx: ActorContext, key: MembershipKey, payload: dto.MembershipActionRequest
	) -> dto.ActionResponse:
		snapshot = await self.engine.load(key)

		async def on_rejected(conn: Any, before: HoldSnapshot, after: HoldSnapshot) -> list[PendingTask]:
			data = self._notice(ctx, key, payload)
			if payload.stdmsgid is not None:
				data["stdmsgid"] = payload.stdmsgid
			return [PendingTask(task_types.TASK_EMAIL_MEMBERSHIP_REJECTED, data)]

		result = await self.engine.transition(
			ctx,
			snapshot,
			from_states=_MEMBER_STATES,
			to_state=models.REJECTED,
			on_transition=on_rejected,
		)
		return dto.ActionResponse(changed=result.changed)

	async def _ban(self, ctx: ActorContext, key: MembershipKey) -> dto.ActionResponse:
		snapshot = await self.repo.current_state(key)
		if snapshot is None:
			# Not a member yet; leave a marker so they cannot join.
			if not await self.repo.user_exists(key.user_id):
				raise NotFoundError("user_not_found")
			async with self.repo.transaction() as conn:
				created = await self.repo.insert_ban(conn, key)
			if created:
				return dto.ActionResponse(changed=True)
			snapshot = await self.engine.load(key)
		result = await self.engine.transition(ctx, snapshot, from_states=_MEMBER_STATES, to_state=models.BANNED)
		return dto.ActionResponse(changed=result.changed)

	async def _unban(self, ctx: ActorContext, key: MembershipKey) -> dto.ActionResponse:
		snapshot = await self.repo.current_state(key)
		if snapshot is None or snapshot.state != models.BANNED:
			return dto.ActionResponse(changed=False)
		result = await self.engine.transition(ctx, snapshot, from_states={models.BANNED}, to_state=models.UNBANNED)
		return dto.ActionResponse(changed=result.changed)

	async def _happiness_reviewed(self, outcome_id: Optional[int], group_id: UUID) -> dto.ActionResponse:
		if outcome_id is None:
			raise ValidationError("missing_happiness")
		if not await self.repo.mark_outcome_reviewed(outcome_id, group_id):
			raise NotFoundError("outcome_not_found")
		return dto.ActionResponse()

	async def list_members(
		self,
		user: AuthenticatedUser | None,
		group_id: UUID,
		*,
		collection: str = models.APPROVED,
		limit: int = 100,
		search: Optional[str] = None,
	) -> list[dto.MemberListItem]:
		parse_user_id(user)
		if collection not in LIST_COLLECTIONS:
			raise ValidationError("invalid_collection")
		await self.engine.authorize(user, [group_id])
		rows = await self.repo.list_members(group_id, collection=collection, limit=limit, search=search)
		return [
			dto.MemberListItem(
				userid=row["user_id"],
				role=row["role"],
				collection=row["collection"],
				added=row["added_at"],
				heldby=row["held_by"],
				displayname=row.get("display_name"),
			)
			for row in rows
		]
