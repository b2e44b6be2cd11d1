"""Review of chat messages flagged for moderation."""

from __future__ import annotations

import re
from typing import Any

from freeshare.infra.auth import AuthenticatedUser
from freeshare.moderation.domain import models, policies
from freeshare.moderation.domain.exceptions import NotAuthorizedError, NotFoundError
from freeshare.moderation.domain.holds import HoldLockEngine, HoldSnapshot
from freeshare.moderation.domain.roles import RoleResolver, parse_user_id
from freeshare.moderation.domain.tasks import TaskQueue
from freeshare.moderation.infra import chat_repo
from freeshare.moderation.schemas import dto
from freeshare.obs import metrics as obs_metrics
from freeshare.settings import settings

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}")
EMAIL_PLACEHOLDER = "(email removed)"


def redact_emails(text: str) -> str:
	return EMAIL_PATTERN.sub(EMAIL_PLACEHOLDER, text)


class ChatModerationService:
	"""Approve, reject, hold and redact chat messages awaiting review."""

	def __init__(
		self,
		*,
		repository: chat_repo.ChatRepository | None = None,
		resolver: RoleResolver | None = None,
		tasks: TaskQueue | None = None,
	) -> None:
		self.repo = repository or chat_repo.ChatRepository()
		self.resolver = resolver or RoleResolver()
		self.engine = HoldLockEngine(self.repo, resolver=self.resolver, tasks=tasks)

	async def dispatch(self, user: AuthenticatedUser | None, raw: Any) -> dto.ActionResponse:
		parse_user_id(user)
		payload = dto.parse_payload(dto.ChatModerationRequest, raw)
		async with self.engine.track(payload.action):
			snapshot = await self.engine.load(payload.id)
			ctx = await self.engine.authorize(user, snapshot.group_ids)
			if payload.action == "Hold":
				held = await self.engine.hold(ctx, payload.id)
				return dto.ActionResponse(id=payload.id, heldby=held.held_by)
			if payload.action == "Release":
				await self.engine.release(ctx, payload.id)
				return dto.ActionResponse(id=payload.id)
			if payload.action == "Redact":
				return await self._redact(ctx, snapshot)
			if payload.action == "Reject":
				return await self._reject(ctx, snapshot)
			return await self._approve(ctx, snapshot, all_future=payload.action == "ApproveAllFuture")

	async def _approve(self, ctx: policies.ActorContext, snapshot: HoldSnapshot, *, all_future: bool) -> dto.ActionResponse:
		async def on_approved(conn: Any, before: HoldSnapshot, after: HoldSnapshot) -> None:
			message = await self.repo.get_chat_message(snapshot.key, conn=conn)
			await self.repo.approve_following_modmail(conn, message.chat_id, message.seq, ctx.user_id)
			await self.repo.recount_rooms(conn, [message.chat_id])
			if all_future:
				await self.repo.mark_user_unmoderated(conn, message.user_id)

		result = await self.engine.transition(
			ctx,
			snapshot,
			from_states={models.PENDING},
			to_state=models.APPROVED,
			on_transition=on_approved,
		)
		return dto.ActionResponse(id=snapshot.key, changed=result.changed)

	async def _reject(self, ctx: policies.ActorContext, snapshot: HoldSnapshot) -> dto.ActionResponse:
		async def on_rejected(conn: Any, before: HoldSnapshot, after: HoldSnapshot) -> None:
			message = await self.repo.get_chat_message(snapshot.key, conn=conn)
			await self.repo.approve_following_modmail(conn, message.chat_id, message.seq, ctx.user_id)
			touched = await self.repo.reject_duplicates(
				conn,
				text=message.message,
				exclude_id=message.id,
				window_hours=settings.chat_duplicate_window_hours,
				actor_id=ctx.user_id,
			)
			await self.repo.recount_rooms(conn, [message.chat_id, *touched])
			obs_metrics.inc_duplicate_rejections(len(touched))

		result = await self.engine.transition(
			ctx,
			snapshot,
			from_states={models.PENDING},
			to_state=models.REJECTED,
			on_transition=on_rejected,
		)
		return dto.ActionResponse(id=snapshot.key, changed=result.changed)

	async def _redact(self, ctx: policies.ActorContext, snapshot: HoldSnapshot) -> dto.ActionResponse:
		self.engine.ensure_not_held_by_other(ctx, snapshot)
		message = await self.repo.get_chat_message(snapshot.key)
		if message is None:
			raise NotFoundError("chat_message_not_found")
		cleaned = redact_emails(message.message)
		if cleaned == message.message:
			return dto.ActionResponse(id=snapshot.key, changed=False)
		if not await self.repo.replace_text(snapshot.key, ctx.user_id, expected=message.message, replacement=cleaned):
			# Lost a race with a hold or another edit; classify from fresh state.
			current = await self.engine.load(snapshot.key)
			self.engine.ensure_not_held_by_other(ctx, current)
			return dto.ActionResponse(id=snapshot.key, changed=False)
		return dto.ActionResponse(id=snapshot.key, changed=True)

	async def review_queue(self, user: AuthenticatedUser | None, *, limit: int | None = None) -> dto.ChatReviewResponse:
		"""Pending chat messages the caller may moderate, oldest first."""
		parse_user_id(user)
		ctx = await self.resolver.resolve(user)
		if policies.is_admin_or_support(ctx):
			group_ids = None
		else:
			group_ids = [group_id for group_id in ctx.group_roles if policies.can_moderate(ctx, group_id)]
			if not group_ids:
				raise NotAuthorizedError("moderator_role_required")
		messages = await self.repo.list_review_queue(group_ids, limit=limit or settings.review_queue_limit)
		return dto.ChatReviewResponse(
			chatmessages=[
				dto.ChatReviewItem(
					id=message.id,
					chatid=message.chat_id,
					userid=message.user_id,
					type=message.message_type,
					message=message.message,
					heldby=message.held_by,
					refmsgid=message.ref_message_id,
					date=message.created_at,
				)
				for message in messages
			]
		)
