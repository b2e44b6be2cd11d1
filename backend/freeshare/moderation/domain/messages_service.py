"""Moderation and owner actions on Offer/Wanted messages."""

from __future__ import annotations

from typing import Any, Awaitable, Callable
from uuid import UUID

from freeshare.infra.auth import AuthenticatedUser
from freeshare.moderation.domain import models, policies
from freeshare.moderation.domain import tasks as task_types
from freeshare.moderation.domain.exceptions import ConflictError, NotAuthorizedError, NotFoundError, ValidationError
from freeshare.moderation.domain.holds import HoldLockEngine, HoldSnapshot, TransitionResult
from freeshare.moderation.domain.policies import ActorContext
from freeshare.moderation.domain.roles import RoleResolver, parse_user_id
from freeshare.moderation.domain.tasks import PendingTask, TaskQueue
from freeshare.moderation.infra import message_repo
from freeshare.moderation.schemas import dto
from freeshare.settings import settings

_LIVE_STATES = frozenset({models.PENDING, models.APPROVED, models.REJECTED})

Handler = Callable[[AuthenticatedUser, dto.MessageActionRequest], Awaitable[dto.ActionResponse]]


class MessagesService:
	"""Dispatches ``POST /message`` actions plus edit, create and delete."""

	def __init__(
		self,
		*,
		repository: message_repo.MessageRepository | None = None,
		resolver: RoleResolver | None = None,
		tasks: TaskQueue | None = None,
	) -> None:
		self.repo = repository or message_repo.MessageRepository()
		self.resolver = resolver or RoleResolver()
		self.engine = HoldLockEngine(self.repo, resolver=self.resolver, tasks=tasks)
		self._handlers: dict[str, Handler] = {
			"Hold": self._hold,
			"Release": self._release,
			"Approve": self._approve,
			"Reject": self._reject,
			"Delete": self._delete,
			"Spam": self._spam,
			"ApproveEdits": self._approve_edits,
			"RevertEdits": self._revert_edits,
			"PartnerConsent": self._partner_consent,
			"Reply": self._reply,
			"Promise": self._promise,
			"Renege": self._renege,
			"OutcomeIntended": self._outcome_intended,
			"Outcome": self._outcome,
			"AddBy": self._add_by,
			"RemoveBy": self._remove_by,
			"View": self._view,
		}

	async def dispatch(self, user: AuthenticatedUser | None, raw: Any) -> dto.ActionResponse:
		parse_user_id(user)
		payload = dto.parse_payload(dto.MessageActionRequest, raw)
		handler = self._handlers[payload.action]
		async with self.engine.track(payload.action):
			return await handler(user, payload)

	# --- Shared helpers ------------------------------------------------------

	async def _moderator(self, user: AuthenticatedUser, message_id: UUID) -> tuple[ActorContext, HoldSnapshot]:
		snapshot = await self.engine.load(message_id)
		ctx = await self.engine.authorize(user, snapshot.group_ids)
		return ctx, snapshot

	async def _owner(self, user: AuthenticatedUser, message_id: UUID) -> tuple[ActorContext, HoldSnapshot]:
		snapshot = await self.engine.load(message_id)
		ctx = await self.resolver.resolve(user, snapshot.group_ids)
		policies.assert_owner(ctx, snapshot.owner_id)
		return ctx, snapshot

	async def _owner_or_moderator(
		self, user: AuthenticatedUser, message_id: UUID
	) -> tuple[ActorContext, HoldSnapshot]:
		snapshot = await self.engine.load(message_id)
		ctx = await self.resolver.resolve(user, snapshot.group_ids)
		policies.assert_owner_or_moderator(ctx, snapshot.owner_id, snapshot.group_ids)
		return ctx, snapshot

	async def _blocked_write(self, ctx: ActorContext, message_id: UUID) -> None:
		"""Classify a guarded write that matched no row."""
		current = await self.engine.load(message_id)
		self.engine.ensure_not_held_by_other(ctx, current)
		raise ConflictError("message_changed")

	@staticmethod
	def _result(result: TransitionResult) -> dto.ActionResponse:
		return dto.ActionResponse(id=result.snapshot.key, changed=result.changed)

	# --- Lock actions --------------------------------------------------------

	async def _hold(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		ctx, _ = await self._moderator(user, payload.id)
		snapshot = await self.engine.hold(ctx, payload.id)
		return dto.ActionResponse(id=payload.id, heldby=snapshot.held_by)

	async def _release(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		ctx, _ = await self._moderator(user, payload.id)
		await self.engine.release(ctx, payload.id)
		return dto.ActionResponse(id=payload.id)

	# --- Terminal actions ----------------------------------------------------

	async def _approve(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		ctx, snapshot = await self._moderator(user, payload.id)

		async def on_approved(conn: Any, before: HoldSnapshot, after: HoldSnapshot) -> list[PendingTask]:
			await self.repo.bump_group_tally(conn, after.group_ids, "approved_count")
			return [
				PendingTask(
					task_types.TASK_EMAIL_MESSAGE_APPROVED,
					{"msgid": payload.id, "byuser": ctx.user_id, "subject": payload.subject, "body": payload.body},
				)
			]

		result = await self.engine.transition(
			ctx,
			snapshot,
			from_states={models.PENDING},
			to_state=models.APPROVED,
			on_transition=on_approved,
		)
		return self._result(result)

	async def _reject(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		ctx, snapshot = await self._moderator(user, payload.id)

		async def on_rejected(conn: Any, before: HoldSnapshot, after: HoldSnapshot) -> list[PendingTask]:
			await self.repo.bump_group_tally(conn, after.group_ids, "rejected_count")
			return [
				PendingTask(
					task_types.TASK_EMAIL_MESSAGE_REJECTED,
					{
						"msgid": payload.id,
						"byuser": ctx.user_id,
						"subject": payload.subject or "",
						"body": payload.body or "",
						"stdmsgid": payload.stdmsgid or 0,
					},
				)
			]

		result = await self.engine.transition(
			ctx,
			snapshot,
			from_states={models.PENDING},
			to_state=models.REJECTED,
			on_transition=on_rejected,
		)
		return self._result(result)

	async def _delete(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		ctx, snapshot = await self._moderator(user, payload.id)
		result = await self.engine.transition(ctx, snapshot, from_states=_LIVE_STATES, to_state=models.DELETED)
		return self._result(result)

	async def _spam(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		ctx, snapshot = await self._moderator(user, payload.id)

		async def on_spam(conn: Any, before: HoldSnapshot, after: HoldSnapshot) -> None:
			await self.repo.record_spam(conn, payload.id)

		result = await self.engine.transition(
			ctx,
			snapshot,
			from_states=_LIVE_STATES,
			to_state=models.SPAM,
			on_transition=on_spam,
		)
		return self._result(result)

	# --- Edit review ---------------------------------------------------------

	async def _approve_edits(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		ctx, snapshot = await self._moderator(user, payload.id)
		self.engine.ensure_not_held_by_other(ctx, snapshot)
		closed = await self.repo.approve_latest_edit(payload.id, ctx.user_id)
		if closed is None:
			await self._blocked_write(ctx, payload.id)
		return dto.ActionResponse(id=payload.id, changed=bool(closed))

	async def _revert_edits(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		ctx, snapshot = await self._moderator(user, payload.id)
		self.engine.ensure_not_held_by_other(ctx, snapshot)
		reverted = await self.repo.revert_pending_edits(payload.id, ctx.user_id)
		if reverted is None:
			await self._blocked_write(ctx, payload.id)
		return dto.ActionResponse(id=payload.id, changed=bool(reverted))

	# --- Moderator extras ----------------------------------------------------

	async def _partner_consent(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		await self._moderator(user, payload.id)
		if not payload.partner:
			raise ValidationError("missing_partner")
		partner_id = await self.repo.find_partner(payload.partner)
		if partner_id is None:
			raise NotFoundError("partner_not_found")
		await self.repo.record_partner_consent(payload.id, partner_id)
		return dto.ActionResponse(id=payload.id)

	async def _reply(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		ctx, _ = await self._moderator(user, payload.id)
		await self.engine.flush(
			[
				PendingTask(
					task_types.TASK_EMAIL_MESSAGE_REPLY,
					{
						"msgid": payload.id,
						"byuser": ctx.user_id,
						"subject": payload.subject or "",
						"body": payload.body or "",
						"stdmsgid": payload.stdmsgid or 0,
					},
				)
			]
		)
		return dto.ActionResponse(id=payload.id)

	# --- Owner actions -------------------------------------------------------

	async def _promise(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		ctx, _ = await self._owner(user, payload.id)
		await self.repo.promise(payload.id, ctx.user_id, payload.userid or ctx.user_id)
		return dto.ActionResponse(id=payload.id)

	async def _renege(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		ctx, _ = await self._owner(user, payload.id)
		await self.repo.renege(payload.id, ctx.user_id, payload.userid or ctx.user_id)
		return dto.ActionResponse(id=payload.id)

	async def _outcome_intended(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		if payload.outcome is None:
			raise ValidationError("missing_outcome")
		await self._owner(user, payload.id)
		await self.repo.set_intended_outcome(payload.id, payload.outcome)
		return dto.ActionResponse(id=payload.id)

	async def _outcome(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		if payload.outcome is None:
			raise ValidationError("missing_outcome")
		ctx, _ = await self._owner_or_moderator(user, payload.id)
		await self.repo.record_outcome(
			payload.id,
			outcome=payload.outcome,
			happiness=payload.happiness,
			comments=payload.comment or "",
		)
		await self.engine.flush(
			[
				PendingTask(
					task_types.TASK_MESSAGE_OUTCOME,
					{
						"msgid": payload.id,
						"outcome": payload.outcome,
						"happiness": payload.happiness or "",
						"comment": payload.comment or "",
						"userid": payload.userid,
						"byuser": ctx.user_id,
						"message": payload.message or "",
					},
				)
			]
		)
		return dto.ActionResponse(id=payload.id)

	async def _add_by(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		await self._owner_or_moderator(user, payload.id)
		count = payload.count if payload.count is not None else 1
		available = await self.repo.set_claim(payload.id, payload.userid, count)
		return dto.ActionResponse(id=payload.id, availablenow=available)

	async def _remove_by(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		await self._owner_or_moderator(user, payload.id)
		available = await self.repo.remove_claim(payload.id, payload.userid)
		return dto.ActionResponse(id=payload.id, availablenow=available)

	async def _view(self, user: AuthenticatedUser, payload: dto.MessageActionRequest) -> dto.ActionResponse:
		user_id = parse_user_id(user)
		await self.engine.load(payload.id)
		counted = await self.repo.record_view(
			payload.id,
			user_id,
			dedup_minutes=settings.message_view_dedup_minutes,
		)
		return dto.ActionResponse(id=payload.id, changed=counted)

	# --- PATCH / PUT / DELETE ------------------------------------------------

	async def edit(self, user: AuthenticatedUser | None, raw: Any) -> dto.ActionResponse:
		"""Owner edits go to review; moderator edits apply directly."""
		parse_user_id(user)
		payload = dto.parse_payload(dto.MessagePatchRequest, raw)
		async with self.engine.track("Edit"):
			snapshot = await self.engine.load(payload.id)
			ctx = await self.resolver.resolve(user, snapshot.group_ids)
			is_moderator = policies.can_moderate_any(ctx, snapshot.group_ids)
			if not is_moderator and not policies.is_owner_of(ctx, snapshot.owner_id):
				raise NotAuthorizedError("not_allowed_to_modify")
			if is_moderator:
				self.engine.ensure_not_held_by_other(ctx, snapshot)
			message = await self.repo.update_message(
				payload.id,
				subject=payload.subject,
				text_body=payload.textbody,
				message_type=payload.type,
				available_now=payload.availablenow,
				edit_by=None if is_moderator else ctx.user_id,
				moderator_id=ctx.user_id if is_moderator else None,
			)
			if message is None:
				await self._blocked_write(ctx, payload.id)
			return dto.ActionResponse(id=message.id, changed=message.edited_by is not None)

	async def create(self, user: AuthenticatedUser | None, raw: Any) -> dto.ActionResponse:
		user_id = parse_user_id(user)
		payload = dto.parse_payload(dto.MessageCreateRequest, raw)
		async with self.engine.track("Create"):
			if not await self.repo.group_exists(payload.groupid):
				raise NotFoundError("group_not_found")
			if not await self.repo.is_group_member(user_id, payload.groupid):
				raise NotAuthorizedError("not_a_member")
			message = await self.repo.create_message(
				from_user=user_id,
				group_id=payload.groupid,
				message_type=payload.type,
				subject=payload.subject,
				text_body=payload.textbody,
				available=payload.availableinitially,
				collection=models.PENDING,
			)
			await self.engine.flush(
				[
					PendingTask(
						task_types.TASK_PUSH_NOTIFY_GROUP_MODS,
						{"msgid": message.id, "groupid": payload.groupid},
					)
				]
			)
			return dto.ActionResponse(id=message.id)

	async def delete(self, user: AuthenticatedUser | None, raw_id: str | UUID) -> dto.ActionResponse:
		parse_user_id(user)
		try:
			message_id = UUID(str(raw_id))
		except ValueError as exc:
			raise ValidationError("invalid_id") from exc
		async with self.engine.track("Delete"):
			ctx, snapshot = await self._owner_or_moderator(user, message_id)
			result = await self.engine.transition(ctx, snapshot, from_states=_LIVE_STATES, to_state=models.DELETED)
			return self._result(result)
