"""Cooperative hold locks and the shared terminal-transition dispatcher.

Every moderatable entity (messages, chat messages, memberships) plugs into
``HoldLockEngine`` through a ``ModeratableStore``. Stores own the SQL; the
engine owns the rules:

* Hold and Release are single conditional updates on ``held_by``.
* A terminal transition swaps state and clears the hold in one conditional
  write, runs the entity hook in the same transaction and enqueues the tasks
  the hook returned once the transaction has committed.
* A failed conditional write is classified by re-reading the item, so a
  losing moderator sees NotFound, Conflict or an idempotent no-op.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Collection, Hashable, Optional, Protocol
from uuid import UUID

from freeshare.infra.auth import AuthenticatedUser
from freeshare.moderation.domain import policies
from freeshare.moderation.domain.exceptions import ConflictError, HeldByOtherError, ModerationError, NotFoundError
from freeshare.moderation.domain.policies import ActorContext
from freeshare.moderation.domain.roles import RoleResolver
from freeshare.moderation.domain.tasks import PendingTask, TaskQueue, enqueue_best_effort
from freeshare.obs import logging as obs_logging
from freeshare.obs import metrics as obs_metrics

_log = obs_logging.get_logger("freeshare.moderation.holds")


@dataclass(slots=True, frozen=True)
class HoldSnapshot:
	"""State of one item as read at a single point in time."""

	key: Hashable
	state: str
	held_by: Optional[UUID] = None
	group_ids: tuple[UUID, ...] = ()
	owner_id: Optional[UUID] = None

	def held_by_other(self, actor_id: UUID) -> bool:
		return self.held_by is not None and self.held_by != actor_id


@dataclass(slots=True)
class TransitionResult:
	snapshot: HoldSnapshot
	changed: bool
	tasks: list[PendingTask] = field(default_factory=list)


class ModeratableStore(Protocol):
	"""Storage capabilities the engine needs from an entity."""

	entity: str
	holdable_states: Collection[str]

	def transaction(self) -> AsyncContextManager[Any]: ...

	async def current_state(self, key: Any, *, conn: Any = None) -> HoldSnapshot | None: ...

	async def claim(self, key: Any, actor_id: UUID) -> HoldSnapshot | None: ...

	async def unclaim(self, key: Any, actor_id: UUID) -> HoldSnapshot | None: ...

	async def conditional_transition(
		self,
		conn: Any,
		key: Any,
		*,
		actor_id: UUID,
		from_states: Collection[str],
		to_state: str,
	) -> HoldSnapshot | None: ...


TransitionHook = Callable[[Any, HoldSnapshot, HoldSnapshot], Awaitable[Optional[list[PendingTask]]]]


class HoldLockEngine:
	"""Hold, release and terminal transitions for one entity type."""

	def __init__(
		self,
		store: ModeratableStore,
		*,
		resolver: RoleResolver | None = None,
		tasks: TaskQueue | None = None,
	) -> None:
		self.store = store
		self.resolver = resolver or RoleResolver()
		self.tasks = tasks or TaskQueue()

	@property
	def entity(self) -> str:
		return self.store.entity

	# --- Reads and authorization ------------------------------------------

	async def load(self, key: Any) -> HoldSnapshot:
		snapshot = await self.store.current_state(key)
		if snapshot is None:
			raise NotFoundError(f"{self.entity}_not_found")
		return snapshot

	async def authorize(self, user: AuthenticatedUser | None, group_ids: Collection[UUID]) -> ActorContext:
		"""Resolve the caller and require moderator rights on one of ``group_ids``."""
		ctx = await self.resolver.resolve(user, group_ids)
		policies.assert_can_moderate(ctx, group_ids)
		return ctx

	@asynccontextmanager
	async def track(self, action: str) -> AsyncIterator[None]:
		"""Count and log one dispatched action by outcome."""
		started = time.perf_counter()
		tokens = obs_logging.bind_context(entity=self.entity, action=action)
		try:
			try:
				yield
			except HeldByOtherError:
				obs_metrics.inc_hold_conflict(self.entity, action)
				obs_metrics.inc_moderation_action(self.entity, action, "conflict")
				raise
			except ModerationError as exc:
				# Result label is the error class, never the status detail.
				obs_metrics.inc_moderation_action(self.entity, action, type(exc).__name__)
				_log.info("moderation_action_refused", extra={"status": exc.detail})
				raise
			except Exception:
				obs_metrics.inc_moderation_action(self.entity, action, "error")
				_log.exception("moderation_action_failed")
				raise
			obs_metrics.inc_moderation_action(self.entity, action, "ok")
			_log.info(
				"moderation_action",
				extra={"duration_ms": round((time.perf_counter() - started) * 1000, 2)},
			)
		finally:
			obs_logging.reset_context(tokens)

	# --- Lock primitives ---------------------------------------------------

	async def hold(self, ctx: ActorContext, key: Any) -> HoldSnapshot:
		"""Claim ``key`` for ``ctx``; re-holding your own claim is a no-op."""
		snapshot = await self.store.claim(key, ctx.user_id)
		if snapshot is not None:
			return snapshot
		current = await self.store.current_state(key)
		self._raise_for_failed_write(current, ctx)
		raise ConflictError("hold_failed")

	async def release(self, ctx: ActorContext, key: Any) -> HoldSnapshot:
		"""Clear ``ctx``'s claim. Releasing an unclaimed item succeeds."""
		snapshot = await self.store.unclaim(key, ctx.user_id)
		if snapshot is not None:
			return snapshot
		current = await self.store.current_state(key)
		if current is None:
			raise NotFoundError(f"{self.entity}_not_found")
		self.ensure_not_held_by_other(ctx, current)
		return current

	def ensure_not_held_by_other(self, ctx: ActorContext, snapshot: HoldSnapshot) -> None:
		if snapshot.held_by_other(ctx.user_id):
			raise HeldByOtherError(snapshot.held_by)

	def _raise_for_failed_write(self, current: HoldSnapshot | None, ctx: ActorContext) -> None:
		if current is None:
			raise NotFoundError(f"{self.entity}_not_found")
		self.ensure_not_held_by_other(ctx, current)
		if current.state not in self.store.holdable_states:
			raise ConflictError(f"already_{current.state}")

	# --- Terminal transitions ----------------------------------------------

	async def transition(
		self,
		ctx: ActorContext,
		snapshot: HoldSnapshot,
		*,
		from_states: Collection[str],
		to_state: str,
		on_transition: TransitionHook | None = None,
	) -> TransitionResult:
		"""Move ``snapshot`` into ``to_state`` and clear its hold.

		Already in ``to_state`` is a no-op success with no side effects; any
		other state outside ``from_states`` is a Conflict.
		"""
		self.ensure_not_held_by_other(ctx, snapshot)
		if snapshot.state not in from_states:
			return self._settled(snapshot, to_state)

		tasks: list[PendingTask] = []
		async with self.store.transaction() as conn:
			after = await self.store.conditional_transition(
				conn,
				snapshot.key,
				actor_id=ctx.user_id,
				from_states=from_states,
				to_state=to_state,
			)
			if after is None:
				current = await self.store.current_state(snapshot.key, conn=conn)
				if current is None:
					raise NotFoundError(f"{self.entity}_not_found")
				self.ensure_not_held_by_other(ctx, current)
				return self._settled(current, to_state)
			if on_transition is not None:
				tasks = list(await on_transition(conn, snapshot, after) or [])

		await self.flush(tasks)
		return TransitionResult(snapshot=after, changed=True, tasks=tasks)

	def _settled(self, current: HoldSnapshot, to_state: str) -> TransitionResult:
		if current.state == to_state:
			return TransitionResult(snapshot=current, changed=False)
		raise ConflictError(f"already_{current.state}")

	async def flush(self, tasks: list[PendingTask]) -> int:
		if not tasks:
			return 0
		return await enqueue_best_effort(self.tasks, tasks)
