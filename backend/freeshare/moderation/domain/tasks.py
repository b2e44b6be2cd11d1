"""Append-only background task sink.

Rows land in ``background_tasks`` and are drained by an external worker.
Moderation transitions never wait on delivery: ``enqueue_best_effort`` runs
after the transition has committed and only logs when an insert fails.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import asyncpg

from freeshare.infra.postgres import get_pool
from freeshare.moderation.domain.exceptions import TaskQueueError
from freeshare.obs import logging as obs_logging
from freeshare.obs import metrics as obs_metrics

_log = obs_logging.get_logger("freeshare.moderation.tasks")

TASK_EMAIL_MESSAGE_APPROVED = "email_message_approved"
TASK_EMAIL_MESSAGE_REJECTED = "email_message_rejected"
TASK_EMAIL_MESSAGE_REPLY = "email_message_reply"
TASK_MESSAGE_OUTCOME = "message_outcome"
TASK_EMAIL_MEMBERSHIP_APPROVED = "email_membership_approved"
TASK_EMAIL_MEMBERSHIP_REJECTED = "email_membership_rejected"
TASK_PUSH_NOTIFY_GROUP_MODS = "push_notify_group_mods"


@dataclass(slots=True, frozen=True)
class PendingTask:
	"""A task produced inside a transition, inserted once it commits."""

	task_type: str
	payload: dict[str, Any] = field(default_factory=dict)


def _jsonable(value: Any) -> Any:
	if isinstance(value, dict):
		return {str(key): _jsonable(item) for key, item in value.items()}
	if isinstance(value, (list, tuple, set, frozenset)):
		return [_jsonable(item) for item in value]
	if value is None or isinstance(value, (str, int, float, bool)):
		return value
	return str(value)


class TaskQueue:
	"""Inserts background tasks; no dedupe, at-least-once downstream."""

	async def enqueue(
		self,
		task_type: str,
		payload: dict[str, Any],
		*,
		conn: Optional[asyncpg.Connection] = None,
	) -> int:
		data = _jsonable(payload)
		try:
			if conn is not None:
				return await self._insert(conn, task_type, data)
			pool = await get_pool()
			async with pool.acquire() as acquired:
				return await self._insert(acquired, task_type, data)
		except (asyncpg.PostgresError, OSError) as exc:
			raise TaskQueueError(f"{task_type}: {exc}") from exc

	@staticmethod
	async def _insert(conn: asyncpg.Connection, task_type: str, data: dict[str, Any]) -> int:
		task_id = await conn.fetchval(
			"""
			INSERT INTO background_tasks (task_type, data)
			VALUES ($1, $2::jsonb)
			RETURNING id
			""",
			task_type,
			data,
		)
		return int(task_id)


async def enqueue_best_effort(queue: TaskQueue, tasks: Iterable[PendingTask]) -> int:
	"""Insert ``tasks`` one by one; return how many made it.

	Failures are logged and counted, never raised.
	"""
	inserted = 0
	for task in tasks:
		try:
			await queue.enqueue(task.task_type, task.payload)
		except TaskQueueError as exc:
			obs_metrics.inc_task_enqueue_failure(task.task_type)
			_log.warning(
				"background_task_enqueue_failed",
				extra={"task_type": task.task_type, "error": str(exc)},
			)
			continue
		obs_metrics.inc_task_enqueued(task.task_type)
		inserted += 1
	return inserted
