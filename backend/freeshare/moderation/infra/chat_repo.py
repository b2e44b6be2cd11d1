"""asyncpg storage for chat messages awaiting review."""

from __future__ import annotations

from typing import Collection, Iterable, Optional, Sequence
from uuid import UUID

import asyncpg

from freeshare.moderation.domain import models
from freeshare.moderation.domain.holds import HoldSnapshot
from freeshare.moderation.infra.base import PostgresStore

_SNAPSHOT_SQL = """
SELECT cm.id, cm.user_id, cm.held_by, cm.review_required, cm.review_rejected,
	cr.group_id,
	ARRAY(
		SELECT DISTINCT mb.group_id FROM membership mb
		WHERE mb.collection = 'approved' AND mb.user_id IN (cr.user1, cr.user2)
	) AS participant_groups
FROM chat_message cm
JOIN chat_room cr ON cr.id = cm.chat_id
WHERE cm.id = $1
"""


def review_state(review_required: bool, review_rejected: bool) -> str:
	if review_required:
		return models.PENDING
	return models.REJECTED if review_rejected else models.APPROVED


class ChatRepository(PostgresStore):
	"""Chat messages, their rooms and the per-room tallies."""

	entity = "chat_message"
	holdable_states = frozenset({models.PENDING})

	# --- Hold-lock capabilities ----------------------------------------------

	async def current_state(self, key: UUID, *, conn: Optional[asyncpg.Connection] = None) -> HoldSnapshot | None:
		record = await self.fetchrow(_SNAPSHOT_SQL, key, conn=conn)
		if record is None:
			return None
		# Rooms tied to a group are moderated there; user-to-user rooms by
		# the groups either participant belongs to.
		if record["group_id"] is not None:
			group_ids: tuple[UUID, ...] = (record["group_id"],)
		else:
			group_ids = tuple(record["participant_groups"])
		return HoldSnapshot(
			key=record["id"],
			state=review_state(record["review_required"], record["review_rejected"]),
			held_by=record["held_by"],
			group_ids=group_ids,
			owner_id=record["user_id"],
		)

	async def claim(self, key: UUID, actor_id: UUID) -> HoldSnapshot | None:
		async with self.transaction() as conn:
			claimed = await conn.fetchval(
				"""
				UPDATE chat_message SET held_by = $2
				WHERE id = $1 AND review_required AND (held_by IS NULL OR held_by = $2)
				RETURNING id
				""",
				key,
				actor_id,
			)
			if claimed is None:
				return None
			return await self.current_state(key, conn=conn)

	async def unclaim(self, key: UUID, actor_id: UUID) -> HoldSnapshot | None:
		async with self.transaction() as conn:
			released = await conn.fetchval(
				"""
				UPDATE chat_message SET held_by = NULL
				WHERE id = $1 AND (held_by IS NULL OR held_by = $2)
				RETURNING id
				""",
				key,
				actor_id,
			)
			if released is None:
				return None
			return await self.current_state(key, conn=conn)

	async def conditional_transition(
		self,
		conn: asyncpg.Connection,
		key: UUID,
		*,
		actor_id: UUID,
		from_states: Collection[str],
		to_state: str,
	) -> HoldSnapshot | None:
		if models.PENDING not in from_states or to_state not in (models.APPROVED, models.REJECTED):
			return None
		swapped = await conn.fetchval(
			"""
			UPDATE chat_message
			SET review_required = FALSE, review_rejected = $3, reviewed_by = $2, held_by = NULL
			WHERE id = $1 AND review_required AND (held_by IS NULL OR held_by = $2)
			RETURNING id
			""",
			key,
			actor_id,
			to_state == models.REJECTED,
		)
		if swapped is None:
			return None
		return await self.current_state(key, conn=conn)

	# --- Reads ---------------------------------------------------------------

	async def get_chat_message(
		self, message_id: UUID, *, conn: Optional[asyncpg.Connection] = None
	) -> models.ChatMessage | None:
		record = await self.fetchrow("SELECT * FROM chat_message WHERE id = $1", message_id, conn=conn)
		return models.ChatMessage.model_validate(dict(record)) if record else None

	async def list_review_queue(self, group_ids: Optional[Sequence[UUID]], *, limit: int) -> list[models.ChatMessage]:
		"""Pending chat messages, oldest first.

		``group_ids`` of ``None`` means every room; otherwise rooms tied to one
		of the groups or user-to-user rooms with a participant in one of them.
		"""
		if group_ids is None:
			rows = await self.fetch(
				"""
				SELECT cm.* FROM chat_message cm
				WHERE cm.review_required
				ORDER BY cm.created_at, cm.seq
				LIMIT $1
				""",
				limit,
			)
		else:
			rows = await self.fetch(
				"""
				SELECT cm.* FROM chat_message cm
				JOIN chat_room cr ON cr.id = cm.chat_id
				WHERE cm.review_required
					AND (
						cr.group_id = ANY($1::uuid[])
						OR (
							cr.group_id IS NULL
							AND EXISTS (
								SELECT 1 FROM membership mb
								WHERE mb.collection = 'approved'
									AND mb.user_id IN (cr.user1, cr.user2)
									AND mb.group_id = ANY($1::uuid[])
							)
						)
					)
				ORDER BY cm.created_at, cm.seq
				LIMIT $2
				""",
				list(group_ids),
				limit,
			)
		return [models.ChatMessage.model_validate(dict(row)) for row in rows]

	# --- Transition side effects -----------------------------------------------

	async def approve_following_modmail(
		self,
		conn: asyncpg.Connection,
		chat_id: UUID,
		after_seq: int,
		actor_id: UUID,
	) -> int:
		"""Approve ModMail posted after ``after_seq`` in the room.

		ModMail held by a different moderator stays with that moderator.
		"""
		rows = await conn.fetch(
			"""
			UPDATE chat_message
			SET review_required = FALSE, reviewed_by = $3, held_by = NULL
			WHERE chat_id = $1 AND seq > $2 AND review_required AND message_type = $4
				AND (held_by IS NULL OR held_by = $3)
			RETURNING id
			""",
			chat_id,
			after,
			actor_id,
			models.CHAT_MSG_MODMAIL,
		)
		return len(rows)

	async def reject_duplicates(
		self,
		conn: asyncpg.Connection,
		*,
		text: str,
		exclude_id: UUID,
		window_hours: int,
		actor_id: UUID,
	) -> list[UUID]:
		"""Reject other pending copies of ``text``; return the rooms touched.

		Copies held by a different moderator stay with that moderator.
		"""
		rows = await conn.fetch(
			"""
			UPDATE chat_message
			SET review_required = FALSE, review_rejected = TRUE, reviewed_by = $3, held_by = NULL
			WHERE review_required
				AND message = $1
				AND id <> $2
				AND created_at >= NOW() - make_interval(hours => $4)
				AND (held_by IS NULL OR held_by = $3)
			RETURNING chat_id
			""",
			text,
			exclude_id,
			actor_id,
			window_hours,
		)
		return [row["chat_id"] for row in rows]

	async def recount_rooms(self, conn: asyncpg.Connection, chat_ids: Iterable[UUID]) -> None:
		ids = list(dict.fromkeys(chat_ids))
		if not ids:
			return
		await conn.execute(
			"""
			UPDATE chat_room cr SET
				msg_valid = counts.valid,
				msg_invalid = CASE WHEN cr.room_type = $2 THEN 0 ELSE counts.invalid END,
				latest_message_at = NOW()
			FROM (
				SELECT r.id,
					COUNT(cm.id) FILTER (WHERE NOT cm.review_required AND NOT cm.review_rejected) AS valid,
					COUNT(cm.id) FILTER (WHERE cm.review_required OR cm.review_rejected) AS invalid
				FROM chat_room r
				LEFT JOIN chat_message cm ON cm.chat_id = r.id
				WHERE r.id = ANY($1::uuid[])
				GROUP BY r.id
			) AS counts
			WHERE cr.id = counts.id
			""",
			ids,
			models.CHAT_MOD2MOD,
		)

	async def mark_user_unmoderated(self, conn: asyncpg.Connection, user_id: UUID) -> None:
		await conn.execute(
			"UPDATE users SET chat_mod_status = $2 WHERE id = $1",
			user_id,
			models.CHAT_UNMODERATED,
		)

	async def replace_text(self, message_id: UUID, actor_id: UUID, *, expected: str, replacement: str) -> bool:
		"""Swap the text only if it is unchanged and not held by someone else."""
		updated = await self.fetchval(
			"""
			UPDATE chat_message SET message = $4
			WHERE id = $1 AND message = $3 AND (held_by IS NULL OR held_by = $2)
			RETURNING id
			""",
			message_id,
			actor_id,
			expected,
			replacement,
		)
		return updated is not None
