"""asyncpg storage for Offer/Wanted messages and their side records."""

from __future__ import annotations

from typing import Collection, Iterable, Optional, Sequence
from uuid import UUID

import asyncpg

from freeshare.moderation.domain import models
from freeshare.moderation.domain.exceptions import ConflictError
from freeshare.moderation.domain.holds import HoldSnapshot
from freeshare.moderation.infra.base import PostgresStore, affected_rows

# Collapses per-group placements into one message state, most actionable first.
_STATE_PRIORITY = (models.PENDING, models.APPROVED, models.SPAM, models.REJECTED, models.DELETED)

_SNAPSHOT_SQL = """
SELECT m.id, m.from_user, m.held_by, m.deleted_at,
	COALESCE(array_agg(mg.group_id) FILTER (WHERE mg.group_id IS NOT NULL), '{}') AS group_ids,
	COALESCE(array_agg(mg.collection) FILTER (WHERE mg.group_id IS NOT NULL), '{}') AS collections
FROM message m
LEFT JOIN message_group mg ON mg.message_id = m.id
WHERE m.id = $1
GROUP BY m.id
"""


def derive_state(collections: Iterable[str], deleted: bool) -> str:
	seen = set(collections)
	if deleted:
		return models.SPAM if models.SPAM in seen else models.DELETED
	for state in _STATE_PRIORITY:
		if state in seen:
			return state
	return models.DELETED


class MessageRepository(PostgresStore):
	"""Messages, their group placements and owner side records."""

	entity = "message"
	holdable_states = frozenset({models.PENDING})

	# --- Hold-lock capabilities ----------------------------------------------

	async def current_state(self, key: UUID, *, conn: Optional[asyncpg.Connection] = None) -> HoldSnapshot | None:
		record = await self.fetchrow(_SNAPSHOT_SQL, key, conn=conn)
		if record is None:
			return None
		return HoldSnapshot(
			key=record["id"],
			state=derive_state(record["collections"], record["deleted_at"] is not None),
			held_by=record["held_by"],
			group_ids=tuple(record["group_ids"]),
			owner_id=record["from_user"],
		)

	async def claim(self, key: UUID, actor_id: UUID) -> HoldSnapshot | None:
		async with self.transaction() as conn:
			claimed = await conn.fetchval(
				"""
				UPDATE message SET held_by = $2
				WHERE id = $1
					AND (held_by IS NULL OR held_by = $2)
					AND deleted_at IS NULL
					AND EXISTS (
						SELECT 1 FROM message_group WHERE message_id = $1 AND collection = $3
					)
				RETURNING id
				""",
				key,
				actor_id,
				models.PENDING,
			)
			if claimed is None:
				return None
			return await self.current_state(key, conn=conn)

	async def unclaim(self, key: UUID, actor_id: UUID) -> HoldSnapshot | None:
		async with self.transaction() as conn:
			released = await conn.fetchval(
				"""
				UPDATE message SET held_by = NULL
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
		removes = to_state in (models.DELETED, models.SPAM)
		swapped = await conn.fetchval(
			"""
			UPDATE message
			SET held_by = NULL,
				deleted_at = CASE WHEN $4 THEN NOW() ELSE deleted_at END
			WHERE id = $1
				AND (held_by IS NULL OR held_by = $2)
				AND deleted_at IS NULL
				AND EXISTS (
					SELECT 1 FROM message_group WHERE message_id = $1 AND collection = ANY($3::text[])
				)
			RETURNING id
			""",
			key,
			actor_id,
			list(from_states),
			removes,
		)
		if swapped is None:
			return None
		if to_state == models.APPROVED:
			await conn.execute(
				"""
				UPDATE message_group
				SET collection = $2, approved_by = $3, approved_at = NOW()
				WHERE message_id = $1 AND collection = ANY($4::text[])
				""",
				key,
				to_state,
				actor_id,
				list(from_states),
			)
		else:
			await conn.execute(
				"""
				UPDATE message_group SET collection = $2
				WHERE message_id = $1 AND collection = ANY($3::text[])
				""",
				key,
				to_state,
				list(from_states),
			)
		return await self.current_state(key, conn=conn)

	# --- Messages ------------------------------------------------------------

	async def is_group_member(self, user_id: UUID, group_id: UUID) -> bool:
		found = await self.fetchval(
			"""
			SELECT 1 FROM membership
			WHERE user_id = $1 AND group_id = $2 AND collection <> $3
			""",
			user_id,
			group_id,
			models.BANNED,
		)
		return found is not None

	async def group_exists(self, group_id: UUID) -> bool:
		found = await self.fetchval(
			"SELECT 1 FROM group_entity WHERE id = $1 AND deleted_at IS NULL",
			group_id,
		)
		return found is not None

	async def create_message(
		self,
		*,
		from_user: UUID,
		group_id: UUID,
		message_type: str,
		subject: str,
		text_body: str,
		available: int,
		collection: str,
	) -> models.Message:
		async with self.transaction() as conn:
			record = await conn.fetchrow(
				"""
				INSERT INTO message (from_user, message_type, subject, text_body, available_initially, available_now)
				VALUES ($1, $2, $3, $4, $5, $5)
				RETURNING *
				""",
				from_user,
				message_type,
				subject,
				text_body,
				available,
			)
			await conn.execute(
				"""
				INSERT INTO message_group (message_id, group_id, collection)
				VALUES ($1, $2, $3)
				""",
				record["id"],
				group_id,
				collection,
			)
		return models.Message.model_validate(dict(record))

	async def update_message(
		self,
		message_id: UUID,
		*,
		subject: Optional[str] = None,
		text_body: Optional[str] = None,
		message_type: Optional[str] = None,
		available_now: Optional[int] = None,
		edit_by: Optional[UUID] = None,
		moderator_id: Optional[UUID] = None,
	) -> models.Message | None:
		"""Apply field changes.

		With ``edit_by`` a changed subject or body is filed as an edit awaiting
		review instead of going live; other fields still apply directly. With
		``moderator_id`` the write only lands when no other moderator holds the
		message. Returns ``None`` when nothing was written.
		"""
		async with self.transaction() as conn:
			old = await conn.fetchrow("SELECT * FROM message WHERE id = $1 FOR UPDATE", message_id)
			if old is None:
				return None
			reviewed = edit_by is not None and (
				(subject is not None and subject != old["subject"])
				or (text_body is not None and text_body != old["text_body"])
			)
			record = await conn.fetchrow(
				"""
				UPDATE message SET
					subject = COALESCE($2, subject),
					text_body = COALESCE($3, text_body),
					message_type = COALESCE($4, message_type),
					available_now = COALESCE($5, available_now),
					edited_by = COALESCE($6, edited_by)
				WHERE id = $1 AND ($7::uuid IS NULL OR held_by IS NULL OR held_by = $7)
				RETURNING *
				""",
				message_id,
				None if edit_by is not None else subject,
				None if edit_by is not None else text_body,
				message_type,
				available_now,
				edit_by if reviewed else None,
				moderator_id,
			)
			if record is None:
				return None
			if reviewed:
				await conn.execute(
					"""
					INSERT INTO message_edit (message_id, by_user, old_subject, new_subject, old_text, new_text, review_required)
					VALUES ($1, $2, $3, $4, $5, $6, TRUE)
					""",
					message_id,
					edit_by,
					old["subject"],
					subject if subject is not None else old["subject"],
					old["text_body"],
					text_body if text_body is not None else old["text_body"],
				)
		return models.Message.model_validate(dict(record))

	async def bump_group_tally(self, conn: asyncpg.Connection, group_ids: Sequence[UUID], column: str) -> None:
		if column not in ("approved_count", "rejected_count") or not group_ids:
			return
		await conn.execute(
			f"UPDATE group_entity SET {column} = {column} + 1 WHERE id = ANY($1::uuid[])",
			list(group_ids),
		)

	async def record_spam(self, conn: asyncpg.Connection, message_id: UUID) -> None:
		await conn.execute(
			"""
			INSERT INTO message_spamham (message_id, verdict)
			VALUES ($1, 'Spam')
			ON CONFLICT (message_id) DO UPDATE SET verdict = EXCLUDED.verdict, created_at = NOW()
			""",
			message_id,
		)

	# --- Edits -----------------------------------------------------------------

	async def approve_latest_edit(self, message_id: UUID, actor_id: UUID) -> int | None:
		"""Apply the newest pending edit and supersede the older ones.

		Returns the number of edit records closed, or ``None`` when the message
		is missing or held by another moderator.
		"""
		async with self.transaction() as conn:
			if not await self._clear_edited_by(conn, message_id, actor_id):
				return None
			edit = await conn.fetchrow(
				"""
				SELECT * FROM message_edit
				WHERE message_id = $1 AND review_required AND approved_at IS NULL AND reverted_at IS NULL
				ORDER BY id DESC
				LIMIT 1
				FOR UPDATE
				""",
				message_id,
			)
			if edit is None:
				return 0
			await conn.execute(
				"""
				UPDATE message SET
					subject = COALESCE($2, subject),
					text_body = COALESCE($3, text_body)
				WHERE id = $1
				""",
				message_id,
				edit["new_subject"],
				edit["new_text"],
			)
			await conn.execute("UPDATE message_edit SET approved_at = NOW() WHERE id = $1", edit["id"])
			superseded = await conn.execute(
				"""
				UPDATE message_edit SET reverted_at = NOW()
				WHERE message_id = $1 AND id < $2
					AND review_required AND approved_at IS NULL AND reverted_at IS NULL
				""",
				message_id,
				edit["id"],
			)
		return 1 + affected_rows(superseded)

	async def revert_pending_edits(self, message_id: UUID, actor_id: UUID) -> int | None:
		"""Drop every pending edit; ``None`` when missing or held by another moderator."""
		async with self.transaction() as conn:
			if not await self._clear_edited_by(conn, message_id, actor_id):
				return None
			status = await conn.execute(
				"""
				UPDATE message_edit SET reverted_at = NOW()
				WHERE message_id = $1 AND review_required AND approved_at IS NULL AND reverted_at IS NULL
				""",
				message_id,
			)
		return affected_rows(status)

	async def _clear_edited_by(self, conn: asyncpg.Connection, message_id: UUID, actor_id: UUID) -> bool:
		cleared = await conn.fetchval(
			"""
			UPDATE message SET edited_by = NULL
			WHERE id = $1 AND (held_by IS NULL OR held_by = $2)
			RETURNING id
			""",
			message_id,
			actor_id,
		)
		return cleared is not None

	# --- Partner consent ---------------------------------------------------------

	async def find_partner(self, name: str) -> int | None:
		return await self.fetchval("SELECT id FROM partner_key WHERE partner ILIKE $1", name)

	async def record_partner_consent(self, message_id: UUID, partner_id: int) -> None:
		await self.execute(
			"""
			INSERT INTO partner_message (message_id, partner_id)
			VALUES ($1, $2)
			ON CONFLICT (message_id, partner_id) DO NOTHING
			""",
			message_id,
			partner_id,
		)

	# --- Promises ------------------------------------------------------------------

	async def promise(self, message_id: UUID, owner_id: UUID, promised_to: UUID) -> bool:
		"""Upsert a promise; return True when a chat notice was posted."""
		async with self.transaction() as conn:
			await conn.execute(
				"""
				INSERT INTO message_promise (message_id, user_id)
				VALUES ($1, $2)
				ON CONFLICT (message_id, user_id) DO UPDATE SET promised_at = NOW()
				""",
				message_id,
				promised_to,
			)
			if promised_to == owner_id:
				return False
			return await self._post_item_notice(conn, owner_id, promised_to, message_id, models.CHAT_MSG_PROMISED)

	async def renege(self, message_id: UUID, owner_id: UUID, promised_to: UUID) -> bool:
		async with self.transaction() as conn:
			if promised_to != owner_id:
				await conn.execute(
					"INSERT INTO message_renege (message_id, user_id) VALUES ($1, $2)",
					message_id,
					promised_to,
				)
			await conn.execute(
				"DELETE FROM message_promise WHERE message_id = $1 AND user_id = $2",
				message_id,
				promised_to,
			)
			if promised_to == owner_id:
				return False
			return await self._post_item_notice(conn, owner_id, promised_to, message_id, models.CHAT_MSG_RENEGED)

	async def _post_item_notice(
		self,
		conn: asyncpg.Connection,
		from_user: UUID,
		to_user: UUID,
		message_id: UUID,
		message_type: str,
	) -> bool:
		# Only into an existing conversation between the two users.
		chat_id = await conn.fetchval(
			"""
			SELECT id FROM chat_room
			WHERE room_type = $3 AND ((user1 = $1 AND user2 = $2) OR (user1 = $2 AND user2 = $1))
			LIMIT 1
			""",
			from_user,
			to_user,
			models.CHAT_USER2USER,
		)
		if chat_id is None:
			return False
		await conn.execute(
			"""
			INSERT INTO chat_message (chat_id, user_id, message_type, ref_message_id, message)
			VALUES ($1, $2, $3, $4, '')
			""",
			chat_id,
			from_user,
			message_type,
			message_id,
		)
		await conn.execute(
			"UPDATE chat_room SET latest_message_at = NOW(), msg_valid = msg_valid + 1 WHERE id = $1",
			chat_id,
		)
		return True

	# --- Outcomes --------------------------------------------------------------------

	async def set_intended_outcome(self, message_id: UUID, outcome: str) -> None:
		await self.execute(
			"""
			INSERT INTO message_outcome_intended (message_id, outcome)
			VALUES ($1, $2)
			ON CONFLICT (message_id) DO UPDATE SET outcome = EXCLUDED.outcome, created_at = NOW()
			""",
			message_id,
			outcome,
		)

	async def record_outcome(
		self,
		message_id: UUID,
		*,
		outcome: str,
		happiness: Optional[str],
		comments: Optional[str],
	) -> models.MessageOutcome:
		"""Store the final outcome; an existing non-expired one is a Conflict."""
		try:
			async with self.transaction() as conn:
				existing = await conn.fetchval(
					"SELECT outcome FROM message_outcome WHERE message_id = $1 FOR UPDATE",
					message_id,
				)
				if existing is not None and existing != models.OUTCOME_EXPIRED:
					raise ConflictError("outcome_already_recorded")
				await conn.execute("DELETE FROM message_outcome_intended WHERE message_id = $1", message_id)
				await conn.execute("DELETE FROM message_outcome WHERE message_id = $1", message_id)
				record = await conn.fetchrow(
					"""
					INSERT INTO message_outcome (message_id, outcome, happiness, comments)
					VALUES ($1, $2, $3, $4)
					RETURNING *
					""",
					message_id,
					outcome,
					happiness,
					comments,
				)
		except asyncpg.UniqueViolationError as exc:  # type: ignore[attr-defined]
			# A concurrent first outcome won the insert.
			raise ConflictError("outcome_already_recorded") from exc
		return models.MessageOutcome.model_validate(dict(record))

	# --- Availability --------------------------------------------------------------

	async def set_claim(self, message_id: UUID, user_id: Optional[UUID], count: int) -> int:
		"""Create or replace ``user_id``'s claim and return the new availability."""
		async with self.transaction() as conn:
			await conn.execute("SELECT 1 FROM message WHERE id = $1 FOR UPDATE", message_id)
			updated = await conn.fetchval(
				"""
				UPDATE message_by SET count = $3, created_at = NOW()
				WHERE message_id = $1 AND user_id IS NOT DISTINCT FROM $2
				RETURNING id
				""",
				message_id,
				user_id,
				count,
			)
			if updated is None:
				await conn.execute(
					"INSERT INTO message_by (message_id, user_id, count) VALUES ($1, $2, $3)",
					message_id,
					user_id,
					count,
				)
			return await self._recompute_availability(conn, message_id)

	async def remove_claim(self, message_id: UUID, user_id: Optional[UUID]) -> int:
		async with self.transaction() as conn:
			await conn.execute("SELECT 1 FROM message WHERE id = $1 FOR UPDATE", message_id)
			await conn.execute(
				"DELETE FROM message_by WHERE message_id = $1 AND user_id IS NOT DISTINCT FROM $2",
				message_id,
				user_id,
			)
			return await self._recompute_availability(conn, message_id)

	async def _recompute_availability(self, conn: asyncpg.Connection, message_id: UUID) -> int:
		available = await conn.fetchval(
			"""
			UPDATE message SET available_now = GREATEST(0, LEAST(
				available_initially,
				available_initially - COALESCE((SELECT SUM(count) FROM message_by WHERE message_id = $1), 0)
			))
			WHERE id = $1
			RETURNING available_now
			""",
			message_id,
		)
		return int(available)

	# --- Views -----------------------------------------------------------------------

	async def record_view(self, message_id: UUID, user_id: UUID, *, dedup_minutes: int) -> bool:
		"""Count a view unless the same user viewed within ``dedup_minutes``."""
		counted = await self.fetchval(
			"""
			INSERT INTO message_view (message_id, user_id)
			VALUES ($1, $2)
			ON CONFLICT (message_id, user_id) DO UPDATE
				SET view_count = message_view.view_count + 1, viewed_at = NOW()
				WHERE message_view.viewed_at < NOW() - make_interval(mins => $3)
			RETURNING 1
			""",
			message_id,
			user_id,
			dedup_minutes,
		)
		return counted is not None
