"""asyncpg storage for group memberships under moderation."""

from __future__ import annotations

from typing import Collection, NamedTuple, Optional
from uuid import UUID

import asyncpg

from freeshare.moderation.domain import models
from freeshare.moderation.domain.holds import HoldSnapshot
from freeshare.moderation.infra.base import PostgresStore


class MembershipKey(NamedTuple):
	user_id: UUID
	group_id: UUID


def _snapshot(record: asyncpg.Record | dict, state: Optional[str] = None) -> HoldSnapshot:
	return HoldSnapshot(
		key=MembershipKey(record["user_id"], record["group_id"]),
		state=state or record["collection"],
		held_by=None if state else record["held_by"],
		group_ids=(record["group_id"],),
		owner_id=record["user_id"],
	)


class MembershipRepository(PostgresStore):
	"""One row per (user, group); banned users keep a marker row."""

	entity = "membership"
	# Approved members can be held for happiness review too.
	holdable_states = frozenset({models.PENDING, models.APPROVED})

	# --- Hold-lock capabilities ----------------------------------------------

	async def current_state(
		self, key: MembershipKey, *, conn: Optional[asyncpg.Connection] = None
	) -> HoldSnapshot | None:
		record = await self.fetchrow(
			"SELECT * FROM membership WHERE user_id = $1 AND group_id = $2",
			key.user_id,
			key.group_id,
			conn=conn,
		)
		return _snapshot(record) if record else None

	async def claim(self, key: MembershipKey, actor_id: UUID) -> HoldSnapshot | None:
		record = await self.fetchrow(
			"""
			UPDATE membership SET held_by = $3
			WHERE user_id = $1 AND group_id = $2
				AND collection = ANY($4::text[])
				AND (held_by IS NULL OR held_by = $3)
			RETURNING *
			""",
			key.user_id,
			key.group_id,
			actor_id,
			list(self.holdable_states),
		)
		return _snapshot(record) if record else None

	async def unclaim(self, key: MembershipKey, actor_id: UUID) -> HoldSnapshot | None:
		record = await self.fetchrow(
			"""
			UPDATE membership SET held_by = NULL
			WHERE user_id = $1 AND group_id = $2 AND (held_by IS NULL OR held_by = $3)
			RETURNING *
			""",
			key.user_id,
			key.group_id,
			actor_id,
		)
		return _snapshot(record) if record else None

	async def conditional_transition(
		self,
		conn: asyncpg.Connection,
		key: MembershipKey,
		*,
		actor_id: UUID,
		from_states: Collection[str],
		to_state: str,
	) -> HoldSnapshot | None:
		if to_state == models.APPROVED:
			record = await conn.fetchrow(
				"""
				UPDATE membership SET collection = $3, held_by = NULL
				WHERE user_id = $1 AND group_id = $2
					AND collection = ANY($4::text[])
					AND (held_by IS NULL OR held_by = $5)
				RETURNING *
				""",
				key.user_id,
				key.group_id,
				to_state,
				list(from_states),
				actor_id,
			)
			return _snapshot(record) if record else None

		# Every other transition removes the row.
		record = await conn.fetchrow(
			"""
			DELETE FROM membership
			WHERE user_id = $1 AND group_id = $2
				AND collection = ANY($3::text[])
				AND (held_by IS NULL OR held_by = $4)
			RETURNING *
			""",
			key.user_id,
			key.group_id,
			list(from_states),
			actor_id,
		)
		if record is None:
			return None
		if to_state == models.BANNED:
			await self.insert_ban(conn, key)
		return _snapshot(record, state=to_state)

	# --- Bans ------------------------------------------------------------------

	async def insert_ban(self, conn: asyncpg.Connection, key: MembershipKey) -> bool:
		created = await conn.fetchval(
			"""
			INSERT INTO membership (user_id, group_id, role, collection)
			VALUES ($1, $2, $3, $4)
			ON CONFLICT (user_id, group_id) DO NOTHING
			RETURNING id
			""",
			key.user_id,
			key.group_id,
			models.GROUP_ROLE_MEMBER,
			models.BANNED,
		)
		return created is not None

	async def user_exists(self, user_id: UUID) -> bool:
		found = await self.fetchval("SELECT 1 FROM users WHERE id = $1 AND deleted_at IS NULL", user_id)
		return found is not None

	# --- Side effects ------------------------------------------------------------

	async def accept_invitations(self, conn: asyncpg.Connection, user_id: UUID, *, bonus: int) -> list[UUID]:
		"""Mark pending invitations to the user's address accepted and reward each inviter."""
		rows = await conn.fetch(
			"""
			UPDATE user_invitation ui SET outcome = 'Accepted', outcome_at = NOW()
			FROM users u
			WHERE u.id = $1 AND u.email IS NOT NULL
				AND lower(ui.email) = lower(u.email)
				AND ui.outcome = 'Pending'
			RETURNING ui.user_id
			""",
			user_id,
		)
		inviters = [row["user_id"] for row in rows]
		if inviters and bonus:
			await conn.execute(
				"UPDATE users SET invites_left = invites_left + $2 WHERE id = ANY($1::uuid[])",
				inviters,
				bonus,
			)
		return inviters

	async def mark_outcome_reviewed(self, outcome_id: int, group_id: UUID) -> bool:
		"""Flag an outcome reviewed when its message is placed in ``group_id``."""
		updated = await self.fetchval(
			"""
			UPDATE message_outcome mo SET reviewed = TRUE
			WHERE mo.id = $1
				AND EXISTS (
					SELECT 1 FROM message_group mg WHERE mg.message_id = mo.message_id AND mg.group_id = $2
				)
			RETURNING mo.id
			""",
			outcome_id,
			group_id,
		)
		return updated is not None

	# --- Listing -------------------------------------------------------------------

	async def list_members(
		self,
		group_id: UUID,
		*,
		collection: str,
		limit: int,
		search: Optional[str] = None,
	) -> list[dict]:
		if search:
			pattern = f"%{search}%"
			rows = await self.fetch(
				"""
				SELECT m.*, u.display_name FROM membership m
				JOIN users u ON u.id = m.user_id
				WHERE m.group_id = $1 AND m.collection = $2
					AND (u.display_name ILIKE $3 OR u.email ILIKE $3)
				ORDER BY m.added_at DESC
				LIMIT $4
				""",
				group_id,
				collection,
				pattern,
				limit,
			)
		else:
			rows = await self.fetch(
				"""
				SELECT m.*, u.display_name FROM membership m
				JOIN users u ON u.id = m.user_id
				WHERE m.group_id = $1 AND m.collection = $2
				ORDER BY m.added_at DESC
				LIMIT $3
				""",
				group_id,
				collection,
				limit,
			)
		return [dict(row) for row in rows]
