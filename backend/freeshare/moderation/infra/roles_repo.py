"""Role lookups backing ``RoleResolver``."""

from __future__ import annotations

from typing import Iterable
from uuid import UUID

from freeshare.infra.postgres import get_pool
from freeshare.moderation.domain import models


class PostgresRolesRepository:
	"""Reads system and group roles; never writes."""

	async def get_system_role(self, user_id: UUID) -> str | None:
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await conn.fetchval(
				"SELECT system_role FROM users WHERE id = $1 AND deleted_at IS NULL",
				user_id,
			)

	async def get_group_roles(self, user_id: UUID, group_ids: Iterable[UUID] | None = None) -> dict[UUID, str]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			if group_ids is None:
				rows = await conn.fetch(
					"""
					SELECT group_id, role FROM membership
					WHERE user_id = $1 AND collection = $2
					""",
					user_id,
					models.APPROVED,
				)
			else:
				rows = await conn.fetch(
					"""
					SELECT group_id, role FROM membership
					WHERE user_id = $1 AND collection = $2 AND group_id = ANY($3::uuid[])
					""",
					user_id,
					models.APPROVED,
					list(group_ids),
				)
		return {row["group_id"]: row["role"] for row in rows}
