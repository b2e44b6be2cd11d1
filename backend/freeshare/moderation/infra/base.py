"""Shared plumbing for moderation repositories."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import asyncpg

from freeshare.infra.postgres import get_pool


class PostgresStore:
	"""Transaction helpers shared by the entity stores."""

	@asynccontextmanager
	async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				yield conn

	@asynccontextmanager
	async def connection(self, conn: Optional[asyncpg.Connection] = None) -> AsyncIterator[asyncpg.Connection]:
		"""Reuse ``conn`` when the caller already holds one."""
		if conn is not None:
			yield conn
			return
		pool = await get_pool()
		async with pool.acquire() as acquired:
			yield acquired

	async def fetchrow(self, query: str, *args: Any, conn: Optional[asyncpg.Connection] = None) -> Optional[asyncpg.Record]:
		async with self.connection(conn) as active:
			return await active.fetchrow(query, *args)

	async def fetch(self, query: str, *args: Any, conn: Optional[asyncpg.Connection] = None) -> list[asyncpg.Record]:
		async with self.connection(conn) as active:
			return await active.fetch(query, *args)

	async def fetchval(self, query: str, *args: Any, conn: Optional[asyncpg.Connection] = None) -> Any:
		async with self.connection(conn) as active:
			return await active.fetchval(query, *args)

	async def execute(self, query: str, *args: Any, conn: Optional[asyncpg.Connection] = None) -> str:
		async with self.connection(conn) as active:
			return await active.execute(query, *args)


def affected_rows(status: str) -> int:
	"""Row count from an asyncpg command tag such as ``UPDATE 3``."""
	try:
		return int(status.rsplit(" ", 1)[-1])
	except (ValueError, IndexError):
		return 0
