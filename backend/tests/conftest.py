import copy
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Collection, Iterable, Optional
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from freeshare.infra import postgres
from freeshare.infra.auth import AuthenticatedUser
from freeshare.main import app
from freeshare.moderation.domain import models
from freeshare.moderation.domain.exceptions import ConflictError, TaskQueueError
from freeshare.moderation.domain.holds import HoldSnapshot
from freeshare.moderation.domain.roles import RoleResolver
from freeshare.moderation.domain.tasks import TaskQueue
from freeshare.moderation.infra.membership_repo import MembershipKey
from freeshare.settings import settings


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""API tests authenticate via X-User-Id, which is only accepted in dev mode."""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


# --- In-memory collaborators ------------------------------------------------


class MemoryRoles:
	def __init__(self) -> None:
		self.system_roles: dict[UUID, str] = {}
		self.group_roles: dict[UUID, dict[UUID, str]] = {}

	def grant(self, user_id: UUID, group_id: UUID, role: str) -> None:
		self.group_roles.setdefault(user_id, {})[group_id] = role

	async def get_system_role(self, user_id: UUID) -> str | None:
		return self.system_roles.get(user_id)

	async def get_group_roles(self, user_id: UUID, group_ids: Iterable[UUID] | None = None) -> dict[UUID, str]:
		roles = self.group_roles.get(user_id, {})
		if group_ids is None:
			return dict(roles)
		wanted = set(group_ids)
		return {group_id: role for group_id, role in roles.items() if group_id in wanted}


class MemoryTaskQueue(TaskQueue):
	def __init__(self) -> None:
		self.tasks: list[tuple[str, dict[str, Any]]] = []
		self.failing = False

	async def enqueue(self, task_type: str, payload: dict[str, Any], *, conn: Any = None) -> int:
		if self.failing:
			raise TaskQueueError(f"{task_type}: connection refused")
		self.tasks.append((task_type, payload))
		return len(self.tasks)

	def types(self) -> list[str]:
		return [task_type for task_type, _ in self.tasks]


class MemoryStore:
	"""Hold-lock store over plain dicts; ``transaction`` rolls back on error."""

	entity = "item"
	holdable_states: Collection[str] = frozenset({models.PENDING})

	def __init__(self) -> None:
		self.items: dict[Any, dict[str, Any]] = {}

	def add(
		self,
		key: Any,
		*,
		state: str = models.PENDING,
		held_by: UUID | None = None,
		group_ids: tuple[UUID, ...] = (),
		owner_id: UUID | None = None,
		**extra: Any,
	) -> Any:
		self.items[key] = {
			"state": state,
			"held_by": held_by,
			"group_ids": tuple(group_ids),
			"owner_id": owner_id,
			**extra,
		}
		return key

	@asynccontextmanager
	async def transaction(self):
		saved = copy.deepcopy(self.__dict__)
		try:
			yield object()
		except BaseException:
			self.__dict__.update(saved)
			raise

	def _snapshot(self, key: Any) -> HoldSnapshot | None:
		item = self.items.get(key)
		if item is None:
			return None
		return HoldSnapshot(
			key=key,
			state=item["state"],
			held_by=item["held_by"],
			group_ids=item["group_ids"],
			owner_id=item["owner_id"],
		)

	def _free_for(self, item: dict[str, Any], actor_id: UUID) -> bool:
		return item["held_by"] is None or item["held_by"] == actor_id

	async def current_state(self, key: Any, *, conn: Any = None) -> HoldSnapshot | None:
		return self._snapshot(key)

	async def claim(self, key: Any, actor_id: UUID) -> HoldSnapshot | None:
		item = self.items.get(key)
		if item is None or item["state"] not in self.holdable_states or not self._free_for(item, actor_id):
			return None
		item["held_by"] = actor_id
		return self._snapshot(key)

	async def unclaim(self, key: Any, actor_id: UUID) -> HoldSnapshot | None:
		item = self.items.get(key)
		if item is None or not self._free_for(item, actor_id):
			return None
		item["held_by"] = None
		return self._snapshot(key)

	async def conditional_transition(
		self,
		conn: Any,
		key: Any,
		*,
		actor_id: UUID,
		from_states: Collection[str],
		to_state: str,
	) -> HoldSnapshot | None:
		item = self.items.get(key)
		if item is None or item["state"] not in from_states or not self._free_for(item, actor_id):
			return None
		item["state"] = to_state
		item["held_by"] = None
		return self._snapshot(key)


class MemoryMessageRepo(MemoryStore):
	entity = "message"

	def __init__(self) -> None:
		super().__init__()
		self.groups: set[UUID] = set()
		self.members: set[tuple[UUID, UUID]] = set()
		self.tallies: dict[tuple[UUID, str], int] = {}
		self.spam_reports: list[UUID] = []
		self.edits: dict[UUID, list[dict[str, Any]]] = {}
		self.partners: dict[str, int] = {}
		self.partner_consents: list[tuple[UUID, int]] = []
		self.notices: list[tuple[str, UUID, UUID]] = []
		self.intended: dict[UUID, str] = {}
		self.outcomes: dict[UUID, str] = {}
		self.claims: dict[UUID, dict[Optional[UUID], int]] = {}
		self.views: dict[tuple[UUID, UUID], int] = {}

	def add_message(self, group_id: UUID, owner_id: UUID, *, available: int = 1, **kwargs: Any) -> UUID:
		self.groups.add(group_id)
		message_id = uuid4()
		self.add(
			message_id,
			group_ids=(group_id,),
			owner_id=owner_id,
			subject="OFFER: sofa",
			text_body="Collect soon",
			available_initially=available,
			available_now=available,
			**kwargs,
		)
		return message_id

	async def bump_group_tally(self, conn: Any, group_ids: Iterable[UUID], column: str) -> None:
		for group_id in group_ids:
			self.tallies[(group_id, column)] = self.tallies.get((group_id, column), 0) + 1

	async def record_spam(self, conn: Any, message_id: UUID) -> None:
		self.spam_reports.append(message_id)

	async def approve_latest_edit(self, message_id: UUID, actor_id: UUID) -> int | None:
		item = self.items.get(message_id)
		if item is None or not self._free_for(item, actor_id):
			return None
		pending = [edit for edit in self.edits.get(message_id, []) if edit["status"] == "pending"]
		if not pending:
			return 0
		*older, latest = pending
		latest["status"] = "approved"
		for edit in older:
			edit["status"] = "reverted"
		item.update(latest["changes"])
		return len(pending)

	async def revert_pending_edits(self, message_id: UUID, actor_id: UUID) -> int | None:
		item = self.items.get(message_id)
		if item is None or not self._free_for(item, actor_id):
			return None
		reverted = 0
		for edit in self.edits.get(message_id, []):
			if edit["status"] == "pending":
				edit["status"] = "reverted"
				reverted += 1
		return reverted

	async def find_partner(self, name: str) -> int | None:
		return self.partners.get(name)

	async def record_partner_consent(self, message_id: UUID, partner_id: int) -> None:
		self.partner_consents.append((message_id, partner_id))

	async def promise(self, message_id: UUID, owner_id: UUID, promised_to: UUID) -> bool:
		self.notices.append(("Promised", message_id, promised_to))
		return True

	async def renege(self, message_id: UUID, owner_id: UUID, promised_to: UUID) -> bool:
		self.notices.append(("Reneged", message_id, promised_to))
		return True

	async def set_intended_outcome(self, message_id: UUID, outcome: str) -> None:
		self.intended[message_id] = outcome

	async def record_outcome(self, message_id: UUID, *, outcome: str, happiness: Any, comments: str) -> dict[str, Any]:
		existing = self.outcomes.get(message_id)
		if existing is not None and existing != models.OUTCOME_EXPIRED:
			raise ConflictError("outcome_already_recorded")
		self.outcomes[message_id] = outcome
		return {"message_id": message_id, "outcome": outcome}

	def _available(self, message_id: UUID) -> int:
		item = self.items[message_id]
		taken = sum(self.claims.get(message_id, {}).values())
		item["available_now"] = max(0, min(item["available_initially"], item["available_initially"] - taken))
		return item["available_now"]

	async def set_claim(self, message_id: UUID, user_id: Optional[UUID], count: int) -> int:
		self.claims.setdefault(message_id, {})[user_id] = count
		return self._available(message_id)

	async def remove_claim(self, message_id: UUID, user_id: Optional[UUID]) -> int:
		self.claims.get(message_id, {}).pop(user_id, None)
		return self._available(message_id)

	async def record_view(self, message_id: UUID, user_id: UUID, *, dedup_minutes: int) -> bool:
		key = (message_id, user_id)
		if key in self.views:
			return False
		self.views[key] = 1
		return True

	async def update_message(
		self,
		message_id: UUID,
		*,
		subject: Optional[str],
		text_body: Optional[str],
		message_type: Optional[str],
		available_now: Optional[int],
		edit_by: Optional[UUID],
		moderator_id: Optional[UUID] = None,
	) -> models.Message | None:
		item = self.items.get(message_id)
		if item is None:
			return None
		if moderator_id is not None and not self._free_for(item, moderator_id):
			return None
		changes = {
			key: value
			for key, value in (("subject", subject), ("text_body", text_body))
			if value is not None and value != item[key]
		}
		edited_by = None
		if edit_by is not None:
			if changes:
				self.edits.setdefault(message_id, []).append({"status": "pending", "changes": changes})
				edited_by = edit_by
		else:
			item.update(changes)
		if available_now is not None:
			item["available_now"] = available_now
		return _message_model(message_id, item, edited_by=edited_by)

	async def group_exists(self, group_id: UUID) -> bool:
		return group_id in self.groups

	async def is_group_member(self, user_id: UUID, group_id: UUID) -> bool:
		return (user_id, group_id) in self.members

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
		message_id = uuid4()
		self.add(
			message_id,
			state=collection,
			group_ids=(group_id,),
			owner_id=from_user,
			subject=subject,
			text_body=text_body,
			available_initially=available,
			available_now=available,
		)
		return _message_model(message_id, self.items[message_id])


def _message_model(message_id: UUID, item: dict[str, Any], *, edited_by: UUID | None = None) -> models.Message:
	return models.Message(
		id=message_id,
		from_user=item["owner_id"],
		message_type="Offer",
		subject=item["subject"],
		text_body=item["text_body"],
		available_initially=item["available_initially"],
		available_now=item["available_now"],
		held_by=item["held_by"],
		edited_by=edited_by,
		created_at=datetime.now(timezone.utc),
	)


class MemoryChatRepo(MemoryStore):
	entity = "chat_message"

	def __init__(self) -> None:
		super().__init__()
		self.recounted: list[UUID] = []
		self.unmoderated: set[UUID] = set()
		# One shared timestamp, as for rows written in a single transaction.
		self._created_at = datetime.now(timezone.utc) - timedelta(hours=1)
		self._seq = 0

	def add_chat(
		self,
		group_id: UUID,
		sender_id: UUID,
		text: str,
		*,
		chat_id: UUID | None = None,
		message_type: str = models.CHAT_MSG_DEFAULT,
		held_by: UUID | None = None,
	) -> UUID:
		self._seq += 1
		message_id = uuid4()
		self.add(
			message_id,
			held_by=held_by,
			group_ids=(group_id,),
			owner_id=sender_id,
			chat_id=chat_id or uuid4(),
			message=text,
			message_type=message_type,
			seq=self._seq,
			created_at=self._created_at,
		)
		return message_id

	async def get_chat_message(self, message_id: UUID, *, conn: Any = None) -> models.ChatMessage | None:
		item = self.items.get(message_id)
		if item is None:
			return None
		return models.ChatMessage(
			id=message_id,
			chat_id=item["chat_id"],
			seq=item["seq"],
			user_id=item["owner_id"],
			message_type=item["message_type"],
			message=item["message"],
			review_required=item["state"] == models.PENDING,
			review_rejected=item["state"] == models.REJECTED,
			held_by=item["held_by"],
			created_at=item["created_at"],
		)

	async def approve_following_modmail(self, conn: Any, chat_id: UUID, after_seq: int, actor_id: UUID) -> int:
		approved = 0
		for item in self.items.values():
			if (
				item["chat_id"] == chat_id
				and item["seq"] > after_seq
				and self._free_for(item, actor_id)
				and item["state"] == models.PENDING
				and item["message_type"] == models.CHAT_MSG_MODMAIL
			):
				item["state"] = models.APPROVED
				item["held_by"] = None
				approved += 1
		return approved

	async def reject_duplicates(
		self,
		conn: Any,
		*,
		text: str,
		exclude_id: UUID,
		window_hours: int,
		actor_id: UUID,
	) -> list[UUID]:
		touched = []
		for key, item in self.items.items():
			if key == exclude_id or item["state"] != models.PENDING or item["message"] != text:
				continue
			if not self._free_for(item, actor_id):
				continue
			item["state"] = models.REJECTED
			item["held_by"] = None
			touched.append(item["chat_id"])
		return touched

	async def recount_rooms(self, conn: Any, chat_ids: Iterable[UUID]) -> None:
		self.recounted.extend(dict.fromkeys(chat_ids))

	async def mark_user_unmoderated(self, conn: Any, user_id: UUID) -> None:
		self.unmoderated.add(user_id)

	async def replace_text(self, message_id: UUID, actor_id: UUID, *, expected: str, replacement: str) -> bool:
		item = self.items.get(message_id)
		if item is None or item["message"] != expected or not self._free_for(item, actor_id):
			return False
		item["message"] = replacement
		return True

	async def list_review_queue(self, group_ids, *, limit: int) -> list[models.ChatMessage]:
		rows = []
		for key, item in sorted(self.items.items(), key=lambda pair: pair[1]["seq"]):
			if item["state"] != models.PENDING:
				continue
			if group_ids is not None and not set(item["group_ids"]) & set(group_ids):
				continue
			rows.append(await self.get_chat_message(key))
		return rows[:limit]


class MemoryMembershipRepo(MemoryStore):
	entity = "membership"
	holdable_states = frozenset({models.PENDING, models.APPROVED})

	def __init__(self) -> None:
		super().__init__()
		self.users: set[UUID] = set()
		self.accepted_invites: list[UUID] = []
		self.outcomes: dict[int, bool] = {}
		self.outcome_groups: dict[int, UUID] = {}

	def add_member(self, user_id: UUID, group_id: UUID, *, state: str = models.PENDING, **kwargs: Any) -> MembershipKey:
		self.users.add(user_id)
		key = MembershipKey(user_id, group_id)
		self.add(key, state=state, group_ids=(group_id,), owner_id=user_id, **kwargs)
		return key

	async def conditional_transition(self, conn, key, *, actor_id, from_states, to_state):
		after = await super().conditional_transition(
			conn, key, actor_id=actor_id, from_states=from_states, to_state=to_state
		)
		# Only approved rows survive a transition; banned ones become a fresh marker.
		if after is not None and to_state != models.APPROVED:
			del self.items[key]
			if to_state == models.BANNED:
				self.add(key, state=models.BANNED, group_ids=(key.group_id,), owner_id=key.user_id)
		return after

	async def insert_ban(self, conn: Any, key: MembershipKey) -> bool:
		if key in self.items:
			return False
		self.add(key, state=models.BANNED, group_ids=(key.group_id,), owner_id=key.user_id)
		return True

	async def user_exists(self, user_id: UUID) -> bool:
		return user_id in self.users

	async def accept_invitations(self, conn: Any, user_id: UUID, *, bonus: int) -> list[UUID]:
		self.accepted_invites.append(user_id)
		return []

	async def mark_outcome_reviewed(self, outcome_id: int, group_id: UUID) -> bool:
		if outcome_id not in self.outcomes or self.outcome_groups.get(outcome_id) != group_id:
			return False
		self.outcomes[outcome_id] = True
		return True


# --- Fixtures ----------------------------------------------------------------


@pytest.fixture()
def roles() -> MemoryRoles:
	return MemoryRoles()


@pytest.fixture()
def resolver(roles: MemoryRoles) -> RoleResolver:
	return RoleResolver(repository=roles)


@pytest.fixture()
def task_queue() -> MemoryTaskQueue:
	return MemoryTaskQueue()


@pytest.fixture()
def group_id() -> UUID:
	return uuid4()


@pytest.fixture()
def make_user():
	def _make(user_id: UUID | None = None) -> AuthenticatedUser:
		return AuthenticatedUser(id=str(user_id or uuid4()))

	return _make


@pytest.fixture()
def moderator(roles: MemoryRoles, group_id: UUID) -> AuthenticatedUser:
	user_id = uuid4()
	roles.grant(user_id, group_id, models.GROUP_ROLE_MODERATOR)
	return AuthenticatedUser(id=str(user_id))


@pytest.fixture()
def other_moderator(roles: MemoryRoles, group_id: UUID) -> AuthenticatedUser:
	user_id = uuid4()
	roles.grant(user_id, group_id, models.GROUP_ROLE_OWNER)
	return AuthenticatedUser(id=str(user_id))


@pytest.fixture()
def admin(roles: MemoryRoles) -> AuthenticatedUser:
	user_id = uuid4()
	roles.system_roles[user_id] = models.SYSTEM_ROLE_ADMIN
	return AuthenticatedUser(id=str(user_id))


@pytest.fixture()
def message_repo() -> MemoryMessageRepo:
	return MemoryMessageRepo()


@pytest.fixture()
def chat_repo() -> MemoryChatRepo:
	return MemoryChatRepo()


@pytest.fixture()
def membership_repo() -> MemoryMembershipRepo:
	return MemoryMembershipRepo()
