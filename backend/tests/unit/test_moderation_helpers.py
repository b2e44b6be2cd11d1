from __future__ import annotations

from uuid import uuid4

import asyncpg
import pytest

from freeshare.api.middleware_request_id import resolve_request_id
from freeshare.moderation.api._errors import to_http_error
from freeshare.moderation.domain import models, policies
from freeshare.moderation.domain.exceptions import HeldByOtherError, NotAuthorizedError, ValidationError
from freeshare.moderation.domain.policies import ActorContext
from freeshare.moderation.domain.tasks import PendingTask, _jsonable, enqueue_best_effort
from freeshare.moderation.infra.chat_repo import review_state
from freeshare.moderation.infra.message_repo import derive_state
from freeshare.moderation.schemas import dto


def test_derive_state_prefers_actionable_placements():
	assert derive_state([models.APPROVED, models.PENDING], False) == models.PENDING
	assert derive_state([models.REJECTED, models.APPROVED], False) == models.APPROVED
	assert derive_state([], False) == models.DELETED
	assert derive_state([models.APPROVED], True) == models.DELETED
	assert derive_state([models.SPAM], True) == models.SPAM


def test_review_state():
	assert review_state(True, False) == models.PENDING
	assert review_state(False, True) == models.REJECTED
	assert review_state(False, False) == models.APPROVED


def test_parse_payload_statuses():
	with pytest.raises(ValidationError) as missing:
		dto.parse_payload(dto.ChatModerationRequest, {"action": "Approve"})
	assert missing.value.detail == "missing_id"

	with pytest.raises(ValidationError) as bad:
		dto.parse_payload(dto.ChatModerationRequest, {"id": "nope", "action": "Approve"})
	assert bad.value.detail == "invalid_id"

	with pytest.raises(ValidationError) as body:
		dto.parse_payload(dto.ChatModerationRequest, None)
	assert body.value.detail == "invalid_body"

	parsed = dto.parse_payload(dto.MembershipActionRequest, {
		"userid": str(uuid4()),
		"groupid": str(uuid4()),
		"action": "Leave Approved Member",
		"unexpected": True,
	})
	assert parsed.action == "Leave Approved Member"


def test_policies_role_hierarchy():
	group = uuid4()
	owner = ActorContext(user_id=uuid4(), group_roles={group: models.GROUP_ROLE_OWNER})
	member = ActorContext(user_id=uuid4(), group_roles={group: models.GROUP_ROLE_MEMBER})
	support = ActorContext(user_id=uuid4(), system_role=models.SYSTEM_ROLE_SUPPORT)

	assert policies.can_moderate(owner, group)
	assert not policies.can_moderate(member, group)
	assert policies.can_moderate_any(support, [])
	with pytest.raises(NotAuthorizedError):
		policies.assert_owner_or_moderator(member, uuid4(), [group])
	policies.assert_owner_or_moderator(member, member.user_id, [group])


def test_jsonable_stringifies_ids():
	message_id = uuid4()
	assert _jsonable({"msgid": message_id, "groups": (message_id,)}) == {
		"msgid": str(message_id),
		"groups": [str(message_id)],
	}


@pytest.mark.asyncio
async def test_enqueue_best_effort_counts_successes(task_queue):
	inserted = await enqueue_best_effort(task_queue, [PendingTask("a"), PendingTask("b")])
	assert inserted == 2

	task_queue.failing = True
	assert await enqueue_best_effort(task_queue, [PendingTask("c")]) == 0
	assert task_queue.types() == ["a", "b"]


def test_to_http_error_mapping():
	holder = uuid4()
	conflict = to_http_error(HeldByOtherError(holder))
	assert conflict.status_code == 409
	assert conflict.detail == {"ret": 4, "status": "held_by_other", "heldby": str(holder)}

	storage = to_http_error(asyncpg.PostgresError("boom"))
	assert storage.status_code == 500
	assert storage.detail["status"] == "internal_error"


def test_resolve_request_id_only_trusts_token_values():
	assert resolve_request_id("edge-7f3a:01") == "edge-7f3a:01"
	assert len(resolve_request_id(None)) == 32
	assert resolve_request_id("<script>") != "<script>"
	assert len(resolve_request_id("x" * 200)) == 32
