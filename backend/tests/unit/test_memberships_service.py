from __future__ import annotations

from uuid import UUID, uuid4

import pytest

from freeshare.moderation.domain import models
from freeshare.moderation.domain import tasks as task_types
from freeshare.moderation.domain.exceptions import HeldByOtherError, NotAuthorizedError, NotFoundError, ValidationError
from freeshare.moderation.domain.memberships_service import MembershipsService
from freeshare.moderation.infra.membership_repo import MembershipKey


@pytest.fixture()
def service(membership_repo, resolver, task_queue):
	return MembershipsService(repository=membership_repo, resolver=resolver, tasks=task_queue)


def _body(key: MembershipKey, action: str, **extra) -> dict:
	return {"userid": str(key.user_id), "groupid": str(key.group_id), "action": action, **extra}


@pytest.mark.asyncio
async def test_scenario_member_forbidden_moderator_approves(
	service, membership_repo, task_queue, roles, group_id, moderator, make_user
):
	applicant = membership_repo.add_member(uuid4(), group_id)
	member = make_user()
	roles.grant(UUID(member.id), group_id, models.GROUP_ROLE_MEMBER)

	with pytest.raises(NotAuthorizedError):
		await service.dispatch(member, _body(applicant, "Approve"))
	assert membership_repo.items[applicant]["state"] == models.PENDING

	result = await service.dispatch(moderator, _body(applicant, "Approve"))

	assert result.changed is True
	assert membership_repo.items[applicant]["state"] == models.APPROVED
	assert membership_repo.items[applicant]["held_by"] is None
	assert len(task_queue.tasks) == 1
	task_type, payload = task_queue.tasks[0]
	assert task_type == task_types.TASK_EMAIL_MEMBERSHIP_APPROVED
	assert payload["userid"] == applicant.user_id
	assert membership_repo.accepted_invites == [applicant.user_id]


@pytest.mark.asyncio
async def test_review_hold_on_approved_member(service, membership_repo, group_id, moderator, other_moderator):
	key = membership_repo.add_member(uuid4(), group_id, state=models.APPROVED)

	held = await service.dispatch(moderator, _body(key, "ReviewHold"))
	assert held.heldby == UUID(moderator.id)

	with pytest.raises(HeldByOtherError):
		await service.dispatch(other_moderator, _body(key, "Delete Approved Member"))

	await service.dispatch(moderator, _body(key, "ReviewRelease"))
	assert membership_repo.items[key]["held_by"] is None


@pytest.mark.asyncio
async def test_reject_removes_row_and_second_reject_not_found(service, membership_repo, task_queue, group_id, moderator):
	key = membership_repo.add_member(uuid4(), group_id)

	await service.dispatch(moderator, _body(key, "Reject", stdmsgid=3))
	assert key not in membership_repo.items
	assert task_queue.tasks[0][0] == task_types.TASK_EMAIL_MEMBERSHIP_REJECTED
	assert task_queue.tasks[0][1]["stdmsgid"] == 3

	with pytest.raises(NotFoundError):
		await service.dispatch(moderator, _body(key, "Reject"))


@pytest.mark.asyncio
async def test_ban_member_then_unban(service, membership_repo, group_id, moderator):
	key = membership_repo.add_member(uuid4(), group_id, state=models.APPROVED)

	banned = await service.dispatch(moderator, _body(key, "Ban"))
	assert banned.changed is True
	assert membership_repo.items[key]["state"] == models.BANNED

	again = await service.dispatch(moderator, _body(key, "Ban"))
	assert again.changed is False

	unbanned = await service.dispatch(moderator, _body(key, "Unban"))
	assert unbanned.changed is True
	assert key not in membership_repo.items

	noop = await service.dispatch(moderator, _body(key, "Unban"))
	assert noop.changed is False


@pytest.mark.asyncio
async def test_ban_non_member_leaves_marker(service, membership_repo, group_id, moderator):
	user_id = uuid4()
	membership_repo.users.add(user_id)
	key = MembershipKey(user_id, group_id)

	result = await service.dispatch(moderator, _body(key, "Ban"))

	assert result.changed is True
	assert membership_repo.items[key]["state"] == models.BANNED


@pytest.mark.asyncio
async def test_ban_unknown_user_not_found(service, group_id, moderator):
	with pytest.raises(NotFoundError) as exc:
		await service.dispatch(moderator, _body(MembershipKey(uuid4(), group_id), "Ban"))
	assert exc.value.detail == "user_not_found"


@pytest.mark.asyncio
async def test_happiness_reviewed(service, membership_repo, group_id, moderator):
	key = membership_repo.add_member(uuid4(), group_id, state=models.APPROVED)
	membership_repo.outcomes[11] = False
	membership_repo.outcome_groups[11] = group_id

	with pytest.raises(ValidationError):
		await service.dispatch(moderator, _body(key, "HappinessReviewed"))
	with pytest.raises(NotFoundError):
		await service.dispatch(moderator, _body(key, "HappinessReviewed", happiness=12))

	await service.dispatch(moderator, _body(key, "HappinessReviewed", happiness=11))
	assert membership_repo.outcomes[11] is True


@pytest.mark.asyncio
async def test_admin_needs_no_membership(service, membership_repo, admin):
	key = membership_repo.add_member(uuid4(), uuid4())
	result = await service.dispatch(admin, _body(key, "Approve"))
	assert result.changed is True


@pytest.mark.asyncio
async def test_authorization_checked_before_lookup(service, make_user):
	with pytest.raises(NotAuthorizedError):
		await service.dispatch(make_user(), _body(MembershipKey(uuid4(), uuid4()), "Approve"))


@pytest.mark.asyncio
async def test_list_members_rejects_unknown_collection(service, group_id, moderator):
	with pytest.raises(ValidationError) as exc:
		await service.list_members(moderator, group_id, collection="spam")
	assert exc.value.detail == "invalid_collection"


@pytest.mark.asyncio
async def test_happiness_reviewed_only_within_the_outcomes_group(service, membership_repo, group_id, moderator):
	key = membership_repo.add_member(uuid4(), group_id, state=models.APPROVED)
	membership_repo.outcomes[21] = False
	membership_repo.outcome_groups[21] = uuid4()

	with pytest.raises(NotFoundError):
		await service.dispatch(moderator, _body(key, "HappinessReviewed", happiness=21))
	assert membership_repo.outcomes[21] is False
