"""Error taxonomy for moderation actions.

Each error carries a transport-independent ``ret`` code alongside the HTTP
status the API binding maps it to.
"""

from __future__ import annotations

from fastapi import status

RET_SUCCESS = 0
RET_NOT_AUTHENTICATED = 1
RET_NOT_AUTHORIZED = 2
RET_NOT_FOUND = 3
RET_CONFLICT = 4
RET_VALIDATION = 5
RET_INTERNAL = 6


class ModerationError(Exception):
	"""Base class for moderation related errors."""

	ret: int = RET_INTERNAL
	status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
	detail: str = "moderation_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail

	def as_payload(self) -> dict[str, object]:
		return {"ret": self.ret, "status": self.detail}


class NotAuthenticatedError(ModerationError):
	"""No resolvable identity for the caller."""

	ret = RET_NOT_AUTHENTICATED
	status_code = status.HTTP_401_UNAUTHORIZED
	detail = "not_logged_in"


class NotAuthorizedError(ModerationError):
	"""Identity resolved but the role or ownership check failed."""

	ret = RET_NOT_AUTHORIZED
	status_code = status.HTTP_403_FORBIDDEN
	detail = "not_authorized"


class NotFoundError(ModerationError):
	"""Target item, group or user does not exist."""

	ret = RET_NOT_FOUND
	status_code = status.HTTP_404_NOT_FOUND
	detail = "not_found"


class ConflictError(ModerationError):
	"""Raised for conflicting operations (foreign hold, duplicate outcome)."""

	ret = RET_CONFLICT
	status_code = status.HTTP_409_CONFLICT
	detail = "conflict"


class HeldByOtherError(ConflictError):
	"""The item is under review by a different moderator."""

	detail = "held_by_other"

	def __init__(self, held_by: object | None = None) -> None:
		super().__init__()
		self.held_by = held_by

	def as_payload(self) -> dict[str, object]:
		payload = super().as_payload()
		if self.held_by is not None:
			payload["heldby"] = str(self.held_by)
		return payload


class ValidationError(ModerationError):
	"""Missing field, unknown action or malformed payload."""

	ret = RET_VALIDATION
	status_code = status.HTTP_400_BAD_REQUEST
	detail = "validation_error"


class InternalError(ModerationError):
	"""Storage failure."""

	ret = RET_INTERNAL
	status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
	detail = "internal_error"


class TaskQueueError(Exception):
	"""Background task insert failed. Never surfaced to API callers."""
