"""Error translation helpers for the moderation API."""

from __future__ import annotations

import asyncpg
from fastapi import HTTPException

from freeshare.moderation.domain import exceptions
from freeshare.obs import logging as obs_logging

_log = obs_logging.get_logger("freeshare.moderation.api")


def to_http_error(exc: Exception) -> HTTPException:
	"""Translate domain exceptions to FastAPI HTTP errors carrying ``ret``/``status``."""
	if isinstance(exc, exceptions.ModerationError):
		return HTTPException(status_code=exc.status_code, detail=exc.as_payload())
	if isinstance(exc, asyncpg.PostgresError):
		_log.error("moderation_storage_error", extra={"error": type(exc).__name__})
		error = exceptions.InternalError()
		return HTTPException(status_code=error.status_code, detail=error.as_payload())
	_log.error("moderation_unexpected_error", extra={"error": type(exc).__name__})
	error = exceptions.InternalError()
	return HTTPException(status_code=error.status_code, detail=error.as_payload())
