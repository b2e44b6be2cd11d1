"""Authentication helpers for FastAPI endpoints.

The session store is an external collaborator: callers present a bearer JWT
issued elsewhere. In development a plain ``X-User-Id`` header is accepted so
local tools and tests can act as any member.

Moderation endpoints need to tell "not signed in" apart from "not allowed",
so the dependency used there returns ``None`` instead of raising and lets the
domain layer raise ``NotAuthenticatedError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from freeshare.infra import jwt as jwt_helper
from freeshare.obs import logging as obs_logging
from freeshare.settings import settings

_log = obs_logging.get_logger("freeshare.auth")


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	display_name: Optional[str] = None
	session_id: Optional[str] = None


_bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_jwt(token: str) -> AuthenticatedUser | None:
	"""Decode an access JWT; return ``None`` when it does not validate."""
	try:
		payload = jwt_helper.decode_access(token)
	except InvalidTokenError as exc:
		_log.info("access_token_rejected", extra={"reason": type(exc).__name__})
		return None

	sub = str(payload.get("sub") or "").strip()
	if not sub:
		return None
	display_name = payload.get("name") or payload.get("display_name")
	session_id = payload.get("sid")
	return AuthenticatedUser(
		id=sub,
		display_name=str(display_name) if display_name is not None else None,
		session_id=str(session_id).strip() if session_id is not None else None,
	)


async def get_optional_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser | None:
	"""Resolve the caller, or ``None`` for an anonymous request.

	A bearer JWT wins when present. Outside development the ``X-User-Id``
	header is ignored.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)
	if settings.is_dev() and x_user_id:
		return AuthenticatedUser(id=x_user_id.strip())
	return None
