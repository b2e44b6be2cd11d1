"""Request ID helper for endpoints.

Relies on the request id middleware storing the id on ``request.state`` and on
the observability middleware binding it into the logging context.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from freeshare.obs import logging as obs_logging

REQUEST_ID_ATTR = "request_id"


def get_request_id(request: Request | None = None, default: str = "unknown") -> str:
    """Return the current request id if bound, else a default."""
    if request is not None:
        rid = getattr(request.state, REQUEST_ID_ATTR, None)
        if rid:
            return str(rid)
    bound: Optional[str] = obs_logging.current_request_id()
    return bound or default
