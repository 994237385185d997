"""Request-state helpers shared by the route modules."""

import logging
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


def current_subject(request: Request) -> Optional[str]:
    return getattr(request.state, "user_sub", None)


def require_user(request: Request) -> str:
    """Return the authenticated subject or fail with 401."""
    subject = current_subject(request)
    if not subject:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return subject


def require_admin(request: Request) -> str:
    """Ensure the caller carries the admin role claim."""
    subject = require_user(request)
    if not getattr(request.state, "is_admin", False):
        logger.info(
            "Admin access denied",
            extra={"event": "forbidden_admin_access", "user_id": subject},
        )
        raise HTTPException(status_code=403, detail="Forbidden")
    return subject


def request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)
