"""Admin guard for key-management routes.

The admin presents ``x-admin-token``; it is checked with bcrypt against
``security.admin_token_hash`` from config. Only the hash is ever stored.

Generate a hash with::

    python -c "import bcrypt; print(bcrypt.hashpw(b'<token>', bcrypt.gensalt(rounds=12)).decode())"

No hash configured → every admin request is rejected (fail closed).
"""

from __future__ import annotations

from typing import Optional

import bcrypt
from fastapi import HTTPException, Request

from newsportal.constants import ADMIN_TOKEN_HEADER
from newsportal.utils.logger import get_logger

logger = get_logger(__name__)

ADMIN_REQUIRED_MESSAGE = "Admin authentication required"


def verify_admin_token(token: Optional[str], token_hash: Optional[str]) -> bool:
    """bcrypt comparison; False on any malformed input."""
    if not token or not token_hash:
        return False
    try:
        return bcrypt.checkpw(token.encode(), token_hash.encode())
    except ValueError as exc:
        logger.error("Configured admin_token_hash is not a bcrypt hash", error=str(exc))
        return False


async def require_admin(request: Request) -> None:
    """FastAPI dependency: reject the request unless it carries the admin token.

    Raises:
        HTTPException(401): Missing/incorrect token, or no hash configured.
    """
    token_hash = request.app.state.config.security.admin_token_hash
    token = request.headers.get(ADMIN_TOKEN_HEADER)

    if not verify_admin_token(token, token_hash):
        logger.warning(
            "Admin authentication failed",
            path=str(request.url.path),
            method=request.method,
            configured=token_hash is not None,
        )
        raise HTTPException(status_code=401, detail=ADMIN_REQUIRED_MESSAGE)
