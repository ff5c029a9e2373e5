"""Shared-secret authentication for operational endpoints.

The /api/cron routes are called by operators and external cron runners,
not end users, so they are protected by a single bearer secret
(CRON_SECRET) rather than user credentials.
"""

import secrets

from fastapi import HTTPException, Request, status

from opsguard.config import settings
from opsguard.logging_config import get_logger

logger = get_logger(__name__)


async def require_cron_secret(request: Request) -> None:
    """FastAPI dependency that checks `Authorization: Bearer <CRON_SECRET>`.

    Raises:
        HTTPException 500: If CRON_SECRET is not configured
        HTTPException 401: If the header is missing or does not match
    """
    if not settings.cron_secret:
        logger.error("CRON_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Cron secret not configured",
        )

    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else ""

    if not token or not secrets.compare_digest(
        token.encode(), settings.cron_secret.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
