"""User token housekeeping."""

from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.logging_config import get_logger
from opsguard.models.user_token import UserToken

logger = get_logger(__name__)

# Used tokens are kept this long for auditing
USED_TOKEN_RETENTION = timedelta(days=1)


async def cleanup_user_tokens(db: AsyncSession) -> int:
    """Delete expired tokens and tokens used more than a day ago.

    Returns:
        Number of tokens deleted.
    """
    now = datetime.now(UTC)
    result = await db.execute(
        delete(UserToken).where(
            or_(
                UserToken.expires_at < now,
                and_(
                    UserToken.used_at.is_not(None),
                    UserToken.used_at < now - USED_TOKEN_RETENTION,
                ),
            )
        )
    )
    await db.commit()

    deleted = result.rowcount or 0
    if deleted:
        logger.info("Cleaned up user tokens", deleted=deleted)
    return deleted
