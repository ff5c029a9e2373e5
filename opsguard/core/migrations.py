"""Database migration utilities."""

import logging
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import text

from opsguard.database import get_engine

logger = logging.getLogger(__name__)

# Repository root: alembic.ini and migrations/ live here
APP_ROOT = Path(__file__).resolve().parent.parent.parent


def get_alembic_config() -> Config:
    """Get Alembic configuration."""
    alembic_ini = APP_ROOT / "alembic.ini"

    if not alembic_ini.exists():
        raise FileNotFoundError(f"alembic.ini not found at {alembic_ini}")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(APP_ROOT / "migrations"))

    return config


def run_migrations(revision: str = "head") -> None:
    """
    Upgrade the database schema synchronously.

    Must not be called from inside a running event loop: the Alembic
    environment drives the async engine with asyncio.run().
    """
    logger.info("Running database migrations to %s", revision)

    try:
        command.upgrade(get_alembic_config(), revision)
        logger.info("Database migrations completed successfully")
    except Exception:
        logger.exception("Database migration failed")
        raise


def get_head_revision() -> str | None:
    """Latest revision known to the migration scripts."""
    script = ScriptDirectory.from_config(get_alembic_config())
    return script.get_current_head()


async def get_database_revision() -> str | None:
    """Revision recorded in the database, or None before the first upgrade."""
    try:
        async with get_engine().connect() as conn:
            result = await conn.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1")
            )
            row = result.fetchone()
            return row[0] if row is not None else None
    except Exception:
        return None


async def check_migrations_current() -> bool:
    """True when the database is at the head revision."""
    current = await get_database_revision()
    return current is not None and current == get_head_revision()


def main() -> None:
    """Console entry point: `opsguard-migrate [revision]`."""
    logging.basicConfig(level=logging.INFO)
    revision = sys.argv[1] if len(sys.argv) > 1 else "head"
    try:
        run_migrations(revision)
    except Exception:
        sys.exit(1)
