"""Database migration utilities."""

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tidewatch.database import get_engine
from tidewatch.logging_config import get_logger

logger = get_logger(__name__)


def get_alembic_config() -> Config:
    """Build the Alembic configuration from alembic.ini at the project root."""
    app_root = Path(__file__).parent.parent.parent
    alembic_ini = app_root / "alembic.ini"

    if not alembic_ini.exists():
        raise FileNotFoundError(f"alembic.ini not found at {alembic_ini}")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(app_root / "migrations"))

    return config


def run_migrations() -> None:
    """Run all pending database migrations synchronously.

    Run as ``python -m tidewatch.core.migrations`` before uvicorn starts;
    Alembic drives its own event loop, so never call this from async code.
    """
    logger.info("Running database migrations")

    try:
        command.upgrade(get_alembic_config(), "head")
    except Exception:
        logger.exception("Database migration failed")
        raise

    logger.info("Database migrations completed")


async def check_migrations_current() -> bool:
    """Return True if the database is at the latest migration."""
    head = get_head_revision()
    try:
        async with get_engine().connect() as conn:
            result = await conn.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1")
            )
            row = result.fetchone()
    except SQLAlchemyError:
        return False

    return row is not None and row[0] == head


def get_head_revision() -> str | None:
    """Get the head revision of the migration scripts."""
    try:
        script = ScriptDirectory.from_config(get_alembic_config())
    except FileNotFoundError:
        return None
    return script.get_current_head()


if __name__ == "__main__":
    run_migrations()
