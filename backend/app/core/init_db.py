"""
Database initialization script.

Creates the action ledger, idempotency, usage and token tables directly from
the ORM metadata. Production databases are migrated with Alembic instead
(``backend/alembic/versions``); this is for local SQLite and fresh dev setups.
"""

import asyncio

from backend.app.core.config import get_settings
from backend.app.core.database import Base, engine
from backend.app.core.logging import get_logger, setup_logging
import backend.app.models  # noqa: F401  (registers tables on Base.metadata)

settings = get_settings()
logger = get_logger(__name__)


async def init_database():
    logger.info(f"Initializing database at {settings.database_url}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    logger.info("All tables created")


async def drop_all_tables():
    """Drop all tables (use with caution!)."""
    async with engine.begin() as conn:
        logger.warning("Dropping all tables")
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    logger.info("All tables dropped")


if __name__ == "__main__":
    import sys

    setup_logging(level=settings.log_level)
    if len(sys.argv) > 1 and sys.argv[1] == "--drop":
        print("WARNING: This will drop all tables!")
        confirm = input("Type 'yes' to confirm: ")
        if confirm == "yes":
            asyncio.run(drop_all_tables())
        else:
            print("Aborted.")
    else:
        asyncio.run(init_database())
