"""
Schema bootstrap for Identity Reconciliation API
Creates the contacts table (and its indexes and constraints) on the configured
database, then checks the table can be queried.

    python create_tables.py
"""

import asyncio
import logging
import sys

from sqlalchemy import func, select

from database import DatabaseManager
from models import Contact

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def create_tables(db_manager: DatabaseManager) -> bool:
    """Create missing tables; True when the contacts table answers afterwards"""
    if not await db_manager.test_connection():
        logger.error("Cannot reach the database, schema left untouched")
        return False

    try:
        await db_manager.create_tables()
        async with db_manager.get_session() as session:
            count = await session.scalar(select(func.count()).select_from(Contact))
    except Exception as e:
        logger.error(f"Schema bootstrap failed: {e}")
        return False

    logger.info(f"Contacts table ready with {count} rows")
    return True


async def main(database_url=None) -> bool:
    db_manager = DatabaseManager(database_url)
    try:
        ready = await create_tables(db_manager)
    finally:
        await db_manager.dispose()

    if ready:
        logger.info("Schema is in place, start the API with: python main.py")
    else:
        logger.error("Schema bootstrap did not complete, check DATABASE_URL")
    return ready


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(main()) else 1)
