import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy.ext.asyncio import create_async_engine
from core.config import settings
from core.logging import setup_logging
# Importing the package registers every table on Base.metadata
from models import Base
from catalog_sync.state import SyncStateTracker
from core.database import async_session_maker

setup_logging()
logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = create_async_engine(settings.DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created successfully.")

    await engine.dispose()

    async with async_session_maker() as session:
        states = await SyncStateTracker(session).ensure_states()
        logger.info(f"Sync state ready for {len(states)} entity types.")


if __name__ == "__main__":
    asyncio.run(init_database())
