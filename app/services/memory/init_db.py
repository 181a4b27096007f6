"""Database initialization script for chat memory tables."""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from app.services.memory.db import DATABASE_URL, make_engine
from app.services.memory.models import Base

logger = logging.getLogger(__name__)


async def init_database(engine: AsyncEngine | None = None) -> bool:
    """Initialize database tables if they don't exist."""
    owned = engine is None
    engine = engine or make_engine(DATABASE_URL)
    try:
        logger.info(f"Initializing database at {engine.url.render_as_string(hide_password=True)}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")
        return True
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        return False
    finally:
        if owned:
            await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_database())
