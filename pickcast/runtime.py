"""
Process wiring for PickCast.

    async with lifespan() as store:
        pipeline = PickPipeline(store, ...)
        ...

Startup configures structured logging, initializes the database and hands
out a SQL-backed record store; shutdown disposes of the engine.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog

from pickcast.config import settings
from pickcast.db.engine import close_db, get_session_factory, init_db
from pickcast.logging_config import configure_logging
from pickcast.store.sql import SqlRecordStore

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan() -> AsyncIterator[SqlRecordStore]:
    """Startup and shutdown around one SQL record store."""
    configure_logging()
    logger.info("pickcast_starting", version=settings.app_version, environment=settings.environment)
    await init_db()
    try:
        yield SqlRecordStore(get_session_factory())
    finally:
        await close_db()
        logger.info("pickcast_shutdown")
