"""
Stream Checkpoints Table Migration

Creates the stream_checkpoints table used by DatabaseCheckpointStore.
One row per stream; the row is only ever changed by a conditional UPDATE
on the previous position (compare-and-swap).

Idempotent - safe to run on every startup. The SQL is kept to the subset
PostgreSQL and SQLite share.
"""
import logging

from sqlalchemy import text

logger = logging.getLogger(__name__)


async def migrate_stream_checkpoints(engine):
    """Create the stream_checkpoints table if it does not exist."""
    logger.info("Starting stream_checkpoints migration...")

    async with engine.begin() as conn:
        await conn.execute(text("""
            CREATE TABLE IF NOT EXISTS stream_checkpoints (
                stream_id VARCHAR(200) PRIMARY KEY,
                position TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                updated_at VARCHAR(40) NOT NULL
            )
        """))
        logger.info("Created/verified stream_checkpoints table")

    logger.info("stream_checkpoints migration complete!")


async def rollback_stream_checkpoints(engine):
    """Drop the stream_checkpoints table."""
    logger.info("Rolling back stream_checkpoints migration...")

    async with engine.begin() as conn:
        await conn.execute(text("DROP TABLE IF EXISTS stream_checkpoints"))
        logger.info("Dropped stream_checkpoints table")

    logger.info("stream_checkpoints rollback complete!")
