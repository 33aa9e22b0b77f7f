import logging
import aiosqlite
import os

logger = logging.getLogger("bonnenmonster.db")
DB_PATH = os.environ.get("DB_PATH", "/data/bonnenmonster.db")

async def get_db() -> aiosqlite.Connection:
    """Dependency: yields an open DB connection."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        yield db

async def init_db():
    """Create all tables if they don't exist."""
    db_dir = os.path.dirname(DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    async with aiosqlite.connect(DB_PATH) as db:
        await db.executescript(SCHEMA)
        await db.commit()
    logger.info("Initialized at %s", DB_PATH)


SCHEMA = """
-- User settings (Baserow credentials, analyzer key, …) as JSON values.
-- Only settings live here: receipts themselves are stored in Baserow and
-- in-progress scans are never persisted.
CREATE TABLE IF NOT EXISTS settings (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,           -- JSON
    updated_at  TEXT DEFAULT (datetime('now'))
);
"""
