"""
Database Connection Manager
===========================

Handles the async connection to the project-specific SQLite database.

The database runs in WAL mode with a busy timeout so that scheduled jobs and
manual admin actions can write concurrently. Every write transaction should
start with its write statement; reads done beforehand happen outside the
transaction.
"""

from pathlib import Path
from typing import Optional, Union

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine

from ruleforge.config import DEFAULT_DB_DIRNAME
from ruleforge.db.models import Base

DB_FILENAME = "ruleforge.db"
BUSY_TIMEOUT_SECONDS = 30

# Global session maker
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
_engine: Optional[AsyncEngine] = None


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_SECONDS * 1000}")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


async def init_db(project_path: Union[str, Path]) -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and create tables if they don't exist.

    ``project_path`` is either a project directory (the database file is then
    stored in .ruleforge/ruleforge.db) or an explicit ``*.db`` file path.
    """
    global _async_session_maker, _engine

    path = Path(project_path)
    if path.suffix == ".db":
        db_path = path
    else:
        db_path = path / DEFAULT_DB_DIRNAME / DB_FILENAME
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if _engine is not None:
        await _engine.dispose()

    db_url = f"sqlite+aiosqlite:///{db_path}"
    _engine = create_async_engine(db_url, echo=False, connect_args={"timeout": BUSY_TIMEOUT_SECONDS})
    event.listen(_engine.sync_engine, "connect", _configure_sqlite)

    # Create tables
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _async_session_maker = async_sessionmaker(_engine, expire_on_commit=False)

    return _async_session_maker


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the configured session maker."""
    if _async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_maker


async def dispose_db() -> None:
    """Close all pooled connections and forget the session maker."""
    global _async_session_maker, _engine
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_maker = None
