"""Database configuration and session management."""

import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from keywarden.config import DATABASE_URL

logger = logging.getLogger(__name__)


def sqlite_path_from_url(url: str) -> Path | None:
    """Return the filesystem path of a SQLite database URL.

    Returns None for in-memory databases and non-SQLite URLs.
    """
    if not url.startswith("sqlite") or ":memory:" in url:
        return None
    path = url.split(":///", 1)[-1] if ":///" in url else url.split("://", 1)[-1]
    return Path(path)


# Ensure database directory exists (skip for in-memory databases used in tests)
_db_path = sqlite_path_from_url(DATABASE_URL)
if _db_path is not None:
    db_dir = _db_path.resolve().parent
    if str(db_dir) != ".":
        db_dir.mkdir(parents=True, exist_ok=True)

if "sqlite" in DATABASE_URL:
    # SQLite: single persistent connection avoids locking issues
    from sqlalchemy.pool import StaticPool

    engine = create_async_engine(
        DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        pool_reset_on_return=None,
    )
else:
    engine = create_async_engine(
        DATABASE_URL,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

# Session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for getting database sessions."""
    async with AsyncSessionLocal() as session:
        yield session


async def init_db() -> None:
    """Create tables and apply SQLite pragmas."""
    # Import models so they register with Base.metadata
    import keywarden.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        if "sqlite" in DATABASE_URL:
            # WAL mode allows concurrent reads/writes
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA synchronous=NORMAL"))
            await conn.execute(text("PRAGMA busy_timeout=5000"))
            await conn.execute(text("PRAGMA foreign_keys=ON"))
            logger.info("SQLite optimizations applied: WAL mode, 5s busy timeout")
