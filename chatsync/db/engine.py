"""Local store engine.

The local store is an async SQLite database (aiosqlite) by default; the
URL comes from CHATSYNC_DATABASE_URL. File-backed SQLite databases run in
WAL mode so UI reads are not blocked while the outbound queue writes.
"""

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from chatsync.config import get_settings

# Process-wide engine, created on first use
_engine: AsyncEngine | None = None


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, tuning SQLite files for a single local writer."""
    engine = create_async_engine(database_url, echo=echo)
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return engine


def get_engine() -> AsyncEngine:
    """Get or create the configured engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(settings.database_url, echo=settings.debug)
    return _engine


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the messages and conversations tables if they do not exist."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    """Dispose of the configured engine."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None


def session_factory(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    """Sessions whose objects stay readable after commit."""
    return async_sessionmaker(
        engine or get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )
