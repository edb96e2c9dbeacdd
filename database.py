"""Database setup and session management."""
from typing import Optional

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config import settings

# Base class for models
Base = declarative_base()


def _configure_sqlite(sync_engine):
    """
    Hand transaction control to SQLAlchemy on SQLite.

    The sqlite3 driver defers BEGIN on its own, which breaks SAVEPOINT;
    foreign keys are also off by default there.
    """

    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _engine_args(url: str, echo: Optional[bool]) -> dict:
    args = {
        "echo": settings.environment == "development" if echo is None else echo,
        "future": True,
    }
    if url.startswith("sqlite") and ":memory:" in url:
        # One shared connection, otherwise every checkout sees an empty database
        args["poolclass"] = StaticPool
    elif not url.startswith("sqlite"):
        args.update({"pool_pre_ping": True, "pool_size": 5, "max_overflow": 5, "pool_recycle": 300})
    return args


class Database:
    """
    Async engine and session factory scoped to the process lifetime.

    Constructed once at startup (FastAPI lifespan, CLI, worker) and passed
    down explicitly; disposed on shutdown.
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        self.url = url or settings.database_url
        self.engine = create_async_engine(self.url, **_engine_args(self.url, echo))
        if self.url.startswith("sqlite"):
            _configure_sqlite(self.engine.sync_engine)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def create_all(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()


def create_sync_session_factory(url: Optional[str] = None, echo: Optional[bool] = None) -> sessionmaker:
    """Sync session factory for the CLI and the RQ worker."""
    url = url or settings.database_url_sync
    sync_engine = create_engine(url, **_engine_args(url, echo))
    if url.startswith("sqlite"):
        _configure_sqlite(sync_engine)
    return sessionmaker(sync_engine, expire_on_commit=False)


# Dependency for FastAPI
async def get_db(request: Request):
    """Get async database session from the application's Database handle."""
    database: Database = request.app.state.db
    async with database.session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
