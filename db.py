# ===============================================================
# db.py: Central async SQLAlchemy setup
# ===============================================================
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
)
from sqlalchemy.orm import sessionmaker

# Import Base and models cleanly
from base import Base
import models  # noqa: F401  (registers tables on Base.metadata)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# INSERT .. ON CONFLICT DO NOTHING is dialect specific
_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


# -------------------------------------------------
# Engine & Async Session Factory
# -------------------------------------------------
def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    kwargs = {"echo": echo, "future": True}
    if not database_url.startswith("sqlite"):
        kwargs.update(
            pool_pre_ping=True,     # checks if connection is alive
            pool_recycle=1800,      # recycle connections every 30 mins
        )
    return create_async_engine(database_url, **kwargs)


def build_session_factory(engine: AsyncEngine):
    """The async session factory the whole app should use."""
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,
        class_=AsyncSession,
    )


# -------------------------------------------------
# Transaction scope
# -------------------------------------------------
class UnitOfWork:
    """
    One session, one transaction.

        async with UnitOfWork(factory) as session:
            ...                      # committed on clean exit

        result = await UnitOfWork(factory).run(callback, arg1, arg2)

    Any exception rolls the transaction back and is re-raised. The
    session is closed on every exit path.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory
        self.session: AsyncSession | None = None

    async def begin(self) -> AsyncSession:
        self.session = self._session_factory()
        await self.session.begin()
        return self.session

    async def commit(self):
        await self.session.commit()

    async def rollback(self):
        await self.session.rollback()

    async def close(self):
        if self.session is not None:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> AsyncSession:
        return await self.begin()

    async def __aexit__(self, exc_type, exc, tb):
        try:
            if exc_type is None:
                await self.commit()
            else:
                await self.rollback()
        finally:
            await self.close()
        return False

    async def run(self, callback: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        async with self as session:
            return await callback(session, *args, **kwargs)


# -------------------------------------------------
# Database Initialization (development only)
# -------------------------------------------------
async def init_db(engine: AsyncEngine):
    """Create tables manually: not for production."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database initialized (development use only)")


# -------------------------------------------------
# Health Check Utility
# -------------------------------------------------
async def test_connection(engine: AsyncEngine):
    """Quick check if DB is reachable."""
    try:
        async with engine.begin() as conn:
            await conn.run_sync(lambda _: None)
        logger.info("🔌 Database connection OK")
    except Exception as e:
        logger.error(f"❌ Database connection failed: {e}")
        raise


# -------------------------------------------------
# Upsert helper
# -------------------------------------------------
def dialect_insert(session: AsyncSession):
    """`insert()` for the session's dialect, exposing `on_conflict_do_nothing`."""
    dialect = session.bind.dialect.name
    insert = _DIALECT_INSERTS.get(dialect)
    if insert is None:
        raise RuntimeError(f"Unsupported database dialect for upsert: {dialect}")
    return insert
