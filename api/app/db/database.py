from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import settings


class Base(DeclarativeBase):
    """Declarative base for all models."""
    pass


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL.

    SQLite transactions are opened with BEGIN IMMEDIATE so that concurrent
    writers wait on the database lock in order instead of failing to upgrade
    a shared lock halfway through a transaction.
    """
    url = make_url(database_url)
    if url.get_backend_name() != 'sqlite':
        return create_async_engine(
            database_url,
            echo=echo,
            pool_pre_ping=True,
            pool_timeout=settings.db_pool_timeout,
        )

    engine = create_async_engine(
        database_url,
        echo=echo,
        connect_args={'timeout': settings.db_pool_timeout},
    )

    @event.listens_for(engine.sync_engine, 'connect')
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, 'begin')
    def _begin_immediate(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')

    return engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.sql_echo)
async_session = build_session_factory(engine)


async def get_db():
    """Yield a request-scoped session, committed when the handler returns."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(bind: AsyncEngine | None = None):
    """Create tables that do not exist yet (development convenience)."""
    # Import models so they register on Base.metadata
    import app.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
