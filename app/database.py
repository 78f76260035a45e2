from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from app.config import settings


def normalize_database_url(url: str) -> str:
    """Route PostgreSQL URLs through the psycopg async driver."""
    if url.startswith("postgresql+asyncpg://"):
        return url.replace("postgresql+asyncpg://", "postgresql+psycopg://")
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://")
    return url


def enable_sqlite_writer_lock(async_engine: AsyncEngine) -> None:
    """
    Make every SQLite transaction take the database write lock up front.

    pysqlite defers BEGIN until the first DML statement, which lets two
    read-modify-write units interleave their reads. Disabling its implicit
    transaction handling and emitting BEGIN IMMEDIATE ourselves serializes
    writers, the SQLite equivalent of SERIALIZABLE isolation.
    """

    @event.listens_for(async_engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with the pool settings appropriate for the backend."""
    if url.startswith("sqlite"):
        sqlite_engine = create_async_engine(
            url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.SQLITE_BUSY_TIMEOUT_SECONDS,
            },
        )
        enable_sqlite_writer_lock(sqlite_engine)
        return sqlite_engine

    return create_async_engine(
        normalize_database_url(url),
        echo=echo,
        pool_pre_ping=True,  # Check connection health before use
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        connect_args={
            "prepare_threshold": None,  # Disable prepared statements for pgbouncer-style poolers
            "connect_timeout": 30,
        },
    )


def make_session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


def make_serializable_session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory whose transactions run at the store's strongest isolation.

    SQLite engines already take the write lock at BEGIN; setting a pysqlite
    isolation level would undo that hook, so they get a plain factory.
    """
    if async_engine.dialect.name == "sqlite":
        return make_session_factory(async_engine)
    return make_session_factory(async_engine.execution_options(isolation_level="SERIALIZABLE"))


engine = create_engine_for_url(settings.DATABASE_URL, echo=settings.DEBUG)

# Read paths and reporting
async_session_factory = make_session_factory(engine)

# Ledger writes (commission events, tier upgrades, plan reassignment)
serializable_session_factory = make_serializable_session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


@asynccontextmanager
async def get_db_session(session_factory: async_sessionmaker[AsyncSession] = None):
    """Context manager for getting database session (for jobs and services)."""
    factory = session_factory or async_session_factory
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(async_engine: AsyncEngine = None) -> None:
    """Create all tables registered on Base.metadata."""
    # Import all models to register them with Base.metadata
    from app import models  # noqa: F401

    target = async_engine or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
