"""
Async database engine and session factory for the entitlement store
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from config.settings import settings, IS_PRODUCTION


def resolve_database_url(url=None, production=IS_PRODUCTION):
    """
    Return the async driver URL for the configured database.

    Raises:
        RuntimeError: Production is configured without PostgreSQL
    """
    url = url or settings.database_url
    if production:
        if not url:
            raise RuntimeError("DATABASE_URL must be set in production. SQLite is not allowed in production.")
        if "sqlite" in url.lower():
            raise RuntimeError("SQLite is forbidden in production. Use a PostgreSQL DATABASE_URL.")
    url = url or "sqlite+aiosqlite:///./sql_app.db"
    # Hosted Postgres URLs come without a driver
    return url.replace("postgresql://", "postgresql+asyncpg://", 1)


def engine_options(url: str) -> dict:
    """Engine keyword arguments for the given URL, taken from Settings."""
    options = {
        "echo": settings.database_echo,
        "pool_pre_ping": settings.database_pool_pre_ping,
    }
    if url.startswith("sqlite"):
        # Concurrent quota writers wait on the file lock instead of failing
        options["connect_args"] = {"timeout": settings.sqlite_busy_timeout_seconds}
    return options


DATABASE_URL = resolve_database_url()

engine = create_async_engine(DATABASE_URL, **engine_options(DATABASE_URL))

Base = declarative_base()

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_db():
    """
    Initialize the database by creating all tables.
    This should be called on application startup.
    """
    async with engine.begin() as conn:
        # Import models here to ensure they're registered with Base
        from database_models import UserEntitlement  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
