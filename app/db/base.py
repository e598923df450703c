"""
Database base configuration and async session management
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from app.core.config import settings

# Base class for models (must be defined first)
Base = declarative_base()

# Engine and session factory - only created when first requested
# This prevents errors when Alembic imports Base without a database connection
_engine = None
_AsyncSessionLocal = None


def _get_database_url():
    """Get database URL, converting to async format if needed"""
    database_url = settings.DATABASE_URL or "postgresql+asyncpg://localhost/speaking_eval"
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def get_engine():
    """Get or create the async database engine (lazy initialization)"""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            _get_database_url(),
            pool_pre_ping=True,
            echo=settings.DEBUG,
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Get or create the async session factory (lazy initialization)"""
    global _AsyncSessionLocal
    if _AsyncSessionLocal is None:
        _AsyncSessionLocal = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False
        )
    return _AsyncSessionLocal


async def create_tables(engine=None) -> None:
    """Create all tables directly from the models (local development and tests)"""
    # Import models so they register on Base.metadata
    from app.db.models import api_key, job, practice_test, result  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    """
    Async dependency to get database session.
    Use this in FastAPI route dependencies.

    Example:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            result = await db.execute(select(Item))
            return result.scalars().all()
    """
    if not settings.DATABASE_URL:
        raise ValueError("DATABASE_URL not configured")

    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_sessionmaker() -> async_sessionmaker:
    """Dependency returning the session factory for services that open their own transactions"""
    if not settings.DATABASE_URL:
        raise ValueError("DATABASE_URL not configured")
    return get_session_factory()
