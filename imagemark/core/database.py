from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel
from imagemark.core.config import settings

# Import ALL models to ensure they're registered with SQLModel.metadata
from imagemark.modules.imagery.models import Batch, Image  # noqa: F401

# Create async engine
engine = create_async_engine(settings.DATABASE_URL, echo=False, future=True)

# Create async session factory
async_session_maker = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


def create_worker_engine() -> AsyncEngine:
    """Engine for a single worker task.

    Each Celery task runs its own event loop, so pooled connections cannot be
    shared between tasks. NullPool closes connections when the session ends.
    """
    return create_async_engine(settings.DATABASE_URL, poolclass=NullPool, future=True)


async def create_db_and_tables():
    """Create all tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, checkfirst=True))


async def get_session() -> AsyncSession:
    async with async_session_maker() as session:
        yield session
