from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from storyloom.config import get_settings

settings = get_settings()

# Create the async engine
# echo=True will log SQL queries, helpful for debugging
engine = create_async_engine(settings.database_url, echo=False)

# Create a session factory
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)


async def get_db():
    """Dependency for providing database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def create_all() -> None:
    """Create every table known to the metadata (startup and tests)."""
    from storyloom.models import Base
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all() -> None:
    from storyloom.models import Base
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
