from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from course_payments.config import DATABASE_URL
from course_payments.models import Base

engine = None
AsyncSessionLocal = None


def setup_engine(database_url: str = DATABASE_URL):
    global engine, AsyncSessionLocal
    if engine is None:
        engine = create_async_engine(database_url, pool_pre_ping=True)
        AsyncSessionLocal = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
    return engine


async def init_db(database_url: str = DATABASE_URL):
    setup_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session():
    setup_engine()
    async with AsyncSessionLocal() as session:
        yield session


async def dispose_engine():
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None
