from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from order_lifecycle.config import settings

engine = create_async_engine(settings.DATABASE_URL or "postgresql+asyncpg://localhost/orders", pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
