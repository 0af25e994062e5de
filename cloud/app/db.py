from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from .settings import DATABASE_URL, DB_POOL_SIZE

engine = create_async_engine(DATABASE_URL, pool_pre_ping=True, pool_size=DB_POOL_SIZE)
SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(metadata) -> None:
    """Create missing tables (invocations, job_runs, leases). Needs the uuid-ossp extension."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
