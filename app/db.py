from __future__ import annotations
from typing import Any, AsyncGenerator, Dict
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from .core.config import get_settings
from .models import Base

settings = get_settings()

def _engine_options(url: str) -> Dict[str, Any]:
    opts: Dict[str, Any] = {"echo": settings.database_echo}
    if make_url(url).get_backend_name() == "sqlite":
        # single shared connection so an in-memory db survives across sessions
        opts.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
    else:
        # stations reconnect after long idle periods; drop dead pooled connections
        opts.update(pool_pre_ping=True)
    return opts

def build_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, **_engine_options(url))

engine = build_engine(settings.database_url)
# offline sync reads attendee fields after commit; keep them loaded
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session
