"""
Database engine and session factory.

Default backend is SQLite through aiosqlite; any SQLAlchemy async URL works.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from shinobi import config
from shinobi.database.models import Base
from shinobi.logging_config import get_logger

logger = get_logger("database.config")


def make_engine(url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    url = url or config.DATABASE_URL
    if url.startswith("sqlite") and ":///" in url:
        db_file = url.split(":///", 1)[1]
        if db_file and db_file != ":memory:":
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(url, echo=echo)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_database(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database schema ready ({engine.url.render_as_string(hide_password=True)})")
