from __future__ import annotations

from typing import AsyncIterator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from clinic.config import ASYNC_DB_URL, DB_ECHO


class Base(DeclarativeBase):
    pass


class Database:
    """
    Owns the async engine and the session factory.

    Built once by the app factory, connected in the lifespan and disposed on
    shutdown. Handlers reach it through ``get_db`` / ``get_database``.
    """

    def __init__(self, url: Optional[str] = None, echo: bool = DB_ECHO):
        self.url = url or ASYNC_DB_URL
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    def connect(self) -> None:
        if self.engine is not None:
            return
        kwargs = {"echo": self.echo}
        if not self.url.startswith("sqlite"):
            kwargs["pool_pre_ping"] = True
        self.engine = create_async_engine(self.url, **kwargs)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)

    async def dispose(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.session_factory = None

    def session(self) -> AsyncSession:
        if self.session_factory is None:
            self.connect()
        return self.session_factory()

    async def create_all(self) -> None:
        self.connect()
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def scalar(self, stmt):
        """Run a single scalar query in its own session (safe to gather)."""
        async with self.session() as session:
            res = await session.execute(stmt)
            return res.scalar()


def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    async with get_database(request).session() as session:
        yield session
