"""
Database configuration and session management for the Inventory service.

This module sets up the async SQLAlchemy engine for the inventory store and
provides a session factory for database operations. The Inventory service
owns this store; no other service writes to it.
"""
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from ..shared import config

# Base class for declarative models
Base = declarative_base()


def make_engine(database_url: str = config.INVENTORY_DATABASE_URL) -> AsyncEngine:
    """Create the async engine for the inventory store."""
    return create_async_engine(database_url, echo=False)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    """Create the AsyncSession factory bound to ``engine``."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create all inventory tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db(request: Request):
    """
    Dependency function that provides a database session.

    Yields:
        AsyncSession: SQLAlchemy async database session

    Usage:
        Use as a FastAPI dependency to inject database sessions into route handlers.
    """
    async with request.app.state.session_factory() as db:
        yield db
