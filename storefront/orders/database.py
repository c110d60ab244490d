"""
Database configuration and session management for the Orders service.

This module sets up the async SQLAlchemy engine for the orders store and
provides a session factory for database operations.
"""
from fastapi import Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from ..shared import config

# Base class for declarative models
Base = declarative_base()


def make_engine(database_url: str = config.ORDERS_DATABASE_URL) -> AsyncEngine:
    """Create the async engine for the orders store."""
    return create_async_engine(database_url, echo=False)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    """Create the AsyncSession factory bound to ``engine``."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create all orders tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def seed_order_statuses(session_factory: sessionmaker) -> int:
    """
    Insert any missing rows of the order status vocabulary.

    Args:
        session_factory: AsyncSession factory for the orders store

    Returns:
        Number of rows inserted
    """
    from . import models
    from .statuses import OrderStatusRank

    async with session_factory() as db:
        result = await db.execute(select(models.OrderStatus.status_id))
        existing = set(result.scalars().all())
        missing = [rank for rank in OrderStatusRank if int(rank) not in existing]
        for rank in missing:
            db.add(models.OrderStatus(status_id=int(rank), status_name=rank.label))
        await db.commit()
    return len(missing)


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
