"""
CRUD (Create, Read, Update, Delete) operations for the Orders service.

This module contains the database reads used by the saga producer and the
API, the cache-aside wrappers around them, and the timeline helper.
"""
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared import config
from ..shared.cache import ALL_ORDERS_NS, CacheStore, order_ns, orders_by_status_ns, orders_by_user_ns
from . import models, schemas
from .statuses import OrderStatusRank

logger = logging.getLogger(__name__)


async def get_user(db: AsyncSession, user_id: int) -> Optional[models.User]:
    """Return the non-deleted user with this ID, or None."""
    result = await db.execute(
        select(models.User).where(
            models.User.user_id == user_id,
            models.User.is_deleted.is_(False),
        )
    )
    return result.scalar_one_or_none()


async def get_status(db: AsyncSession, status_id: int) -> Optional[models.OrderStatus]:
    result = await db.execute(
        select(models.OrderStatus).where(
            models.OrderStatus.status_id == int(status_id),
            models.OrderStatus.is_deleted.is_(False),
        )
    )
    return result.scalar_one_or_none()


async def get_status_by_name(db: AsyncSession, status_name: str) -> Optional[models.OrderStatus]:
    """
    Resolve a status row by name, case-insensitively. Spaces, dashes and
    underscores are interchangeable for the standard statuses.

    Args:
        db: Database session
        status_name: Display name, e.g. "Processing"

    Returns:
        OrderStatus row or None if not found
    """
    rank = OrderStatusRank.from_label(status_name)
    if rank is not None:
        return await get_status(db, rank)

    result = await db.execute(
        select(models.OrderStatus).where(models.OrderStatus.is_deleted.is_(False))
    )
    wanted = status_name.strip().lower()
    for status_row in result.scalars().all():
        if status_row.status_name.lower() == wanted:
            return status_row
    return None


async def get_order(db: AsyncSession, order_id: int) -> Optional[models.Order]:
    """
    Retrieve a single non-deleted order by ID, with its items.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    result = await db.execute(
        select(models.Order).where(
            models.Order.order_id == order_id,
            models.Order.is_deleted.is_(False),
        )
    )
    return result.scalar_one_or_none()


async def get_orders(
    db: AsyncSession,
    skip: int = 0,
    limit: int = 100,
    user_id: Optional[int] = None,
    status_id: Optional[int] = None,
) -> List[models.Order]:
    """
    Retrieve a list of orders with pagination.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
        user_id: Only orders of this user (optional)
        status_id: Only orders in this status (optional)

    Returns:
        List of Order objects
    """
    query = select(models.Order).where(models.Order.is_deleted.is_(False))
    if user_id is not None:
        query = query.where(models.Order.user_id == user_id)
    if status_id is not None:
        query = query.where(models.Order.order_status_id == status_id)
    result = await db.execute(query.order_by(models.Order.order_id).offset(skip).limit(limit))
    return list(result.scalars().all())


def _serialize(orders: List[models.Order]) -> List[dict]:
    return [schemas.Order.model_validate(order).model_dump(mode="json") for order in orders]


async def get_orders_cached(
    db: AsyncSession,
    cache: CacheStore,
    user_id: Optional[int] = None,
    status_id: Optional[int] = None,
) -> List[dict]:
    """
    Cache-aside read of an order list.

    Lists are cached under ``orders:all``, ``orders:user:{id}`` or
    ``orders:status:{id}``. Filtering by both user and status bypasses the
    cache.
    """
    if user_id is not None and status_id is not None:
        return _serialize(await get_orders(db, limit=1000, user_id=user_id, status_id=status_id))

    if user_id is not None:
        namespace = orders_by_user_ns(user_id)
    elif status_id is not None:
        namespace = orders_by_status_ns(status_id)
    else:
        namespace = ALL_ORDERS_NS

    async def load():
        return _serialize(await get_orders(db, limit=1000, user_id=user_id, status_id=status_id))

    return await cache.get_or_load(namespace, load, config.ORDER_CACHE_TTL)


async def get_order_cached(db: AsyncSession, cache: CacheStore, order_id: int) -> Optional[dict]:
    """Cache-aside read of a single order."""
    async def load():
        order = await get_order(db, order_id)
        if order is None:
            return None
        return schemas.Order.model_validate(order).model_dump(mode="json")

    return await cache.get_or_load(order_ns(order_id), load, config.ORDER_CACHE_TTL)


async def get_order_events(db: AsyncSession, order_id: int) -> List[models.OrderEvent]:
    """Timeline events of an order in chronological order."""
    result = await db.execute(
        select(models.OrderEvent)
        .where(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
    )
    return list(result.scalars().all())


def log_order_event(
    db: AsyncSession,
    order_id: int,
    event_type: str,
    description: str,
    old_value: str = None,
    new_value: str = None,
    user_id: int = None
) -> models.OrderEvent:
    """
    Stage an order event on the timeline. Does not commit, so the event
    lands in the same transaction as the change it describes.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed", "cancelled")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: User who triggered the event (optional)
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id
    )
    db.add(event)
    return event
