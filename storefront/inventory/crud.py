"""
CRUD (Create, Read, Update, Delete) operations for the Inventory service.

This module contains all database operations for product stock, including the
conditional stock updates used by the reservation consumer.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared import config
from ..shared.cache import ALL_PRODUCTS_NS, CacheStore, product_ns
from . import models, schemas

logger = logging.getLogger(__name__)


class StockConflictError(Exception):
    """Raised when an admin stock change would overwrite a concurrent one."""


async def get_product(db: AsyncSession, product_id: int) -> Optional[models.Product]:
    """
    Retrieve a single non-deleted product by ID.

    Args:
        db: Database session
        product_id: ID of the product to retrieve

    Returns:
        Product object or None if not found
    """
    result = await db.execute(
        select(models.Product).where(
            models.Product.product_id == product_id,
            models.Product.is_deleted.is_(False),
        )
    )
    return result.scalar_one_or_none()


async def get_products(db: AsyncSession, skip: int = 0, limit: int = 100) -> List[models.Product]:
    """
    Retrieve a list of non-deleted products with pagination.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return

    Returns:
        List of Product objects
    """
    result = await db.execute(
        select(models.Product)
        .where(models.Product.is_deleted.is_(False))
        .order_by(models.Product.product_id)
        .offset(skip)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_products_cached(db: AsyncSession, cache: CacheStore) -> List[dict]:
    """Cache-aside read of the product list."""
    async def load():
        products = await get_products(db, limit=1000)
        return [schemas.Product.model_validate(p).model_dump(mode="json") for p in products]

    return await cache.get_or_load(ALL_PRODUCTS_NS, load, config.PRODUCT_CACHE_TTL)


async def get_product_cached(db: AsyncSession, cache: CacheStore, product_id: int) -> Optional[dict]:
    """Cache-aside read of a single product."""
    async def load():
        product = await get_product(db, product_id)
        if product is None:
            return None
        return schemas.Product.model_validate(product).model_dump(mode="json")

    return await cache.get_or_load(product_ns(product_id), load, config.PRODUCT_CACHE_TTL)


async def create_product(db: AsyncSession, product: schemas.ProductCreate) -> models.Product:
    """
    Create a new product in the database.

    Args:
        db: Database session
        product: Product data to create

    Returns:
        Created Product object
    """
    db_product = models.Product(
        product_name=product.product_name,
        price=product.price,
        quantity=product.quantity,
    )
    db.add(db_product)
    await db.commit()
    await db.refresh(db_product)
    return db_product


async def update_product(
    db: AsyncSession, product_id: int, product: schemas.ProductUpdate
) -> Optional[models.Product]:
    """
    Update an existing product (admin restock or correction).

    Stock changes are applied in a single conditional UPDATE so they never
    overwrite a reservation or compensation committed meanwhile: ``restock``
    is added to the current quantity, and an absolute ``quantity`` only
    applies while the stock still holds the value that was read.

    Args:
        db: Database session
        product_id: ID of the product to update
        product: Updated product data (only provided fields will be updated)

    Returns:
        Updated Product object or None if not found

    Raises:
        StockConflictError: If the stock changed after it was read, or the
            restock would make it negative
    """
    db_product = await get_product(db, product_id)
    if db_product is None:
        return None

    update_data = product.model_dump(exclude_unset=True, exclude={"quantity", "restock"})
    conditions = [
        models.Product.product_id == product_id,
        models.Product.is_deleted.is_(False),
    ]
    if product.restock is not None:
        update_data["quantity"] = models.Product.quantity + product.restock
        conditions.append(models.Product.quantity + product.restock >= 0)
    elif product.quantity is not None:
        update_data["quantity"] = product.quantity
        conditions.append(models.Product.quantity == db_product.quantity)
    update_data["updated_at"] = datetime.now(timezone.utc)

    result = await db.execute(
        update(models.Product)
        .where(*conditions)
        .values(**update_data)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        if product.restock is not None:
            raise StockConflictError(f"Restock of {product.restock} would make stock of product {product_id} negative")
        raise StockConflictError(f"Stock of product {product_id} changed since it was read")

    await db.commit()
    await db.refresh(db_product)
    logger.info(f"Updated product {product_id}: {product.model_dump(exclude_unset=True)}")
    return db_product


async def try_decrement_stock(db: AsyncSession, product_id: int, quantity: int) -> Optional[int]:
    """
    Atomically take ``quantity`` units from a product if enough are available.

    Issues ``UPDATE ... SET quantity = quantity - n WHERE quantity >= n`` so
    concurrent reservations for the same product can never oversell. Does
    not commit.

    Returns:
        Remaining stock, or None if the product is missing or short
    """
    result = await db.execute(
        update(models.Product)
        .where(
            models.Product.product_id == product_id,
            models.Product.is_deleted.is_(False),
            models.Product.quantity >= quantity,
        )
        .values(
            quantity=models.Product.quantity - quantity,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return await get_stock_level(db, product_id)


async def increment_stock(db: AsyncSession, product_id: int, quantity: int) -> Optional[int]:
    """
    Atomically add ``quantity`` units back to a product. Does not commit.

    Returns:
        Remaining stock, or None if the product does not exist
    """
    result = await db.execute(
        update(models.Product)
        .where(
            models.Product.product_id == product_id,
            models.Product.is_deleted.is_(False),
        )
        .values(
            quantity=models.Product.quantity + quantity,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return await get_stock_level(db, product_id)


async def get_stock_level(db: AsyncSession, product_id: int) -> Optional[int]:
    """Current quantity of a non-deleted product, or None if it does not exist."""
    result = await db.execute(
        select(models.Product.quantity).where(
            models.Product.product_id == product_id,
            models.Product.is_deleted.is_(False),
        )
    )
    return result.scalar_one_or_none()
