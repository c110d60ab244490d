"""
Inventory Service API

This module implements the FastAPI-based Inventory microservice. It owns the
product stock records and is the only writer of stock quantities.

Stock changes arrive in two ways:
- order lifecycle messages consumed from Redis Streams by
  ``InventoryReservationConsumer`` (started in the application lifespan)
- admin create/restock endpoints

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    GET /: List products (cache-aside)
    GET /{product_id}: Get a single product (cache-aside)
    POST /: Create a product (admin)
    PUT /{product_id}: Update or restock a product (admin; 409 on a concurrent stock change)
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared import auth, config
from ..shared.broker import RedisStreamBroker
from ..shared.cache import ALL_PRODUCTS_NS, CacheStore, product_ns
from . import crud, schemas
from .consumer import InventoryReservationConsumer
from .database import get_db, init_models, make_engine, make_session_factory

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    engine = make_engine()
    await init_models(engine)
    redis = aioredis.from_url(config.REDIS_URL, decode_responses=True)

    app.state.session_factory = make_session_factory(engine)
    app.state.cache = CacheStore(redis)
    broker = RedisStreamBroker(redis)
    consumer = InventoryReservationConsumer(app.state.session_factory, app.state.cache, broker)

    shutdown_event = asyncio.Event()
    consumer_task = asyncio.create_task(consumer.run(shutdown_event))
    logger.info("Inventory service started")
    try:
        yield
    finally:
        shutdown_event.set()
        await asyncio.gather(consumer_task, return_exceptions=True)
        await redis.aclose()
        await engine.dispose()


app = FastAPI(title="inventory-service", lifespan=lifespan)


def get_cache(request: Request) -> CacheStore:
    return request.app.state.cache


@app.get("/healthz", response_model=dict)
async def health():
    """
    Health check endpoint for the inventory service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


@app.get("/", response_model=List[schemas.Product])
async def list_products(
    db: AsyncSession = Depends(get_db),
    cache: CacheStore = Depends(get_cache),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """List all products (authenticated users only)."""
    return await crud.get_products_cached(db, cache)


@app.get("/{product_id}", response_model=schemas.Product)
async def get_product(
    product_id: int,
    db: AsyncSession = Depends(get_db),
    cache: CacheStore = Depends(get_cache),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single product by ID (authenticated users only).

    Raises:
        HTTPException: 404 if product not found
    """
    product = await crud.get_product_cached(db, cache, product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.post("/", response_model=schemas.Product, status_code=status.HTTP_201_CREATED)
async def create_product(
    product: schemas.ProductCreate,
    db: AsyncSession = Depends(get_db),
    cache: CacheStore = Depends(get_cache),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Create a new product (admin only)."""
    db_product = await crud.create_product(db, product)
    await cache.invalidate(ALL_PRODUCTS_NS)
    return db_product


@app.put("/{product_id}", response_model=schemas.Product)
async def update_product(
    product_id: int,
    product: schemas.ProductUpdate,
    db: AsyncSession = Depends(get_db),
    cache: CacheStore = Depends(get_cache),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Update or restock a product (admin only).

    Raises:
        HTTPException: 404 if product not found, 409 if the stock changed
            concurrently or a restock would make it negative
    """
    try:
        db_product = await crud.update_product(db, product_id, product)
    except crud.StockConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if db_product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    await cache.invalidate(ALL_PRODUCTS_NS, product_ns(product_id))
    return db_product
