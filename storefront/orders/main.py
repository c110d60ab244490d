"""
Orders Service API

This module implements the FastAPI-based Orders microservice. Orders are
created and cancelled through the ``OrderSagaProducer``; stock is reserved
and released asynchronously by the Inventory service, whose results are
consumed in the background.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    GET /: List orders (own orders, or all for admins)
    GET /{order_id}: Get a single order by ID
    GET /{order_id}/timeline: Get the order's event timeline
    POST /: Create a new order
    POST /{order_id}/cancel: Cancel an order that has not shipped
    PUT /{order_id}/status: Change an order's status (admin)
    WS /ws/notifications: Push channel for order events

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "orders-service"
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared import auth, config
from ..shared.broker import RedisStreamBroker
from ..shared.cache import CacheStore
from ..shared.responses import ServiceResponse
from . import crud, schemas
from .database import get_db, init_models, make_engine, make_session_factory, seed_order_statuses
from .notifications import ConnectionRegistry, Notifier
from .outbox import OutboxRelay
from .saga import OrderSagaProducer

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    engine = make_engine()
    await init_models(engine)
    session_factory = make_session_factory(engine)
    await seed_order_statuses(session_factory)
    redis = aioredis.from_url(config.REDIS_URL, decode_responses=True)

    broker = RedisStreamBroker(redis)
    app.state.session_factory = session_factory
    app.state.cache = CacheStore(redis)
    app.state.registry = ConnectionRegistry()
    app.state.notifier = Notifier(app.state.registry)
    relay = OutboxRelay(session_factory, broker, app.state.notifier)
    app.state.saga = OrderSagaProducer(session_factory, broker, app.state.cache, app.state.notifier, relay)

    shutdown_event = asyncio.Event()
    tasks = [
        asyncio.create_task(app.state.saga.run(shutdown_event)),
        asyncio.create_task(relay.run(shutdown_event)),
    ]
    logger.info("Orders service started")
    try:
        yield
    finally:
        shutdown_event.set()
        await asyncio.gather(*tasks, return_exceptions=True)
        await app.state.notifier.drain()
        await redis.aclose()
        await engine.dispose()


app = FastAPI(title="orders-service", lifespan=lifespan)


def get_cache(request: Request) -> CacheStore:
    return request.app.state.cache


def get_saga(request: Request) -> OrderSagaProducer:
    return request.app.state.saga


def _raise_on_failure(response: ServiceResponse) -> None:
    if not response.success:
        raise HTTPException(status_code=response.status_code, detail=response.message)


def _check_owner(order_user_id: int, current_user: auth.CurrentUser, action: str) -> None:
    if not current_user.is_admin and order_user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Not authorized to {action} this order"
        )


@app.get("/healthz", response_model=dict)
async def health():
    """
    Health check endpoint for the orders service.

    This endpoint is used by orchestration systems (like Kubernetes) to verify
    that the service is running and able to respond to requests.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


@app.get("/", response_model=List[schemas.Order])
async def list_orders(
    status_id: Optional[int] = None,
    user_id: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
    cache: CacheStore = Depends(get_cache),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List orders (authenticated users see their own, admins see all).

    Args:
        status_id: Only orders in this status (optional)
        user_id: Only orders of this user, admins only (optional)
        db: Database session (injected)
        cache: Cache (injected)
        current_user: Current authenticated user (injected)

    Returns:
        List of order objects
    """
    if not current_user.is_admin:
        user_id = current_user.id
    return await crud.get_orders_cached(db, cache, user_id=user_id, status_id=status_id)


@app.get("/{order_id}", response_model=schemas.Order)
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    cache: CacheStore = Depends(get_cache),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single order by ID (owner or admin).

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    order = await crud.get_order_cached(db, cache, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    _check_owner(order["user_id"], current_user, "access")
    return order


@app.get("/{order_id}/timeline", response_model=List[schemas.OrderEvent])
async def get_order_timeline(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get the timeline of events for an order (owner or admin).

    Returns:
        List of order events in chronological order

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    db_order = await crud.get_order(db, order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    _check_owner(db_order.user_id, current_user, "view the timeline of")
    return await crud.get_order_events(db, order_id)


@app.post("/", response_model=schemas.OrderHandle, status_code=status.HTTP_201_CREATED)
async def create_order(
    order: schemas.OrderCreate,
    saga: OrderSagaProducer = Depends(get_saga),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Create a new order (for yourself, or for anyone as admin).

    The order is stored as Pending; stock is reserved asynchronously.

    Raises:
        HTTPException: 403 if creating an order for another user
        HTTPException: 400/404/500 as reported by the saga
    """
    _check_owner(order.user_id, current_user, "create")
    if order.items:
        response = await saga.create_order_with_items(order, actor_id=current_user.id)
    else:
        response = await saga.create_order(order, actor_id=current_user.id)
    _raise_on_failure(response)
    return response.data


@app.post("/{order_id}/cancel", response_model=ServiceResponse[bool])
async def cancel_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    saga: OrderSagaProducer = Depends(get_saga),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Cancel an order that has not shipped yet (owner or admin).

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
        HTTPException: 400 if the order can no longer be cancelled
    """
    db_order = await crud.get_order(db, order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    _check_owner(db_order.user_id, current_user, "cancel")

    response = await saga.cancel_order(order_id, actor_id=current_user.id)
    _raise_on_failure(response)
    return response


@app.put("/{order_id}/status", response_model=ServiceResponse[str])
async def update_order_status(
    order_id: int,
    update: schemas.StatusUpdate,
    saga: OrderSagaProducer = Depends(get_saga),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Change an order's status by ID or by name (admin only).

    Raises:
        HTTPException: 400 if neither status_id nor status_name is given,
            or the transition is not allowed
        HTTPException: 404 if order or status not found
    """
    if update.status_id is not None:
        response = await saga.update_order_status(order_id, update.status_id, actor_id=current_user.id)
    elif update.status_name:
        response = await saga.update_order_status_by_name(order_id, update.status_name, actor_id=current_user.id)
    else:
        raise HTTPException(status_code=400, detail="status_id or status_name is required")
    _raise_on_failure(response)
    return response


@app.websocket("/ws/notifications")
async def notifications(websocket: WebSocket, token: str):
    """
    Push channel for order events.

    Clients authenticate with ``?token=<jwt>`` and join their ``User_{id}``
    group (and ``AdminGroup`` for admins).
    """
    try:
        user = auth.decode_token(token)
    except (JWTError, ValueError) as e:
        logger.warning(f"Rejected push connection: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    registry: ConnectionRegistry = websocket.app.state.registry
    await websocket.accept()
    registry.add(websocket, user.id, is_admin=user.is_admin)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        registry.remove(websocket)
