"""
SQLAlchemy ORM models for the Orders service.

Defines the database schema for orders, their line items, the order status
vocabulary, the order timeline and the transactional outbox.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    Read-only projection of users, kept to validate order ownership.

    Attributes:
        user_id (int): Primary key
        email (str): User email
        is_deleted (bool): Soft-delete flag
    """
    __tablename__ = "users"

    user_id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=False, unique=True)
    is_deleted = Column(Boolean, nullable=False, default=False)


class OrderStatus(Base):
    """Row of the ordered status vocabulary; ``status_id`` is the rank."""
    __tablename__ = "order_statuses"

    status_id = Column(Integer, primary_key=True, autoincrement=False)
    status_name = Column(String(32), nullable=False, unique=True)
    is_deleted = Column(Boolean, nullable=False, default=False)


class Order(Base):
    """
    Order model representing a customer order in the system.

    Attributes:
        order_id (int): Primary key, assigned on insert
        user_id (int): ID of the user who placed the order
        order_status_id (int): Current status rank
        order_date (datetime): When the order was placed
        total_amount (Decimal): Total amount of the order
        shipping_address_id (int): Shipping address reference
        coupon_id (int): Coupon reference (optional)
        items (list): Order line items
        is_deleted (bool): Soft-delete flag
    """
    __tablename__ = "orders"

    order_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    order_status_id = Column(Integer, ForeignKey("order_statuses.status_id"), nullable=False, index=True)
    order_date = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    total_amount = Column(Numeric(18, 2), nullable=False, default=0)
    shipping_address_id = Column(Integer, nullable=True)
    coupon_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    is_deleted = Column(Boolean, nullable=False, default=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.order_item_id",
    )


class OrderItem(Base):
    """
    Line item of an order.

    Attributes:
        order_item_id (int): Primary key
        order_id (int): Owning order
        product_id (int): Product reference (owned by the inventory service)
        quantity (int): Units ordered, positive
        unit_price (Decimal): Price per unit, non-negative
        total_price (Decimal): quantity x unit_price
    """
    __tablename__ = "order_items"

    order_item_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.order_id"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(18, 2), nullable=False)
    total_price = Column(Numeric(18, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    is_deleted = Column(Boolean, nullable=False, default=False)

    order = relationship("Order", back_populates="items")


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (int): Foreign key to the order
        event_type (str): created, status_changed, cancelled,
            reservation_failed or compensation_failed
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (int): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.order_id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class OutboxMessage(Base):
    """
    Message committed together with the order change that produced it.

    The relay publishes unpublished rows until they succeed or run out of
    attempts, at which point they are dead-lettered.

    Attributes:
        outbox_id (int): Primary key
        request_id (str): Idempotency key of the envelope
        topic (str): Destination stream
        message_key (str): Partitioning key (the order id)
        order_id (int): Order the message refers to
        payload (str): Serialized envelope
        published (bool): Whether the broker accepted the message
        attempts (int): Failed publish attempts so far
        last_error (str): Last publish error (optional)
        dead_lettered (bool): Whether the relay gave up on the row
    """
    __tablename__ = "outbox_messages"

    outbox_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    request_id = Column(String(64), nullable=False, unique=True)
    topic = Column(String(64), nullable=False)
    message_key = Column(String(64), nullable=False)
    order_id = Column(Integer, nullable=False, index=True)
    payload = Column(Text, nullable=False)
    published = Column(Boolean, nullable=False, default=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    dead_lettered = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=True)
