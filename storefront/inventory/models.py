"""
SQLAlchemy ORM models for the Inventory service.

Defines the database schema for stock records and the idempotency ledger.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Product(Base):
    """
    Product stock record.

    Every reservation or compensation changes ``quantity`` through a single
    conditional UPDATE, never a read-then-write pair.

    Attributes:
        product_id (int): Primary key
        product_name (str): Display name
        price (Decimal): Current list price
        quantity (int): Units available, never negative
        is_deleted (bool): Soft-delete flag
        created_at (datetime): When the product was created
        updated_at (datetime): Last stock or attribute change
    """
    __tablename__ = "products"

    product_id = Column(Integer, primary_key=True, index=True)
    product_name = Column(String, nullable=False)
    price = Column(Numeric(18, 2), nullable=False, default=0)
    quantity = Column(Integer, nullable=False, default=0)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class ProcessedMessage(Base):
    """
    Idempotency ledger entry: one row per applied message.

    Only applied outcomes are recorded, so a message that failed validation
    can be redelivered and re-validated against the current stock.

    Attributes:
        request_id (str): The message's idempotency key
        order_id (int): Order the message refers to
        kind (str): "created" or "cancelled"
        success (bool): Outcome flag (always true for applied messages)
        outcome (str): Serialized result envelope returned on replay
        processed_at (datetime): When the message was applied
    """
    __tablename__ = "processed_messages"

    request_id = Column(String(64), primary_key=True)
    order_id = Column(Integer, nullable=False, index=True)
    kind = Column(String(16), nullable=False)
    success = Column(Boolean, nullable=False, default=True)
    outcome = Column(Text, nullable=False)
    processed_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class OrderReservation(Base):
    """
    Reservation claim for an order: at most one row per order.

    A successful reservation inserts it as ``reserved``. A cancellation that
    finds no reservation inserts it as ``blocked``, so the primary key makes a
    reservation and its tombstone mutually exclusive. Compensation moves
    ``reserved`` to ``released`` with a compare-and-set update.

    Attributes:
        order_id (int): Primary key
        state (str): "reserved", "released" or "blocked"
        updated_at (datetime): Last state change
    """
    __tablename__ = "order_reservations"

    order_id = Column(Integer, primary_key=True, autoincrement=False)
    state = Column(String(16), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
