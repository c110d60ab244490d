"""
Message envelopes exchanged between the Orders and Inventory services.

Both services only ever affect each other through these payloads. Every
envelope is self-describing (``kind`` + ``schema_version``) and carries a
``request_id`` that the consumer uses as its idempotency key.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

SCHEMA_VERSION = 1

# Stream names
ORDER_CREATED_TOPIC = "order-created"
ORDER_CANCELLED_TOPIC = "order-cancelled"
PRODUCT_UPDATE_RESULT_TOPIC = "product-update-result"
ORDER_CANCELLED_RESULT_TOPIC = "order-cancelled-result"


def new_request_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageKind(str, Enum):
    """Discriminator for order lifecycle messages."""
    CREATED = "created"
    CANCELLED = "cancelled"


class OrderLine(BaseModel):
    """One (product, quantity, unit price) triple of an order."""
    product_id: int
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)


class OrderMessage(BaseModel):
    """
    Order lifecycle envelope published by the Orders service.

    Attributes:
        kind (MessageKind): created or cancelled
        request_id (str): Globally unique idempotency key
        order_id (int): Order the message refers to
        user_id (int): Owner of the order
        items (List[OrderLine]): Line items, in order
        created_at (datetime): When the envelope was built
    """
    schema_version: int = SCHEMA_VERSION
    kind: MessageKind
    request_id: str = Field(default_factory=new_request_id)
    order_id: int
    user_id: int
    items: List[OrderLine] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def topic(self) -> str:
        return ORDER_CREATED_TOPIC if self.kind == MessageKind.CREATED else ORDER_CANCELLED_TOPIC


class ProductOutcome(BaseModel):
    """Per-product effect of an applied reservation or compensation."""
    product_id: int
    updated_quantity: int
    remaining_stock: int


class ResultMessage(BaseModel):
    """
    Result envelope published by the Inventory service.

    Attributes:
        kind (MessageKind): Kind of the message being answered
        request_id (str): Echo of the answered message's request id
        order_id (int): Order the result refers to
        success (bool): Whether every line was applied
        updated_products (List[ProductOutcome]): Applied lines, empty on failure
        error_message (str): Why the batch failed (optional)
    """
    schema_version: int = SCHEMA_VERSION
    kind: MessageKind
    request_id: str
    order_id: int
    success: bool
    updated_products: List[ProductOutcome] = Field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def topic(self) -> str:
        if self.kind == MessageKind.CREATED:
            return PRODUCT_UPDATE_RESULT_TOPIC
        return ORDER_CANCELLED_RESULT_TOPIC

    @classmethod
    def failed(cls, message: OrderMessage, error: str) -> "ResultMessage":
        return cls(
            kind=message.kind,
            request_id=message.request_id,
            order_id=message.order_id,
            success=False,
            error_message=error,
        )
