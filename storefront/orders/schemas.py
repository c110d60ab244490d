"""
Pydantic schemas for request/response validation in the Orders service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class OrderItemCreate(BaseModel):
    """Schema for an order line item."""
    product_id: int = Field(..., description="Product ID from inventory")
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    unit_price: Decimal = Field(..., ge=0, description="Price per unit")


class OrderCreate(BaseModel):
    """
    Schema for creating a new order.

    Either ``total_amount`` or ``items`` must be given; when items are given
    the total is derived from them.
    """
    user_id: int
    shipping_address_id: int
    coupon_id: Optional[int] = None
    total_amount: Optional[Decimal] = Field(None, ge=0)
    items: Optional[List[OrderItemCreate]] = None


class StatusUpdate(BaseModel):
    """Target status of an order, by rank or by name."""
    status_id: Optional[int] = None
    status_name: Optional[str] = None


class OrderHandle(BaseModel):
    """
    Returned by order creation.

    Attributes:
        order_id (int): ID assigned to the new order
        request_id (str): Idempotency key of the published ``created`` message
        status (str): Status name (Pending)
        total_amount (Decimal): Stored total
        published (bool): Whether the message reached the broker immediately;
            when False the outbox relay retries it
    """
    order_id: int
    request_id: str
    status: str
    total_amount: Decimal
    published: bool


class OrderItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_item_id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class Order(BaseModel):
    """
    Schema for order responses, includes all database fields.

    Attributes:
        order_id (int): Order's unique identifier
        user_id (int): ID of the user who placed the order
        order_status_id (int): Current status rank
        total_amount (Decimal): Total amount of the order
        items (List[OrderItem]): Order line items
        created_at (datetime): When the order was created
    """
    model_config = ConfigDict(from_attributes=True)

    order_id: int
    user_id: int
    order_status_id: int
    order_date: datetime
    total_amount: Decimal
    shipping_address_id: Optional[int] = None
    coupon_id: Optional[int] = None
    items: List[OrderItem] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (int): Order identifier
        event_type (str): Type of event
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (int): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[int] = None
    created_at: datetime
