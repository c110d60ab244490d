"""
Enhanced validation utilities for the Orders service.

Provides additional business logic validation beyond schema validation.
"""
from decimal import Decimal
from typing import List, Tuple

from . import schemas
from .statuses import OrderStatusRank, is_cancellable


def validate_order_items(items: List[schemas.OrderItemCreate]) -> Tuple[bool, str]:
    """
    Validate order items for business rules.

    Args:
        items: List of order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > 100:
        return False, "Order cannot contain more than 100 items"

    # Check for duplicate products
    product_ids = [item.product_id for item in items]
    if len(product_ids) != len(set(product_ids)):
        return False, "Order contains duplicate products"

    # Validate quantities and prices
    for item in items:
        if item.quantity <= 0:
            return False, f"Item {item.product_id}: quantity must be positive"

        if item.quantity > 10000:
            return False, f"Item {item.product_id}: quantity exceeds maximum (10000)"

        if item.unit_price < 0:
            return False, f"Item {item.product_id}: price cannot be negative"

        if item.unit_price > Decimal('1000000'):
            return False, f"Item {item.product_id}: price exceeds maximum (1,000,000)"

    return True, ""


def order_total(items: List[schemas.OrderItemCreate]) -> Decimal:
    """Sum of quantity x unit price over the items."""
    return sum((Decimal(str(item.unit_price)) * item.quantity for item in items), Decimal("0"))


def validate_order_total(items: List[schemas.OrderItemCreate], claimed_total: Decimal) -> Tuple[bool, str]:
    """
    Validate that the order total matches the sum of item prices.

    Args:
        items: List of order items
        claimed_total: The total claimed by the client

    Returns:
        Tuple of (is_valid, error_message)
    """
    calculated_total = order_total(items)

    # Allow small rounding differences (up to 0.01)
    if abs(calculated_total - claimed_total) > Decimal('0.01'):
        return False, f"Order total mismatch: calculated ${calculated_total}, claimed ${claimed_total}"

    return True, ""


def validate_order_status_transition(old_rank: int, new_rank: int) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Ranks only move forward. Cancelled is reachable only before shipping and
    is terminal; Returned is reachable only from Delivered.

    Args:
        old_rank: Current status rank
        new_rank: Requested status rank

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        old_status = OrderStatusRank(old_rank)
        new_status = OrderStatusRank(new_rank)
    except ValueError as e:
        return False, f"Unknown status: {e}"

    if old_status == new_status:
        return True, ""  # No change is valid

    if old_status == OrderStatusRank.CANCELLED:
        return False, "Cancelled orders cannot change status"

    if new_status == OrderStatusRank.CANCELLED:
        if not is_cancellable(old_status):
            return False, f"Order in status '{old_status.label}' can no longer be cancelled"
        return True, ""

    if new_status == OrderStatusRank.RETURNED:
        if old_status != OrderStatusRank.DELIVERED:
            return False, "Only delivered orders can be returned"
        return True, ""

    if old_status == OrderStatusRank.RETURNED or new_status < old_status:
        return False, f"Invalid status transition: {old_status.label} -> {new_status.label}"

    return True, ""
