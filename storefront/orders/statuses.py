"""
Order status vocabulary.

Statuses are ordered: the integer rank doubles as the ``status_id`` of the
seeded ``order_statuses`` rows, so "can this order still be cancelled" is a
threshold test.
"""
from enum import IntEnum
from typing import Optional


class OrderStatusRank(IntEnum):
    PENDING = 1
    PAID = 2
    PROCESSING = 3
    SHIPPED = 4
    IN_TRANSIT = 5
    OUT_FOR_DELIVERY = 6
    DELIVERED = 7
    CANCELLED = 8
    RETURNED = 9

    @property
    def label(self) -> str:
        """Display name stored in ``order_statuses.status_name``."""
        return _LABELS[self]

    @classmethod
    def from_label(cls, name: str) -> Optional["OrderStatusRank"]:
        wanted = name.strip().lower().replace("_", "-").replace(" ", "-")
        for rank, label in _LABELS.items():
            if label.lower() == wanted:
                return rank
        return None


_LABELS = {
    OrderStatusRank.PENDING: "Pending",
    OrderStatusRank.PAID: "Paid",
    OrderStatusRank.PROCESSING: "Processing",
    OrderStatusRank.SHIPPED: "Shipped",
    OrderStatusRank.IN_TRANSIT: "In-Transit",
    OrderStatusRank.OUT_FOR_DELIVERY: "Out-for-Delivery",
    OrderStatusRank.DELIVERED: "Delivered",
    OrderStatusRank.CANCELLED: "Cancelled",
    OrderStatusRank.RETURNED: "Returned",
}


def is_cancellable(rank: int) -> bool:
    """An order can be cancelled only before it ships."""
    return rank < OrderStatusRank.SHIPPED
