"""Error taxonomy for ordered collection synchronization.

``ConstraintViolation`` is expected only transiently inside the reorder
coordinator; ``OperationFailed`` is the terminal error surfaced to callers.
"""

from __future__ import annotations


class OrderSyncError(Exception):
    code = "ordersync_error"


class ConstraintViolation(OrderSyncError):
    """A write collided with an occupied ``(parent_key, order)`` pair."""

    code = "order_slot_occupied"

    def __init__(self, parent_key: str, order: int, item_id: str | None = None) -> None:
        super().__init__(f"order {order} already occupied under parent {parent_key}")
        self.parent_key = parent_key
        self.order = order
        self.item_id = item_id


class NotFound(OrderSyncError):
    code = "not_found"


class ChannelDegraded(OrderSyncError):
    """Events may have been lost on a change feed; consumers must resync."""

    code = "channel_degraded"


class OperationFailed(OrderSyncError):
    code = "operation_failed"


__all__ = [
    "OrderSyncError",
    "ConstraintViolation",
    "NotFound",
    "ChannelDegraded",
    "OperationFailed",
]
