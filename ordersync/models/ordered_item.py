"""Pydantic models for ordered items and their change events."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class OrderedItem(BaseModel):
    id: str
    entity_type: str
    parent_key: str
    order: int
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class ChangeKind(str, Enum):
    INSERTED = "Inserted"
    UPDATED = "Updated"
    REMOVED = "Removed"


class ChannelStatus(str, Enum):
    CONNECTING = "Connecting"
    ACTIVE = "Active"
    DEGRADED = "Degraded"
    CLOSED = "Closed"


class ChangeEvent(BaseModel):
    """One mutation notification as carried by the change bus.

    ``item`` holds the row after the write, or the deleted row for
    ``Removed``.
    """

    kind: ChangeKind
    item: OrderedItem

    model_config = {"frozen": True}

    @property
    def parent_key(self) -> str:
        return self.item.parent_key

    @property
    def entity_type(self) -> str:
        return self.item.entity_type

    def to_wire(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "entity_type": self.item.entity_type,
            "parent_key": self.item.parent_key,
            "item_id": self.item.id,
            "order": self.item.order,
            "item": self.item.model_dump(),
        }


class ItemCreate(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)
    position: Optional[int] = None


class PositionUpdate(BaseModel):
    target_index: int


__all__ = [
    "OrderedItem",
    "ChangeKind",
    "ChannelStatus",
    "ChangeEvent",
    "ItemCreate",
    "PositionUpdate",
]
