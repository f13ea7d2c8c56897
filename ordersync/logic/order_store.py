"""Ordered sibling repository.

Single source of truth for ``(parent_key, order)`` pairs of one entity type.
Every write runs in its own transaction; the unique index on
``(parent_key, item_order)`` is the only cross-row guarantee. Each
successful write publishes one change event on the bus.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import text as sql_text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from ordersync.db.base import get_engine
from ordersync.logic.errors import ConstraintViolation, NotFound
from ordersync.logic.events import ChangeBus
from ordersync.models.entity_type import table_for
from ordersync.models.ordered_item import ChangeEvent, ChangeKind, OrderedItem

logger = logging.getLogger(__name__)


class OrderStore:
    def __init__(self, entity_type: str, engine: Optional[Engine] = None, bus: Optional[ChangeBus] = None) -> None:
        self.entity_type = str(entity_type)
        self.table = table_for(self.entity_type)
        self._engine = engine or get_engine()
        self._bus = bus

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def _to_item(self, row) -> OrderedItem:  # type: ignore[no-untyped-def]
        raw = row[3]
        try:
            payload = json.loads(raw) if raw else {}
        except (TypeError, ValueError):
            logger.error("order_store payload decode failed table=%s id=%s", self.table, row[0], exc_info=True)
            payload = {}
        return OrderedItem(
            id=str(row[0]),
            entity_type=self.entity_type,
            parent_key=str(row[1]),
            order=int(row[2]),
            payload=payload if isinstance(payload, dict) else {"value": payload},
        )

    def list_siblings(self, parent_key: str) -> List[OrderedItem]:
        """Return items under ``parent_key`` ascending by order; empty list if none."""
        with self._engine.connect() as conn:
            rows = conn.execute(
                sql_text(
                    f"SELECT id, parent_key, item_order, payload FROM {self.table} "
                    "WHERE parent_key = :pk ORDER BY item_order ASC, id ASC"
                ),
                {"pk": str(parent_key)},
            ).fetchall()
        return [self._to_item(r) for r in rows]

    def get_item(self, item_id: str) -> OrderedItem:
        with self._engine.connect() as conn:
            row = conn.execute(
                sql_text(f"SELECT id, parent_key, item_order, payload FROM {self.table} WHERE id = :id"),
                {"id": str(item_id)},
            ).fetchone()
        if row is None:
            raise NotFound(f"{self.entity_type} {item_id} not found")
        return self._to_item(row)

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def set_order(self, item_id: str, parent_key: str, new_order: int) -> OrderedItem:
        """Conditionally move one row to ``new_order``.

        Raises ``ConstraintViolation`` when another sibling holds the slot and
        ``NotFound`` when the row does not exist under ``parent_key``.
        """
        if int(new_order) < 0:
            raise ValueError("order must be non-negative")
        params = {"ord": int(new_order), "id": str(item_id), "pk": str(parent_key)}
        try:
            with self._engine.begin() as conn:
                res = conn.execute(
                    sql_text(f"UPDATE {self.table} SET item_order = :ord WHERE id = :id AND parent_key = :pk"),
                    params,
                )
                if res.rowcount == 0:
                    raise NotFound(f"{self.entity_type} {item_id} not found under {parent_key}")
                row = conn.execute(
                    sql_text(f"SELECT id, parent_key, item_order, payload FROM {self.table} WHERE id = :id"),
                    {"id": str(item_id)},
                ).fetchone()
        except IntegrityError as exc:
            logger.info(
                "set_order collision table=%s parent_key=%s item_id=%s order=%s",
                self.table,
                parent_key,
                item_id,
                new_order,
            )
            raise ConstraintViolation(str(parent_key), int(new_order), str(item_id)) from exc
        item = self._to_item(row)
        self._publish(ChangeKind.UPDATED, item)
        return item

    def append(self, parent_key: str, payload: Optional[Dict[str, Any]] = None, item_id: Optional[str] = None) -> OrderedItem:
        """Insert a new item at the end of the collection.

        The new order is the current sibling count. When removals left gaps
        and that slot is taken, the item lands after the current maximum.
        A concurrent append that takes the same slot is retried once with a
        fresh count; a second collision raises ``ConstraintViolation``.
        """
        new_id = str(item_id or uuid.uuid4())
        body = json.dumps(payload or {}, ensure_ascii=False)
        pk = str(parent_key)
        retried = False
        while True:
            try:
                order_value = self._insert_last(pk, new_id, body)
                break
            except ConstraintViolation:
                if retried:
                    logger.warning("append collision persisted table=%s parent_key=%s item_id=%s", self.table, pk, new_id)
                    raise
                retried = True
                logger.info("append collision retry table=%s parent_key=%s item_id=%s", self.table, pk, new_id)
        item = OrderedItem(
            id=new_id,
            entity_type=self.entity_type,
            parent_key=pk,
            order=order_value,
            payload=payload or {},
        )
        logger.info("append table=%s parent_key=%s item_id=%s order=%s", self.table, pk, new_id, order_value)
        self._publish(ChangeKind.INSERTED, item)
        return item

    def _insert_last(self, pk: str, new_id: str, body: str) -> int:
        order_value = -1
        try:
            with self._engine.begin() as conn:
                row = conn.execute(
                    sql_text(
                        f"SELECT COUNT(*), COALESCE(MAX(item_order), -1) FROM {self.table} WHERE parent_key = :pk"
                    ),
                    {"pk": pk},
                ).fetchone()
                count = int(row[0]) if row and row[0] is not None else 0
                max_order = int(row[1]) if row and row[1] is not None else -1
                occupied = conn.execute(
                    sql_text(f"SELECT 1 FROM {self.table} WHERE parent_key = :pk AND item_order = :ord"),
                    {"pk": pk, "ord": count},
                ).fetchone()
                order_value = count if occupied is None else max_order + 1
                conn.execute(
                    sql_text(
                        f"INSERT INTO {self.table} (id, parent_key, item_order, payload) VALUES (:id, :pk, :ord, :payload)"
                    ),
                    {"id": new_id, "pk": pk, "ord": order_value, "payload": body},
                )
        except IntegrityError as exc:
            raise ConstraintViolation(pk, order_value, new_id) from exc
        return order_value

    def remove(self, item_id: str) -> OrderedItem:
        """Delete one row; remaining siblings keep their orders."""
        with self._engine.begin() as conn:
            row = conn.execute(
                sql_text(f"SELECT id, parent_key, item_order, payload FROM {self.table} WHERE id = :id"),
                {"id": str(item_id)},
            ).fetchone()
            if row is None:
                raise NotFound(f"{self.entity_type} {item_id} not found")
            conn.execute(sql_text(f"DELETE FROM {self.table} WHERE id = :id"), {"id": str(item_id)})
        item = self._to_item(row)
        logger.info("remove table=%s parent_key=%s item_id=%s order=%s", self.table, item.parent_key, item.id, item.order)
        self._publish(ChangeKind.REMOVED, item)
        return item

    def _publish(self, kind: ChangeKind, item: OrderedItem) -> None:
        if self._bus is None:
            return
        self._bus.publish(ChangeEvent(kind=kind, item=item))


def is_dense(items: List[OrderedItem]) -> bool:
    """True when orders are exactly ``0..N-1`` in sequence."""
    return [i.order for i in items] == list(range(len(items)))


__all__ = ["OrderStore", "is_dense"]
