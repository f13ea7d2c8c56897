"""Two-phase sibling reindexing.

The unique index on ``(parent_key, item_order)`` forbids writing an item into
a slot another sibling still holds, so a move is persisted in two passes:

- Phase A (displace): every sibling, in current order, is parked at
  ``base + i`` where ``base`` is above every final and every current order.
- Phase B (settle): every item, in target order, is written to its final
  index ``0..N-1``.

Each write is its own transaction. A ``ConstraintViolation`` on a write is
retried once; a second one, any other failure, or an expired deadline
aborts with ``OperationFailed``. An aborted reorder can leave the collection
parked in the offset range until the next successful reorder or an explicit
``compact``.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from ordersync.logic.errors import ConstraintViolation, NotFound, OperationFailed
from ordersync.logic.order_store import OrderStore, is_dense
from ordersync.models.ordered_item import OrderedItem

logger = logging.getLogger(__name__)

DEFAULT_OFFSET = 10_000


def clamp_index(index: int, size: int) -> int:
    """Clamp ``index`` into ``[0, size - 1]`` (0 for empty collections)."""
    if size <= 0:
        return 0
    return max(0, min(int(index), size - 1))


class ReorderCoordinator:
    def __init__(
        self,
        store: OrderStore,
        *,
        offset: int = DEFAULT_OFFSET,
        timeout_seconds: float = 8.0,
        serialize: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.offset = int(offset)
        self.timeout_seconds = float(timeout_seconds)
        self.serialize = bool(serialize)
        self._clock = clock
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    @contextmanager
    def _parent_guard(self, parent_key: str) -> Iterator[None]:
        """Advisory per-collection mutex (process-local)."""
        if not self.serialize:
            yield
            return
        with self._locks_guard:
            lock = self._locks.setdefault(str(parent_key), threading.RLock())
        with lock:
            yield

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    def reorder(self, item_id: str, target_index: int, parent_key: str) -> List[OrderedItem]:
        """Move ``item_id`` to ``target_index`` and return the settled siblings.

        Returns the unchanged sibling list without writing when the clamped
        target equals the current index.
        """
        deadline = self._clock() + self.timeout_seconds
        with self._parent_guard(parent_key):
            return self._move(item_id, target_index, str(parent_key), deadline)

    def insert(self, parent_key: str, payload: Optional[Dict[str, Any]] = None, position: Optional[int] = None) -> OrderedItem:
        """Append a new item, then move it to ``position`` when one is given."""
        deadline = self._clock() + self.timeout_seconds
        with self._parent_guard(parent_key):
            try:
                item = self.store.append(str(parent_key), payload)
            except ConstraintViolation as exc:
                raise OperationFailed(f"append to {parent_key} kept colliding") from exc
            if position is None:
                return item
            settled = self._move(item.id, int(position), str(parent_key), deadline)
        for s in settled:
            if s.id == item.id:
                return s
        return item

    def compact(self, parent_key: str) -> List[OrderedItem]:
        """Re-densify a collection to ``0..N-1`` keeping its current sequence."""
        deadline = self._clock() + self.timeout_seconds
        with self._parent_guard(parent_key):
            siblings = self.store.list_siblings(str(parent_key))
            if is_dense(siblings):
                return siblings
            logger.info(
                "compact parent_key=%s orders_before=%s",
                parent_key,
                [s.order for s in siblings],
            )
            return self._reindex(str(parent_key), siblings, [s.id for s in siblings], deadline)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _move(self, item_id: str, target_index: int, parent_key: str, deadline: float) -> List[OrderedItem]:
        siblings = self.store.list_siblings(parent_key)
        ids = [s.id for s in siblings]
        if str(item_id) not in ids:
            raise NotFound(f"{self.store.entity_type} {item_id} not found under {parent_key}")
        current = ids.index(str(item_id))
        target = clamp_index(target_index, len(ids))
        if target == current:
            logger.info(
                "reorder noop parent_key=%s item_id=%s index=%s",
                parent_key,
                item_id,
                current,
            )
            return siblings
        permutation = list(ids)
        permutation.pop(current)
        permutation.insert(target, str(item_id))
        logger.info(
            "reorder parent_key=%s item_id=%s from=%s to=%s requested=%s before=%s after=%s",
            parent_key,
            item_id,
            current,
            target,
            target_index,
            ids,
            permutation,
        )
        return self._reindex(parent_key, siblings, permutation, deadline)

    def _reindex(
        self,
        parent_key: str,
        siblings: List[OrderedItem],
        permutation: List[str],
        deadline: float,
    ) -> List[OrderedItem]:
        # Park above every current order so Phase A never lands on a sibling
        base = max([self.offset] + [s.order + 1 for s in siblings])
        try:
            for i, sibling in enumerate(siblings):
                self._write(sibling.id, parent_key, base + i, deadline, phase="displace")
            settled = [
                self._write(item_id, parent_key, j, deadline, phase="settle")
                for j, item_id in enumerate(permutation)
            ]
        except OperationFailed:
            raise
        except Exception as exc:
            logger.error("reorder aborted parent_key=%s", parent_key, exc_info=True)
            raise OperationFailed(f"reorder of {parent_key} aborted: {exc}") from exc
        return settled

    def _write(self, item_id: str, parent_key: str, order: int, deadline: float, *, phase: str) -> OrderedItem:
        retried = False
        while True:
            if self._clock() > deadline:
                logger.error(
                    "reorder timeout parent_key=%s phase=%s item_id=%s",
                    parent_key,
                    phase,
                    item_id,
                )
                raise OperationFailed(f"reorder of {parent_key} timed out during {phase}")
            try:
                return self.store.set_order(item_id, parent_key, order)
            except ConstraintViolation as exc:
                if retried:
                    logger.error(
                        "reorder collision persisted parent_key=%s phase=%s item_id=%s order=%s",
                        parent_key,
                        phase,
                        item_id,
                        order,
                    )
                    raise OperationFailed(f"order {order} still occupied under {parent_key}") from exc
                retried = True
                logger.warning(
                    "reorder collision retry parent_key=%s phase=%s item_id=%s order=%s",
                    parent_key,
                    phase,
                    item_id,
                    order,
                )


__all__ = ["ReorderCoordinator", "clamp_index", "DEFAULT_OFFSET"]
