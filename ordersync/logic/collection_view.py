"""Per-observer ordered sequence with optimistic edits and reconciliation.

A view keeps two things for one ``(entity_type, parent_key)``:

- the confirmed items, built only from store reads and change events;
- the displayed sequence, which optimistic moves may rearrange ahead of
  confirmation.

Every reconciled event rebuilds the display from the confirmed items sorted
by ``(order, id)``, so the display may briefly show Phase A offsets while a
reorder is in flight. Once all events of a reorder have arrived the display
equals the store order whatever the arrival order was.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from ordersync.logic.errors import ChannelDegraded, NotFound, OperationFailed
from ordersync.logic.order_store import OrderStore
from ordersync.logic.reorder import ReorderCoordinator, clamp_index
from ordersync.logic.subscriptions import SubscriptionHandle, SubscriptionRegistry
from ordersync.models.ordered_item import ChangeEvent, ChangeKind, ChannelStatus, OrderedItem

logger = logging.getLogger(__name__)

Watcher = Callable[[Tuple[OrderedItem, ...]], None]

REORDER_FAILED_NOTICE = "Could not save the new order. The previous order was restored; please try again."


def _sort_key(item: OrderedItem) -> Tuple[int, str]:
    return (item.order, item.id)


class LocalCollectionView:
    def __init__(
        self,
        entity_type: str,
        parent_key: str,
        initial: Iterable[OrderedItem] = (),
        *,
        store: Optional[OrderStore] = None,
    ) -> None:
        self.entity_type = str(entity_type)
        self.parent_key = str(parent_key)
        self.status: Optional[ChannelStatus] = None
        self.notice: Optional[str] = None
        self.needs_resync = False
        self._store = store
        self._lock = threading.RLock()
        self._confirmed: Dict[str, OrderedItem] = {i.id: i for i in initial}
        self._removed: Set[str] = set()
        self._display: List[OrderedItem] = []
        self._watchers: List[Watcher] = []
        self._registry: Optional[SubscriptionRegistry] = None
        self._handle: Optional[SubscriptionHandle] = None
        self._rebuild()

    @classmethod
    def load(cls, store: OrderStore, parent_key: str) -> "LocalCollectionView":
        return cls(store.entity_type, parent_key, store.list_siblings(parent_key), store=store)

    # ------------------------------------------------------------------
    # observable sequence
    # ------------------------------------------------------------------

    @property
    def items(self) -> Tuple[OrderedItem, ...]:
        with self._lock:
            return tuple(self._display)

    @property
    def item_ids(self) -> List[str]:
        return [i.id for i in self.items]

    def watch(self, callback: Watcher) -> Callable[[], None]:
        """Register a render callback; returns a function that removes it."""
        with self._lock:
            self._watchers.append(callback)

        def _unwatch() -> None:
            with self._lock:
                if callback in self._watchers:
                    self._watchers.remove(callback)

        return _unwatch

    def _notify(self, snapshot: Tuple[OrderedItem, ...]) -> None:
        with self._lock:
            watchers = list(self._watchers)
        for cb in watchers:
            try:
                cb(snapshot)
            except Exception:
                logger.error("view_watcher_failed parent_key=%s", self.parent_key, exc_info=True)

    def _rebuild(self) -> Tuple[OrderedItem, ...]:
        self._display = sorted(self._confirmed.values(), key=_sort_key)
        return tuple(self._display)

    # ------------------------------------------------------------------
    # channel binding
    # ------------------------------------------------------------------

    def bind(self, registry: SubscriptionRegistry) -> SubscriptionHandle:
        with self._lock:
            if self._handle is not None:
                return self._handle
        handle = registry.subscribe(self.entity_type, self.parent_key, self)
        with self._lock:
            self._registry = registry
            self._handle = handle
        return handle

    def close(self) -> None:
        with self._lock:
            registry, handle = self._registry, self._handle
            self._registry = None
            self._handle = None
        if registry is not None and handle is not None:
            registry.unsubscribe(handle)

    def on_event(self, event: ChangeEvent) -> None:
        self.reconcile(event)

    def on_status(self, status: ChannelStatus) -> None:
        with self._lock:
            self.status = status
        if status is not ChannelStatus.DEGRADED:
            return
        logger.info("view_resync parent_key=%s reason=degraded", self.parent_key)
        try:
            self.resync()
        except ChannelDegraded as exc:
            # Stays stale until a later resync(store) succeeds
            logger.warning("view_resync_unavailable parent_key=%s code=%s detail=%s", self.parent_key, exc.code, exc)

    # ------------------------------------------------------------------
    # local edits and reconciliation
    # ------------------------------------------------------------------

    def apply_optimistic(self, item_id: str, target_index: int) -> Tuple[OrderedItem, ...]:
        """Move ``item_id`` locally, before the store confirms it."""
        with self._lock:
            ids = [i.id for i in self._display]
            if str(item_id) not in ids:
                raise NotFound(f"{item_id} is not in view {self.parent_key}")
            current = ids.index(str(item_id))
            target = clamp_index(target_index, len(ids))
            if target == current:
                return tuple(self._display)
            moved = self._display.pop(current)
            self._display.insert(target, moved)
            self._display = [item.model_copy(update={"order": idx}) for idx, item in enumerate(self._display)]
            snapshot = tuple(self._display)
        self._notify(snapshot)
        return snapshot

    def reconcile(self, event: ChangeEvent) -> bool:
        """Merge one authoritative event; returns True when state changed."""
        if event.entity_type != self.entity_type or event.parent_key != self.parent_key:
            return False
        item = event.item
        with self._lock:
            if event.kind is ChangeKind.INSERTED:
                if item.id in self._confirmed or item.id in self._removed:
                    return False
                self._confirmed[item.id] = item
            elif event.kind is ChangeKind.UPDATED:
                if item.id in self._removed:
                    return False
                # Upsert: a missed Inserted must not hide the row
                self._confirmed[item.id] = item
            elif event.kind is ChangeKind.REMOVED:
                if item.id not in self._confirmed:
                    self._removed.add(item.id)
                    return False
                del self._confirmed[item.id]
                self._removed.add(item.id)
            snapshot = self._rebuild()
        self._notify(snapshot)
        return True

    def revert(self) -> Tuple[OrderedItem, ...]:
        """Drop optimistic state and show the last confirmed sequence."""
        with self._lock:
            snapshot = self._rebuild()
        self._notify(snapshot)
        return snapshot

    def resync(self, store: Optional[OrderStore] = None) -> Tuple[OrderedItem, ...]:
        """Replace confirmed state with a full read from the store.

        Raises ``ChannelDegraded`` when no store is available; the view then
        reports ``needs_resync`` until a later call succeeds.
        """
        source = store or self._store
        if source is None:
            with self._lock:
                self.needs_resync = True
            raise ChannelDegraded(f"view {self.parent_key} may have missed events and has no store to resync from")
        fresh = source.list_siblings(self.parent_key)
        with self._lock:
            self.needs_resync = False
            self._confirmed = {i.id: i for i in fresh}
            snapshot = self._rebuild()
        self._notify(snapshot)
        return snapshot

    def move(self, item_id: str, target_index: int, coordinator: ReorderCoordinator) -> bool:
        """Optimistically move ``item_id`` and persist it.

        On failure the confirmed order is restored and ``notice`` carries a
        retryable message; returns False in that case.
        """
        self.apply_optimistic(item_id, target_index)
        try:
            settled = coordinator.reorder(item_id, target_index, self.parent_key)
        except (OperationFailed, NotFound):
            logger.warning(
                "view_move_failed parent_key=%s item_id=%s target=%s",
                self.parent_key,
                item_id,
                target_index,
                exc_info=True,
            )
            self.notice = REORDER_FAILED_NOTICE
            self.revert()
            return False
        with self._lock:
            self.notice = None
            # Settled rows are authoritative even before their events arrive
            for item in settled:
                if item.id not in self._removed:
                    self._confirmed[item.id] = item
            snapshot = self._rebuild()
        self._notify(snapshot)
        return True


__all__ = ["LocalCollectionView", "REORDER_FAILED_NOTICE"]
