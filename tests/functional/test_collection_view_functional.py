"""Functional tests for per-observer collection views.

Scenarios:
- optimistic moves re-sort locally and clamp;
- duplicate and foreign events are no-ops;
- two sessions on the same collection converge after a reorder;
- failed reorders revert and leave a retryable notice;
- a degraded channel triggers a full resync.
"""

from __future__ import annotations

import random

import pytest

from ordersync.logic.collection_view import REORDER_FAILED_NOTICE, LocalCollectionView
from ordersync.logic.errors import ChannelDegraded, NotFound, OperationFailed
from ordersync.logic.order_store import OrderStore
from ordersync.models.ordered_item import ChangeEvent, ChangeKind, ChannelStatus, OrderedItem


def _names(view, seeded):
    by_id = {v: k for k, v in seeded.items()}
    return [by_id.get(i, i) for i in view.item_ids]


def test_apply_optimistic_reorders_locally_only(module_store, parent_key, seeded, order_of) -> None:
    view = LocalCollectionView.load(module_store, parent_key)
    snapshot = view.apply_optimistic(seeded["D"], 0)
    assert _names(view, seeded) == ["D", "A", "B", "C"]
    assert [i.order for i in snapshot] == [0, 1, 2, 3]
    assert order_of() == ["A", "B", "C", "D"]


def test_apply_optimistic_clamps_and_rejects_unknown_items(module_store, parent_key, seeded) -> None:
    view = LocalCollectionView.load(module_store, parent_key)
    view.apply_optimistic(seeded["A"], 42)
    assert _names(view, seeded) == ["B", "C", "D", "A"]
    view.apply_optimistic(seeded["A"], -3)
    assert _names(view, seeded) == ["A", "B", "C", "D"]
    with pytest.raises(NotFound):
        view.apply_optimistic("ghost", 0)


def test_updated_event_applied_twice_is_idempotent(module_store, parent_key, seeded) -> None:
    view = LocalCollectionView.load(module_store, parent_key)
    moved = module_store.get_item(seeded["A"]).model_copy(update={"order": 9})
    event = ChangeEvent(kind=ChangeKind.UPDATED, item=moved)
    view.reconcile(event)
    once = view.items
    view.reconcile(event)
    assert view.items == once
    assert _names(view, seeded) == ["B", "C", "D", "A"]


def test_inserted_and_removed_are_idempotent(module_store, parent_key, seeded) -> None:
    view = LocalCollectionView.load(module_store, parent_key)
    extra = OrderedItem(id="E", entity_type="module", parent_key=parent_key, order=4)
    assert view.reconcile(ChangeEvent(kind=ChangeKind.INSERTED, item=extra))
    assert not view.reconcile(ChangeEvent(kind=ChangeKind.INSERTED, item=extra))
    assert view.item_ids.count("E") == 1
    assert view.reconcile(ChangeEvent(kind=ChangeKind.REMOVED, item=extra))
    assert not view.reconcile(ChangeEvent(kind=ChangeKind.REMOVED, item=extra))
    # A late duplicate insert for a removed id stays removed
    assert not view.reconcile(ChangeEvent(kind=ChangeKind.INSERTED, item=extra))
    assert "E" not in view.item_ids


def test_updated_for_unknown_item_is_upserted(parent_key) -> None:
    view = LocalCollectionView("module", parent_key)
    item = OrderedItem(id="X", entity_type="module", parent_key=parent_key, order=0)
    view.reconcile(ChangeEvent(kind=ChangeKind.UPDATED, item=item))
    assert view.item_ids == ["X"]


def test_events_for_other_collections_are_ignored(parent_key) -> None:
    view = LocalCollectionView("module", parent_key)
    foreign = OrderedItem(id="X", entity_type="module", parent_key="elsewhere", order=0)
    other_type = OrderedItem(id="Y", entity_type="question", parent_key=parent_key, order=0)
    assert not view.reconcile(ChangeEvent(kind=ChangeKind.INSERTED, item=foreign))
    assert not view.reconcile(ChangeEvent(kind=ChangeKind.INSERTED, item=other_type))
    assert view.items == ()


def test_reorder_events_converge_whatever_the_interleaving(module_store, module_coordinator, parent_key, seeded, recorder) -> None:
    before = module_store.list_siblings(parent_key)
    recorder.events.clear()
    module_coordinator.reorder(seeded["B"], 3, parent_key)
    displace, settle = recorder.events[:4], recorder.events[4:]

    first = LocalCollectionView("module", parent_key, before)
    second = LocalCollectionView("module", parent_key, before)
    rng = random.Random(7)
    shuffled_displace = displace[:]
    rng.shuffle(shuffled_displace)
    shuffled_settle = settle[:]
    rng.shuffle(shuffled_settle)
    for e in displace + settle:
        first.reconcile(e)
    for e in shuffled_displace + shuffled_settle:
        second.reconcile(e)

    assert first.item_ids == second.item_ids == [i.id for i in module_store.list_siblings(parent_key)]
    assert _names(first, seeded) == ["A", "C", "D", "B"]


def test_two_sessions_converge_through_registry(runtime, module_store, module_coordinator, parent_key, seeded) -> None:
    mover = LocalCollectionView.load(module_store, parent_key)
    watcher = LocalCollectionView.load(module_store, parent_key)
    mover.bind(runtime.registry)
    watcher.bind(runtime.registry)
    assert runtime.registry.channel_count() == 1

    assert mover.move(seeded["B"], 3, module_coordinator)
    assert runtime.registry.drain()

    assert _names(watcher, seeded) == ["A", "C", "D", "B"]
    assert mover.item_ids == watcher.item_ids
    assert [i.order for i in watcher.items] == [0, 1, 2, 3]
    assert mover.notice is None

    mover.close()
    watcher.close()
    assert runtime.registry.channel_count() == 0


def test_successful_move_survives_revert_without_feed(module_store, module_coordinator, parent_key, seeded, order_of) -> None:
    view = LocalCollectionView.load(module_store, parent_key)
    assert view.move(seeded["D"], 0, module_coordinator)
    assert _names(view, seeded) == ["D", "A", "B", "C"]
    view.revert()
    assert _names(view, seeded) == order_of() == ["D", "A", "B", "C"]
    assert [i.order for i in view.items] == [0, 1, 2, 3]


def test_failed_move_reverts_and_sets_notice(module_store, parent_key, seeded) -> None:
    class FailingCoordinator:
        def reorder(self, item_id, target_index, parent_key):
            raise OperationFailed("storage unavailable")

    view = LocalCollectionView.load(module_store, parent_key)
    seen = []
    view.watch(lambda snap: seen.append([i.id for i in snap]))
    assert not view.move(seeded["D"], 0, FailingCoordinator())
    assert _names(view, seeded) == ["A", "B", "C", "D"]
    assert view.notice == REORDER_FAILED_NOTICE
    # Optimistic frame, then the reverted frame
    assert len(seen) == 2
    assert seen[0][0] == seeded["D"]
    assert seen[1][0] == seeded["A"]


def test_degraded_channel_triggers_resync(engine, runtime, module_store, parent_key, seeded) -> None:
    view = LocalCollectionView.load(module_store, parent_key)
    view.bind(runtime.registry)
    assert runtime.registry.drain()

    # Writes through a store without a bus never reach the feed
    silent = OrderStore("module", engine=engine)
    silent.remove(seeded["A"])
    silent.append(parent_key, {"title": "E"})
    assert seeded["A"] in view.item_ids

    runtime.registry.channel_for("module", parent_key).mark_degraded("test")
    assert runtime.registry.drain()
    assert view.item_ids == [i.id for i in module_store.list_siblings(parent_key)]
    assert seeded["A"] not in view.item_ids
    assert view.status is ChannelStatus.ACTIVE
    assert not view.needs_resync
    view.close()


def test_resync_without_store_reports_channel_degraded(parent_key) -> None:
    view = LocalCollectionView("module", parent_key)
    with pytest.raises(ChannelDegraded):
        view.resync()
    assert view.needs_resync


def test_degraded_status_without_store_marks_view_stale(module_store, parent_key, seeded) -> None:
    view = LocalCollectionView("module", parent_key)
    view.on_status(ChannelStatus.DEGRADED)
    assert view.status is ChannelStatus.DEGRADED
    assert view.needs_resync
    assert view.items == ()

    view.resync(module_store)
    assert not view.needs_resync
    assert _names(view, seeded) == ["A", "B", "C", "D"]


def test_watchers_can_be_removed(module_store, parent_key, seeded) -> None:
    view = LocalCollectionView.load(module_store, parent_key)
    seen = []
    unwatch = view.watch(lambda snap: seen.append(snap))
    view.apply_optimistic(seeded["B"], 0)
    unwatch()
    view.apply_optimistic(seeded["C"], 0)
    assert len(seen) == 1
