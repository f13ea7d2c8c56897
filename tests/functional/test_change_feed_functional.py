"""Functional tests for the change feed client.

Delivery happens on the client's worker thread; tests call ``drain`` before
asserting so results do not depend on thread timing.
"""

from __future__ import annotations

import threading
import time

import pytest

from ordersync.logic.change_feed import ChangeFeedClient
from ordersync.logic.errors import OperationFailed
from ordersync.models.ordered_item import ChangeKind, ChannelStatus


class RecordingObserver:
    def __init__(self, gate: threading.Event | None = None) -> None:
        self.events = []
        self.statuses = []
        self.threads = set()
        self._gate = gate

    def on_event(self, event) -> None:
        self.threads.add(threading.current_thread().name)
        if self._gate is not None:
            self._gate.wait(5)
        self.events.append(event)

    def on_status(self, status) -> None:
        self.statuses.append(status)


def transitions(statuses):
    out = []
    for s in statuses:
        if not out or out[-1] is not s:
            out.append(s)
    return out


@pytest.fixture()
def client(runtime, parent_key):
    c = ChangeFeedClient(runtime.bus, "module", parent_key, buffer_limit=50)
    yield c
    c.close()


def test_status_lifecycle_connecting_active_closed(client) -> None:
    obs = RecordingObserver()
    client.subscribe(obs)
    client.connect()
    assert client.drain()
    assert client.status is ChannelStatus.ACTIVE
    client.close()
    assert transitions(obs.statuses) == [ChannelStatus.CONNECTING, ChannelStatus.ACTIVE, ChannelStatus.CLOSED]
    assert client.status is ChannelStatus.CLOSED


def test_events_delivered_in_publish_order_on_worker_thread(client, module_store, parent_key) -> None:
    obs = RecordingObserver()
    client.connect()
    client.subscribe(obs)
    a = module_store.append(parent_key, {"title": "A"})
    module_store.set_order(a.id, parent_key, 5)
    module_store.remove(a.id)
    assert client.drain()
    assert [e.kind for e in obs.events] == [ChangeKind.INSERTED, ChangeKind.UPDATED, ChangeKind.REMOVED]
    assert obs.threads == {client.name}


def test_events_for_other_parents_are_filtered_out(client, module_store, parent_key) -> None:
    obs = RecordingObserver()
    client.connect()
    client.subscribe(obs)
    module_store.append(f"{parent_key}-other", {"title": "X"})
    assert client.drain()
    assert obs.events == []


def test_cancelled_subscription_receives_nothing_further(client, module_store, parent_key) -> None:
    obs = RecordingObserver()
    client.connect()
    sub = client.subscribe(obs)
    module_store.append(parent_key, {"title": "A"})
    assert client.drain()
    sub.cancel()
    assert not sub.active
    module_store.append(parent_key, {"title": "B"})
    assert client.drain()
    assert len(obs.events) == 1


def test_close_stops_listening_on_the_bus(runtime, client, parent_key) -> None:
    client.connect()
    assert runtime.bus.listener_count("module", parent_key) == 1
    client.close()
    assert runtime.bus.listener_count("module", parent_key) == 0
    with pytest.raises(OperationFailed):
        client.subscribe(RecordingObserver())
    with pytest.raises(OperationFailed):
        client.connect()


def test_buffer_overflow_degrades_then_recovers(runtime, module_store, parent_key) -> None:
    gate = threading.Event()
    small = ChangeFeedClient(runtime.bus, "module", parent_key, buffer_limit=2)
    obs = RecordingObserver(gate=gate)
    try:
        small.connect()
        small.subscribe(obs)
        assert small.drain()
        first = module_store.append(parent_key, {"title": "A"})
        # Wait until the worker is blocked inside on_event for the first event
        for _ in range(100):
            if obs.threads:
                break
            time.sleep(0.01)
        for n in range(4):
            module_store.set_order(first.id, parent_key, 10 + n)
        assert small.status is ChannelStatus.DEGRADED
        gate.set()
        assert small.drain()
    finally:
        gate.set()
        small.close()
    assert [e.kind for e in obs.events][0] is ChangeKind.INSERTED
    assert len(obs.events) < 5
    assert ChannelStatus.DEGRADED in obs.statuses
    degraded_at = obs.statuses.index(ChannelStatus.DEGRADED)
    assert ChannelStatus.ACTIVE in obs.statuses[degraded_at:]


def test_mark_degraded_notifies_and_returns_to_active(client) -> None:
    obs = RecordingObserver()
    client.connect()
    client.subscribe(obs)
    assert client.drain()
    client.mark_degraded("transport_reset")
    assert client.drain()
    assert transitions(obs.statuses)[-2:] == [ChannelStatus.DEGRADED, ChannelStatus.ACTIVE]
    assert client.status is ChannelStatus.ACTIVE


def test_failing_observer_does_not_block_others(client, module_store, parent_key) -> None:
    class Broken:
        def on_event(self, event) -> None:
            raise RuntimeError("render failed")

        def on_status(self, status) -> None:
            pass

    good = RecordingObserver()
    client.connect()
    client.subscribe(Broken())
    client.subscribe(good)
    module_store.append(parent_key, {"title": "A"})
    assert client.drain()
    assert len(good.events) == 1
