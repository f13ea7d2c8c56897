"""Reference-counted multiplexer over change feed channels.

Many observers of the same ``(entity_type, parent_key)`` share one
``ChangeFeedClient``. The client is created on the first subscription and
closed exactly when the last handle for that key is released. The handle
map and counts are guarded by a single lock; channel teardown (which joins
the delivery thread) runs outside it.

The registry is an explicit object owned by the application runtime:
``shutdown()`` closes every channel. There is no module-level instance.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ordersync.logic.change_feed import ChangeFeedClient, FeedObserver, FeedSubscription
from ordersync.logic.errors import OperationFailed
from ordersync.logic.events import ChangeBus

logger = logging.getLogger(__name__)

ChannelKey = Tuple[str, str]
ClientFactory = Callable[[ChangeBus, str, str, int], ChangeFeedClient]


def _default_factory(bus: ChangeBus, entity_type: str, parent_key: str, buffer_limit: int) -> ChangeFeedClient:
    return ChangeFeedClient(bus, entity_type, parent_key, buffer_limit=buffer_limit)


@dataclass(frozen=True)
class SubscriptionHandle:
    handle_id: int
    entity_type: str
    parent_key: str


class SubscriptionRegistry:
    def __init__(
        self,
        bus: ChangeBus,
        *,
        buffer_limit: int = 1000,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self._bus = bus
        self._buffer_limit = int(buffer_limit)
        self._factory = client_factory or _default_factory
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._channels: Dict[ChannelKey, ChangeFeedClient] = {}
        self._refcounts: Dict[ChannelKey, int] = {}
        self._handles: Dict[int, Tuple[ChannelKey, FeedSubscription]] = {}
        self._closed = False

    def subscribe(self, entity_type: str, parent_key: str, observer: FeedObserver) -> SubscriptionHandle:
        key = (str(entity_type), str(parent_key))
        with self._lock:
            if self._closed:
                raise OperationFailed("subscription registry is shut down")
            client = self._channels.get(key)
            if client is None:
                client = self._factory(self._bus, key[0], key[1], self._buffer_limit)
                client.connect()
                self._channels[key] = client
                logger.info("registry_channel_open entity_type=%s parent_key=%s", key[0], key[1])
            sub = client.subscribe(observer)
            self._refcounts[key] = self._refcounts.get(key, 0) + 1
            handle = SubscriptionHandle(next(self._ids), key[0], key[1])
            self._handles[handle.handle_id] = (key, sub)
            count = self._refcounts[key]
        logger.info(
            "registry_subscribe entity_type=%s parent_key=%s handle=%s refcount=%s",
            key[0],
            key[1],
            handle.handle_id,
            count,
        )
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Release ``handle``; False when it was already released."""
        to_close: Optional[ChangeFeedClient] = None
        with self._lock:
            entry = self._handles.pop(handle.handle_id, None)
            if entry is None:
                return False
            key, sub = entry
            sub.cancel()
            remaining = self._refcounts.get(key, 1) - 1
            if remaining <= 0:
                self._refcounts.pop(key, None)
                to_close = self._channels.pop(key, None)
            else:
                self._refcounts[key] = remaining
        logger.info(
            "registry_unsubscribe entity_type=%s parent_key=%s handle=%s refcount=%s",
            key[0],
            key[1],
            handle.handle_id,
            max(remaining, 0),
        )
        if to_close is not None:
            to_close.close()
            logger.info("registry_channel_close entity_type=%s parent_key=%s", key[0], key[1])
        return True

    def channel_for(self, entity_type: str, parent_key: str) -> Optional[ChangeFeedClient]:
        with self._lock:
            return self._channels.get((str(entity_type), str(parent_key)))

    def channel_count(self) -> int:
        with self._lock:
            return len(self._channels)

    def subscriber_count(self, entity_type: str, parent_key: str) -> int:
        with self._lock:
            return self._refcounts.get((str(entity_type), str(parent_key)), 0)

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait until every open channel has delivered its backlog."""
        with self._lock:
            clients: List[ChangeFeedClient] = list(self._channels.values())
        return all(c.drain(timeout) for c in clients)

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            clients = list(self._channels.values())
            self._channels.clear()
            self._refcounts.clear()
            self._handles.clear()
        for client in clients:
            client.close()
        logger.info("registry_shutdown channels_closed=%s", len(clients))


__all__ = ["SubscriptionRegistry", "SubscriptionHandle", "ClientFactory"]
