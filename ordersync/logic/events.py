"""Change bus: the store's mutation notification channel.

Every successful write in ``OrderStore`` publishes one ``ChangeEvent``
here. Listeners register with an equality filter on
``(entity_type, parent_key)`` and are invoked synchronously on the
publishing thread, so they must only enqueue work (``ChangeFeedClient``
does exactly that).
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, Dict, Tuple

from ordersync.models.ordered_item import ChangeEvent

logger = logging.getLogger(__name__)

Listener = Callable[[ChangeEvent], None]


class ChangeBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        self._listeners: Dict[Tuple[str, str], Dict[int, Listener]] = {}
        self._token_keys: Dict[int, Tuple[str, str]] = {}

    def listen(self, entity_type: str, parent_key: str, listener: Listener) -> int:
        """Register ``listener`` for one collection and return its token."""
        key = (str(entity_type), str(parent_key))
        with self._lock:
            token = next(self._tokens)
            self._listeners.setdefault(key, {})[token] = listener
            self._token_keys[token] = key
        return token

    def unlisten(self, token: int) -> None:
        with self._lock:
            key = self._token_keys.pop(token, None)
            if key is None:
                return
            bucket = self._listeners.get(key, {})
            bucket.pop(token, None)
            if not bucket:
                self._listeners.pop(key, None)

    def listener_count(self, entity_type: str, parent_key: str) -> int:
        with self._lock:
            return len(self._listeners.get((str(entity_type), str(parent_key)), {}))

    def publish(self, event: ChangeEvent) -> None:
        """Publish a change event to every listener of its collection."""
        logger.debug(
            "event_publish kind=%s entity_type=%s parent_key=%s item_id=%s order=%s",
            event.kind.value,
            event.entity_type,
            event.parent_key,
            event.item.id,
            event.item.order,
        )
        with self._lock:
            targets = list(self._listeners.get((event.entity_type, event.parent_key), {}).values())
        for listener in targets:
            try:
                listener(event)
            except Exception:
                # Isolate listener failures
                logger.error(
                    "event_listener_failed parent_key=%s item_id=%s",
                    event.parent_key,
                    event.item.id,
                    exc_info=True,
                )


__all__ = ["ChangeBus", "Listener"]
