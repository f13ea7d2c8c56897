"""Change feed client: one push channel per ``(entity_type, parent_key)``.

The client listens on the change bus, buffers events in a bounded queue and
delivers them to its observers on a dedicated worker thread, preserving
publish order. Delivery is at-least-once from the consumer's point of view:
observers must treat duplicates as no-ops.

Status transitions are delivered through the same queue as events:
``Connecting -> Active -> Degraded -> Active ... -> Closed``. ``Degraded``
is raised when the buffer overflowed or the transport was interrupted; the
buffered backlog is discarded at that point and observers are expected to
resync from the store.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Protocol, Tuple

from ordersync.logic.errors import OperationFailed
from ordersync.logic.events import ChangeBus
from ordersync.models.ordered_item import ChangeEvent, ChannelStatus

logger = logging.getLogger(__name__)


class FeedObserver(Protocol):
    def on_event(self, event: ChangeEvent) -> None: ...

    def on_status(self, status: ChannelStatus) -> None: ...


class FeedSubscription:
    """Cancellation handle returned by ``ChangeFeedClient.subscribe``."""

    def __init__(self, client: "ChangeFeedClient", token: int) -> None:
        self._client = client
        self.token = token

    @property
    def active(self) -> bool:
        return self._client._is_subscribed(self.token)

    def cancel(self) -> None:
        self._client._cancel(self.token)


# Queue entries: (kind, payload, target observer token or None for broadcast)
_Entry = Tuple[str, object, Optional[int]]


class ChangeFeedClient:
    def __init__(
        self,
        bus: ChangeBus,
        entity_type: str,
        parent_key: str,
        *,
        buffer_limit: int = 1000,
    ) -> None:
        self.entity_type = str(entity_type)
        self.parent_key = str(parent_key)
        self.buffer_limit = int(buffer_limit)
        self._bus = bus
        self._cond = threading.Condition()
        self._queue: Deque[_Entry] = deque()
        self._observers: Dict[int, FeedObserver] = {}
        self._tokens = itertools.count(1)
        self._status = ChannelStatus.CONNECTING
        self._bus_token: Optional[int] = None
        self._worker: Optional[threading.Thread] = None
        self._busy = False
        self._stopping = False

    @property
    def name(self) -> str:
        return f"feed-{self.entity_type}-{self.parent_key}"

    @property
    def status(self) -> ChannelStatus:
        with self._cond:
            return self._status

    @property
    def observer_count(self) -> int:
        with self._cond:
            return len(self._observers)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open the channel: register on the bus and start delivery."""
        with self._cond:
            if self._status is ChannelStatus.CLOSED:
                raise OperationFailed(f"channel {self.name} is closed")
            if self._worker is not None:
                return
            self._enqueue_status(ChannelStatus.CONNECTING)
            self._worker = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._worker.start()
        self._bus_token = self._bus.listen(self.entity_type, self.parent_key, self._on_bus_event)
        with self._cond:
            if self._status is ChannelStatus.CONNECTING:
                self._status = ChannelStatus.ACTIVE
                self._enqueue_status(ChannelStatus.ACTIVE)
        logger.info("feed_connect channel=%s", self.name)

    def close(self, timeout: float = 5.0) -> None:
        """Stop listening, deliver ``Closed`` after the backlog, stop the worker."""
        with self._cond:
            if self._status is ChannelStatus.CLOSED:
                return
            self._status = ChannelStatus.CLOSED
            self._enqueue_status(ChannelStatus.CLOSED)
            self._stopping = True
            self._cond.notify_all()
            worker = self._worker
        if self._bus_token is not None:
            self._bus.unlisten(self._bus_token)
            self._bus_token = None
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)
        logger.info("feed_close channel=%s", self.name)

    def subscribe(self, observer: FeedObserver) -> FeedSubscription:
        """Attach ``observer``; it first receives the current channel status."""
        with self._cond:
            if self._status is ChannelStatus.CLOSED:
                raise OperationFailed(f"channel {self.name} is closed")
            token = next(self._tokens)
            self._observers[token] = observer
            self._queue.append(("status", self._status, token))
            self._cond.notify_all()
        return FeedSubscription(self, token)

    def mark_degraded(self, reason: str = "interrupted") -> None:
        """Report a delivery gap; the backlog is dropped and observers resync."""
        with self._cond:
            self._degrade_locked(reason)

    def drain(self, timeout: float = 5.0) -> bool:
        """Block until every buffered entry has been delivered."""
        if self._worker is threading.current_thread():
            return True
        with self._cond:
            return self._cond.wait_for(lambda: not self._queue and not self._busy, timeout)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _is_subscribed(self, token: int) -> bool:
        with self._cond:
            return token in self._observers

    def _cancel(self, token: int) -> None:
        with self._cond:
            self._observers.pop(token, None)

    def _enqueue_status(self, status: ChannelStatus) -> None:
        self._queue.append(("status", status, None))
        self._cond.notify_all()

    def _degrade_locked(self, reason: str) -> None:
        if self._status is ChannelStatus.CLOSED:
            return
        dropped = sum(1 for kind, _, _ in self._queue if kind == "event")
        self._queue = deque(e for e in self._queue if e[0] != "event")
        self._status = ChannelStatus.DEGRADED
        if not self._degraded_pending():
            self._enqueue_status(ChannelStatus.DEGRADED)
        logger.warning("feed_degraded channel=%s reason=%s dropped=%s", self.name, reason, dropped)

    def _degraded_pending(self) -> bool:
        return any(kind == "status" and payload is ChannelStatus.DEGRADED for kind, payload, _ in self._queue)

    def _on_bus_event(self, event: ChangeEvent) -> None:
        with self._cond:
            if self._status is ChannelStatus.CLOSED:
                return
            pending = sum(1 for kind, _, _ in self._queue if kind == "event")
            if pending >= self.buffer_limit:
                self._degrade_locked("buffer_overflow")
                return
            self._queue.append(("event", event, None))
            self._cond.notify_all()

    def _targets(self, target: Optional[int]) -> List[Tuple[int, FeedObserver]]:
        if target is None:
            return list(self._observers.items())
        obs = self._observers.get(target)
        return [(target, obs)] if obs is not None else []

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._stopping:
                    self._busy = False
                    self._cond.notify_all()
                    self._cond.wait()
                if not self._queue:
                    self._busy = False
                    self._cond.notify_all()
                    return
                kind, payload, target = self._queue.popleft()
                self._busy = True
                targets = self._targets(target)
            self._deliver(kind, payload, targets)
            if kind == "status" and payload is ChannelStatus.DEGRADED:
                with self._cond:
                    if self._status is ChannelStatus.DEGRADED and not self._degraded_pending():
                        self._status = ChannelStatus.ACTIVE
                        self._enqueue_status(ChannelStatus.ACTIVE)

    def _deliver(self, kind: str, payload: object, targets: List[Tuple[int, FeedObserver]]) -> None:
        for token, observer in targets:
            if not self._is_subscribed(token):
                continue
            try:
                if kind == "event":
                    observer.on_event(payload)  # type: ignore[arg-type]
                else:
                    observer.on_status(payload)  # type: ignore[arg-type]
            except Exception:
                logger.error(
                    "feed_observer_failed channel=%s kind=%s",
                    self.name,
                    kind,
                    exc_info=True,
                )


__all__ = ["ChangeFeedClient", "FeedObserver", "FeedSubscription"]
