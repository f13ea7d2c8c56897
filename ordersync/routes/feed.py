"""WebSocket push channel for one ordered collection.

Each connected session becomes one observer on the shared subscription
registry. The first message is a ``snapshot`` of the collection; after that
the socket carries ``event`` messages and ``status`` messages for
``Degraded``/``Closed``. A session may send the text ``resync`` to receive a
fresh snapshot (clients do so after ``Degraded``).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from ordersync.logic.order_store import OrderStore
from ordersync.models.ordered_item import ChangeEvent, ChannelStatus
from ordersync.models.entity_type import ENTITY_TABLES

router = APIRouter(prefix="/collections")
logger = logging.getLogger(__name__)

# Status transitions forwarded to sessions; Connecting/Active stay server-side
_FORWARDED_STATUSES = {ChannelStatus.DEGRADED, ChannelStatus.CLOSED}


class _SocketObserver:
    """Bridges feed worker-thread callbacks onto the socket's event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, outbox: "asyncio.Queue[Dict[str, Any]]") -> None:
        self._loop = loop
        self._outbox = outbox

    def _post(self, message: Dict[str, Any]) -> None:
        try:
            self._loop.call_soon_threadsafe(self._outbox.put_nowait, message)
        except RuntimeError:
            # Loop already closed: the session is gone
            logger.debug("feed_socket_post_after_close kind=%s", message.get("type"))

    def on_event(self, event: ChangeEvent) -> None:
        self._post({"type": "event", **event.to_wire()})

    def on_status(self, status: ChannelStatus) -> None:
        if status in _FORWARDED_STATUSES:
            self._post({"type": "status", "status": status.value})


async def _snapshot(store: OrderStore, parent_key: str) -> Dict[str, Any]:
    items = await run_in_threadpool(store.list_siblings, parent_key)
    return {
        "type": "snapshot",
        "entity_type": store.entity_type,
        "parent_key": parent_key,
        "items": [i.model_dump() for i in items],
    }


async def _pump_inbound(websocket: WebSocket, store: OrderStore, parent_key: str, outbox: "asyncio.Queue[Dict[str, Any]]") -> None:
    try:
        while True:
            text = await websocket.receive_text()
            if text.strip().lower() == "resync":
                await outbox.put(await _snapshot(store, parent_key))
    except WebSocketDisconnect:
        return


@router.websocket("/{entity_type}/{parent_key}/feed")
async def collection_feed(websocket: WebSocket, entity_type: str, parent_key: str) -> None:
    runtime = websocket.app.state.runtime
    if entity_type not in ENTITY_TABLES:
        await websocket.close(code=4404)
        return
    store = runtime.store(entity_type)
    await websocket.accept()
    outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    observer = _SocketObserver(asyncio.get_running_loop(), outbox)
    # Subscribe before reading so no write between snapshot and feed is missed
    handle = runtime.registry.subscribe(entity_type, parent_key, observer)
    logger.info("feed_session_open entity_type=%s parent_key=%s handle=%s", entity_type, parent_key, handle.handle_id)
    inbound = asyncio.create_task(_pump_inbound(websocket, store, parent_key, outbox))
    try:
        await websocket.send_json(await _snapshot(store, parent_key))
        while True:
            getter = asyncio.create_task(outbox.get())
            done, _ = await asyncio.wait({getter, inbound}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result())
    except WebSocketDisconnect:
        pass
    finally:
        inbound.cancel()
        await run_in_threadpool(runtime.registry.unsubscribe, handle)
        logger.info("feed_session_close entity_type=%s parent_key=%s handle=%s", entity_type, parent_key, handle.handle_id)


__all__ = ["router"]
