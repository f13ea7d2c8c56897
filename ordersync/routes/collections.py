"""Ordered collection routes.

The parent application mounts this router under '/api/v1', so paths resolve
to '/api/v1/collections/{entity_type}/{parent_key}/...'. Handlers are plain
functions (run in the threadpool) because the store and coordinator block on
the database. Ordering errors propagate to the problem+json handlers.
"""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from ordersync.logic.errors import NotFound
from ordersync.logic.runtime import Runtime
from ordersync.models.ordered_item import ItemCreate, OrderedItem, PositionUpdate

router = APIRouter(prefix="/collections")
logger = logging.getLogger(__name__)


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _items_body(entity_type: str, parent_key: str, items: List[OrderedItem]) -> dict:
    return {
        "entity_type": entity_type,
        "parent_key": parent_key,
        "items": [i.model_dump() for i in items],
    }


@router.get("/{entity_type}/{parent_key}/items")
def list_items(entity_type: str, parent_key: str, request: Request) -> JSONResponse:
    store = _runtime(request).store(entity_type)
    return JSONResponse(_items_body(entity_type, parent_key, store.list_siblings(parent_key)))


@router.post("/{entity_type}/{parent_key}/items", status_code=201)
def create_item(entity_type: str, parent_key: str, body: ItemCreate, request: Request) -> JSONResponse:
    """Append a new item, or insert it at ``position`` when provided.

    Both paths run under the coordinator's per-collection guard.
    """
    item = _runtime(request).coordinator(entity_type).insert(parent_key, body.payload, body.position)
    logger.info(
        "create_item.result entity_type=%s parent_key=%s item_id=%s order=%s",
        entity_type,
        parent_key,
        item.id,
        item.order,
    )
    return JSONResponse(item.model_dump(), status_code=201)


@router.patch("/{entity_type}/{parent_key}/items/{item_id}/position")
def update_item_position(
    entity_type: str,
    parent_key: str,
    item_id: str,
    body: PositionUpdate,
    request: Request,
) -> JSONResponse:
    settled = _runtime(request).coordinator(entity_type).reorder(item_id, body.target_index, parent_key)
    order = next((i.order for i in settled if i.id == item_id), None)
    logger.info(
        "update_item_position.result entity_type=%s parent_key=%s item_id=%s target_index=%s final_order=%s",
        entity_type,
        parent_key,
        item_id,
        body.target_index,
        order,
    )
    resp = _items_body(entity_type, parent_key, settled)
    resp["item_id"] = item_id
    resp["order"] = order
    return JSONResponse(resp)


@router.delete("/{entity_type}/{parent_key}/items/{item_id}", status_code=204)
def delete_item(entity_type: str, parent_key: str, item_id: str, request: Request) -> Response:
    store = _runtime(request).store(entity_type)
    # Scope check: the id must belong to this collection
    item = store.get_item(item_id)
    if item.parent_key != parent_key:
        raise NotFound(f"{entity_type} {item_id} not found under {parent_key}")
    store.remove(item_id)
    return Response(status_code=204)


@router.post("/{entity_type}/{parent_key}/compact")
def compact_collection(entity_type: str, parent_key: str, request: Request) -> JSONResponse:
    settled = _runtime(request).coordinator(entity_type).compact(parent_key)
    return JSONResponse(_items_body(entity_type, parent_key, settled))


__all__ = ["router"]
