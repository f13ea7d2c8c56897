"""APIRouter registration for the ordered collection service."""

from __future__ import annotations

from fastapi import APIRouter

from ordersync.routes.collections import router as collections_router
from ordersync.routes.feed import router as feed_router

api_router = APIRouter()
api_router.include_router(collections_router, tags=["Collections", "Reorder"])
api_router.include_router(feed_router, tags=["ChangeFeed"])

__all__ = ["api_router"]
