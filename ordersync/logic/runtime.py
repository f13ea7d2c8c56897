"""Process runtime: the explicitly initialised service graph.

``build_runtime`` wires one change bus, one subscription registry and a
store/coordinator pair per entity type against a given Engine.
``Runtime.shutdown`` tears the channels down. The application factory owns
the instance (``app.state.runtime``); tests build their own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.engine import Engine

from ordersync.config import AppConfig, DatabaseConfig
from ordersync.logic.errors import NotFound
from ordersync.logic.events import ChangeBus
from ordersync.logic.order_store import OrderStore
from ordersync.logic.reorder import ReorderCoordinator
from ordersync.logic.subscriptions import SubscriptionRegistry
from ordersync.models.entity_type import ENTITY_TABLES

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: AppConfig
    engine: Engine
    bus: ChangeBus
    registry: SubscriptionRegistry
    stores: Dict[str, OrderStore] = field(default_factory=dict)
    coordinators: Dict[str, ReorderCoordinator] = field(default_factory=dict)

    def store(self, entity_type: str) -> OrderStore:
        try:
            return self.stores[str(entity_type)]
        except KeyError:
            raise NotFound(f"unknown entity type {entity_type}") from None

    def coordinator(self, entity_type: str) -> ReorderCoordinator:
        try:
            return self.coordinators[str(entity_type)]
        except KeyError:
            raise NotFound(f"unknown entity type {entity_type}") from None

    def shutdown(self) -> None:
        self.registry.shutdown()


def build_runtime(engine: Engine, config: Optional[AppConfig] = None) -> Runtime:
    cfg = config or AppConfig(database=DatabaseConfig(dsn=str(engine.url)))
    bus = ChangeBus()
    registry = SubscriptionRegistry(bus, buffer_limit=cfg.feed.buffer_limit)
    runtime = Runtime(config=cfg, engine=engine, bus=bus, registry=registry)
    for entity_type in ENTITY_TABLES:
        store = OrderStore(entity_type, engine=engine, bus=bus)
        runtime.stores[entity_type] = store
        runtime.coordinators[entity_type] = ReorderCoordinator(
            store,
            offset=cfg.reorder.offset,
            timeout_seconds=cfg.reorder.timeout_seconds,
            serialize=cfg.reorder.serialize,
        )
    logger.info(
        "runtime_ready entity_types=%s offset=%s timeout_seconds=%s serialize=%s buffer_limit=%s",
        sorted(runtime.stores),
        cfg.reorder.offset,
        cfg.reorder.timeout_seconds,
        cfg.reorder.serialize,
        cfg.feed.buffer_limit,
    )
    return runtime


__all__ = ["Runtime", "build_runtime"]
