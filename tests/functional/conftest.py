from __future__ import annotations

"""Functional test bootstrap for the ordered collection service.

Each test gets its own in-memory SQLite engine with migrations applied and
its own runtime (change bus, registry, stores), so channels and rows never
leak between tests. The runtime is shut down after the test to stop feed
worker threads.
"""

import os
import uuid

import pytest

# Disable app startup auto-migrations from the environment; fixtures apply them
os.environ.setdefault("AUTO_APPLY_MIGRATIONS", "0")

from ordersync.config import AppConfig, DatabaseConfig, FeedConfig, ReorderConfig  # noqa: E402
from ordersync.db.base import build_engine  # noqa: E402
from ordersync.db.migrations_runner import apply_migrations  # noqa: E402
from ordersync.logic.runtime import build_runtime  # noqa: E402


@pytest.fixture()
def engine():
    eng = build_engine("sqlite+pysqlite:///:memory:")
    apply_migrations(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def app_config() -> AppConfig:
    return AppConfig(
        database=DatabaseConfig(dsn="sqlite+pysqlite:///:memory:", auto_migrate=False),
        reorder=ReorderConfig(offset=10_000, timeout_seconds=8.0, serialize=True),
        feed=FeedConfig(buffer_limit=1000),
    )


@pytest.fixture()
def runtime(engine, app_config):
    rt = build_runtime(engine, app_config)
    yield rt
    rt.shutdown()


@pytest.fixture()
def parent_key() -> str:
    return f"ws-{uuid.uuid4().hex[:8]}"


@pytest.fixture()
def module_store(runtime):
    return runtime.store("module")


@pytest.fixture()
def module_coordinator(runtime):
    return runtime.coordinator("module")


@pytest.fixture()
def seeded(module_store, parent_key):
    """Collection [A, B, C, D] with orders 0..3; returns name -> item id."""
    ids = {}
    for name in ("A", "B", "C", "D"):
        ids[name] = module_store.append(parent_key, {"title": name}).id
    return ids


@pytest.fixture()
def order_of(module_store, parent_key, seeded):
    """Return a callable giving the stored sequence as item names."""
    by_id = {v: k for k, v in seeded.items()}

    def _names() -> list[str]:
        return [by_id.get(i.id, i.id) for i in module_store.list_siblings(parent_key)]

    return _names


class EventRecorder:
    """Synchronous bus listener collecting every published event."""

    def __init__(self) -> None:
        self.events = []

    def __call__(self, event) -> None:
        self.events.append(event)


@pytest.fixture()
def recorder(runtime, parent_key):
    rec = EventRecorder()
    token = runtime.bus.listen("module", parent_key, rec)
    yield rec
    runtime.bus.unlisten(token)
