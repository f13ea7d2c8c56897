"""Database bootstrap utilities for the ordered collection service.

Exposes engine construction and the migrations runner that applies SQL files
from the local migrations/ directory. The DB layer does not leak ORM models
into route handlers; repositories issue SQL through `sqlalchemy.text`.
"""

from ordersync.db.base import build_engine, dispose_engine, get_engine
from ordersync.db.migrations_runner import apply_migrations

__all__ = [
    "build_engine",
    "dispose_engine",
    "get_engine",
    "apply_migrations",
]
