"""SQLAlchemy engine construction.

The service targets PostgreSQL in production but supports SQLite for local
development and CI. No declarative models are defined here; this module only
manages engine lifecycle. Repositories receive an Engine explicitly and fall
back to the shared one returned by `get_engine()`.
"""

from __future__ import annotations

import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def _db_url() -> str:
    return (
        os.getenv("TEST_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or "sqlite+pysqlite:///:memory:"
    )


# Module-level cached Engine so repositories share one pool
_ENGINE: Engine | None = None
_ENGINE_URL: str | None = None


def build_engine(url: str) -> Engine:
    """Create a new Engine for ``url``.

    For SQLite in-memory URLs, use a StaticPool to keep a single connection
    alive across threads; change feed workers and request handlers read the
    same database.
    """
    kwargs: dict = {"future": True, "pool_pre_ping": True}
    if url.startswith("sqlite") and ":memory:" in url:
        kwargs.update({
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        })
    elif url.startswith("sqlite"):
        kwargs.update({"connect_args": {"check_same_thread": False}})
    logger.info("db_engine_create dialect=%s", url.split(":", 1)[0])
    return create_engine(url, **kwargs)


def get_engine(url: str | None = None) -> Engine:
    """Return a cached SQLAlchemy Engine for the given URL."""
    global _ENGINE, _ENGINE_URL
    resolved_url = url or _db_url()

    if _ENGINE is None or _ENGINE_URL != resolved_url:
        _ENGINE = build_engine(resolved_url)
        _ENGINE_URL = resolved_url

    return _ENGINE


def dispose_engine() -> None:
    """Dispose the cached Engine, if any."""
    global _ENGINE, _ENGINE_URL
    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = None
    _ENGINE_URL = None
