from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text as sql_text
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException

from ordersync.config import AppConfig, load_config
from ordersync.db.base import get_engine
from ordersync.db.migrations_runner import apply_migrations
from ordersync.http.problem import (
    handle_http_exception,
    handle_ordersync_error,
    handle_request_validation_error,
    handle_unexpected_error,
)
from ordersync.http.request_id import RequestIdMiddleware
from ordersync.logging_setup import configure_logging
from ordersync.logic.errors import OrderSyncError
from ordersync.logic.runtime import Runtime, build_runtime
from ordersync.routes import api_router

logger = logging.getLogger(__name__)


def _health(runtime: Runtime) -> dict:
    try:
        with runtime.engine.connect() as conn:
            conn.execute(sql_text("SELECT 1"))
        db_ok = True
    except Exception:
        logger.error("Health DB check failed", exc_info=True)
        db_ok = False
    return {
        "status": "ok" if db_ok else "degraded",
        "db": db_ok,
        "channels": runtime.registry.channel_count(),
    }


def create_app(config: Optional[AppConfig] = None, engine: Optional[Engine] = None) -> FastAPI:
    """Build the FastAPI application and its runtime.

    The runtime (change bus, subscription registry, stores, coordinators) is
    created here and torn down by the lifespan handler on shutdown.
    """
    try:
        configure_logging()
    except Exception:
        logging.getLogger(__name__).error("global_logging_configuration_failed", exc_info=True)

    cfg = config or load_config()
    eng = engine or get_engine(cfg.database.dsn)
    if cfg.database.auto_migrate:
        apply_migrations(eng)
    runtime = build_runtime(eng, cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            app.state.runtime.shutdown()

    app = FastAPI(title="ordersync", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_exception_handler(OrderSyncError, handle_ordersync_error)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.add_middleware(RequestIdMiddleware)

    @app.get("/health")
    def health() -> dict:
        return _health(app.state.runtime)

    app.include_router(api_router, prefix="/api/v1")
    return app


__all__ = ["create_app"]
