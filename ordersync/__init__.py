"""FastAPI application package for the ordered collection service.

Workspace modules, module questions and question options are kept as
ordered sibling collections. The package exposes an application factory;
ordering logic lives in `ordersync/logic/` and route handlers in
`ordersync/routes/`.
"""

from __future__ import annotations

from ordersync.main import create_app

__all__ = ["create_app"]
