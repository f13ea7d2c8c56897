"""Configuration for the ordered collection service.

Every setting has a dotted key (``reorder.offset``) and an environment
variable. A value is looked up, highest precedence first, in:

1) the environment variable;
2) a text file named after the dotted key under ``config/``;
3) ``ordersync_config.json`` in the working directory;
4) the model default.

The merged mapping is validated by the pydantic models below; invalid
values are logged and the ``ValidationError`` propagates.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator


CONFIG_DIR = Path("config")
ROOT_CONFIG = Path("ordersync_config.json")
DEFAULT_DSN = "sqlite+pysqlite:///:memory:"
logger = logging.getLogger(__name__)


class DatabaseConfig(BaseModel):
    dsn: str = DEFAULT_DSN
    auto_migrate: bool = True

    @field_validator("dsn")
    @classmethod
    def dsn_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("database.dsn must be a non-empty string")
        return v


class ReorderConfig(BaseModel):
    # Phase A parks siblings at offset + i; must exceed any realistic final order
    offset: int = Field(default=10_000, gt=0)
    timeout_seconds: float = Field(default=8.0, gt=0)
    serialize: bool = True


class FeedConfig(BaseModel):
    buffer_limit: int = Field(default=1000, gt=0)


class AppConfig(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    reorder: ReorderConfig = Field(default_factory=ReorderConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)


# dotted key -> environment variables, first set one wins
SETTINGS: Dict[str, Tuple[str, ...]] = {
    "database.dsn": ("TEST_DATABASE_URL", "DATABASE_URL"),
    "database.auto_migrate": ("AUTO_APPLY_MIGRATIONS",),
    "reorder.offset": ("REORDER_OFFSET",),
    "reorder.timeout_seconds": ("REORDER_TIMEOUT_SECONDS",),
    "reorder.serialize": ("REORDER_SERIALIZE",),
    "feed.buffer_limit": ("FEED_BUFFER_LIMIT",),
}


def _file_override(key: str) -> Optional[str]:
    # The DSN override file is config/database.url
    name = "database.url" if key == "database.dsn" else key
    path = CONFIG_DIR / name
    if not path.exists():
        return None
    try:
        text = path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("config_override_unreadable path=%s error=%s", path, e)
        return None
    return text or None


def _json_base() -> Dict[str, Any]:
    if not ROOT_CONFIG.exists():
        return {}
    try:
        data = json.loads(ROOT_CONFIG.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error("config_json_unreadable path=%s error=%s", ROOT_CONFIG, e)
        return {}
    return data if isinstance(data, dict) else {}


def _dig(tree: Dict[str, Any], key: str) -> Any:
    cur: Any = tree
    for part in key.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return None
        cur = cur[part]
    return cur


def _lookup(key: str, env_vars: Tuple[str, ...], base: Dict[str, Any]) -> Any:
    for var in env_vars:
        val = os.environ.get(var)
        if val:
            return val
    override = _file_override(key)
    if override is not None:
        return override
    return _dig(base, key)


def load_config() -> AppConfig:
    """Merge every source into an ``AppConfig``."""
    base = _json_base()
    merged: Dict[str, Dict[str, Any]] = {}
    for key, env_vars in SETTINGS.items():
        value = _lookup(key, env_vars, base)
        if value is None:
            continue
        section, field = key.split(".", 1)
        merged.setdefault(section, {})[field] = value.strip() if isinstance(value, str) else value
    try:
        return AppConfig.model_validate(merged)
    except PydanticValidationError as e:
        logger.error("Invalid application configuration: %s", e)
        raise


__all__ = [
    "AppConfig",
    "DatabaseConfig",
    "ReorderConfig",
    "FeedConfig",
    "SETTINGS",
    "load_config",
]
