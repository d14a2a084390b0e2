from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlparse

from shared.config import BlockflowConfig, config as default_config

MODEL_MODULES = ["shared.database.models"]


def parse_postgres_credentials(url: Optional[str], settings: BlockflowConfig = default_config) -> Dict[str, Any]:
    """Convert a postgres-style DSN into Tortoise asyncpg credential kwargs."""
    if not url:
        raise ValueError("DATABASE_URL is not set")
    parsed = urlparse(url)
    if parsed.scheme not in {"postgres", "postgresql"}:
        raise ValueError("DATABASE_URL must use postgres:// or postgresql:// scheme")

    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username,
        "password": parsed.password,
        "database": (parsed.path or "").lstrip("/") or "postgres",
        "minsize": settings.db_min_connections,
        "maxsize": settings.db_max_connections,
    }


def build_tortoise_config(settings: BlockflowConfig = default_config) -> Dict[str, Any]:
    """Tortoise ORM settings for the platform models (users, apps, stored workflows, runs)."""
    return {
        "connections": {
            "default": {
                "engine": "tortoise.backends.asyncpg",
                "credentials": parse_postgres_credentials(settings.DATABASE_URL, settings),
            },
        },
        "apps": {
            "models": {
                "models": MODEL_MODULES,
                "default_connection": "default",
            },
        },
        "use_tz": True,
        "timezone": "UTC",
    }


__all__ = ["MODEL_MODULES", "build_tortoise_config", "parse_postgres_credentials"]
