"""
Database lifecycle for the API and worker.

Platform records (users, apps, stored workflows, runs) go through Tortoise;
dynamic app tables go through the shared :class:`PostgresClient` pool.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from tortoise import Tortoise, connections

from shared.config import config
from shared.database.config import build_tortoise_config
from shared.database.postgres import PostgresClient
from shared.logger import get_logger

logger = get_logger("shared.database")

_postgres_client: Optional[PostgresClient] = None


def get_postgres_client() -> PostgresClient:
    """Process-wide asyncpg client used for dynamic app tables."""
    global _postgres_client
    if _postgres_client is None:
        if not config.DATABASE_URL:
            raise RuntimeError("DATABASE_URL must be configured to execute database blocks")
        _postgres_client = PostgresClient(
            config.DATABASE_URL,
            min_pool_size=config.db_min_connections,
            max_pool_size=config.db_max_connections,
        )
    return _postgres_client


async def init_db() -> None:
    """Initialize Tortoise ORM and the raw SQL pool."""
    await Tortoise.init(config=build_tortoise_config(config))

    if config.db_generate_schemas:
        logger.warning("db_generate_schemas is enabled; creating platform tables at startup")
        await Tortoise.generate_schemas()

    await get_postgres_client().connect()


async def close_db() -> None:
    """Close ORM connections and the raw SQL pool."""
    global _postgres_client
    await connections.close_all()
    if _postgres_client is not None:
        await _postgres_client.close()
        _postgres_client = None


@asynccontextmanager
async def db_lifespan(_: FastAPI) -> AsyncIterator[None]:
    """FastAPI lifespan handler for database management."""
    logger.info("Initializing database connections")
    await init_db()
    try:
        yield
    finally:
        logger.info("Closing database connections")
        await close_db()


__all__ = ["db_lifespan", "init_db", "close_db", "get_postgres_client", "PostgresClient"]
