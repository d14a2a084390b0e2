"""
Taskiq broker for queued workflow runs.

Jobs travel over a Redis stream so that a job claimed by a worker that dies
is redelivered to another one; ``process_workflow_job`` skips runs that
already finished.

Usage:
    taskiq worker worker.broker:broker worker.tasks.workflows
"""
from __future__ import annotations

from taskiq.events import TaskiqEvents
from taskiq.state import TaskiqState
from taskiq_redis import RedisAsyncResultBackend, RedisStreamBroker

from shared.config import config
from shared.database import close_db, get_postgres_client, init_db
from shared.logger import get_logger
from workflow_engine.introspection import TableRegistry

logger = get_logger(__name__)

result_backend = RedisAsyncResultBackend(
    redis_url=config.redis_url,
    result_ex_time=config.workflow_result_ttl_seconds,
)
broker = RedisStreamBroker(
    url=config.redis_url,
    queue_name=config.workflow_queue_name,
).with_result_backend(result_backend)


@broker.on_event(TaskiqEvents.WORKER_STARTUP)
async def _on_worker_startup(_: TaskiqState) -> None:
    """Open the ORM and raw SQL pools and make sure ``user_tables`` exists."""
    logger.info("Initializing Taskiq worker", extra={"queue": config.workflow_queue_name})
    await init_db()
    await TableRegistry(get_postgres_client()).ensure_schema()


@broker.on_event(TaskiqEvents.WORKER_SHUTDOWN)
async def _on_worker_shutdown(_: TaskiqState) -> None:
    await close_db()
    logger.info("Taskiq worker shutdown complete")


__all__ = ["broker"]
