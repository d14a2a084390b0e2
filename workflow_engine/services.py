"""
Collaborator interfaces injected into block handlers.

The engine never reaches for module-level singletons: the database, rate
limiter, event publisher, mailer, summarizer and identity lookups all arrive
through :class:`EngineServices`. Production wiring lives in
``shared.platform.build_engine_services``; tests pass in-memory fakes.
"""

from __future__ import annotations

import time
import uuid
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel

from shared.config import BlockflowConfig, config as default_config
from shared.logger import get_logger
from workflow_engine.security import SlidingWindowRateLimiter, SsrfGuard

logger = get_logger(__name__)


@runtime_checkable
class DatabaseGateway(Protocol):
    async def query(self, sql: str, *args: Any) -> List[Dict[str, Any]]: ...

    async def query_one(self, sql: str, *args: Any) -> Optional[Dict[str, Any]]: ...

    async def execute(self, sql: str, *args: Any) -> str: ...

    def transaction(self) -> AbstractAsyncContextManager: ...


class AccessChecker(Protocol):
    async def has_app_access(self, app_id: int, user_id: int) -> bool: ...


class IdentityDirectory(Protocol):
    async def is_token_revoked(self, token: str) -> bool: ...

    async def get_user(self, user_id: Any) -> Optional[Dict[str, Any]]: ...


class RateLimiter(Protocol):
    async def check(self, user_id: Any, action: str, max_calls: int, window_seconds: float) -> bool: ...


class EventPublisher(Protocol):
    async def publish(self, app_id: int, event: str, payload: Dict[str, Any]) -> None: ...


class MailResult(BaseModel):
    success: bool
    messageId: Optional[str] = None
    error: Optional[str] = None


class Mailer(Protocol):
    async def send_notification_email(
        self, to: str, kind: str, body: str, sender_name: Optional[str] = None, subject: Optional[str] = None
    ) -> MailResult: ...


class Summarizer(Protocol):
    async def summarize(self, text: str, api_key: Optional[str] = None) -> str: ...


class QueryMetrics(Protocol):
    def record(self, operation: str, table: str, duration_ms: float, rows: int) -> None: ...


# ============================================================================
# Default implementations
# ============================================================================


class LoggingEventPublisher:
    """Publishes data-change events to the log stream."""

    async def publish(self, app_id: int, event: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Event {event}", extra={"app_id": app_id, "table": payload.get("tableName")})


class LoggingQueryMetrics:
    """Logs query timings, escalating to a warning past the slow-query threshold."""

    def __init__(self, slow_query_threshold_ms: float = 1000.0):
        self.slow_query_threshold_ms = slow_query_threshold_ms

    def record(self, operation: str, table: str, duration_ms: float, rows: int) -> None:
        extra = {"operation": operation, "table": table, "duration_ms": round(duration_ms, 2), "rows": rows}
        if duration_ms >= self.slow_query_threshold_ms:
            logger.warning("Slow query", extra=extra)
        else:
            logger.debug("Query completed", extra=extra)


class LoggingMailer:
    """Mailer used when no SMTP server is configured: logs and reports success."""

    async def send_notification_email(
        self, to: str, kind: str, body: str, sender_name: Optional[str] = None, subject: Optional[str] = None
    ) -> MailResult:
        message_id = f"logged-{uuid.uuid4().hex}"
        logger.info("Email delivery skipped (SMTP not configured)", extra={"to": to, "kind": kind})
        return MailResult(success=True, messageId=message_id)


class AllowAllAccessChecker:
    """Access checker for trusted in-process callers (local tools, scripts)."""

    async def has_app_access(self, app_id: int, user_id: int) -> bool:
        return True


class UnavailableSummarizer:
    async def summarize(self, text: str, api_key: Optional[str] = None) -> str:
        raise RuntimeError("No summarizer is configured")


class UnavailableDatabase:
    """Placeholder gateway that fails loudly when a database block runs without a database."""

    def _fail(self) -> None:
        raise RuntimeError("No database gateway is configured")

    async def query(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        self._fail()

    async def query_one(self, sql: str, *args: Any) -> Optional[Dict[str, Any]]:
        self._fail()

    async def execute(self, sql: str, *args: Any) -> str:
        self._fail()

    def transaction(self) -> AbstractAsyncContextManager:
        self._fail()


class NullIdentityDirectory:
    async def is_token_revoked(self, token: str) -> bool:
        return False

    async def get_user(self, user_id: Any) -> Optional[Dict[str, Any]]:
        return None


@dataclass
class EngineServices:
    """Everything a handler may touch outside the execution context."""

    db: Any = field(default_factory=UnavailableDatabase)
    access: Any = field(default_factory=AllowAllAccessChecker)
    identity: Any = field(default_factory=NullIdentityDirectory)
    rate_limiter: Any = field(default_factory=SlidingWindowRateLimiter)
    publisher: Any = field(default_factory=LoggingEventPublisher)
    mailer: Any = field(default_factory=LoggingMailer)
    summarizer: Any = field(default_factory=UnavailableSummarizer)
    metrics: Any = None
    ssrf_guard: Optional[SsrfGuard] = None
    http_transport: Optional[httpx.AsyncBaseTransport] = None
    settings: BlockflowConfig = field(default_factory=lambda: default_config)
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        if self.metrics is None:
            self.metrics = LoggingQueryMetrics(self.settings.slow_query_threshold_ms)
        if self.ssrf_guard is None:
            self.ssrf_guard = SsrfGuard(resolve_dns=self.settings.ssrf_resolve_dns)

    def http_client(self, timeout: float) -> httpx.AsyncClient:
        """Fresh client per request; redirects are followed manually by the caller."""
        return httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=False,
            transport=self.http_transport,
        )
