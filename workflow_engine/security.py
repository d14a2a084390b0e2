"""
Security checks shared by block handlers: identifier sanitization and
validation, filter/pagination limits, app access, rate limiting and the SSRF
guard for outbound HTTP.
"""

from __future__ import annotations

import asyncio
import ipaddress
import re
import socket
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import SplitResult, urlsplit

from shared.logger import get_logger
from workflow_engine.errors import AccessDeniedError, ExternalServiceError, ValidationError

logger = get_logger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
MAX_IDENTIFIER_LENGTH = 63

RESERVED_SQL_WORDS = frozenset(
    {
        "select", "insert", "update", "delete", "drop", "create", "alter",
        "table", "database", "schema", "user", "password", "admin", "system",
        "root", "where", "from", "join", "union", "order", "group", "having",
    }
)
RESERVED_COLUMNS = frozenset({"id", "created_at", "updated_at", "app_id"})
FORBIDDEN_TABLE_PATTERNS = ("pg_", "information_schema", "sqlite_")

JSON_PATH_PATTERN = re.compile(
    r"^(?P<column>[a-zA-Z_][a-zA-Z0-9_]*)(?P<path>(?:\s*->>?\s*'[a-zA-Z0-9_]+')+)$"
)

ALLOWED_OPERATORS = (
    "=", "!=", "<>", ">", "<", ">=", "<=",
    "LIKE", "ILIKE", "IN", "NOT IN", "IS NULL", "IS NOT NULL",
)
OPERATOR_ALIASES = {
    "equals": "=",
    "eq": "=",
    "not_equals": "!=",
    "neq": "!=",
    "greater_than": ">",
    "gt": ">",
    "less_than": "<",
    "lt": "<",
    "greater_than_or_equal": ">=",
    "gte": ">=",
    "less_than_or_equal": "<=",
    "lte": "<=",
    "not_in": "NOT IN",
    "is_null": "IS NULL",
    "is_not_null": "IS NOT NULL",
}
MAX_CONDITIONS = 50
MAX_IN_VALUES = 100
MAX_PAGE_SIZE = 1000


# ============================================================================
# Identifiers
# ============================================================================


def sanitize_identifier(name: Any, kind: str = "column") -> str:
    """
    Turn a free-form label into a safe SQL identifier.

    ``"First Name"`` becomes ``first_name``; a leading digit gets a ``field_``
    prefix and reserved words a ``_field`` (columns) or ``_table`` suffix.
    """
    text = re.sub(r"[^a-z0-9_]", "_", str(name or "").strip().lower())
    if not text.strip("_"):
        text = "field"
    if text[0].isdigit():
        text = f"field_{text}"
    if text in RESERVED_SQL_WORDS:
        text = f"{text}_{'table' if kind == 'table' else 'field'}"
    return text[:MAX_IDENTIFIER_LENGTH]


def table_prefix(app_id: int) -> str:
    return f"app_{app_id}_"


def generate_table_name(app_id: int, base_name: str) -> str:
    """Physical name for an app table: ``app_{appId}_{sanitized}``."""
    prefix = table_prefix(app_id)
    raw = str(base_name or "").strip()
    if raw.lower().startswith(prefix):
        raw = raw[len(prefix):]
    sanitized = sanitize_identifier(raw, kind="table")
    return f"{prefix}{sanitized}"[:MAX_IDENTIFIER_LENGTH]


def validate_identifier(name: Any, what: str = "identifier") -> str:
    if not isinstance(name, str) or not name:
        raise ValidationError(f"{what} must be a non-empty string")
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(f"{what} '{name}' exceeds {MAX_IDENTIFIER_LENGTH} characters")
    if not IDENTIFIER_PATTERN.match(name):
        raise ValidationError(f"{what} '{name}' contains invalid characters")
    return name


def validate_table_name(table_name: Any, app_id: int) -> str:
    name = validate_identifier(table_name, "Table name")
    lowered = name.lower()
    prefix = table_prefix(app_id)
    if not lowered.startswith(prefix):
        raise ValidationError(f"Table '{name}' does not belong to app {app_id}")
    if lowered[len(prefix):].startswith(FORBIDDEN_TABLE_PATTERNS):
        raise ValidationError(f"Table name '{name}' targets a system table")
    return name


def validate_column_name(column_name: Any, allow_reserved: bool = False) -> str:
    name = validate_identifier(column_name, "Column name")
    if not allow_reserved and name.lower() in RESERVED_COLUMNS:
        raise ValidationError(f"Column '{name}' is reserved")
    return name


def quote_identifier(name: str) -> str:
    """Double-quote an already validated identifier."""
    return '"' + name.replace('"', '""') + '"'


def is_json_path(field: Any) -> bool:
    return isinstance(field, str) and bool(JSON_PATH_PATTERN.match(field.strip()))


def json_path_column(field: str) -> str:
    """Base column of a JSON path (``data->>'email'`` gives ``data``)."""
    match = JSON_PATH_PATTERN.match(str(field).strip())
    if not match:
        raise ValidationError(f"'{field}' is not a JSON path")
    return match.group("column")


def validate_filter_field(field: Any) -> str:
    """Plain column (reserved columns allowed) or a JSON path expression."""
    if is_json_path(field):
        return field.strip()
    return validate_column_name(field, allow_reserved=True)


# ============================================================================
# Filters and pagination
# ============================================================================


def normalize_operator(operator: Any) -> str:
    text = str(operator or "=").strip()
    candidate = OPERATOR_ALIASES.get(text.lower(), " ".join(text.upper().split()))
    if candidate not in ALLOWED_OPERATORS:
        raise ValidationError(f"Operator '{operator}' is not allowed")
    return candidate


def validate_conditions(conditions: Any) -> List[Dict[str, Any]]:
    """
    Check and normalize ``[{field, operator, value, logic}]`` filters.

    Fields must be identifiers or JSON paths (reserved columns are allowed
    for filtering); operators are upper-cased and checked against the
    whitelist.
    """
    if conditions is None:
        return []
    if not isinstance(conditions, list):
        raise ValidationError("Conditions must be a list")
    if len(conditions) > MAX_CONDITIONS:
        raise ValidationError(f"Too many conditions (max {MAX_CONDITIONS})")

    normalized: List[Dict[str, Any]] = []
    for index, condition in enumerate(conditions):
        if not isinstance(condition, dict):
            raise ValidationError(f"Condition {index} must be an object")
        field = validate_filter_field(condition.get("field") or condition.get("column"))
        operator = normalize_operator(condition.get("operator"))
        value = condition.get("value")
        if operator in ("IN", "NOT IN"):
            if not isinstance(value, list):
                raise ValidationError(f"{operator} requires a list value for '{field}'")
            if len(value) > MAX_IN_VALUES:
                raise ValidationError(f"{operator} list for '{field}' exceeds {MAX_IN_VALUES} values")
        logic = str(condition.get("logic") or "AND").upper()
        if logic not in ("AND", "OR"):
            raise ValidationError(f"Unknown condition logic '{logic}'")
        normalized.append({"field": field, "operator": operator, "value": value, "logic": logic})
    return normalized


def validate_pagination(limit: Any, offset: Any) -> Tuple[int, int]:
    try:
        limit_value = int(limit)
        offset_value = int(offset)
    except (TypeError, ValueError) as exc:
        raise ValidationError("limit and offset must be integers") from exc
    if not 0 <= limit_value <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 0 and {MAX_PAGE_SIZE}")
    if offset_value < 0:
        raise ValidationError("offset must be zero or positive")
    return limit_value, offset_value


# ============================================================================
# Access
# ============================================================================


async def validate_app_access(access_checker: Any, app_id: int, user_id: int) -> None:
    """Raise ``AccessDeniedError`` unless ``user_id`` may act on ``app_id``."""
    if app_id is None or user_id is None:
        raise AccessDeniedError("App and user are required")
    if not await access_checker.has_app_access(app_id, user_id):
        logger.warning("App access denied", extra={"app_id": app_id, "user_id": user_id})
        raise AccessDeniedError(f"User {user_id} cannot access app {app_id}")


# ============================================================================
# Rate limiting
# ============================================================================


class SlidingWindowRateLimiter:
    """
    In-process sliding-window limiter keyed by ``(user_id, action)``.

    Each key keeps the timestamps of recent calls; calls older than the window
    are pruned on every check. Keys with no call inside the window are swept
    at most once per window, so idle users do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}
        self._last_sweep = clock()

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    async def check(self, user_id: Any, action: str, max_calls: int, window_seconds: float) -> bool:
        now = self._clock()
        cutoff = now - window_seconds
        if now - self._last_sweep >= window_seconds:
            self._sweep(cutoff)
            self._last_sweep = now

        key = (str(user_id), action)
        hits = self._hits.get(key)
        if hits is not None:
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if not hits:
                del self._hits[key]
                hits = None
        if hits is not None and len(hits) >= max_calls:
            return False
        if max_calls <= 0:
            return False
        if hits is None:
            hits = self._hits[key] = deque()
        hits.append(now)
        return True

    def _sweep(self, cutoff: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]

    def reset(self) -> None:
        self._hits.clear()


# ============================================================================
# SSRF guard
# ============================================================================

BLOCKED_HOSTS = frozenset(
    {
        "localhost",
        "127.0.0.1",
        "0.0.0.0",
        "::1",
        "169.254.169.254",
        "metadata.google.internal",
    }
)
BLOCKED_PORTS = frozenset({22, 23, 25, 3306, 5432, 6379, 27017})
ALLOWED_SCHEMES = ("http", "https")

Resolver = Callable[[str, int], Awaitable[List[str]]]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _is_forbidden_ip(address: IPAddress) -> bool:
    mapped = getattr(address, "ipv4_mapped", None)
    if mapped is not None:
        address = mapped
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


def _parse_ip(host: str) -> Optional[IPAddress]:
    try:
        if host.isdigit():
            return ipaddress.ip_address(int(host))
        return ipaddress.ip_address(host)
    except ValueError:
        return None


async def _system_resolver(host: str, port: int) -> List[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


class SsrfGuard:
    """Rejects outbound URLs that point at internal infrastructure."""

    def __init__(self, resolve_dns: bool = True, resolver: Optional[Resolver] = None):
        self.resolve_dns = resolve_dns
        self._resolver = resolver or _system_resolver

    async def validate(self, url: str) -> SplitResult:
        try:
            parts = urlsplit(str(url).strip())
            port = parts.port
        except ValueError as exc:
            raise ValidationError(f"Invalid URL '{url}': {exc}") from exc

        if parts.scheme.lower() not in ALLOWED_SCHEMES:
            raise ValidationError(f"Only http and https URLs are allowed, got '{parts.scheme or 'none'}'")
        host = (parts.hostname or "").rstrip(".").lower()
        if not host:
            raise ValidationError("URL must include a host")
        if host in BLOCKED_HOSTS or host.endswith(".localhost"):
            raise ValidationError(f"Requests to '{host}' are blocked")
        if port is not None and port in BLOCKED_PORTS:
            raise ValidationError(f"Requests to port {port} are blocked")

        literal = _parse_ip(host)
        if literal is not None:
            if _is_forbidden_ip(literal):
                raise ValidationError(f"Requests to private or reserved address '{host}' are blocked")
            return parts

        if self.resolve_dns:
            await self._check_resolved(host, port or (443 if parts.scheme.lower() == "https" else 80))
        return parts

    async def _check_resolved(self, host: str, port: int) -> None:
        try:
            addresses = await self._resolver(host, port)
        except (OSError, socket.gaierror) as exc:
            raise ExternalServiceError(f"DNS lookup failed for '{host}': {exc}") from exc
        for raw in addresses:
            address = _parse_ip(raw.split("%", 1)[0])
            if address is not None and _is_forbidden_ip(address):
                raise ValidationError(f"Host '{host}' resolves to a blocked address")


def ensure_columns_known(columns: Iterable[str], known: Iterable[str], what: str = "Column") -> None:
    """Raise when any of ``columns`` is not present in ``known``."""
    known_set = set(known)
    for column in columns:
        if column not in known_set:
            raise ValidationError(f"{what} '{column}' does not exist")
