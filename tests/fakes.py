"""
In-memory collaborators for engine tests.

``FakeDatabase`` understands exactly the SQL shapes the engine emits
(information_schema lookups, ``user_tables`` bookkeeping, dynamic table DDL
and the parameterized SELECT/INSERT/UPDATE statements built by
``SafeQueryBuilder``).
"""
from __future__ import annotations

import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from workflow_engine.blocks import BlockScope, get_handler
from workflow_engine.context import ExecutionContext
from workflow_engine.schema import Node
from workflow_engine.services import MailResult

APP_ID = 1
USER_ID = 1
JWT_SECRET = "test-secret-key-with-at-least-32-bytes"

_TYPE_MAP = (
    ("SERIAL", "integer"),
    ("INTEGER", "integer"),
    ("DECIMAL", "numeric"),
    ("NUMERIC", "numeric"),
    ("VARCHAR", "character varying"),
    ("TEXT", "text"),
    ("BOOLEAN", "boolean"),
    ("TIMESTAMP", "timestamp without time zone"),
    ("DATE", "date"),
    ("TIME", "time without time zone"),
    ("JSONB", "jsonb"),
)

_CREATE_TABLE = re.compile(r'^CREATE TABLE IF NOT EXISTS "(?P<table>\w+)" \((?P<body>.*)\)$', re.S)
_INSERT = re.compile(r'^INSERT INTO "(?P<table>\w+)" \((?P<columns>[^)]*)\) VALUES \([^)]*\) RETURNING \*$')
_SELECT = re.compile(
    r'^SELECT (?P<columns>.+?) FROM "(?P<table>\w+)"'
    r"(?: WHERE (?P<where>.+?))?"
    r"(?: ORDER BY (?P<order>.+?))?"
    r"(?: LIMIT \$(?P<limit>\d+))?"
    r"(?: OFFSET \$(?P<offset>\d+))?$"
)
_UPDATE = re.compile(r'^UPDATE "(?P<table>\w+)" SET (?P<assignments>.+?) WHERE (?P<where>.+?) RETURNING \*$')
_CLAUSE = re.compile(r'^"(?P<column>\w+)" (?P<op>=|!=|<>|>=|<=|>|<) \$(?P<param>\d+)$')
_NULL_CLAUSE = re.compile(r'^"(?P<column>\w+)" IS (?P<negated>NOT )?NULL$')


def _data_type(sql_type: str) -> str:
    upper = sql_type.upper()
    for prefix, data_type in _TYPE_MAP:
        if upper.startswith(prefix):
            return data_type
    return "text"


class FakeDatabase:
    """Dict-backed stand-in for the asyncpg gateway."""

    def __init__(self, fail_on: Optional[str] = None):
        self.tables: Dict[str, Dict[str, Any]] = {}
        self.user_tables: List[Dict[str, Any]] = []
        self.statements: List[Tuple[str, Tuple[Any, ...]]] = []
        self.fail_on = fail_on

    # Gateway API ----------------------------------------------------------

    async def query(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        self._record(sql, args)
        if "FROM information_schema.columns" in sql:
            return self._columns(args[0])
        if sql.startswith("INSERT INTO"):
            return [self._insert(sql, args)]
        if sql.startswith("UPDATE"):
            return self._update(sql, args)
        if sql.startswith("SELECT"):
            return self._select(sql, args)
        raise AssertionError(f"Unexpected query: {sql}")

    async def query_one(self, sql: str, *args: Any) -> Optional[Dict[str, Any]]:
        self._record(sql, args)
        if "FROM information_schema.tables" in sql:
            return {"exists": args[0] in self.tables}
        if "FROM user_tables" in sql:
            for row in self.user_tables:
                if row["app_id"] == args[0] and row["table_name"] == args[1]:
                    return dict(row)
            return None
        raise AssertionError(f"Unexpected query_one: {sql}")

    async def execute(self, sql: str, *args: Any) -> str:
        self._record(sql, args)
        if sql.startswith("CREATE TABLE IF NOT EXISTS user_tables"):
            return "CREATE TABLE"
        if sql.startswith("CREATE TABLE"):
            self._create_table(sql)
            return "CREATE TABLE"
        if sql.startswith("CREATE INDEX"):
            return "CREATE INDEX"
        if sql.startswith("INSERT INTO user_tables"):
            app_id, table_name, display_name, columns = args
            if not any(row["app_id"] == app_id and row["table_name"] == table_name for row in self.user_tables):
                self.user_tables.append(
                    {"app_id": app_id, "table_name": table_name, "display_name": display_name, "columns": columns}
                )
            return "INSERT 0 1"
        raise AssertionError(f"Unexpected execute: {sql}")

    @asynccontextmanager
    async def transaction(self):
        yield self

    # Helpers --------------------------------------------------------------

    def create_table(self, name: str, columns: Dict[str, str], app_id: int = 1) -> None:
        """Seed a table directly, bypassing ``db.create``."""
        self.tables[name] = {
            "columns": {"id": "integer", **columns, "created_at": "timestamp without time zone",
                        "updated_at": "timestamp without time zone", "app_id": "integer"},
            "defaults": {"app_id": app_id},
            "rows": [],
            "next_id": 1,
        }

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables[table]["rows"]

    def _record(self, sql: str, args: Tuple[Any, ...]) -> None:
        self.statements.append((sql, args))
        if self.fail_on and self.fail_on in sql:
            raise RuntimeError(f"simulated failure on {self.fail_on}")

    def _columns(self, table: str) -> List[Dict[str, Any]]:
        if table not in self.tables:
            return []
        return [
            {
                "column_name": name,
                "data_type": data_type,
                "is_nullable": "NO" if name == "id" else "YES",
                "column_default": None,
                "character_maximum_length": None,
            }
            for name, data_type in self.tables[table]["columns"].items()
        ]

    def _create_table(self, sql: str) -> None:
        match = _CREATE_TABLE.match(sql)
        assert match, sql
        table = match.group("table")
        if table in self.tables:
            return
        columns: Dict[str, str] = {}
        defaults: Dict[str, Any] = {}
        for definition in match.group("body").split(", "):
            name, _, rest = definition.partition(" ")
            name = name.strip('"')
            columns[name] = _data_type(rest)
            default = re.search(r"DEFAULT (\d+)$", rest)
            if default:
                defaults[name] = int(default.group(1))
        self.tables[table] = {"columns": columns, "defaults": defaults, "rows": [], "next_id": 1}

    def _insert(self, sql: str, args: Tuple[Any, ...]) -> Dict[str, Any]:
        match = _INSERT.match(sql)
        assert match, sql
        table = self.tables[match.group("table")]
        names = [name.strip().strip('"') for name in match.group("columns").split(",")]
        now = datetime(2026, 1, 1, 12, 0, 0)
        row = {name: None for name in table["columns"]}
        row.update(table["defaults"])
        row.update({"id": table["next_id"], "created_at": now, "updated_at": now})
        row.update(dict(zip(names, args)))
        table["next_id"] += 1
        table["rows"].append(row)
        return dict(row)

    def _matches(self, row: Dict[str, Any], where: Optional[str], args: Tuple[Any, ...]) -> bool:
        if not where:
            return True
        for clause in where.split(" AND "):
            null_match = _NULL_CLAUSE.match(clause)
            if null_match:
                is_null = row.get(null_match.group("column")) is None
                if is_null == bool(null_match.group("negated")):
                    return False
                continue
            match = _CLAUSE.match(clause)
            assert match, clause
            left = row.get(match.group("column"))
            right = args[int(match.group("param")) - 1]
            op = match.group("op")
            if op == "=" and not left == right:
                return False
            if op in ("!=", "<>") and not left != right:
                return False
            if op == ">" and not (left is not None and left > right):
                return False
            if op == "<" and not (left is not None and left < right):
                return False
            if op == ">=" and not (left is not None and left >= right):
                return False
            if op == "<=" and not (left is not None and left <= right):
                return False
        return True

    def _select(self, sql: str, args: Tuple[Any, ...]) -> List[Dict[str, Any]]:
        match = _SELECT.match(sql)
        assert match, sql
        rows = [row for row in self.tables[match.group("table")]["rows"] if self._matches(row, match.group("where"), args)]
        if match.group("order"):
            for part in reversed(match.group("order").split(", ")):
                column, _, direction = part.rpartition(" ")
                rows.sort(key=lambda row: (row.get(column.strip('"')) is None, row.get(column.strip('"'))),
                          reverse=direction == "DESC")
        offset = args[int(match.group("offset")) - 1] if match.group("offset") else 0
        rows = rows[offset:]
        if match.group("limit"):
            rows = rows[: args[int(match.group("limit")) - 1]]
        selected = match.group("columns")
        if selected == "*":
            return [dict(row) for row in rows]
        names = [name.strip().strip('"') for name in selected.split(",")]
        return [{name: row.get(name) for name in names} for row in rows]

    def _update(self, sql: str, args: Tuple[Any, ...]) -> List[Dict[str, Any]]:
        match = _UPDATE.match(sql)
        assert match, sql
        assignments = []
        for part in match.group("assignments").split(", "):
            column, _, param = part.partition(" = ")
            assignments.append((column.strip('"'), args[int(param.lstrip("$")) - 1]))
        updated = []
        for row in self.tables[match.group("table")]["rows"]:
            if self._matches(row, match.group("where"), args):
                row.update(assignments)
                updated.append(dict(row))
        return updated


class FakeIdentity:
    def __init__(self, users: Optional[Dict[Any, Dict[str, Any]]] = None, revoked: Tuple[str, ...] = ()):
        self.users = users or {}
        self.revoked = set(revoked)

    async def is_token_revoked(self, token: str) -> bool:
        return token in self.revoked

    async def get_user(self, user_id: Any) -> Optional[Dict[str, Any]]:
        return self.users.get(str(user_id))


class FakeAccess:
    def __init__(self, allowed: Tuple[Tuple[int, int], ...] = ((1, 1),)):
        self.allowed = set(allowed)

    async def has_app_access(self, app_id: int, user_id: int) -> bool:
        return (app_id, user_id) in self.allowed


class RecordingMailer:
    def __init__(self, fail_with: Optional[str] = None):
        self.sent: List[Dict[str, Any]] = []
        self.fail_with = fail_with

    async def send_notification_email(self, to, kind, body, sender_name=None, subject=None) -> MailResult:
        if self.fail_with:
            return MailResult(success=False, error=self.fail_with)
        self.sent.append({"to": to, "kind": kind, "body": body, "sender": sender_name, "subject": subject})
        return MailResult(success=True, messageId=f"msg-{len(self.sent)}")


class RecordingPublisher:
    def __init__(self):
        self.events: List[Tuple[int, str, Dict[str, Any]]] = []

    async def publish(self, app_id: int, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((app_id, event, payload))


class StubSummarizer:
    def __init__(self, summary: str = "short summary"):
        self.summary = summary
        self.calls: List[Tuple[str, Optional[str]]] = []

    async def summarize(self, text: str, api_key: Optional[str] = None) -> str:
        self.calls.append((text, api_key))
        return self.summary


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_dns(host: str, port: int) -> List[str]:
    return ["93.184.216.34"]


def node(node_id: str, label: str, category: str = "Actions", **config: Any) -> Dict[str, Any]:
    return {"id": node_id, "type": "workflowNode", "data": {"label": label, "category": category, "config": config}}


def edge(source: str, target: str, handle: Optional[str] = None, connector: Optional[str] = None,
         label: Optional[str] = None) -> Dict[str, Any]:
    raw: Dict[str, Any] = {"id": f"{source}-{target}", "source": source, "target": target}
    if handle:
        raw["sourceHandle"] = handle
    if label:
        raw["label"] = label
    if connector:
        raw["data"] = {"connectorType": connector}
    return raw


async def run_block(services, raw_node: Dict[str, Any], values: Optional[Dict[str, Any]] = None,
                    app_id: int = 1, user_id: int = 1):
    """Run one block through its handler the way the orchestrator does."""
    parsed = Node.model_validate(raw_node)
    handler = get_handler(parsed.label)
    scope = BlockScope(app_id=app_id, user_id=user_id, node=parsed, services=services)
    return await handler.run(parsed, ExecutionContext(values), scope)
