"""
Live schema discovery, value coercion and the registry of app tables.

App tables are created on first use by ``db.create``/``db.upsert``. The
physical table and its ``user_tables`` metadata row are written in one
transaction so neither can exist without the other.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from shared.logger import get_logger
from workflow_engine.comparisons import parse_datetime
from workflow_engine.errors import TableMaterializationError, ValidationError
from workflow_engine.security import MAX_IDENTIFIER_LENGTH, quote_identifier, validate_identifier

logger = get_logger(__name__)

# ============================================================================
# Field kinds
# ============================================================================

INPUT_TYPE_SQL: Dict[str, str] = {
    "email": "VARCHAR(255)",
    "password": "VARCHAR(255)",
    "number": "DECIMAL(10,2)",
    "tel": "VARCHAR(20)",
    "url": "TEXT",
    "date": "DATE",
    "datetime-local": "TIMESTAMP",
    "time": "TIME",
    "text": "TEXT",
}

FIELD_KIND_SQL: Dict[str, str] = {
    "text": "TEXT",
    "textfield": "TEXT",
    "textarea": "TEXT",
    "heading": "TEXT",
    "paragraph": "TEXT",
    "label": "TEXT",
    "email": "VARCHAR(255)",
    "password": "VARCHAR(255)",
    "select": "VARCHAR(255)",
    "dropdown": "VARCHAR(255)",
    "radio": "VARCHAR(255)",
    "checkbox": "BOOLEAN",
    "toggle": "BOOLEAN",
    "boolean": "BOOLEAN",
    "date": "DATE",
    "time": "TIME",
    "datetime": "TIMESTAMP",
    "timestamp": "TIMESTAMP",
    "number": "DECIMAL(10,2)",
    "slider": "DECIMAL(10,2)",
    "range": "DECIMAL(10,2)",
    "integer": "INTEGER",
    "json": "JSONB",
    "file": "TEXT",
    "upload": "TEXT",
    "image": "TEXT",
    "video": "TEXT",
    "audio": "TEXT",
    "media": "TEXT",
    "button": "TEXT",
}


def sql_type_for(kind: Optional[str], input_type: Optional[str] = None) -> str:
    """SQL column type for a canvas element type or logical field kind."""
    normalized = str(kind or "text").strip().lower()
    if normalized == "input":
        return INPUT_TYPE_SQL.get(str(input_type or "text").strip().lower(), "TEXT")
    return FIELD_KIND_SQL.get(normalized, "TEXT")


def infer_kind(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float, Decimal)):
        return "number"
    if isinstance(value, (dict, list)):
        return "json"
    return "text"


# ============================================================================
# Live schema
# ============================================================================


@dataclass
class ColumnInfo:
    name: str
    data_type: str
    nullable: bool = True
    default: Optional[str] = None
    max_length: Optional[int] = None


class SchemaIntrospector:
    """Reads table existence and column types from ``information_schema``."""

    def __init__(self, db: Any):
        self.db = db

    async def table_exists(self, table_name: str) -> bool:
        row = await self.db.query_one(
            "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = $1) AS exists",
            table_name,
        )
        return bool(row and row.get("exists"))

    async def discover_columns(self, table_name: str) -> Dict[str, ColumnInfo]:
        rows = await self.db.query(
            "SELECT column_name, data_type, is_nullable, column_default, character_maximum_length "
            "FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = $1 "
            "ORDER BY ordinal_position",
            table_name,
        )
        return {
            row["column_name"]: ColumnInfo(
                name=row["column_name"],
                data_type=str(row["data_type"]).lower(),
                nullable=str(row.get("is_nullable", "YES")).upper() == "YES",
                default=row.get("column_default"),
                max_length=row.get("character_maximum_length"),
            )
            for row in rows
        }


_TRUE_STRINGS = {"true", "1", "yes", "on", "y", "t"}
_FALSE_STRINGS = {"false", "0", "no", "off", "n", "f", ""}


def coerce_value(value: Any, data_type: Optional[str]) -> Any:
    """
    Convert a context value to the Python type asyncpg expects for a column.

    Raises ``ValidationError`` when the value cannot represent that type.
    """
    if value is None or data_type is None:
        return value
    kind = data_type.lower()

    try:
        if kind in ("integer", "bigint", "smallint"):
            if isinstance(value, bool):
                return int(value)
            number = Decimal(str(value).strip())
            if number != number.to_integral_value():
                raise ValidationError(f"'{value}' is not an integer")
            return int(number)
        if kind in ("numeric", "decimal"):
            if isinstance(value, bool):
                raise ValidationError(f"'{value}' is not a number")
            return Decimal(str(value).strip())
        if kind in ("real", "double precision"):
            return float(value)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"'{value}' is not a valid {kind}") from exc

    if kind == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValidationError(f"'{value}' is not a valid boolean")

    if kind == "date":
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        parsed = parse_datetime(value)
        if parsed is None:
            raise ValidationError(f"'{value}' is not a valid date")
        return parsed.date()

    if kind.startswith("timestamp"):
        parsed = parse_datetime(value)
        if parsed is None:
            raise ValidationError(f"'{value}' is not a valid timestamp")
        if "with time zone" in kind:
            return parsed
        return parsed.astimezone(timezone.utc).replace(tzinfo=None)

    if kind.startswith("time"):
        if isinstance(value, time):
            return value
        try:
            return time.fromisoformat(str(value).strip())
        except ValueError as exc:
            raise ValidationError(f"'{value}' is not a valid time") from exc

    if kind in ("json", "jsonb"):
        return value if isinstance(value, str) else json.dumps(value)

    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def coerce_row(data: Dict[str, Any], columns: Dict[str, ColumnInfo]) -> Dict[str, Any]:
    return {
        key: coerce_value(value, columns[key].data_type if key in columns else None)
        for key, value in data.items()
    }


# ============================================================================
# Table registry
# ============================================================================

USER_TABLES_DDL = (
    "CREATE TABLE IF NOT EXISTS user_tables ("
    "id SERIAL PRIMARY KEY, "
    "app_id INTEGER NOT NULL, "
    "table_name VARCHAR(63) NOT NULL, "
    "display_name TEXT, "
    "columns JSONB NOT NULL DEFAULT '[]'::jsonb, "
    "created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP, "
    "UNIQUE (app_id, table_name))"
)


class UserTableColumn(BaseModel):
    name: str
    type: str = "TEXT"
    required: bool = False
    elementId: Optional[str] = None
    originalName: Optional[str] = None


class UserTable(BaseModel):
    appId: int
    tableName: str
    displayName: Optional[str] = None
    columns: List[UserTableColumn] = Field(default_factory=list)


def build_create_table_sql(table_name: str, columns: List[UserTableColumn], app_id: int) -> str:
    data_columns = [
        f"{quote_identifier(validate_identifier(column.name, 'Column name'))} {column.type}"
        + (" NOT NULL" if column.required else "")
        for column in columns
    ]
    definitions = [
        "id SERIAL PRIMARY KEY",
        *data_columns,
        "created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP",
        "updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP",
        f"app_id INTEGER NOT NULL DEFAULT {int(app_id)}",
    ]
    return f"CREATE TABLE IF NOT EXISTS {quote_identifier(table_name)} ({', '.join(definitions)})"


def index_name_for(table_name: str) -> str:
    return f"idx_{table_name}"[: MAX_IDENTIFIER_LENGTH - len("_app_id")] + "_app_id"


class TableRegistry:
    """Schema mirror for dynamically created app tables."""

    def __init__(self, db: Any):
        self.db = db

    async def ensure_schema(self) -> None:
        await self.db.execute(USER_TABLES_DDL)

    async def get(self, app_id: int, table_name: str) -> Optional[UserTable]:
        row = await self.db.query_one(
            "SELECT app_id, table_name, display_name, columns FROM user_tables "
            "WHERE app_id = $1 AND table_name = $2",
            app_id,
            table_name,
        )
        if not row:
            return None
        columns = row.get("columns") or []
        if isinstance(columns, str):
            columns = json.loads(columns)
        return UserTable(
            appId=row["app_id"],
            tableName=row["table_name"],
            displayName=row.get("display_name"),
            columns=[UserTableColumn(**column) for column in columns],
        )

    async def materialize(
        self,
        app_id: int,
        table_name: str,
        columns: List[UserTableColumn],
        display_name: Optional[str] = None,
    ) -> UserTable:
        """Create the physical table, its app_id index and metadata row together."""
        validate_identifier(table_name, "Table name")
        table = UserTable(appId=app_id, tableName=table_name, displayName=display_name, columns=columns)
        try:
            async with self.db.transaction() as tx:
                await tx.execute(build_create_table_sql(table_name, columns, app_id))
                await tx.execute(
                    f"CREATE INDEX IF NOT EXISTS {quote_identifier(index_name_for(table_name))} "
                    f"ON {quote_identifier(table_name)} (app_id)"
                )
                await tx.execute(
                    "INSERT INTO user_tables (app_id, table_name, display_name, columns) "
                    "VALUES ($1, $2, $3, $4::jsonb) ON CONFLICT (app_id, table_name) DO NOTHING",
                    app_id,
                    table_name,
                    display_name,
                    json.dumps([column.model_dump() for column in columns]),
                )
        except ValidationError:
            raise
        except Exception as exc:
            logger.exception("Failed to materialize table", extra={"table": table_name, "app_id": app_id})
            raise TableMaterializationError(f"Could not create table '{table_name}': {exc}") from exc

        logger.info("Materialized app table", extra={"table": table_name, "app_id": app_id})
        return table
