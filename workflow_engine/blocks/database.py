"""
Database blocks operating on dynamic, per-app tables.

Every physical table is named ``app_{appId}_{name}``. Identifiers are
validated, values go through ``$n`` parameters and are coerced to the live
column types discovered from ``information_schema``.
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from shared.logger import get_logger
from workflow_engine.blocks.base import BlockConfig, BlockHandler, BlockScope, register_block
from workflow_engine.context import ExecutionContext, json_safe
from workflow_engine.errors import BlockConfigError, ExternalServiceError, ValidationError, WorkflowEngineError
from workflow_engine.introspection import (
    ColumnInfo,
    SchemaIntrospector,
    TableRegistry,
    UserTableColumn,
    coerce_row,
    coerce_value,
    infer_kind,
    sql_type_for,
)
from workflow_engine.query_builder import SafeQueryBuilder
from workflow_engine.schema import BlockResult
from workflow_engine.security import (
    RESERVED_COLUMNS,
    ensure_columns_known,
    generate_table_name,
    is_json_path,
    json_path_column,
    sanitize_identifier,
    table_prefix,
    validate_column_name,
    validate_conditions,
    validate_pagination,
    validate_table_name,
)

logger = get_logger(__name__)

DATA_UPDATED_EVENT = "data-updated"

JsonInput = Union[Dict[str, Any], List[Any], str, None]


# ============================================================================
# Shared helpers
# ============================================================================


def parse_json_input(value: Any, what: str) -> Any:
    """Accept structured values or JSON strings typed into the canvas."""
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"{what} is not valid JSON: {exc.msg}") from exc
    return value


def resolve_table_name(raw: Any, scope: BlockScope) -> str:
    if not raw or not str(raw).strip():
        raise BlockConfigError("tableName is required")
    name = str(raw).strip()
    if not name.startswith(table_prefix(scope.app_id)):
        name = generate_table_name(scope.app_id, name)
    return validate_table_name(name, scope.app_id)


def _filter_column(field: str) -> str:
    return json_path_column(field) if is_json_path(field) else field


def prepare_conditions(conditions: List[Dict[str, Any]], columns: Dict[str, ColumnInfo]) -> List[Dict[str, Any]]:
    """Check filter columns exist and coerce filter values to their types."""
    ensure_columns_known([_filter_column(condition["field"]) for condition in conditions], columns)
    prepared = []
    for condition in conditions:
        field = condition["field"]
        value = condition["value"]
        if not is_json_path(field) and condition["operator"] not in ("IS NULL", "IS NOT NULL", "LIKE", "ILIKE"):
            data_type = columns[field].data_type
            if isinstance(value, list):
                value = [coerce_value(item, data_type) for item in value]
            else:
                value = coerce_value(value, data_type)
        elif is_json_path(field) and value is not None and not isinstance(value, list):
            value = str(value)
        prepared.append({**condition, "value": value})
    return prepared


def strip_reserved(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if str(key).lower() not in RESERVED_COLUMNS}


def stamp_updated_at(data: Dict[str, Any], columns: Dict[str, ColumnInfo]) -> Dict[str, Any]:
    if "updated_at" in columns:
        data = {**data, "updated_at": coerce_value(datetime.now(timezone.utc), columns["updated_at"].data_type)}
    return data


class DatabaseHandler(BlockHandler):
    toast_on_failure = True

    def introspector(self, scope: BlockScope) -> SchemaIntrospector:
        return SchemaIntrospector(scope.services.db)

    def registry(self, scope: BlockScope) -> TableRegistry:
        return TableRegistry(scope.services.db)

    async def require_columns(self, scope: BlockScope, table: str) -> Dict[str, ColumnInfo]:
        introspector = self.introspector(scope)
        if not await self._guard(introspector.table_exists(table)):
            raise ValidationError(f"Table '{table}' does not exist")
        return await self._guard(introspector.discover_columns(table))

    async def _guard(self, awaitable: Any) -> Any:
        try:
            return await awaitable
        except WorkflowEngineError:
            raise
        except Exception as exc:
            raise ExternalServiceError(f"Database error: {exc}") from exc

    async def fetch(self, scope: BlockScope, operation: str, table: str, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        started = time.perf_counter()
        rows = await self._guard(scope.services.db.query(sql, *params))
        scope.services.metrics.record(operation, table, (time.perf_counter() - started) * 1000, len(rows))
        return rows

    async def publish(self, scope: BlockScope, table: str, action: str, **details: Any) -> None:
        payload = {"tableName": table, "action": action, "appId": scope.app_id, **json_safe(details)}
        try:
            await scope.services.publisher.publish(scope.app_id, DATA_UPDATED_EVENT, payload)
        except Exception:
            logger.exception("Failed to publish data event", extra={"table": table, "app_id": scope.app_id})

    async def insert_row(
        self, scope: BlockScope, table: str, data: Dict[str, Any], columns: Dict[str, ColumnInfo]
    ) -> Dict[str, Any]:
        data = strip_reserved(data)
        for column in data:
            validate_column_name(column)
        ensure_columns_known(data.keys(), columns)
        sql, params = SafeQueryBuilder(table).build_insert(coerce_row(data, columns))
        rows = await self.fetch(scope, "insert", table, sql, params)
        return json_safe(rows[0]) if rows else {}

    async def update_rows(
        self,
        scope: BlockScope,
        table: str,
        data: Dict[str, Any],
        conditions: List[Dict[str, Any]],
        columns: Dict[str, ColumnInfo],
    ) -> List[Dict[str, Any]]:
        if not conditions:
            raise ValidationError("Refusing to update without WHERE conditions")
        data = strip_reserved(data)
        for column in data:
            validate_column_name(column)
        ensure_columns_known(data.keys(), columns)
        data = stamp_updated_at(coerce_row(data, columns), columns)
        builder = SafeQueryBuilder(table).add_conditions(prepare_conditions(conditions, columns))
        sql, params = builder.build_update(data)
        rows = await self.fetch(scope, "update", table, sql, params)
        return json_safe(rows)


def _dedupe(names: List[str]) -> List[str]:
    seen: Dict[str, int] = {}
    result = []
    for name in names:
        candidate = name
        while candidate in seen:
            seen[name] += 1
            candidate = f"{name}_{seen[name]}"
        seen.setdefault(candidate, 0)
        seen.setdefault(name, 0)
        result.append(candidate)
    return result


def _column_name(label: Any) -> str:
    name = sanitize_identifier(label)
    return f"{name}_field" if name in RESERVED_COLUMNS else name


# ============================================================================
# db.create
# ============================================================================


class ColumnSpec(BaseModel):
    name: str
    type: str = "text"
    required: bool = False


class DbCreateConfig(BlockConfig):
    tableName: Optional[str] = None
    displayName: Optional[str] = None
    columns: List[ColumnSpec] = Field(default_factory=list)
    elements: List[Dict[str, Any]] = Field(default_factory=list)
    insertData: JsonInput = None


def columns_from_elements(elements: List[Dict[str, Any]]) -> List[UserTableColumn]:
    """Declared columns for canvas form elements (labels become column names)."""
    columns = []
    for element in elements:
        element_id = element.get("id")
        if not element_id:
            continue
        properties = element.get("properties") or {}
        label = properties.get("label") or properties.get("name") or element.get("name") or element_id
        columns.append(
            UserTableColumn(
                name=_column_name(label),
                type=sql_type_for(element.get("type"), properties.get("inputType") or properties.get("type")),
                required=bool(properties.get("required")),
                elementId=str(element_id),
                originalName=str(label),
            )
        )
    return columns


def declared_columns(config: DbCreateConfig, data: Dict[str, Any]) -> List[UserTableColumn]:
    if config.columns:
        columns = [
            UserTableColumn(
                name=_column_name(column.name),
                type=sql_type_for(column.type),
                required=column.required,
                originalName=column.name,
            )
            for column in config.columns
        ]
    elif config.elements:
        columns = columns_from_elements(config.elements)
    else:
        columns = [UserTableColumn(name=_column_name(key), type="TEXT", originalName=str(key)) for key in data]

    for column, name in zip(columns, _dedupe([column.name for column in columns])):
        column.name = name
    return columns


def map_row_to_columns(data: Dict[str, Any], declared: List[UserTableColumn], live: Dict[str, ColumnInfo]) -> Dict[str, Any]:
    """Match data keys to columns by column name, element id, original label or sanitized key."""
    aliases: Dict[str, str] = {}
    for column in declared:
        for alias in (column.elementId, column.originalName):
            if alias:
                aliases.setdefault(str(alias), column.name)

    row: Dict[str, Any] = {}
    for key, value in data.items():
        key = str(key)
        if key in live:
            target = key
        elif key in aliases:
            target = aliases[key]
        else:
            target = _column_name(key)
        if target in live and target.lower() not in RESERVED_COLUMNS:
            row[target] = value
        else:
            logger.debug("Dropping value without a matching column", extra={"key": key})
    return row


@register_block
class DbCreateBlock(DatabaseHandler):
    label = "db.create"
    config_model = DbCreateConfig
    rate_limit_action = "db.create"

    async def execute(self, config: DbCreateConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        table = resolve_table_name(context.substitute_text(config.tableName), scope)

        data = parse_json_input(context.substitute_payload(config.insertData), "insertData")
        if data is None:
            data = context.get("formData") if isinstance(context.get("formData"), dict) else {}
        if not isinstance(data, dict) or not data:
            raise ValidationError("db.create requires insertData or submitted form data")

        introspector = self.introspector(scope)
        registry = self.registry(scope)
        declared: List[UserTableColumn]
        if await self._guard(introspector.table_exists(table)):
            metadata = await self._guard(registry.get(scope.app_id, table))
            declared = metadata.columns if metadata else []
        else:
            declared = declared_columns(config, data)
            await registry.materialize(scope.app_id, table, declared, display_name=config.displayName or config.tableName)

        live = await self._guard(introspector.discover_columns(table))
        row = map_row_to_columns(data, declared, live)
        if not row:
            raise ValidationError(f"None of the submitted fields match columns of '{table}'")

        record = await self.insert_row(scope, table, row, live)
        record_id = record.get("id")
        await self.publish(scope, table, "create", recordId=record_id, record=record)

        result = {"success": True, "recordId": record_id, "tableName": table, "record": record}
        return BlockResult.ok(
            {"recordId": record_id, "tableName": table, "dbCreateResult": result},
            output=result,
        )


# ============================================================================
# db.find
# ============================================================================


class OrderSpec(BaseModel):
    field: str
    direction: str = "ASC"


class DbFindConfig(BlockConfig):
    tableName: Optional[str] = None
    conditions: JsonInput = None
    orderBy: Union[List[OrderSpec], OrderSpec, str, None] = None
    limit: int = 100
    offset: int = 0
    columns: List[str] = Field(default_factory=lambda: ["*"])

    def order_specs(self) -> List[OrderSpec]:
        if self.orderBy is None:
            return []
        if isinstance(self.orderBy, OrderSpec):
            return [self.orderBy]
        if isinstance(self.orderBy, str):
            parsed = parse_json_input(self.orderBy, "orderBy")
            if parsed is None:
                return []
            if isinstance(parsed, dict):
                parsed = [parsed]
            return [OrderSpec(**item) for item in parsed]
        return list(self.orderBy)


@register_block
class DbFindBlock(DatabaseHandler):
    label = "db.find"
    config_model = DbFindConfig
    rate_limit_action = "db.find"

    async def execute(self, config: DbFindConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        table = resolve_table_name(context.substitute_text(config.tableName), scope)
        conditions = validate_conditions(
            parse_json_input(context.substitute_payload(config.conditions), "conditions") or []
        )
        limit, offset = validate_pagination(config.limit, config.offset)
        orders = config.order_specs()
        selected = [column for column in config.columns if column != "*"]

        columns = await self.require_columns(scope, table)
        ensure_columns_known([_filter_column(order.field) for order in orders], columns, "Order column")
        ensure_columns_known(selected, columns)

        builder = SafeQueryBuilder(table).add_conditions(prepare_conditions(conditions, columns))
        for order in orders:
            builder.add_order_by(order.field, order.direction)
        builder.set_limit(limit).set_offset(offset)
        sql, params = builder.build_select(selected or None)

        rows = json_safe(await self.fetch(scope, "select", table, sql, params))
        result = {
            "rows": rows,
            "count": len(rows),
            "hasMore": limit > 0 and len(rows) == limit,
            "limit": limit,
            "offset": offset,
            "tableName": table,
        }
        return BlockResult.ok({"dbFindResult": result, "dbFindCount": len(rows)}, output=result)


# ============================================================================
# db.update
# ============================================================================


class DbUpdateConfig(BlockConfig):
    tableName: Optional[str] = None
    updateData: JsonInput = None
    whereConditions: JsonInput = None
    returnUpdatedRecords: bool = True


@register_block
class DbUpdateBlock(DatabaseHandler):
    label = "db.update"
    config_model = DbUpdateConfig
    rate_limit_action = "db.update"

    async def execute(self, config: DbUpdateConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        table = resolve_table_name(context.substitute_text(config.tableName), scope)
        update_data = parse_json_input(context.substitute_payload(config.updateData), "updateData")
        where = parse_json_input(context.substitute_payload(config.whereConditions), "whereConditions")

        if not isinstance(update_data, dict) or not update_data:
            raise ValidationError("db.update requires non-empty updateData")
        if not where:
            raise ValidationError("db.update requires at least one where condition")
        conditions = validate_conditions(where)
        update_data = strip_reserved(update_data)
        if not update_data:
            raise ValidationError("updateData only contained reserved columns")

        columns = await self.require_columns(scope, table)
        records = await self.update_rows(scope, table, update_data, conditions, columns)
        await self.publish(
            scope, table, "update", count=len(records), records=records, changedColumns=sorted(update_data)
        )

        result = {
            "success": True,
            "tableName": table,
            "updatedCount": len(records),
            "records": records if config.returnUpdatedRecords else [],
        }
        return BlockResult.ok({"dbUpdateResult": result}, output=result)


# ============================================================================
# db.upsert
# ============================================================================


class DbUpsertConfig(BlockConfig):
    tableName: Optional[str] = None
    uniqueFields: Union[List[str], str, None] = None
    insertData: JsonInput = None
    updateData: JsonInput = None
    createIfMissing: bool = True


def parse_unique_fields(raw: Union[List[str], str, None]) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            parsed = parse_json_input(text, "uniqueFields")
            items = parsed if isinstance(parsed, list) else []
        else:
            items = text.split(",")
    else:
        items = list(raw)

    fields = []
    for item in items:
        field = str(item).strip().strip("\"'`").strip()
        if not field:
            continue
        if field.isdigit():
            raise ValidationError(f"Unique field '{field}' is not a column name")
        if not is_json_path(field):
            validate_column_name(field, allow_reserved=True)
        fields.append(field)
    return fields


def unique_value(field: str, source: Dict[str, Any]) -> Any:
    if field in source:
        return source[field]
    if is_json_path(field):
        column = json_path_column(field)
        key = field.rsplit("'", 2)[-2]
        nested = source.get(column)
        if isinstance(nested, str):
            nested = parse_json_input(nested, column)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
        if key in source:
            return source[key]
    raise ValidationError(f"No value supplied for unique field '{field}'")


@register_block
class DbUpsertBlock(DatabaseHandler):
    label = "db.upsert"
    config_model = DbUpsertConfig
    rate_limit_action = "db.upsert"

    async def execute(self, config: DbUpsertConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        table = resolve_table_name(context.substitute_text(config.tableName), scope)
        unique_fields = parse_unique_fields(context.substitute_payload(config.uniqueFields))
        insert_data = parse_json_input(context.substitute_payload(config.insertData), "insertData") or {}
        update_data = parse_json_input(context.substitute_payload(config.updateData), "updateData") or {}

        if not unique_fields:
            raise BlockConfigError("db.upsert requires uniqueFields")
        if not isinstance(insert_data, dict) or not isinstance(update_data, dict):
            raise ValidationError("insertData and updateData must be objects")
        if not insert_data and not update_data:
            raise BlockConfigError("db.upsert requires insertData or updateData")

        source = {**insert_data, **update_data}
        lookups = [(field, unique_value(field, source)) for field in unique_fields]

        columns = await self._columns_or_materialize(config, scope, table, source)
        conditions = prepare_conditions(
            [{"field": field, "operator": "=", "value": value, "logic": "AND"} for field, value in lookups],
            columns,
        )
        builder = SafeQueryBuilder(table).add_conditions(conditions).set_limit(1)
        sql, params = builder.build_select(["id"])
        existing = await self.fetch(scope, "select", table, sql, params)

        if existing:
            record_id = existing[0]["id"]
            payload = dict(update_data or insert_data)
            for field in unique_fields:
                payload.pop(field, None)
            payload = strip_reserved(payload)
            records: List[Dict[str, Any]] = []
            if payload or "updated_at" in columns:
                records = await self.update_rows(
                    scope,
                    table,
                    payload,
                    [{"field": "id", "operator": "=", "value": record_id, "logic": "AND"}],
                    columns,
                )
            action = "updated"
            record = records[0] if records else {"id": record_id}
            changed = sorted(payload)
        else:
            record = await self.insert_row(scope, table, insert_data or update_data, columns)
            record_id = record.get("id")
            action = "created"
            changed = sorted(strip_reserved(insert_data or update_data))

        await self.publish(scope, table, action, recordId=record_id, record=record, changedColumns=changed)
        result = {"success": True, "action": action, "recordId": json_safe(record_id), "tableName": table, "record": record}
        return BlockResult.ok({"dbUpsertResult": result, "recordId": result["recordId"]}, output=result)

    async def _columns_or_materialize(
        self, config: DbUpsertConfig, scope: BlockScope, table: str, data: Dict[str, Any]
    ) -> Dict[str, ColumnInfo]:
        introspector = self.introspector(scope)
        if not await self._guard(introspector.table_exists(table)):
            if not config.createIfMissing:
                raise ValidationError(f"Table '{table}' does not exist")
            declared = []
            for key, value in strip_reserved(data).items():
                declared.append(
                    UserTableColumn(name=validate_column_name(key), type=sql_type_for(infer_kind(value)), originalName=key)
                )
            await self.registry(scope).materialize(scope.app_id, table, declared, display_name=config.tableName)
        return await self._guard(introspector.discover_columns(table))
