"""
Parameterized SQL builder for dynamic app tables.

Identifiers are validated and double-quoted; every value travels as a ``$n``
parameter. JSON paths such as ``data->>'email'`` are accepted wherever a
filter column is expected.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from workflow_engine.errors import ValidationError
from workflow_engine.security import (
    JSON_PATH_PATTERN,
    normalize_operator,
    quote_identifier,
    validate_identifier,
)

_JSON_STEP_PATTERN = re.compile(r"(->>?)\s*'([a-zA-Z0-9_]+)'")


def column_expression(field: str) -> str:
    """Quoted SQL for a plain column or a JSON path expression."""
    field = str(field or "").strip()
    match = JSON_PATH_PATTERN.match(field)
    if match:
        steps = "".join(
            f"{arrow}'{key}'" for arrow, key in _JSON_STEP_PATTERN.findall(match.group("path"))
        )
        return f"{quote_identifier(match.group('column'))}{steps}"
    return quote_identifier(validate_identifier(field, "Column name"))


class SafeQueryBuilder:
    """
    Accumulates filters, ordering and paging for one table.

    Example:
        builder = SafeQueryBuilder("app_7_orders")
        builder.add_where("status", "=", "open").add_order_by("created_at", "DESC")
        builder.set_limit(20)
        sql, params = builder.build_select()
    """

    def __init__(self, table_name: str):
        self.table_name = validate_identifier(table_name, "Table name")
        self.params: List[Any] = []
        self._where: List[Tuple[str, str]] = []
        self._order: List[str] = []
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None

    @property
    def table(self) -> str:
        return quote_identifier(self.table_name)

    def add_param(self, value: Any) -> str:
        self.params.append(value)
        return f"${len(self.params)}"

    def add_where(self, field: str, operator: str = "=", value: Any = None, logic: str = "AND") -> "SafeQueryBuilder":
        column = column_expression(field)
        op = normalize_operator(operator)

        if op in ("IS NULL", "IS NOT NULL"):
            clause = f"{column} {op}"
        elif op in ("IN", "NOT IN"):
            values = list(value) if isinstance(value, (list, tuple)) else [value]
            if not values:
                clause = "FALSE" if op == "IN" else "TRUE"
            else:
                placeholders = ", ".join(self.add_param(item) for item in values)
                clause = f"{column} {op} ({placeholders})"
        else:
            clause = f"{column} {op} {self.add_param(value)}"

        self._where.append(((logic or "AND").upper(), clause))
        return self

    def add_conditions(self, conditions: Iterable[Dict[str, Any]]) -> "SafeQueryBuilder":
        for condition in conditions:
            self.add_where(
                condition["field"],
                condition.get("operator", "="),
                condition.get("value"),
                condition.get("logic", "AND"),
            )
        return self

    def add_order_by(self, field: str, direction: str = "ASC") -> "SafeQueryBuilder":
        normalized = str(direction or "ASC").upper()
        if normalized not in ("ASC", "DESC"):
            raise ValidationError(f"Invalid sort direction '{direction}'")
        self._order.append(f"{column_expression(field)} {normalized}")
        return self

    def set_limit(self, limit: Optional[int]) -> "SafeQueryBuilder":
        self._limit = None if limit is None else int(limit)
        return self

    def set_offset(self, offset: Optional[int]) -> "SafeQueryBuilder":
        self._offset = None if offset is None else int(offset)
        return self

    @property
    def has_where(self) -> bool:
        return bool(self._where)

    def where_sql(self) -> str:
        if not self._where:
            return ""
        parts: List[str] = []
        for index, (logic, clause) in enumerate(self._where):
            parts.append(clause if index == 0 else f"{logic} {clause}")
        return " WHERE " + " ".join(parts)

    def build_select(self, columns: Optional[Sequence[str]] = None) -> Tuple[str, List[Any]]:
        if not columns or list(columns) == ["*"]:
            selected = "*"
        else:
            selected = ", ".join(column_expression(column) for column in columns)
        sql = f"SELECT {selected} FROM {self.table}{self.where_sql()}"
        if self._order:
            sql += " ORDER BY " + ", ".join(self._order)
        if self._limit is not None:
            sql += f" LIMIT {self.add_param(self._limit)}"
        if self._offset:
            sql += f" OFFSET {self.add_param(self._offset)}"
        return sql, list(self.params)

    def build_update(self, data: Dict[str, Any]) -> Tuple[str, List[Any]]:
        if not data:
            raise ValidationError("Update requires at least one column")
        if not self._where:
            raise ValidationError("Update requires at least one WHERE condition")
        assignments = ", ".join(
            f"{quote_identifier(validate_identifier(column, 'Column name'))} = {self.add_param(value)}"
            for column, value in data.items()
        )
        sql = f"UPDATE {self.table} SET {assignments}{self.where_sql()} RETURNING *"
        return sql, list(self.params)

    def build_insert(self, data: Dict[str, Any]) -> Tuple[str, List[Any]]:
        if not data:
            return f"INSERT INTO {self.table} DEFAULT VALUES RETURNING *", []
        columns = ", ".join(quote_identifier(validate_identifier(column, "Column name")) for column in data)
        placeholders = ", ".join(self.add_param(value) for value in data.values())
        sql = f"INSERT INTO {self.table} ({columns}) VALUES ({placeholders}) RETURNING *"
        return sql, list(self.params)
