"""
Execution context and ``{{a.b.c}}`` placeholder substitution.

The context is a JSON-safe dictionary threaded through a run. A handful of
well-known namespaces (``form``, ``auth``, ``http``, ``trigger``, ``outputs``)
are merged key-by-key; every other top-level key is free-form so existing
``{{path}}`` references keep working.
"""

from __future__ import annotations

import copy
import json
import re
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Iterator, Mapping, Optional
from uuid import UUID

from pydantic_core import to_jsonable_python

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

NAMESPACES = ("form", "auth", "http", "trigger", "outputs")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def resolve_path(data: Any, path: str) -> Any:
    """
    Walk a dotted path through nested mappings and lists.

    Numeric segments index into lists (``items.0.name``). Returns ``MISSING``
    when any segment is absent.
    """
    value = data
    for segment in path.strip().split("."):
        segment = segment.strip()
        if not segment:
            return MISSING
        if isinstance(value, Mapping):
            if segment not in value:
                return MISSING
            value = value[segment]
        elif isinstance(value, (list, tuple)) and segment.lstrip("-").isdigit():
            index = int(segment)
            if index >= len(value) or index < -len(value):
                return MISSING
            value = value[index]
        else:
            return MISSING
    return value


def stringify(value: Any) -> str:
    """Render a context value for interpolation into a larger string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def has_placeholders(text: Any) -> bool:
    return isinstance(text, str) and bool(PLACEHOLDER_PATTERN.search(text))


def substitute(template: Any, context: Mapping[str, Any]) -> Any:
    """
    Replace ``{{path}}`` placeholders in ``template``.

    A string that is exactly one placeholder yields the raw value so numbers,
    lists and objects keep their type. Unresolvable placeholders are left in
    place untouched.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    whole = PLACEHOLDER_PATTERN.fullmatch(template.strip())
    if whole:
        value = resolve_path(context, whole.group(1))
        return template if value is MISSING else value

    def _replace(match: re.Match) -> str:
        value = resolve_path(context, match.group(1))
        if value is MISSING:
            return match.group(0)
        return stringify(value)

    return PLACEHOLDER_PATTERN.sub(_replace, template)


def substitute_text(template: Any, context: Mapping[str, Any]) -> str:
    """Like :func:`substitute` but always returns a string."""
    if template is None:
        return ""
    resolved = substitute(template, context)
    return resolved if isinstance(resolved, str) else stringify(resolved)


def substitute_payload(value: Any, context: Mapping[str, Any]) -> Any:
    """Recursively substitute placeholders inside dicts and lists."""
    if isinstance(value, str):
        return substitute(value, context)
    if isinstance(value, list):
        return [substitute_payload(item, context) for item in value]
    if isinstance(value, dict):
        return {key: substitute_payload(item, context) for key, item in value.items()}
    return value


def json_safe(value: Any) -> Any:
    """Convert database and Python values into plain JSON-compatible values."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Decimal):
        if value.is_finite() and value.as_tuple().exponent >= 0:
            return int(value)
        return float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(item) for item in value]
    return to_jsonable_python(value, fallback=str)


class ExecutionContext:
    """Append-only, serializable key-value state for one run."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values: Dict[str, Any] = json_safe(dict(values or {}))
        for namespace in NAMESPACES:
            if not isinstance(self._values.get(namespace), dict):
                self._values[namespace] = {}

    # Namespaces -----------------------------------------------------------

    @property
    def form(self) -> Dict[str, Any]:
        return self._values["form"]

    @property
    def auth(self) -> Dict[str, Any]:
        return self._values["auth"]

    @property
    def http(self) -> Dict[str, Any]:
        return self._values["http"]

    @property
    def trigger(self) -> Dict[str, Any]:
        return self._values["trigger"]

    @property
    def outputs(self) -> Dict[str, Any]:
        return self._values["outputs"]

    # Mapping-ish access ---------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def lookup(self, path: str, default: Any = None) -> Any:
        value = resolve_path(self._values, path)
        return default if value is MISSING else value

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ExecutionContext(keys={sorted(self._values)})"

    # Substitution ---------------------------------------------------------

    def substitute(self, template: Any) -> Any:
        return substitute(template, self._values)

    def substitute_text(self, template: Any) -> str:
        return substitute_text(template, self._values)

    def substitute_payload(self, value: Any) -> Any:
        return substitute_payload(value, self._values)

    # Growth ---------------------------------------------------------------

    def merged(self, updates: Optional[Mapping[str, Any]]) -> "ExecutionContext":
        """
        Return a new context extended with ``updates``.

        Namespace dictionaries are merged key-by-key; other keys are set.
        Existing keys are never dropped.
        """
        result = ExecutionContext.__new__(ExecutionContext)
        values = copy.deepcopy(self._values)
        for key, value in json_safe(dict(updates or {})).items():
            if key in NAMESPACES and isinstance(value, dict):
                values[key] = {**values.get(key, {}), **value}
            else:
                values[key] = value
        result._values = values
        return result

    def copy(self) -> "ExecutionContext":
        return self.merged(None)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._values)

    def as_mapping(self) -> Mapping[str, Any]:
        """Read-only view for substitution and lookups."""
        return self._values
