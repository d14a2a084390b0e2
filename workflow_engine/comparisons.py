"""
Typed comparators used by ``match`` blocks.

Four families (text, number, date, list) each own a fixed operator set.
Operands arrive as already-substituted context values, usually strings.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from workflow_engine.errors import ValidationError

TEXT_OPERATORS = (
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "is_empty",
    "is_not_empty",
    "matches_pattern",
)
NUMBER_OPERATORS = (
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "greater_than_or_equal",
    "less_than_or_equal",
    "between",
    "is_number",
    "is_not_number",
)
DATE_OPERATORS = (
    "equals",
    "not_equals",
    "is_after",
    "is_before",
    "is_today",
    "is_this_week",
    "is_this_month",
    "is_within_last_days",
    "is_within_next_days",
)
LIST_OPERATORS = (
    "includes",
    "not_includes",
    "includes_any_of",
    "includes_all_of",
    "includes_none_of",
    "has_length",
    "has_length_greater_than",
    "has_length_less_than",
    "is_empty",
    "is_not_empty",
)

_OPERATOR_ALIASES = {
    "number": {"at_least": "greater_than_or_equal", "at_most": "less_than_or_equal"},
    "date": {
        "is_exactly": "equals",
        "within_last_days": "is_within_last_days",
        "within_next_days": "is_within_next_days",
    },
}


@dataclass(frozen=True)
class CompareOptions:
    ignore_case: bool = False
    trim_spaces: bool = False


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


# ============================================================================
# Text
# ============================================================================


def compare_text(left: Any, right: Any, operator: str, options: CompareOptions = CompareOptions()) -> bool:
    raw_left = _as_text(left)
    raw_right = _as_text(right)
    if options.trim_spaces:
        raw_left = raw_left.strip()
        raw_right = raw_right.strip()

    if operator == "equals_exactly":
        return raw_left == raw_right

    if operator == "matches_pattern":
        flags = re.IGNORECASE if options.ignore_case else 0
        try:
            return re.search(raw_right, raw_left, flags) is not None
        except re.error as exc:
            raise ValidationError(f"Invalid pattern '{raw_right}': {exc}") from exc

    lhs = raw_left.lower() if options.ignore_case else raw_left
    rhs = raw_right.lower() if options.ignore_case else raw_right

    if operator == "equals":
        return lhs == rhs
    if operator == "not_equals":
        return lhs != rhs
    if operator == "contains":
        return rhs in lhs
    if operator == "not_contains":
        return rhs not in lhs
    if operator == "starts_with":
        return lhs.startswith(rhs)
    if operator == "ends_with":
        return lhs.endswith(rhs)
    if operator == "is_empty":
        return lhs.strip() == ""
    if operator == "is_not_empty":
        return lhs.strip() != ""
    raise ValidationError(f"Unknown text operator '{operator}'")


# ============================================================================
# Number
# ============================================================================


def parse_number(value: Any) -> Optional[float]:
    """Parse a finite number, returning None when the value is not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def _require_number(value: Any, side: str) -> float:
    number = parse_number(value)
    if number is None:
        raise ValidationError(f"{side} value '{value}' is not a valid number")
    return number


def compare_number(left: Any, right: Any, operator: str) -> bool:
    operator = _OPERATOR_ALIASES["number"].get(operator, operator)

    if operator == "is_number":
        return parse_number(left) is not None
    if operator == "is_not_number":
        return parse_number(left) is None

    lhs = _require_number(left, "Left")

    if operator == "between":
        bounds = [part.strip() for part in _as_text(right).split(",")]
        if len(bounds) != 2:
            raise ValidationError("between expects a 'min,max' range")
        low = _require_number(bounds[0], "Range minimum")
        high = _require_number(bounds[1], "Range maximum")
        return low <= lhs <= high

    rhs = _require_number(right, "Right")
    comparisons: Dict[str, Callable[[float, float], bool]] = {
        "equals": lambda a, b: a == b,
        "not_equals": lambda a, b: a != b,
        "greater_than": lambda a, b: a > b,
        "less_than": lambda a, b: a < b,
        "greater_than_or_equal": lambda a, b: a >= b,
        "less_than_or_equal": lambda a, b: a <= b,
    }
    if operator not in comparisons:
        raise ValidationError(f"Unknown number operator '{operator}'")
    return comparisons[operator](lhs, rhs)


# ============================================================================
# Date
# ============================================================================


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse ISO-8601 strings, epoch milliseconds, dates and datetimes.

    Naive values are treated as UTC; the result is always UTC-aware.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


DATE_FORMATS: Dict[str, str] = {
    "YYYY-MM-DD": "%Y-%m-%d",
    "MM/DD/YYYY": "%m/%d/%Y",
    "DD/MM/YYYY": "%d/%m/%Y",
    "DD-MM-YYYY": "%d-%m-%Y",
}


def parse_calendar_date(value: Any, date_format: Optional[str] = None) -> Optional[date]:
    """
    Parse a form-style date into a calendar day.

    With a known ``date_format`` only that layout is accepted. Otherwise the
    layouts in :data:`DATE_FORMATS` are tried in order (so ``03/04/2026`` reads
    as March 4th) before falling back to :func:`parse_datetime`.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if not text:
        return None

    layout = DATE_FORMATS.get(date_format or "")
    layouts = [layout] if layout else list(DATE_FORMATS.values())
    for candidate in layouts:
        try:
            return datetime.strptime(text, candidate).date()
        except ValueError:
            continue
    if layout:
        return None
    parsed = parse_datetime(text)
    return parsed.date() if parsed else None


def _require_days(value: Any) -> int:
    number = parse_number(value)
    if number is None or number < 0:
        raise ValidationError(f"Expected a non-negative number of days, got '{value}'")
    return int(number)


def compare_date(left: Any, right: Any, operator: str, now: Optional[datetime] = None) -> bool:
    operator = _OPERATOR_ALIASES["date"].get(operator, operator)
    current = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)

    lhs = parse_datetime(left)
    if lhs is None:
        raise ValidationError(f"Left value '{left}' is not a valid date")

    if operator in ("equals", "not_equals", "is_after", "is_before"):
        rhs = parse_datetime(right)
        if rhs is None:
            raise ValidationError(f"Right value '{right}' is not a valid date")
        if operator == "equals":
            return lhs == rhs
        if operator == "not_equals":
            return lhs != rhs
        if operator == "is_after":
            return lhs > rhs
        return lhs < rhs

    today = current.date()
    if operator == "is_today":
        return lhs.date() == today
    if operator == "is_this_week":
        # Weeks run Sunday through Saturday.
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        return start <= lhs.date() <= start + timedelta(days=6)
    if operator == "is_this_month":
        return (lhs.year, lhs.month) == (today.year, today.month)
    if operator == "is_within_last_days":
        return current - timedelta(days=_require_days(right)) <= lhs <= current
    if operator == "is_within_next_days":
        return current <= lhs <= current + timedelta(days=_require_days(right))
    raise ValidationError(f"Unknown date operator '{operator}'")


# ============================================================================
# List
# ============================================================================


def parse_list(value: Any) -> List[Any]:
    """Accept a list, a JSON array string or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return parsed
        return [part.strip() for part in text.split(",") if part.strip()]
    return [value]


def compare_list(left: Any, right: Any, operator: str, options: CompareOptions = CompareOptions()) -> bool:
    def normalize(item: Any) -> str:
        text = _as_text(item).strip()
        return text.lower() if options.ignore_case else text

    items = [normalize(item) for item in parse_list(left)]

    if operator == "is_empty":
        return not items
    if operator == "is_not_empty":
        return bool(items)
    if operator == "has_length":
        return len(items) == int(_require_number(right, "Length"))
    if operator == "has_length_greater_than":
        return len(items) > _require_number(right, "Length")
    if operator == "has_length_less_than":
        return len(items) < _require_number(right, "Length")
    if operator == "includes":
        return normalize(right) in items
    if operator == "not_includes":
        return normalize(right) not in items

    wanted = [normalize(item) for item in parse_list(right)]
    if operator == "includes_any_of":
        return any(item in items for item in wanted)
    if operator == "includes_all_of":
        return all(item in items for item in wanted)
    if operator == "includes_none_of":
        return not any(item in items for item in wanted)
    raise ValidationError(f"Unknown list operator '{operator}'")


def compare(
    left: Any,
    right: Any,
    comparison_type: str,
    operator: str,
    options: Optional[CompareOptions] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Dispatch to the comparator for ``comparison_type`` (unknown types compare as text)."""
    options = options or CompareOptions()
    kind = (comparison_type or "text").lower()
    if kind == "number":
        return compare_number(left, right, operator)
    if kind == "date":
        return compare_date(left, right, operator, now=now)
    if kind == "list":
        return compare_list(left, right, operator, options)
    return compare_text(left, right, operator, options)
