"""
Condition and control blocks. Each returns a ``route`` the orchestrator uses
to pick outgoing edges: ``yes``/``no`` or a switch case label.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from workflow_engine.blocks.base import BlockConfig, BlockHandler, BlockScope, register_block
from workflow_engine.comparisons import DATE_FORMATS, CompareOptions, compare, parse_calendar_date
from workflow_engine.context import ExecutionContext, json_safe, stringify
from workflow_engine.errors import BlockConfigError
from workflow_engine.expressions import evaluate_expression
from workflow_engine.schema import BlockCategory, BlockResult

YES = "yes"
NO = "no"
DEFAULT_ROUTE = "default"


def _yes_no(flag: bool) -> str:
    return YES if flag else NO


class ConditionHandler(BlockHandler):
    category = BlockCategory.CONDITIONS
    routes = (YES, NO)


# ============================================================================
# switch
# ============================================================================


class SwitchCase(BaseModel):
    caseValue: Any = None
    caseLabel: Optional[str] = None


class SwitchConfig(BlockConfig):
    inputValue: Any = None
    cases: List[SwitchCase] = Field(default_factory=list)
    defaultCase: bool = True


@register_block
class SwitchBlock(ConditionHandler):
    label = "switch"
    config_model = SwitchConfig
    routes = (DEFAULT_ROUTE,)

    async def execute(self, config: SwitchConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        input_value = context.substitute_text(config.inputValue).strip()
        needle = input_value.lower()

        matched: Optional[SwitchCase] = None
        matched_value: Optional[str] = None
        for case in config.cases:
            candidate = context.substitute_text(case.caseValue).strip()
            if candidate.lower() == needle:
                matched = case
                matched_value = candidate
                break

        if matched is not None:
            route = matched.caseLabel or matched_value
        else:
            route = DEFAULT_ROUTE

        result = {
            "inputValue": input_value,
            "matchedCase": route,
            "matchedValue": matched_value,
            "matched": matched is not None,
        }
        return BlockResult.ok({"switchResult": result}, route=route, output=result)


# ============================================================================
# match
# ============================================================================


class MatchOptions(BaseModel):
    ignoreCase: bool = False
    trimSpaces: bool = False


class MatchConfig(BlockConfig):
    leftValue: Any = None
    rightValue: Any = None
    comparisonType: str = "text"
    operator: str = "equals"
    options: MatchOptions = Field(default_factory=MatchOptions)
    ignoreCase: Optional[bool] = None
    trimSpaces: Optional[bool] = None

    def compare_options(self) -> CompareOptions:
        return CompareOptions(
            ignore_case=self.options.ignoreCase if self.ignoreCase is None else self.ignoreCase,
            trim_spaces=self.options.trimSpaces if self.trimSpaces is None else self.trimSpaces,
        )


@register_block
class MatchBlock(ConditionHandler):
    label = "match"
    config_model = MatchConfig

    async def execute(self, config: MatchConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        left = context.substitute(config.leftValue)
        right = context.substitute(config.rightValue)
        matches = compare(left, right, config.comparisonType, config.operator, config.compare_options())
        result = {
            "matches": matches,
            "leftValue": json_safe(left),
            "rightValue": json_safe(right),
            "operator": config.operator,
            "comparisonType": config.comparisonType,
        }
        return BlockResult.ok({"matchResult": result}, route=_yes_no(matches), output=result)


# ============================================================================
# expr
# ============================================================================


class ExprConfig(BlockConfig):
    expression: str
    outputVariable: str = "exprResult"

    @field_validator("expression")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("expression must be non-empty")
        return value

    @field_validator("outputVariable")
    @classmethod
    def _default_output(cls, value: str) -> str:
        return value.strip() or "exprResult"


@register_block
class ExprBlock(ConditionHandler):
    label = "expr"
    config_model = ExprConfig
    rate_limit_action = "expr"

    async def execute(self, config: ExprConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        settings = scope.settings
        value = json_safe(
            evaluate_expression(
                config.expression,
                context.as_mapping(),
                max_sequence_length=settings.expr_max_sequence_length,
                max_exponent=settings.expr_max_exponent,
            )
        )
        updates = {config.outputVariable: value, "exprResult": value}
        return BlockResult.ok(updates, route=_yes_no(bool(value)), output={"result": value})


# ============================================================================
# isFilled
# ============================================================================


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, dict)):
        return not value
    return stringify(value).strip() == ""


class IsFilledConfig(BlockConfig):
    elementIds: List[str] = Field(default_factory=list)
    elementId: Optional[str] = None
    requireAll: bool = True

    def targets(self) -> List[str]:
        ids = list(self.elementIds)
        if self.elementId and self.elementId not in ids:
            ids.append(self.elementId)
        return ids


@register_block
class IsFilledBlock(ConditionHandler):
    label = "isFilled"
    config_model = IsFilledConfig

    async def execute(self, config: IsFilledConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        sources: List[Dict[str, Any]] = [context.form]
        if isinstance(context.get("formData"), dict):
            sources.append(context.get("formData"))

        def lookup(element_id: str) -> Any:
            for source in sources:
                if element_id in source:
                    return source[element_id]
            return context.lookup(element_id)

        targets = config.targets()
        missing = [element_id for element_id in targets if _is_blank(lookup(element_id))]
        if not targets:
            filled = False
        elif config.requireAll:
            filled = not missing
        else:
            filled = len(missing) < len(targets)

        result = {"filled": filled, "missing": missing, "checked": targets}
        return BlockResult.ok({"isFilledResult": result}, route=_yes_no(filled), output=result)


# ============================================================================
# dateValid
# ============================================================================

_DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


class DateRules(BaseModel):
    """Checks applied to every selected date field. Days of week count from Sunday = 0."""

    required: bool = False
    minDate: Optional[str] = None
    maxDate: Optional[str] = None
    businessDaysOnly: bool = False
    futureOnly: bool = False
    pastOnly: bool = False
    excludedDates: List[str] = Field(default_factory=list)
    allowedDaysOfWeek: List[int] = Field(default_factory=list)
    noLeapYear: bool = False
    minAge: Optional[int] = None
    maxAge: Optional[int] = None


class DateValidConfig(BlockConfig):
    selectedElementIds: List[str] = Field(default_factory=list)
    dateFormat: Optional[str] = None
    validationRules: DateRules = Field(default_factory=DateRules)

    @field_validator("dateFormat")
    @classmethod
    def _known_format(cls, value: Optional[str]) -> Optional[str]:
        if value in (None, "", "auto-detect"):
            return None
        if value not in DATE_FORMATS:
            raise ValueError(f"dateFormat must be one of {', '.join(DATE_FORMATS)}")
        return value


def _age_on(born: date, today: date) -> int:
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def _js_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def validate_date_value(value: Any, rules: DateRules, date_format: Optional[str], today: date) -> Dict[str, Any]:
    """Validate one field value; returns ``isValid``, ``errors`` and the normalized date."""
    shown_format = date_format or "YYYY-MM-DD"
    if _is_blank(value):
        if rules.required:
            return {"isValid": False, "errors": ["Date is required"], "parsedDate": None}
        return {"isValid": True, "errors": [], "parsedDate": None}

    parsed = parse_calendar_date(value, date_format)
    if parsed is None:
        expected = date_format or "YYYY-MM-DD, MM/DD/YYYY, or DD/MM/YYYY"
        return {"isValid": False, "errors": [f"Invalid date format. Expected: {expected}"], "parsedDate": None}

    def shown(day: date) -> str:
        return day.strftime(DATE_FORMATS[shown_format])

    errors: List[str] = []
    earliest = parse_calendar_date(rules.minDate, date_format)
    if earliest and parsed < earliest:
        errors.append(f"Date must be after {shown(earliest)}")
    latest = parse_calendar_date(rules.maxDate, date_format)
    if latest and parsed > latest:
        errors.append(f"Date must be before {shown(latest)}")
    if rules.businessDaysOnly and parsed.weekday() >= 5:
        errors.append("Date must be a business day (Monday-Friday)")
    if rules.futureOnly and parsed <= today:
        errors.append("Date must be in the future")
    if rules.pastOnly and parsed >= today:
        errors.append("Date must be in the past")
    if parsed.isoformat() in rules.excludedDates:
        errors.append("This date is not available")
    if rules.allowedDaysOfWeek and _js_weekday(parsed) not in rules.allowedDaysOfWeek:
        names = ", ".join(_DAY_NAMES[day % 7] for day in rules.allowedDaysOfWeek)
        errors.append(f"Date must be on: {names}")
    if rules.noLeapYear and (parsed.month, parsed.day) == (2, 29):
        errors.append("February 29th is not allowed")
    if rules.minAge is not None or rules.maxAge is not None:
        age = _age_on(parsed, today)
        if rules.minAge is not None and age < rules.minAge:
            errors.append(f"Age must be at least {rules.minAge} years")
        if rules.maxAge is not None and age > rules.maxAge:
            errors.append(f"Age must be no more than {rules.maxAge} years")

    return {"isValid": not errors, "errors": errors, "parsedDate": parsed.isoformat(), "formattedDate": shown(parsed)}


@register_block
class DateValidBlock(ConditionHandler):
    label = "dateValid"
    config_model = DateValidConfig

    async def execute(self, config: DateValidConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        if not config.selectedElementIds:
            raise BlockConfigError("No date elements selected for validation")

        form_data = context.get("formData") if isinstance(context.get("formData"), dict) else {}
        today = datetime.now(timezone.utc).date()
        results = []
        for element_id in config.selectedElementIds:
            value = form_data[element_id] if element_id in form_data else context.lookup(element_id)
            outcome = validate_date_value(value, config.validationRules, config.dateFormat, today)
            results.append({"elementId": element_id, "value": value, **outcome})

        valid_count = sum(1 for result in results if result["isValid"])
        all_valid = valid_count == len(results)
        summary = {
            "results": results,
            "allValid": all_valid,
            "anyValid": valid_count > 0,
            "validCount": valid_count,
            "message": f"{valid_count}/{len(results)} dates are valid",
            "validatedAt": datetime.now(timezone.utc).isoformat(),
        }
        return BlockResult.ok(
            {"dateValidation": summary, "isValid": all_valid},
            route=_yes_no(all_valid),
            output=summary,
        )


# ============================================================================
# roleIs
# ============================================================================


def collect_roles(context: ExecutionContext) -> List[str]:
    roles: List[str] = []
    for source in (context.get("user"), context.get("session"), context.auth):
        if not isinstance(source, dict):
            continue
        values = source.get("roles") or []
        if isinstance(values, str):
            values = [values]
        if source.get("role"):
            values = [*values, source["role"]]
        for role in values:
            normalized = str(role).strip().lower()
            if normalized and normalized not in roles:
                roles.append(normalized)
    return roles


class RoleIsConfig(BlockConfig):
    requiredRole: Optional[str] = None
    requiredRoles: List[str] = Field(default_factory=list)

    def wanted(self) -> List[str]:
        wanted = [role.strip().lower() for role in self.requiredRoles if role.strip()]
        if self.requiredRole and self.requiredRole.strip():
            wanted.append(self.requiredRole.strip().lower())
        return wanted


@register_block
class RoleIsBlock(ConditionHandler):
    label = "roleIs"
    config_model = RoleIsConfig

    async def execute(self, config: RoleIsConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        roles = collect_roles(context)
        wanted = config.wanted()
        has_role = bool(wanted) and any(role in roles for role in wanted)
        result = {"hasRole": has_role, "userRoles": roles, "requiredRoles": wanted}
        return BlockResult.ok({"roleCheckResult": result}, route=_yes_no(has_role), output=result)
