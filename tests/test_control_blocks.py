"""
Tests for condition blocks and the routes they choose.
"""
from datetime import date

import pytest

from tests.fakes import node, run_block
from workflow_engine.blocks.control import DateRules, validate_date_value
from workflow_engine.errors import ErrorCode

TODAY = date(2026, 3, 11)


class TestSwitch:
    CASES = [{"caseValue": "a", "caseLabel": "first"}, {"caseValue": "B"}, {"caseValue": "{{special}}"}]

    @pytest.mark.asyncio
    async def test_matches_case_insensitively(self, engine_services):
        result = await run_block(
            engine_services, node("s", "switch", inputValue="{{plan}}", cases=self.CASES), {"plan": " b "}
        )
        assert result.route == "B"
        assert result.updates["switchResult"]["matched"] is True

    @pytest.mark.asyncio
    async def test_case_label_wins_over_value(self, engine_services):
        result = await run_block(engine_services, node("s", "switch", inputValue="A", cases=self.CASES))
        assert result.route == "first"

    @pytest.mark.asyncio
    async def test_unmatched_goes_to_default(self, engine_services):
        result = await run_block(
            engine_services, node("s", "switch", inputValue="zzz", cases=self.CASES), {"special": "vip"}
        )
        assert result.route == "default"
        assert result.updates["switchResult"]["matched"] is False


class TestMatch:
    @pytest.mark.asyncio
    async def test_text_match_with_options(self, engine_services):
        result = await run_block(
            engine_services,
            node("m", "match", leftValue="{{name}}", rightValue=" foo ", options={"ignoreCase": True, "trimSpaces": True}),
            {"name": "Foo"},
        )
        assert result.success
        assert result.route == "yes"
        assert result.updates["matchResult"]["matches"] is True

    @pytest.mark.asyncio
    async def test_number_between(self, engine_services):
        config = {"leftValue": "{{score}}", "rightValue": "1,10", "comparisonType": "number", "operator": "between"}
        inside = await run_block(engine_services, node("m", "match", **config), {"score": 5})
        outside = await run_block(engine_services, node("m", "match", **config), {"score": 15})
        assert inside.route == "yes"
        assert outside.route == "no"

    @pytest.mark.asyncio
    async def test_invalid_operand_fails(self, engine_services):
        result = await run_block(
            engine_services,
            node("m", "match", leftValue="abc", rightValue="1", comparisonType="number", operator="greater_than"),
        )
        assert not result.success
        assert result.error.code == ErrorCode.VALIDATION_ERROR


class TestExpr:
    @pytest.mark.asyncio
    async def test_result_is_stored_and_routes(self, engine_services):
        result = await run_block(
            engine_services,
            node("e", "expr", expression="{{order.total}} * 2 > 100", outputVariable="bigOrder"),
            {"order": {"total": 60}},
        )
        assert result.route == "yes"
        assert result.updates["bigOrder"] is True
        assert result.updates["exprResult"] is True

    @pytest.mark.asyncio
    async def test_empty_expression_is_config_error(self, engine_services):
        result = await run_block(engine_services, node("e", "expr", expression="  "))
        assert result.error.code == ErrorCode.INVALID_CONFIG

    @pytest.mark.asyncio
    async def test_unsafe_expression_fails(self, engine_services):
        result = await run_block(engine_services, node("e", "expr", expression="__import__('os')"))
        assert not result.success
        assert result.error.code == ErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_repetition_limit_comes_from_settings(self, engine_services):
        engine_services.settings.expr_max_sequence_length = 4
        result = await run_block(engine_services, node("e", "expr", expression="len('abc' * 2)"))
        assert not result.success
        assert "limit is 4" in result.error.message


class TestIsFilled:
    @pytest.mark.asyncio
    async def test_require_all(self, engine_services):
        values = {"formData": {"email": "a@b.co", "name": "  "}}
        result = await run_block(engine_services, node("f", "isFilled", elementIds=["email", "name"]), values)
        assert result.route == "no"
        assert result.updates["isFilledResult"]["missing"] == ["name"]

    @pytest.mark.asyncio
    async def test_any_filled(self, engine_services):
        values = {"form": {"email": "a@b.co"}}
        result = await run_block(
            engine_services, node("f", "isFilled", elementIds=["email", "phone"], requireAll=False), values
        )
        assert result.route == "yes"

    @pytest.mark.asyncio
    async def test_no_targets_is_not_filled(self, engine_services):
        result = await run_block(engine_services, node("f", "isFilled"))
        assert result.route == "no"


class TestDateValid:
    @pytest.mark.parametrize(
        "value, date_format, parsed",
        [
            ("2026-03-04", None, "2026-03-04"),
            ("03/04/2026", None, "2026-03-04"),
            ("03/04/2026", "DD/MM/YYYY", "2026-04-03"),
            ("04-03-2026", None, "2026-03-04"),
            ("2026-03-04T10:00:00Z", None, "2026-03-04"),
        ],
    )
    def test_formats(self, value, date_format, parsed):
        assert validate_date_value(value, DateRules(), date_format, TODAY)["parsedDate"] == parsed

    def test_blank_values_depend_on_required(self):
        assert validate_date_value("", DateRules(), None, TODAY)["isValid"]
        assert validate_date_value(" ", DateRules(required=True), None, TODAY)["errors"] == ["Date is required"]

    def test_explicit_format_rejects_other_layouts(self):
        outcome = validate_date_value("2026-03-04", DateRules(), "MM/DD/YYYY", TODAY)
        assert not outcome["isValid"]
        assert "Expected: MM/DD/YYYY" in outcome["errors"][0]

    @pytest.mark.parametrize(
        "value, rules, error",
        [
            ("2026-01-01", DateRules(minDate="2026-02-01"), "Date must be after 2026-02-01"),
            ("2026-12-01", DateRules(maxDate="2026-06-30"), "Date must be before 2026-06-30"),
            ("2026-03-14", DateRules(businessDaysOnly=True), "business day"),
            ("2026-03-11", DateRules(futureOnly=True), "in the future"),
            ("2026-03-11", DateRules(pastOnly=True), "in the past"),
            ("2026-12-25", DateRules(excludedDates=["2026-12-25"]), "not available"),
            ("2026-03-11", DateRules(allowedDaysOfWeek=[0, 6]), "Date must be on: Sunday, Saturday"),
            ("2024-02-29", DateRules(noLeapYear=True), "February 29th"),
            ("2010-03-12", DateRules(minAge=16), "at least 16"),
            ("1900-01-01", DateRules(maxAge=120), "no more than 120"),
        ],
    )
    def test_rules(self, value, rules, error):
        outcome = validate_date_value(value, rules, None, TODAY)
        assert not outcome["isValid"]
        assert any(error in message for message in outcome["errors"])

    def test_age_counts_birthday_on_the_day(self):
        assert validate_date_value("2010-03-11", DateRules(minAge=16), None, TODAY)["isValid"]

    @pytest.mark.asyncio
    async def test_routes_on_all_fields_valid(self, engine_services):
        block = node(
            "d", "dateValid", "Conditions",
            selectedElementIds=["start", "end"], validationRules={"required": True, "minDate": "2000-01-01"},
        )

        valid = await run_block(engine_services, block, {"formData": {"start": "2026-01-05", "end": "01/20/2026"}})
        invalid = await run_block(engine_services, block, {"formData": {"start": "2026-01-05", "end": ""}})

        assert valid.route == "yes"
        assert valid.updates["isValid"] is True
        assert valid.updates["dateValidation"]["message"] == "2/2 dates are valid"
        assert invalid.route == "no"
        assert invalid.updates["dateValidation"]["anyValid"] is True
        assert invalid.updates["dateValidation"]["results"][1]["errors"] == ["Date is required"]

    @pytest.mark.asyncio
    async def test_needs_selected_fields(self, engine_services):
        result = await run_block(engine_services, node("d", "dateValid", "Conditions"))
        assert result.error.code == ErrorCode.INVALID_CONFIG

    @pytest.mark.asyncio
    async def test_unknown_format_is_config_error(self, engine_services):
        block = node("d", "dateValid", "Conditions", selectedElementIds=["a"], dateFormat="YYYY.MM.DD")
        result = await run_block(engine_services, block)
        assert result.error.code == ErrorCode.INVALID_CONFIG


class TestRoleIs:
    @pytest.mark.asyncio
    async def test_roles_from_user_and_session(self, engine_services):
        values = {"user": {"role": "Editor"}, "session": {"roles": ["viewer"]}}
        result = await run_block(engine_services, node("r", "roleIs", requiredRoles=["admin", "editor"]), values)
        assert result.route == "yes"
        assert result.updates["roleCheckResult"]["userRoles"] == ["editor", "viewer"]

    @pytest.mark.asyncio
    async def test_missing_role(self, engine_services):
        result = await run_block(engine_services, node("r", "roleIs", requiredRole="admin"), {"user": {"roles": []}})
        assert result.route == "no"
