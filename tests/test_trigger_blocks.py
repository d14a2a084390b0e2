"""
Tests for trigger blocks and webhook signatures.
"""
import json

import pytest

from tests.fakes import node, run_block
from workflow_engine.blocks.triggers import matches_table, sign_webhook_body, verify_webhook_signature
from workflow_engine.errors import ErrorCode


def test_signatures_round_trip_and_reject_tampering():
    body = '{"event":"paid"}'
    signature = sign_webhook_body("s3cret", body)
    assert signature.startswith("sha256=")
    assert verify_webhook_signature("s3cret", body, signature)
    assert verify_webhook_signature("s3cret", body, signature.removeprefix("sha256="))
    assert not verify_webhook_signature("s3cret", body + " ", signature)
    assert not verify_webhook_signature("s3cret", body, None)


def test_matches_table_accepts_base_or_physical_name():
    assert matches_table("orders", "app_3_orders", 3)
    assert matches_table("app_3_orders", "app_3_orders", 3)
    assert not matches_table("orders", "app_3_invoices", 3)
    assert not matches_table("orders", None, 3)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_form_data_is_spread_into_context(self, engine_services):
        result = await run_block(
            engine_services,
            node("t", "onSubmit", "Triggers", selectedFormGroup="signup"),
            {"formGroupId": "signup", "formData": {"email": "a@b.co"}},
        )
        assert result.success
        assert result.updates["email"] == "a@b.co"
        assert result.updates["form"] == {"email": "a@b.co"}
        assert result.updates["trigger"]["type"] == "submit"

    @pytest.mark.asyncio
    async def test_other_form_group_is_a_mismatch(self, engine_services):
        result = await run_block(
            engine_services,
            node("t", "onSubmit", "Triggers", selectedFormGroup="signup"),
            {"formGroupId": "login", "formData": {"email": "a@b.co"}},
        )
        assert result.error.code == ErrorCode.TRIGGER_MISMATCH

    @pytest.mark.asyncio
    async def test_empty_form_is_rejected(self, engine_services):
        result = await run_block(engine_services, node("t", "onSubmit", "Triggers", selectedFormGroup="signup"))
        assert result.error.code == ErrorCode.VALIDATION_ERROR


class TestClickAndPageLoad:
    @pytest.mark.asyncio
    async def test_click_on_other_element(self, engine_services):
        result = await run_block(
            engine_services, node("t", "onClick", "Triggers", targetElementId="btn-1"), {"elementId": "btn-2"}
        )
        assert result.error.code == ErrorCode.TRIGGER_MISMATCH

    @pytest.mark.asyncio
    async def test_page_load(self, engine_services):
        result = await run_block(
            engine_services, node("t", "onPageLoad", "Triggers", targetPageId="home"), {"pageId": "home"}
        )
        assert result.success
        assert result.updates["trigger"]["pageId"] == "home"


class TestWebhook:
    @pytest.mark.asyncio
    async def test_signed_payload_is_accepted(self, engine_services):
        raw = json.dumps({"amount": 10})
        context = {
            "webhookPayload": {"amount": 10},
            "webhookRawBody": raw,
            "webhookHeaders": {"X-Webhook-Signature": sign_webhook_body("k", raw)},
        }
        result = await run_block(engine_services, node("w", "onWebhook", "Triggers", secret="k"), context)

        assert result.success, result.error
        assert result.updates["amount"] == 10
        assert result.updates["trigger"]["type"] == "webhook"

    @pytest.mark.asyncio
    async def test_bad_signature_fails(self, engine_services):
        context = {"webhookPayload": {"amount": 10}, "webhookHeaders": {"x-webhook-signature": "sha256=00"}}
        result = await run_block(engine_services, node("w", "onWebhook", "Triggers", secret="k"), context)
        assert result.error.code == ErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_no_payload_is_a_mismatch(self, engine_services):
        result = await run_block(engine_services, node("w", "onWebhook", "Triggers"))
        assert result.error.code == ErrorCode.TRIGGER_MISMATCH


class TestRecordCreate:
    @pytest.mark.asyncio
    async def test_record_is_exposed(self, engine_services):
        result = await run_block(
            engine_services,
            node("r", "onRecordCreate", "Triggers", tableName="orders"),
            {"tableName": "app_1_orders", "record": {"id": 5, "total": 3}},
        )
        assert result.success
        assert result.updates["recordId"] == 5

    @pytest.mark.asyncio
    async def test_other_table_is_a_mismatch(self, engine_services):
        result = await run_block(
            engine_services,
            node("r", "onRecordCreate", "Triggers", tableName="orders"),
            {"tableName": "app_1_invoices", "record": {"id": 5}},
        )
        assert result.error.code == ErrorCode.TRIGGER_MISMATCH


class TestRecordUpdate:
    @pytest.mark.asyncio
    async def test_updated_record_and_columns_are_exposed(self, engine_services):
        result = await run_block(
            engine_services,
            node("r", "onRecordUpdate", "Triggers", tableName="orders", watchColumns=["status"]),
            {"tableName": "app_1_orders", "record": {"id": 9, "status": "paid"}, "changedColumns": ["status"]},
        )
        assert result.success
        assert result.updates["recordId"] == 9
        assert result.updates["updatedRecord"]["status"] == "paid"
        assert result.updates["recordUpdateResult"]["changedColumns"] == ["status"]
        assert result.updates["trigger"] == {"type": "recordUpdate", "tableName": "app_1_orders"}

    @pytest.mark.asyncio
    async def test_unwatched_columns_are_a_mismatch(self, engine_services):
        result = await run_block(
            engine_services,
            node("r", "onRecordUpdate", "Triggers", tableName="orders", watchColumns=["status"]),
            {"tableName": "app_1_orders", "record": {"id": 9}, "changedColumns": ["note"]},
        )
        assert result.error.code == ErrorCode.TRIGGER_MISMATCH

    @pytest.mark.asyncio
    async def test_disabled_trigger_is_a_mismatch(self, engine_services):
        result = await run_block(
            engine_services,
            node("r", "onRecordUpdate", "Triggers", enabled=False),
            {"tableName": "app_1_orders", "record": {"id": 9}},
        )
        assert result.error.code == ErrorCode.TRIGGER_MISMATCH


class TestSchedule:
    @pytest.mark.asyncio
    async def test_interval_reports_next_run(self, engine_services):
        result = await run_block(
            engine_services,
            node("s", "onSchedule", "Triggers", scheduleValue=15, scheduleUnit="minutes"),
            {"scheduledAt": "2026-03-11T08:00:00Z"},
        )
        assert result.success
        schedule = result.updates["scheduleResult"]
        assert schedule["scheduleType"] == "interval"
        assert schedule["nextExecutionTime"] == "2026-03-11T08:15:00+00:00"
        assert result.updates["trigger"]["scheduledAt"] == "2026-03-11T08:00:00+00:00"

    @pytest.mark.asyncio
    async def test_cron_schedule_has_no_computed_next_run(self, engine_services):
        result = await run_block(
            engine_services,
            node("s", "onSchedule", "Triggers", scheduleType="cron", cronExpression="0 9 * * 1-5"),
        )
        assert result.success
        assert result.updates["scheduleResult"]["cronExpression"] == "0 9 * * 1-5"
        assert result.updates["scheduleResult"]["nextExecutionTime"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "config",
        [
            {"scheduleType": "interval"},
            {"scheduleType": "interval", "scheduleValue": 0},
            {"scheduleType": "cron", "cronExpression": "every monday"},
        ],
    )
    async def test_incomplete_schedules_are_config_errors(self, engine_services, config):
        result = await run_block(engine_services, node("s", "onSchedule", "Triggers", **config))
        assert result.error.code == ErrorCode.INVALID_CONFIG

    @pytest.mark.asyncio
    async def test_disabled_schedule_is_a_mismatch(self, engine_services):
        result = await run_block(
            engine_services, node("s", "onSchedule", "Triggers", scheduleValue=1, enabled=False)
        )
        assert result.error.code == ErrorCode.TRIGGER_MISMATCH


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_builds_session_and_user(self, engine_services):
        context = {
            "loginResponse": {
                "user": {"userId": 4, "email": "ada@example.com", "firstName": "Ada", "lastName": "L", "role": "admin"},
                "token": "Bearer abc.def",
            },
            "loginMetadata": {"ip": "10.0.0.1", "device": "phone"},
        }
        result = await run_block(engine_services, node("l", "onLogin", "Triggers"), context)

        assert result.success, result.error
        updates = result.updates
        assert updates["isAuthenticated"] is True
        assert updates["token"] == "abc.def"
        assert updates["user"]["name"] == "Ada L"
        assert updates["user"]["roles"] == ["admin"]
        assert updates["session"]["userId"] == 4
        assert updates["session"]["metadata"]["device"] == "phone"
        assert updates["loginMetadata"]["ip"] == "10.0.0.1"
        assert updates["trigger"]["type"] == "login"

    @pytest.mark.asyncio
    async def test_capture_flags_are_honoured(self, engine_services):
        context = {"user": {"id": 4, "email": "ada@example.com"}, "token": "t0k"}
        result = await run_block(
            engine_services, node("l", "onLogin", "Triggers", captureUserData=False, storeToken=False), context
        )
        assert result.success
        assert "user" not in result.updates
        assert "token" not in result.updates
        assert result.updates["session"]["token"] == "t0k"

    @pytest.mark.asyncio
    async def test_failed_login_is_a_mismatch(self, engine_services):
        context = {"loginStatus": "Unauthorized", "user": {"id": 4, "email": "a@b.co"}, "token": "t"}
        result = await run_block(engine_services, node("l", "onLogin", "Triggers"), context)
        assert result.error.code == ErrorCode.TRIGGER_MISMATCH

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "context, message",
        [
            ({"token": "t"}, "No user data"),
            ({"user": {"id": 4}, "token": "t"}, "Incomplete user details"),
            ({"user": {"id": 4, "email": "a@b.co"}}, "No authentication token"),
        ],
    )
    async def test_incomplete_login_events_fail(self, engine_services, context, message):
        result = await run_block(engine_services, node("l", "onLogin", "Triggers"), context)
        assert result.error.code == ErrorCode.VALIDATION_ERROR
        assert message in result.error.message
