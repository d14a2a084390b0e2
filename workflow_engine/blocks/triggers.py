"""
Trigger blocks. A trigger checks that the incoming event is the one it is
bound to and seeds the context with the event's data.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import Field, model_validator

from workflow_engine.blocks.auth import extract_token
from workflow_engine.blocks.base import BlockConfig, BlockHandler, BlockScope, register_block
from workflow_engine.comparisons import parse_datetime
from workflow_engine.context import ExecutionContext
from workflow_engine.errors import BlockConfigError, ErrorCode, ValidationError
from workflow_engine.schema import BlockCategory, BlockResult
from workflow_engine.security import generate_table_name

SIGNATURE_HEADER = "x-webhook-signature"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def sign_webhook_body(secret: str, body: Union[str, bytes]) -> str:
    """``sha256=<hex>`` HMAC of a webhook body."""
    raw = body.encode("utf-8") if isinstance(body, str) else body
    digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(secret: str, body: Union[str, bytes], signature: Optional[str]) -> bool:
    if not signature:
        return False
    expected = sign_webhook_body(secret, body)
    provided = signature.strip()
    if not provided.startswith("sha256="):
        provided = f"sha256={provided}"
    return hmac.compare_digest(expected, provided)


def _mismatch(message: str) -> BlockResult:
    return BlockResult.fail(ErrorCode.TRIGGER_MISMATCH, message)


class TriggerHandler(BlockHandler):
    category = BlockCategory.TRIGGERS


class PageLoadConfig(BlockConfig):
    targetPageId: Optional[str] = None


@register_block
class PageLoadTrigger(TriggerHandler):
    label = "onPageLoad"
    config_model = PageLoadConfig

    async def execute(self, config: PageLoadConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        page_id = context.get("pageId") or context.get("currentPageId")
        if config.targetPageId and str(page_id) != str(config.targetPageId):
            return _mismatch(f"Page '{page_id}' does not match trigger page '{config.targetPageId}'")
        loaded_at = _now()
        return BlockResult.ok(
            {
                "pageId": page_id,
                "pageLoadedAt": loaded_at,
                "trigger": {"type": "pageLoad", "pageId": page_id, "loadedAt": loaded_at},
            }
        )


class ClickConfig(BlockConfig):
    targetElementId: Optional[str] = None


@register_block
class ClickTrigger(TriggerHandler):
    label = "onClick"
    config_model = ClickConfig

    async def execute(self, config: ClickConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        element_id = context.get("elementId") or context.get("clickedElementId")
        if config.targetElementId and str(element_id) != str(config.targetElementId):
            return _mismatch(f"Element '{element_id}' does not match trigger element '{config.targetElementId}'")
        clicked_at = _now()
        return BlockResult.ok(
            {
                "elementId": element_id,
                "clickedAt": clicked_at,
                "trigger": {"type": "click", "elementId": element_id, "clickedAt": clicked_at},
            }
        )


class SubmitConfig(BlockConfig):
    selectedFormGroup: Optional[str] = None


@register_block
class SubmitTrigger(TriggerHandler):
    label = "onSubmit"
    config_model = SubmitConfig

    async def execute(self, config: SubmitConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        if not config.selectedFormGroup:
            raise BlockConfigError("onSubmit requires selectedFormGroup")
        submitted_group = context.get("formGroupId")
        if submitted_group and str(submitted_group) != str(config.selectedFormGroup):
            return _mismatch(f"Form group '{submitted_group}' does not match '{config.selectedFormGroup}'")

        form_data = context.get("formData")
        if not isinstance(form_data, dict) or not form_data:
            raise ValidationError("onSubmit requires non-empty formData")

        submitted_at = _now()
        updates: Dict[str, Any] = dict(form_data)
        updates.update(
            {
                "formData": form_data,
                "form": form_data,
                "formGroupId": config.selectedFormGroup,
                "submittedAt": submitted_at,
                "trigger": {"type": "submit", "formGroupId": config.selectedFormGroup, "submittedAt": submitted_at},
            }
        )
        return BlockResult.ok(updates)


class WebhookConfig(BlockConfig):
    secret: Optional[str] = None
    signatureHeader: str = SIGNATURE_HEADER


@register_block
class WebhookTrigger(TriggerHandler):
    label = "onWebhook"
    config_model = WebhookConfig

    async def execute(self, config: WebhookConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        if "webhookPayload" not in context:
            return _mismatch("No webhook payload in context")
        payload = context.get("webhookPayload")
        headers = {str(key).lower(): value for key, value in (context.get("webhookHeaders") or {}).items()}

        if config.secret:
            body = context.get("webhookRawBody")
            if body is None:
                body = json.dumps(payload, separators=(",", ":"), sort_keys=True)
            if not verify_webhook_signature(config.secret, body, headers.get(config.signatureHeader.lower())):
                raise ValidationError("Webhook signature verification failed")

        received_at = context.get("webhookReceivedAt") or _now()
        updates: Dict[str, Any] = dict(payload) if isinstance(payload, dict) else {}
        updates.update(
            {
                "webhookPayload": payload,
                "webhookHeaders": headers,
                "webhookReceivedAt": received_at,
                "trigger": {"type": "webhook", "receivedAt": received_at},
            }
        )
        return BlockResult.ok(updates)


class RecordCreateConfig(BlockConfig):
    tableName: Optional[str] = None
    enabled: bool = True


@register_block
class RecordCreateTrigger(TriggerHandler):
    label = "onRecordCreate"
    config_model = RecordCreateConfig

    async def execute(self, config: RecordCreateConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        if not config.enabled:
            return _mismatch("onRecordCreate trigger is disabled")
        table_name = context.get("tableName")
        if config.tableName and not matches_table(config.tableName, table_name, scope.app_id):
            return _mismatch(f"Table '{table_name}' does not match trigger table '{config.tableName}'")

        record = context.get("record") or context.get("createdRecord") or {}
        return BlockResult.ok(
            {
                "record": record,
                "createdRecord": record,
                "recordId": record.get("id") if isinstance(record, dict) else None,
                "trigger": {"type": "recordCreate", "tableName": table_name},
            }
        )


def matches_table(configured: str, actual: Optional[str], app_id: int) -> bool:
    """A trigger may name either the physical table or its base name."""
    if not actual:
        return False
    return actual in (configured, generate_table_name(app_id, configured))


class RecordUpdateConfig(BlockConfig):
    tableName: Optional[str] = None
    watchColumns: List[str] = Field(default_factory=list)
    enabled: bool = True


@register_block
class RecordUpdateTrigger(TriggerHandler):
    label = "onRecordUpdate"
    config_model = RecordUpdateConfig

    async def execute(self, config: RecordUpdateConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        if not config.enabled:
            return _mismatch("onRecordUpdate trigger is disabled")
        table_name = context.get("tableName")
        if config.tableName and not matches_table(config.tableName, table_name, scope.app_id):
            return _mismatch(f"Table '{table_name}' does not match trigger table '{config.tableName}'")
        changed = context.get("changedColumns")
        if config.watchColumns and isinstance(changed, list) and not set(config.watchColumns) & set(changed):
            return _mismatch(f"None of the watched columns changed in '{table_name}'")

        record = context.get("record") or context.get("updatedRecord") or {}
        updated_at = context.get("eventAt") or _now()
        return BlockResult.ok(
            {
                "record": record,
                "updatedRecord": record,
                "recordId": record.get("id") if isinstance(record, dict) else None,
                "recordUpdateResult": {
                    "triggered": True,
                    "tableName": table_name,
                    "watchColumns": config.watchColumns,
                    "changedColumns": changed if isinstance(changed, list) else [],
                    "timestamp": updated_at,
                },
                "trigger": {"type": "recordUpdate", "tableName": table_name},
            }
        )


SCHEDULE_UNITS: Dict[str, timedelta] = {
    "seconds": timedelta(seconds=1),
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}


class ScheduleConfig(BlockConfig):
    scheduleType: Literal["interval", "cron"] = "interval"
    scheduleValue: Optional[float] = None
    scheduleUnit: Literal["seconds", "minutes", "hours", "days", "weeks"] = "minutes"
    cronExpression: Optional[str] = None
    enabled: bool = True

    @model_validator(mode="after")
    def _schedule_is_complete(self) -> "ScheduleConfig":
        if self.scheduleType == "interval" and not (self.scheduleValue and self.scheduleValue > 0):
            raise ValueError("Schedule value is required for interval type")
        if self.scheduleType == "cron" and len((self.cronExpression or "").split()) != 5:
            raise ValueError("Cron expression must have five fields")
        return self

    def interval(self) -> Optional[timedelta]:
        if self.scheduleType != "interval":
            return None
        return SCHEDULE_UNITS[self.scheduleUnit] * self.scheduleValue


@register_block
class ScheduleTrigger(TriggerHandler):
    """
    Start node for scheduled runs. The scheduler puts ``scheduledAt`` into the
    context; the trigger records it together with the next interval firing.
    The handler never sleeps.
    """

    label = "onSchedule"
    config_model = ScheduleConfig

    async def execute(self, config: ScheduleConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        if not config.enabled:
            return _mismatch("Schedule is disabled")

        fired_at = datetime.now(timezone.utc)
        scheduled_at = context.get("scheduledAt")
        if scheduled_at:
            fired_at = parse_datetime(scheduled_at)
            if fired_at is None:
                raise ValidationError(f"scheduledAt '{scheduled_at}' is not a valid timestamp")

        interval = config.interval()
        next_run = (fired_at + interval).isoformat() if interval else None
        return BlockResult.ok(
            {
                "scheduledAt": fired_at.isoformat(),
                "scheduleResult": {
                    "scheduled": True,
                    "scheduleType": config.scheduleType,
                    "cronExpression": config.cronExpression,
                    "nextExecutionTime": next_run,
                },
                "trigger": {"type": "schedule", "scheduledAt": fired_at.isoformat()},
            }
        )


USER_PATHS = (
    "user",
    "session.user",
    "authUser",
    "loginUser",
    "loginResponse.user",
    "authResponse.user",
    "httpResponse.data.user",
)
LOGIN_TOKEN_PATHS = (
    "token",
    "session.token",
    "authToken",
    "accessToken",
    "loginResponse.token",
    "authResponse.token",
    "httpResponse.data.token",
    "headers.authorization",
    "request.headers.authorization",
)
_FAILED_STATUSES = {"failed", "error", "unauthorized"}


class LoginConfig(BlockConfig):
    captureUserData: bool = True
    captureMetadata: bool = True
    storeToken: bool = True


def _login_failed(context: ExecutionContext) -> bool:
    if any(context.get(flag) is False for flag in ("loginSuccess", "loginSucceeded", "authSuccess")):
        return True
    statuses = (context.get("loginStatus"), context.get("status"), context.get("authStatus"))
    return any(isinstance(value, str) and value.lower() in _FAILED_STATUSES for value in statuses)


def _login_user(context: ExecutionContext) -> Optional[Dict[str, Any]]:
    for path in USER_PATHS:
        candidate = context.lookup(path)
        if isinstance(candidate, dict) and any(candidate.get(key) for key in ("id", "userId", "email")):
            return candidate
    return None


def _display_name(user: Dict[str, Any], email: str) -> str:
    full_name = " ".join(part for part in (user.get("firstName"), user.get("lastName")) if part)
    return (
        user.get("name")
        or user.get("fullName")
        or full_name
        or user.get("displayName")
        or user.get("username")
        or email.split("@")[0]
    )


@register_block
class LoginTrigger(TriggerHandler):
    label = "onLogin"
    config_model = LoginConfig

    async def execute(self, config: LoginConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        if _login_failed(context):
            return _mismatch("Login was not successful")

        raw_user = _login_user(context)
        if raw_user is None:
            raise ValidationError("No user data provided in login event")
        user_id = raw_user.get("id", raw_user.get("userId"))
        email = raw_user.get("email") or raw_user.get("userEmail") or raw_user.get("username")
        if not user_id or not email:
            raise ValidationError("Incomplete user details for login event")

        token = None
        for path in LOGIN_TOKEN_PATHS:
            token = extract_token(context.lookup(path))
            if token:
                break
        if not token:
            raise ValidationError("No authentication token provided")

        now = _now()
        metadata = context.get("loginMetadata") or context.get("authMetadata") or context.lookup("metadata.login")
        if not isinstance(metadata, dict):
            metadata = None
        previous_session = context.get("session") if isinstance(context.get("session"), dict) else {}

        roles = raw_user.get("roles") if isinstance(raw_user.get("roles"), list) else []
        roles = [role for role in roles if role] or ([raw_user["role"]] if raw_user.get("role") else [])
        user = {
            "id": user_id,
            "email": email,
            "name": _display_name(raw_user, str(email)),
            "role": roles[0] if roles else None,
            "roles": roles,
            "verified": raw_user.get("verified", raw_user.get("isVerified", True)),
            "createdAt": raw_user.get("createdAt"),
            "updatedAt": raw_user.get("updatedAt"),
        }

        login_timestamp = previous_session.get("loginTimestamp") or (metadata or {}).get("timestamp") or now
        session: Dict[str, Any] = {
            **previous_session,
            "userId": user_id,
            "email": email,
            "name": user["name"],
            "roles": roles,
            "token": token,
            "loginTimestamp": login_timestamp,
            "user": {**(previous_session.get("user") or {}), **user},
        }
        if config.captureMetadata and metadata:
            session["metadata"] = {**(previous_session.get("metadata") or {}), **metadata}

        updates: Dict[str, Any] = {
            "loginProcessed": True,
            "loginTimestamp": login_timestamp,
            "isAuthenticated": True,
            "session": session,
            "auth": {"isAuthenticated": True, "verifiedAt": now, "failureReason": None},
            "trigger": {"type": "login", "userId": user_id, "loggedInAt": login_timestamp},
        }
        if config.captureUserData:
            previous_user = context.get("user") if isinstance(context.get("user"), dict) else {}
            updates["user"] = {**previous_user, **user}
        if config.storeToken:
            updates["token"] = token
        if config.captureMetadata and metadata:
            updates["loginMetadata"] = {
                "timestamp": metadata.get("timestamp") or login_timestamp,
                "ip": metadata.get("ip"),
                "device": metadata.get("device"),
                "location": metadata.get("location"),
            }
        return BlockResult.ok(updates)
