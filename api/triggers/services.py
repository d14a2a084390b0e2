"""
Trigger dispatch: turns app events into queued workflow jobs.

Producers find the stored workflows whose trigger block matches the event,
wrap each one in a :class:`WorkflowJob` and hand it to the Taskiq worker.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from fastapi import HTTPException, status
from tortoise.exceptions import DoesNotExist

from shared.database.models import App, StoredWorkflow
from shared.logger import get_logger
from shared.platform import StoredWorkflowSource, trigger_nodes
from workflow_engine.blocks.triggers import SIGNATURE_HEADER, matches_table, verify_webhook_signature
from workflow_engine.context import json_safe
from workflow_engine.schema import WorkflowJob

logger = get_logger(__name__)

_workflows = StoredWorkflowSource()


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


async def enqueue_workflow_job(job: WorkflowJob) -> str:
    """Queue a job for the worker and return its id."""
    from worker.tasks.workflows import run_workflow_job  # local import to avoid cycles

    await run_workflow_job.kiq(job.model_dump(mode="json", by_alias=True))
    logger.info(
        "Enqueued workflow job",
        extra={"job_id": job.job_id, "app_id": job.app_id, "trigger": job.trigger, "workflow_id": job.workflow_id},
    )
    return job.job_id


def _job_for(workflow: StoredWorkflow, trigger: str, context: Dict[str, Any]) -> WorkflowJob:
    return WorkflowJob(
        nodes=list(workflow.nodes or []),
        edges=list(workflow.edges or []),
        context=context,
        app_id=workflow.app_id,
        user_id=workflow.user_id,
        trigger=trigger,
        workflow_id=workflow.id,
    )


def record_trigger_matches(
    node: Mapping[str, Any], app_id: int, table_name: str, changed_columns: Optional[Sequence[str]] = None
) -> bool:
    """Whether a record trigger node is enabled, watches ``table_name`` and cares about the changed columns."""
    data = node.get("data") or {}
    config = {**{k: v for k, v in data.items() if k not in ("label", "category", "config")}, **(data.get("config") or {})}
    if config.get("enabled") is False:
        return False
    configured = config.get("tableName")
    if configured and not matches_table(str(configured), table_name, app_id):
        return False
    watched = config.get("watchColumns") or []
    if watched and changed_columns is not None:
        return bool(set(watched) & set(changed_columns))
    return True


async def find_record_workflows(
    app_id: int,
    table_name: str,
    trigger: str = "onRecordCreate",
    changed_columns: Optional[Sequence[str]] = None,
) -> List[StoredWorkflow]:
    workflows = await _workflows.find_by_trigger(app_id, trigger)
    return [
        workflow
        for workflow in workflows
        if any(
            record_trigger_matches(node, app_id, table_name, changed_columns)
            for node in trigger_nodes(workflow.nodes, trigger)
        )
    ]


async def dispatch_record_created(app_id: int, table_name: str, record: Mapping[str, Any]) -> List[str]:
    """Queue a run of every workflow listening for new rows in ``table_name``."""
    workflows = await find_record_workflows(app_id, table_name)
    if not workflows:
        logger.debug("No record-created workflows", extra={"app_id": app_id, "table": table_name})
        return []

    safe_record = json_safe(dict(record))
    context = {
        "tableName": table_name,
        "record": safe_record,
        "recordId": safe_record.get("id"),
        "appId": app_id,
        "eventAt": _utcnow(),
    }
    job_ids = []
    for workflow in workflows:
        job_ids.append(await enqueue_workflow_job(_job_for(workflow, "onRecordCreate", context)))
    return job_ids


async def dispatch_record_updated(
    app_id: int, table_name: str, records: Sequence[Mapping[str, Any]], changed_columns: Sequence[str]
) -> List[str]:
    """Queue one run per updated row for every workflow watching ``table_name``."""
    workflows = await find_record_workflows(app_id, table_name, "onRecordUpdate", changed_columns)
    if not workflows or not records:
        logger.debug("No record-updated workflows", extra={"app_id": app_id, "table": table_name})
        return []

    event_at = _utcnow()
    job_ids = []
    for record in records:
        safe_record = json_safe(dict(record))
        context = {
            "tableName": table_name,
            "record": safe_record,
            "recordId": safe_record.get("id"),
            "changedColumns": list(changed_columns),
            "appId": app_id,
            "eventAt": event_at,
        }
        for workflow in workflows:
            job_ids.append(await enqueue_workflow_job(_job_for(workflow, "onRecordUpdate", context)))
    return job_ids


class RecordTriggerPublisher:
    """
    Event publisher that logs every data event and queues record-trigger
    workflows: ``onRecordCreate`` for inserts, ``onRecordUpdate`` for updates.
    """

    async def publish(self, app_id: int, event: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Event {event}", extra={"app_id": app_id, "table": payload.get("tableName")})
        action = payload.get("action")
        if action in ("create", "created"):
            record = payload.get("record") or {"id": payload.get("recordId")}
            await dispatch_record_created(app_id, payload["tableName"], record)
        elif action in ("update", "updated"):
            records = payload.get("records")
            if records is None and payload.get("record"):
                records = [payload["record"]]
            await dispatch_record_updated(
                app_id, payload["tableName"], records or [], payload.get("changedColumns") or []
            )


async def find_webhook_workflows(app_id: int) -> List[StoredWorkflow]:
    return await _workflows.find_by_trigger(app_id, "onWebhook")


async def _get_app(app_id: int) -> App:
    try:
        return await App.get(id=app_id)
    except DoesNotExist:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="App not found") from None


async def handle_app_webhook(
    app_id: int,
    *,
    payload: Any,
    raw_body: str,
    headers: Mapping[str, str],
) -> List[str]:
    """Verify an inbound webhook for an app and queue its webhook workflows."""
    app = await _get_app(app_id)
    lowered = {str(key).lower(): value for key, value in headers.items()}
    if app.webhook_secret and not verify_webhook_signature(app.webhook_secret, raw_body, lowered.get(SIGNATURE_HEADER)):
        logger.warning("Rejected webhook with bad signature", extra={"app_id": app_id})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    workflows = await find_webhook_workflows(app_id)
    context = {
        "webhookPayload": json_safe(payload),
        "webhookHeaders": lowered,
        "webhookRawBody": raw_body,
        "webhookReceivedAt": _utcnow(),
    }
    job_ids = []
    for workflow in workflows:
        job_ids.append(await enqueue_workflow_job(_job_for(workflow, "onWebhook", context)))
    logger.info("Webhook dispatched", extra={"app_id": app_id, "jobs": len(job_ids)})
    return job_ids


__all__ = [
    "dispatch_record_created",
    "enqueue_workflow_job",
    "find_record_workflows",
    "find_webhook_workflows",
    "handle_app_webhook",
    "RecordTriggerPublisher",
]
