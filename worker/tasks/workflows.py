from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.database.models import WorkflowRun, WorkflowRunStatus
from shared.logger import get_logger
from worker.broker import broker
from workflow_engine.orchestrator import WorkflowOrchestrator
from workflow_engine.schema import WorkflowJob

logger = get_logger(__name__)

FINISHED_STATUSES = (WorkflowRunStatus.COMPLETED, WorkflowRunStatus.PARTIAL, WorkflowRunStatus.FAILED)


async def process_workflow_job(
    job: WorkflowJob,
    orchestrator: Optional[WorkflowOrchestrator] = None,
) -> Dict[str, Any]:
    """
    Run one queued job and record its outcome in ``workflow_runs``.

    Redelivered jobs whose run already finished are not executed again.
    Failures are logged and stored, never retried.
    """
    run, created = await WorkflowRun.get_or_create(
        job_id=job.job_id,
        defaults={"app_id": job.app_id, "user_id": job.user_id, "trigger": job.trigger},
    )
    if not created and run.status in FINISHED_STATUSES:
        logger.info("Skipping redelivered workflow job", extra={"job_id": job.job_id, "status": run.status.value})
        return run.result or {"status": run.status.value}

    run.status = WorkflowRunStatus.RUNNING
    await run.save(update_fields=["status"])

    if orchestrator is None:
        from api.triggers.services import RecordTriggerPublisher  # local imports to avoid cycles
        from shared.platform import build_engine_services

        orchestrator = WorkflowOrchestrator(build_engine_services(publisher=RecordTriggerPublisher()))

    logger.info(
        "Executing workflow job",
        extra={"job_id": job.job_id, "app_id": job.app_id, "trigger": job.trigger, "workflow_id": job.workflow_id},
    )
    try:
        result = await orchestrator.run(
            job.nodes,
            job.edges,
            job.context,
            app_id=job.app_id,
            user_id=job.user_id,
            trigger=job.trigger,
        )
    except Exception as exc:
        logger.exception("Workflow job crashed", extra={"job_id": job.job_id})
        run.status = WorkflowRunStatus.FAILED
        run.error = str(exc)
        run.finished_at = datetime.now(timezone.utc)
        await run.save()
        return {"status": WorkflowRunStatus.FAILED.value, "error": str(exc)}

    payload = result.model_dump(mode="json")
    run.status = WorkflowRunStatus(result.status.value)
    run.result = payload
    run.error = "; ".join(error.message for error in result.errors) or None
    run.finished_at = datetime.now(timezone.utc)
    await run.save()

    if result.success:
        logger.info("Workflow job completed", extra={"job_id": job.job_id, "steps": len(result.steps)})
    else:
        logger.warning(
            f"Workflow job finished with status {result.status.value}",
            extra={"job_id": job.job_id, "errors": len(result.errors)},
        )
    return payload


@broker.task
async def run_workflow_job(job: Dict[str, Any]) -> Dict[str, Any]:
    """Execute a queued workflow job."""
    return await process_workflow_job(WorkflowJob.model_validate(job))


__all__ = ["process_workflow_job", "run_workflow_job"]
