from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from api.middleware.auth import AuthenticatedUser, require_user
from api.triggers.services import RecordTriggerPublisher, enqueue_workflow_job
from api.workflows import models as api_models
from shared.platform import StoredWorkflowSource, build_engine_services
from workflow_engine.blocks import condition_labels, registered_labels
from workflow_engine.orchestrator import WorkflowOrchestrator
from workflow_engine.schema import WorkflowJob, WorkflowRunResult
from workflow_engine.validation import validate_workflow

router = APIRouter(prefix="/v1", tags=["workflows"])

_workflows = StoredWorkflowSource()


def get_orchestrator() -> WorkflowOrchestrator:
    return WorkflowOrchestrator(build_engine_services(publisher=RecordTriggerPublisher()))


async def _resolve_graph(payload: api_models.ExecuteWorkflowRequest) -> api_models.ExecuteWorkflowRequest:
    if payload.workflow_id is None:
        if not payload.nodes:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="nodes or workflowId is required")
        return payload
    stored = await _workflows.get(payload.workflow_id)
    if stored is None or stored.app_id != payload.app_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workflow not found")
    return payload.model_copy(update={"nodes": list(stored.nodes or []), "edges": list(stored.edges or [])})


@router.get("/blocks", response_model=api_models.BlockListResponse)
async def list_blocks(_: AuthenticatedUser = Depends(require_user)):
    return api_models.BlockListResponse(labels=registered_labels(), condition_labels=condition_labels())


@router.post("/workflows/validate", response_model=api_models.ValidateWorkflowResponse)
async def validate(payload: api_models.ValidateWorkflowRequest, _: AuthenticatedUser = Depends(require_user)):
    warnings = validate_workflow(payload.nodes, payload.edges)
    return api_models.ValidateWorkflowResponse(valid=not warnings, warnings=warnings)


@router.post("/workflows/execute", response_model=WorkflowRunResult)
async def execute_workflow(
    payload: api_models.ExecuteWorkflowRequest,
    user: AuthenticatedUser = Depends(require_user),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    payload = await _resolve_graph(payload)
    return await orchestrator.run(
        payload.nodes,
        payload.edges,
        payload.context,
        app_id=payload.app_id,
        user_id=user.user_id,
        trigger=payload.trigger,
    )


@router.post(
    "/workflows/enqueue",
    response_model=api_models.EnqueueWorkflowResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_workflow(payload: api_models.ExecuteWorkflowRequest, user: AuthenticatedUser = Depends(require_user)):
    payload = await _resolve_graph(payload)
    job = WorkflowJob(
        nodes=payload.nodes,
        edges=payload.edges,
        context=payload.context,
        app_id=payload.app_id,
        user_id=user.user_id,
        trigger=payload.trigger,
        workflow_id=payload.workflow_id,
    )
    return api_models.EnqueueWorkflowResponse(job_id=await enqueue_workflow_job(job))


__all__ = ["router"]
