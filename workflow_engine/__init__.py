"""Execution core for Blockflow workflow graphs."""

from workflow_engine.context import ExecutionContext
from workflow_engine.errors import ErrorCode, WorkflowEngineError
from workflow_engine.orchestrator import WorkflowOrchestrator
from workflow_engine.schema import Edge, Node, WorkflowJob, WorkflowRunResult
from workflow_engine.services import EngineServices
from workflow_engine.validation import validate_workflow

__all__ = [
    "Edge",
    "EngineServices",
    "ErrorCode",
    "ExecutionContext",
    "Node",
    "WorkflowEngineError",
    "WorkflowJob",
    "WorkflowOrchestrator",
    "WorkflowRunResult",
    "validate_workflow",
]
