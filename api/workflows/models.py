from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecuteWorkflowRequest(_CamelModel):
    app_id: int
    workflow_id: Optional[int] = Field(default=None, description="Run a stored graph instead of an inline one")
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    trigger: Optional[str] = None


class ValidateWorkflowRequest(_CamelModel):
    nodes: List[Dict[str, Any]]
    edges: List[Dict[str, Any]] = Field(default_factory=list)


class ValidateWorkflowResponse(_CamelModel):
    valid: bool
    warnings: List[str] = Field(default_factory=list)


class EnqueueWorkflowResponse(_CamelModel):
    job_id: str


class BlockListResponse(_CamelModel):
    labels: List[str]
    condition_labels: List[str]
