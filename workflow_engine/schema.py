"""
Run-time data model: graph nodes and edges, UI directives, handler results and
run results.
"""
from __future__ import annotations

import uuid
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from workflow_engine.errors import ErrorCode


class BlockCategory(str, Enum):
    """Palette groups the canvas assigns to blocks."""

    TRIGGERS = "Triggers"
    CONDITIONS = "Conditions"
    ACTIONS = "Actions"


class ConnectorType(str, Enum):
    """Kinds of edges between blocks."""

    NEXT = "next"
    YES = "yes"
    NO = "no"
    ON_ERROR = "onError"
    FORK = "fork"
    JOIN = "join"
    LOOP_BACK = "loopBack"


_NODE_DATA_KEYS = {"category", "label", "config"}


class NodeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    category: str = Field(default=BlockCategory.ACTIONS.value, description="Palette group")
    label: str = Field(..., description="Block kind, e.g. 'db.create'")
    config: Dict[str, Any] = Field(default_factory=dict, description="Block-specific configuration")

    def resolved_config(self) -> Dict[str, Any]:
        """Config with legacy top-level ``data`` keys folded in (``config`` wins)."""
        legacy = {
            key: value
            for key, value in (self.model_extra or {}).items()
            if key not in _NODE_DATA_KEYS
        }
        return {**legacy, **self.config}


class Node(BaseModel):
    """One block on the canvas."""

    id: str = Field(..., description="Node ID")
    type: str = Field(default="workflowNode")
    data: NodeData

    @property
    def label(self) -> str:
        return self.data.label

    @property
    def category(self) -> str:
        return self.data.category


class EdgeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    connectorType: Optional[ConnectorType] = None


class Edge(BaseModel):
    """A typed connector between two nodes."""

    id: str = Field(..., description="Edge ID")
    source: str
    target: str
    sourceHandle: Optional[str] = None
    label: Optional[str] = Field(default=None, description="Route name; takes precedence over sourceHandle")
    data: EdgeData = Field(default_factory=EdgeData)

    @property
    def connector(self) -> ConnectorType:
        if self.data.connectorType is not None:
            return self.data.connectorType
        if self.sourceHandle:
            try:
                return ConnectorType(self.sourceHandle)
            except ValueError:
                pass
        return ConnectorType.NEXT

    @property
    def route_label(self) -> str:
        """Label used to match a condition's route (switch case, yes/no)."""
        return self.label or self.sourceHandle or self.connector.value


# ============================================================================
# UI directives
# ============================================================================


class ToastVariant(str, Enum):
    DEFAULT = "default"
    DESTRUCTIVE = "destructive"
    SUCCESS = "success"


class ToastDirective(BaseModel):
    type: Literal["toast"] = "toast"
    title: Optional[str] = None
    message: str
    variant: ToastVariant = ToastVariant.DEFAULT
    duration: int = 5000
    position: str = "bottom-right"


class OpenModalDirective(BaseModel):
    type: Literal["openModal"] = "openModal"
    modalId: str
    title: Optional[str] = None
    content: Optional[str] = None
    size: str = "medium"
    showCloseButton: bool = True
    showBackdrop: bool = True
    closeOnBackdropClick: bool = True
    data: Dict[str, Any] = Field(default_factory=dict)


class RedirectDirective(BaseModel):
    type: Literal["redirect"] = "redirect"
    targetType: Literal["page", "url"]
    targetPageId: Optional[str] = None
    url: Optional[str] = None
    openInNewTab: bool = False


class GoBackDirective(BaseModel):
    type: Literal["goBack"] = "goBack"


UIDirective = Annotated[
    Union[ToastDirective, OpenModalDirective, RedirectDirective, GoBackDirective],
    Field(discriminator="type"),
]


# ============================================================================
# Handler and run results
# ============================================================================


class BlockError(BaseModel):
    code: ErrorCode
    message: str


class BlockResult(BaseModel):
    """Uniform handler outcome. Handlers return this instead of raising."""

    success: bool
    updates: Dict[str, Any] = Field(default_factory=dict, description="Keys merged into the context")
    directives: List[UIDirective] = Field(default_factory=list)
    route: Optional[str] = Field(default=None, description="Branch chosen by condition blocks")
    output: Any = None
    error: Optional[BlockError] = None

    @classmethod
    def ok(cls, updates: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "BlockResult":
        return cls(success=True, updates=updates or {}, **kwargs)

    @classmethod
    def fail(cls, code: ErrorCode, message: str, **kwargs: Any) -> "BlockResult":
        return cls(success=False, error=BlockError(code=code, message=message), **kwargs)


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class StepRecord(BaseModel):
    node_id: str
    label: str
    success: bool
    route: Optional[str] = None
    error: Optional[BlockError] = None
    duration_ms: float = 0.0


class BranchError(BaseModel):
    """Why a branch stopped early."""

    node_id: Optional[str] = None
    code: ErrorCode
    message: str


class WorkflowRunResult(BaseModel):
    success: bool
    status: RunStatus
    context: Dict[str, Any] = Field(default_factory=dict)
    directives: List[UIDirective] = Field(default_factory=list)
    steps: List[StepRecord] = Field(default_factory=list)
    errors: List[BranchError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ============================================================================
# Queued runs
# ============================================================================


class WorkflowJob(BaseModel):
    """Payload placed on the queue for out-of-band execution."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    nodes: List[Dict[str, Any]]
    edges: List[Dict[str, Any]] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    app_id: int
    user_id: int
    trigger: Optional[str] = None
    workflow_id: Optional[int] = None
