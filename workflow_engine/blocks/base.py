"""
Handler contract and registry for workflow blocks.

Each block kind is a :class:`BlockHandler` subclass with its own pydantic
config model. Handlers are looked up by label through the registry rather
than a string switch, and always answer with a :class:`BlockResult`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from shared.config import BlockflowConfig
from shared.logger import get_logger
from workflow_engine.context import ExecutionContext
from workflow_engine.errors import (
    BlockConfigError,
    ErrorCode,
    RateLimitExceededError,
    TableMaterializationError,
    WorkflowEngineError,
)
from workflow_engine.schema import BlockCategory, BlockResult, Node, ToastDirective, ToastVariant
from workflow_engine.services import EngineServices

logger = get_logger(__name__)


class BlockConfig(BaseModel):
    """Base for per-label config payloads. Unknown canvas keys are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


@dataclass
class BlockScope:
    """Who is running the block, and with which collaborators."""

    app_id: int
    user_id: int
    node: Node
    services: EngineServices

    @property
    def settings(self) -> BlockflowConfig:
        return self.services.settings

    async def enforce_rate_limit(self, action: str) -> None:
        settings = self.settings
        allowed = await self.services.rate_limiter.check(
            self.user_id,
            action,
            settings.rate_limit_for(action),
            settings.rate_limit_window_seconds,
        )
        if not allowed:
            raise RateLimitExceededError(f"Rate limit exceeded for {action}")


def failure_toast(message: str, title: str = "Action failed") -> ToastDirective:
    return ToastDirective(title=title, message=message, variant=ToastVariant.DESTRUCTIVE)


def failure_toast_for(handler: BlockHandler, message: str) -> List[ToastDirective]:
    return [failure_toast(message)] if handler.toast_on_failure else []


def _describe_config_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "config"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


class BlockHandler:
    """
    Base class for block handlers.

    Subclasses set ``label``, ``category`` and ``config_model`` and implement
    :meth:`execute`. :meth:`run` wraps it with config parsing, rate limiting
    and error conversion.
    """

    label: ClassVar[str]
    category: ClassVar[BlockCategory] = BlockCategory.ACTIONS
    config_model: ClassVar[Type[BlockConfig]] = BlockConfig
    routes: ClassVar[Tuple[str, ...]] = ()
    rate_limit_action: ClassVar[Optional[str]] = None
    toast_on_failure: ClassVar[bool] = False

    def parse_config(self, raw: Dict[str, Any]) -> BlockConfig:
        try:
            return self.config_model.model_validate(raw or {})
        except PydanticValidationError as exc:
            raise BlockConfigError(f"Invalid {self.label} config: {_describe_config_error(exc)}") from exc

    async def execute(self, config: Any, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        raise NotImplementedError

    async def run(self, node: Node, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        try:
            config = self.parse_config(node.data.resolved_config())
            if self.rate_limit_action:
                await scope.enforce_rate_limit(self.rate_limit_action)
            return await self.execute(config, context, scope)
        except TableMaterializationError:
            raise
        except WorkflowEngineError as exc:
            logger.warning(
                f"{self.label} failed: {exc.message}",
                extra={"node_id": node.id, "code": exc.code.value},
            )
            return BlockResult.fail(exc.code, exc.message, directives=failure_toast_for(self, exc.message))


_REGISTRY: Dict[str, Type[BlockHandler]] = {}


def register_block(handler_cls: Type[BlockHandler]) -> Type[BlockHandler]:
    """Class decorator adding a handler to the label registry."""
    label = getattr(handler_cls, "label", None)
    if not label:
        raise ValueError(f"{handler_cls.__name__} must define a label")
    if label in _REGISTRY and _REGISTRY[label] is not handler_cls:
        raise ValueError(f"Block label '{label}' is already registered")
    _REGISTRY[label] = handler_cls
    return handler_cls


def get_handler(label: str) -> Optional[BlockHandler]:
    handler_cls = _REGISTRY.get(label)
    return handler_cls() if handler_cls else None


def registered_labels() -> List[str]:
    return sorted(_REGISTRY)


def condition_labels() -> List[str]:
    return sorted(label for label, cls in _REGISTRY.items() if cls.routes)


__all__ = [
    "BlockConfig",
    "BlockHandler",
    "BlockScope",
    "ErrorCode",
    "failure_toast",
    "failure_toast_for",
    "get_handler",
    "register_block",
    "registered_labels",
    "condition_labels",
]
