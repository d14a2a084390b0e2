"""
UI directive blocks. They only describe what the host page should do; the
orchestrator collects the directives and returns them to the caller.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional
from urllib.parse import urlsplit

from pydantic import Field, field_validator

from workflow_engine.blocks.base import BlockConfig, BlockHandler, BlockScope, register_block
from workflow_engine.context import ExecutionContext
from workflow_engine.errors import BlockConfigError, ValidationError
from workflow_engine.schema import (
    BlockResult,
    GoBackDirective,
    OpenModalDirective,
    RedirectDirective,
    ToastDirective,
    ToastVariant,
)

MIN_TOAST_DURATION = 1000
MAX_TOAST_DURATION = 30_000


class ToastConfig(BlockConfig):
    title: Optional[str] = None
    message: Optional[str] = None
    variant: ToastVariant = ToastVariant.DEFAULT
    duration: int = 5000
    position: str = "bottom-right"

    @field_validator("duration")
    @classmethod
    def _duration(cls, value: int) -> int:
        if not MIN_TOAST_DURATION <= value <= MAX_TOAST_DURATION:
            raise ValueError(f"duration must be between {MIN_TOAST_DURATION} and {MAX_TOAST_DURATION} ms")
        return value


@register_block
class ToastBlock(BlockHandler):
    label = "notify.toast"
    config_model = ToastConfig
    toast_on_failure = True

    async def execute(self, config: ToastConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        message = context.substitute_text(config.message).strip()
        if not message:
            raise BlockConfigError("Toast message is required")
        title = context.substitute_text(config.title).strip() or None
        directive = ToastDirective(
            title=title,
            message=message,
            variant=config.variant,
            duration=config.duration,
            position=config.position or "bottom-right",
        )
        return BlockResult.ok(
            {"toastResult": directive.model_dump(mode="json")},
            directives=[directive],
        )


class OpenModalConfig(BlockConfig):
    modalId: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    size: Literal["small", "medium", "large", "fullscreen"] = "medium"
    showCloseButton: bool = True
    showBackdrop: bool = True
    closeOnBackdropClick: bool = True
    data: Dict[str, Any] = Field(default_factory=dict)


@register_block
class OpenModalBlock(BlockHandler):
    label = "ui.openModal"
    config_model = OpenModalConfig

    async def execute(self, config: OpenModalConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        modal_id = context.substitute_text(config.modalId).strip()
        if not modal_id:
            raise BlockConfigError("modalId is required")
        directive = OpenModalDirective(
            modalId=modal_id,
            title=context.substitute_text(config.title) or None,
            content=context.substitute_text(config.content) or None,
            size=config.size,
            showCloseButton=config.showCloseButton,
            showBackdrop=config.showBackdrop,
            closeOnBackdropClick=config.closeOnBackdropClick,
            data=context.substitute_payload(config.data),
        )
        return BlockResult.ok(
            {"modalResult": {"opened": True, "modalId": modal_id}},
            directives=[directive],
        )


class RedirectConfig(BlockConfig):
    type: Optional[Literal["page", "url"]] = None
    targetPageId: Optional[str] = None
    url: Optional[str] = None
    openInNewTab: bool = False


def _validate_redirect_url(url: str) -> str:
    if url.startswith("/") and not url.startswith("//"):
        return url
    scheme = urlsplit(url).scheme.lower()
    if scheme not in ("http", "https"):
        raise ValidationError(f"Redirect URL '{url}' must be http(s) or a relative path")
    return url


@register_block
class RedirectBlock(BlockHandler):
    label = "page.redirect"
    config_model = RedirectConfig

    async def execute(self, config: RedirectConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        page_id = context.substitute_text(config.targetPageId).strip()
        url = context.substitute_text(config.url).strip()
        target_type = config.type or ("url" if url and not page_id else "page")

        if target_type == "page":
            if not page_id:
                raise BlockConfigError("targetPageId is required for page redirects")
            directive = RedirectDirective(targetType="page", targetPageId=page_id, openInNewTab=config.openInNewTab)
        else:
            if not url:
                raise BlockConfigError("url is required for url redirects")
            directive = RedirectDirective(
                targetType="url", url=_validate_redirect_url(url), openInNewTab=config.openInNewTab
            )
        return BlockResult.ok(
            {"redirectResult": directive.model_dump(mode="json", exclude={"type"})},
            directives=[directive],
        )


@register_block
class GoBackBlock(BlockHandler):
    label = "page.goBack"

    async def execute(self, config: BlockConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        return BlockResult.ok({"goBack": True}, directives=[GoBackDirective()])
