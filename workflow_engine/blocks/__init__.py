"""
Block handlers.

Handlers are registered when their module is imported.
"""
# Import handler modules to ensure they're registered
from workflow_engine.blocks import auth, control, database, http, messaging, triggers, ui  # noqa: F401
from workflow_engine.blocks.base import (
    BlockConfig,
    BlockHandler,
    BlockScope,
    condition_labels,
    failure_toast_for,
    get_handler,
    register_block,
    registered_labels,
)

__all__ = [
    "BlockConfig",
    "BlockHandler",
    "BlockScope",
    "condition_labels",
    "failure_toast_for",
    "get_handler",
    "register_block",
    "registered_labels",
]
