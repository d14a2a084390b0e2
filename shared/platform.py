"""
Production collaborators for the workflow engine, backed by the platform's
Tortoise models and the asyncpg pool.

Usage:
    from shared.platform import build_engine_services

    orchestrator = WorkflowOrchestrator(build_engine_services())
"""
from __future__ import annotations

import hashlib
from typing import Any, Dict, List, Optional

from shared.config import BlockflowConfig, config as default_config
from shared.database import get_postgres_client
from shared.database.models import App, AppMember, PlatformUser, RevokedToken, StoredWorkflow
from shared.llm import LLMSummarizer
from shared.logger import get_logger
from shared.mailer import SmtpMailer
from workflow_engine.security import SlidingWindowRateLimiter
from workflow_engine.services import EngineServices

logger = get_logger(__name__)

# Rate-limit windows are per process and shared by every run it executes.
_rate_limiter = SlidingWindowRateLimiter()


def token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TortoiseAccessChecker:
    """A user may act on an app they own or hold a membership in."""

    async def has_app_access(self, app_id: int, user_id: int) -> bool:
        if await App.filter(id=app_id, owner_id=user_id).exists():
            return True
        return await AppMember.filter(app_id=app_id, user_id=user_id).exists()


class TortoiseIdentityDirectory:
    async def is_token_revoked(self, token: str) -> bool:
        return await RevokedToken.filter(token_hash=token_hash(token)).exists()

    async def get_user(self, user_id: Any) -> Optional[Dict[str, Any]]:
        try:
            pk = int(user_id)
        except (TypeError, ValueError):
            return None
        user = await PlatformUser.get_or_none(id=pk)
        if user is None:
            return None
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "roles": list(user.roles or []),
            "verified": user.is_verified,
        }


class StoredWorkflowSource:
    """Looks up saved graphs that should run for an app-level event."""

    async def get(self, workflow_id: int) -> Optional[StoredWorkflow]:
        return await StoredWorkflow.get_or_none(id=workflow_id, is_active=True)

    async def find_by_trigger(self, app_id: int, trigger_label: str) -> List[StoredWorkflow]:
        workflows = await StoredWorkflow.filter(app_id=app_id, is_active=True)
        return [workflow for workflow in workflows if trigger_nodes(workflow.nodes, trigger_label)]


def trigger_nodes(nodes: Any, trigger_label: str) -> List[Dict[str, Any]]:
    """Raw node dicts in a stored graph whose label is ``trigger_label``."""
    matches = []
    for node in nodes or []:
        data = node.get("data") if isinstance(node, dict) else None
        if isinstance(data, dict) and data.get("label") == trigger_label:
            matches.append(node)
    return matches


def build_engine_services(settings: BlockflowConfig = default_config, **overrides: Any) -> EngineServices:
    """Wire the engine to Postgres, SMTP and the configured LLM; ``overrides`` replace single collaborators."""
    services: Dict[str, Any] = {
        "db": get_postgres_client(),
        "access": TortoiseAccessChecker(),
        "identity": TortoiseIdentityDirectory(),
        "rate_limiter": _rate_limiter,
        "mailer": SmtpMailer(settings),
        "summarizer": LLMSummarizer(settings.default_llm_model),
        "settings": settings,
    }
    services.update(overrides)
    return EngineServices(**services)
