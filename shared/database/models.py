from __future__ import annotations

from enum import Enum

from tortoise import fields, models


class WorkflowRunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class PlatformUser(models.Model):
    """Account owned by the auth/session collaborator; read-only here."""

    id = fields.IntField(primary_key=True)
    email = fields.CharField(max_length=320, unique=True)
    name = fields.CharField(max_length=255, null=True)
    roles = fields.JSONField(default=list)
    is_verified = fields.BooleanField(default=False)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "users"

    def __str__(self) -> str:
        return f"PlatformUser<{self.email}>"


class App(models.Model):
    """An app built on the canvas. Blocks may only touch apps their user can access."""

    id = fields.IntField(primary_key=True)
    name = fields.CharField(max_length=255)
    owner = fields.ForeignKeyField("models.PlatformUser", related_name="apps")
    webhook_secret = fields.CharField(max_length=255, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "apps"


class AppMember(models.Model):
    """Role-based access to an app for users other than its owner."""

    id = fields.IntField(primary_key=True)
    app = fields.ForeignKeyField("models.App", related_name="members")
    user = fields.ForeignKeyField("models.PlatformUser", related_name="memberships")
    role = fields.CharField(max_length=64, default="editor")

    class Meta:
        table = "app_members"
        unique_together = (("app", "user"),)


class RevokedToken(models.Model):
    """Blacklisted JWTs (logout, forced revocation)."""

    id = fields.IntField(primary_key=True)
    token = fields.TextField()
    token_hash = fields.CharField(max_length=64, unique=True, db_index=True)
    revoked_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "revoked_tokens"


class StoredWorkflow(models.Model):
    """Design-time graph saved by the canvas editor."""

    id = fields.IntField(primary_key=True)
    app = fields.ForeignKeyField("models.App", related_name="workflows")
    user = fields.ForeignKeyField("models.PlatformUser", related_name="workflows")
    name = fields.CharField(max_length=255)
    nodes = fields.JSONField(default=list)
    edges = fields.JSONField(default=list)
    is_active = fields.BooleanField(default=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "workflows"
        ordering = ("id",)


class WorkflowRun(models.Model):
    """Outcome of a queued run, written by the worker."""

    id = fields.IntField(primary_key=True)
    job_id = fields.CharField(max_length=64, unique=True, db_index=True)
    app_id = fields.IntField()
    user_id = fields.IntField()
    trigger = fields.CharField(max_length=64, null=True)
    status = fields.CharEnumField(WorkflowRunStatus, default=WorkflowRunStatus.QUEUED)
    result = fields.JSONField(null=True)
    error = fields.TextField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    finished_at = fields.DatetimeField(null=True)

    class Meta:
        table = "workflow_runs"
        ordering = ("-created_at",)


__all__ = [
    "App",
    "AppMember",
    "PlatformUser",
    "RevokedToken",
    "StoredWorkflow",
    "WorkflowRun",
    "WorkflowRunStatus",
]
