"""
Shared exception hierarchy and error taxonomy for the workflow engine.
"""

from enum import Enum


class ErrorCode(str, Enum):
    ACCESS_DENIED = "ACCESS_DENIED"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_CONFIG = "INVALID_CONFIG"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    INVALID_TOKEN = "INVALID_TOKEN"
    TIMEOUT = "TIMEOUT"
    STEP_LIMIT_EXCEEDED = "STEP_LIMIT_EXCEEDED"
    TRIGGER_MISMATCH = "TRIGGER_MISMATCH"


class WorkflowEngineError(Exception):
    """Base class for all engine errors."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, *, code: ErrorCode | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class BlockConfigError(WorkflowEngineError):
    """Raised when a block is missing required configuration."""

    code = ErrorCode.INVALID_CONFIG


class ValidationError(WorkflowEngineError):
    """Raised for bad identifiers, operators, JSON payloads or URLs."""

    code = ErrorCode.VALIDATION_ERROR


class AccessDeniedError(WorkflowEngineError):
    """Raised when a user may not act on an app."""

    code = ErrorCode.ACCESS_DENIED


class RateLimitExceededError(WorkflowEngineError):
    """Raised when a user exhausts an action's rate-limit window."""

    code = ErrorCode.RATE_LIMITED


class ExternalServiceError(WorkflowEngineError):
    """Raised for database, HTTP, email or LLM failures."""

    code = ErrorCode.EXTERNAL_SERVICE_ERROR


class TableMaterializationError(ExternalServiceError):
    """Raised when a dynamic table or its metadata cannot be created."""


class StepLimitExceededError(WorkflowEngineError):
    """Raised when a run executes more handlers than allowed."""

    code = ErrorCode.STEP_LIMIT_EXCEEDED


class RunTimeoutError(WorkflowEngineError):
    """Raised when a run passes its deadline."""

    code = ErrorCode.TIMEOUT
