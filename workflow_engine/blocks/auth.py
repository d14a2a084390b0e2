"""
``auth.verify``: validate a bearer JWT found in the context and load the user
it belongs to.

The block never raises. Every outcome, including unexpected failures, comes
back as a :class:`BlockResult` carrying ``authVerifyResult`` with separate
``isAuthenticated`` and ``isAuthorized`` flags and a ``failureReason``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from pydantic import Field

from shared.logger import get_logger
from workflow_engine.blocks.base import BlockConfig, BlockHandler, BlockScope, register_block
from workflow_engine.context import ExecutionContext
from workflow_engine.errors import ErrorCode
from workflow_engine.schema import BlockError, BlockResult, Node

logger = get_logger(__name__)

TOKEN_PATHS = (
    "session.token",
    "token",
    "authToken",
    "accessToken",
    "headers.authorization",
    "request.headers.authorization",
    "loginResponse.token",
    "authResponse.token",
    "httpResponse.data.token",
)

_BEARER_PREFIX = re.compile(r"^bearer\s+", re.IGNORECASE)

FAILURE_CODES: Dict[str, ErrorCode] = {
    "NO_TOKEN": ErrorCode.INVALID_TOKEN,
    "INVALID_TOKEN": ErrorCode.INVALID_TOKEN,
    "TOKEN_EXPIRED": ErrorCode.TOKEN_EXPIRED,
    "TOKEN_REVOKED": ErrorCode.TOKEN_REVOKED,
    "USER_NOT_FOUND": ErrorCode.ACCESS_DENIED,
    "ACCOUNT_NOT_VERIFIED": ErrorCode.ACCESS_DENIED,
    "INSUFFICIENT_PERMISSIONS": ErrorCode.ACCESS_DENIED,
    "INTERNAL_ERROR": ErrorCode.EXTERNAL_SERVICE_ERROR,
}


def extract_token(candidate: Any) -> Optional[str]:
    if not isinstance(candidate, str):
        return None
    token = _BEARER_PREFIX.sub("", candidate.strip()).strip()
    return token or None


def find_token(config_token: Optional[str], context: ExecutionContext) -> Optional[str]:
    token = extract_token(context.substitute_text(config_token)) if config_token else None
    if token:
        return token
    for path in TOKEN_PATHS:
        token = extract_token(context.lookup(path))
        if token:
            return token
    return None


def _role_list(*sources: Any) -> List[str]:
    roles: List[str] = []
    for source in sources:
        if not isinstance(source, dict):
            continue
        values = source.get("roles") or []
        if isinstance(values, str):
            values = [values]
        if source.get("role"):
            values = [*values, source["role"]]
        for role in values:
            if role and str(role) not in roles:
                roles.append(str(role))
    return roles


def _user_id_from_claims(claims: Dict[str, Any]) -> Optional[Any]:
    for key in ("id", "userId", "user_id", "sub"):
        if claims.get(key) is not None:
            return claims[key]
    return None


class AuthVerifyConfig(BlockConfig):
    token: Optional[str] = None
    requiredRole: Optional[str] = None
    requiredRoles: List[str] = Field(default_factory=list)
    validateExpiration: bool = True
    checkBlacklist: bool = True

    def wanted_roles(self) -> List[str]:
        wanted = [role for role in self.requiredRoles if role]
        if self.requiredRole:
            wanted.append(self.requiredRole)
        return wanted


@register_block
class AuthVerifyBlock(BlockHandler):
    label = "auth.verify"
    config_model = AuthVerifyConfig

    async def run(self, node: Node, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        try:
            return await super().run(node, context, scope)
        except Exception as exc:
            logger.exception("auth.verify failed unexpectedly", extra={"node_id": node.id})
            return self._failure("INTERNAL_ERROR", f"Authentication check failed: {exc}")

    async def execute(self, config: AuthVerifyConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        token = find_token(config.token, context)
        if not token:
            return self._failure("NO_TOKEN", "No authentication token provided")

        settings = scope.settings
        try:
            claims = jwt.decode(
                token,
                settings.jwt_secret,
                algorithms=[settings.jwt_algorithm],
                options={"verify_exp": config.validateExpiration},
            )
        except ExpiredSignatureError:
            return self._failure("TOKEN_EXPIRED", "Authentication token has expired")
        except InvalidTokenError:
            return self._failure("INVALID_TOKEN", "Invalid authentication token")

        identity = scope.services.identity
        if config.checkBlacklist and await identity.is_token_revoked(token):
            return self._failure("TOKEN_REVOKED", "Token has been revoked. Please login again")

        user_id = _user_id_from_claims(claims)
        record = await identity.get_user(user_id) if user_id is not None else None
        if not record:
            return self._failure("USER_NOT_FOUND", "User not found")
        if not record.get("verified", record.get("is_verified", False)):
            return self._failure("ACCOUNT_NOT_VERIFIED", "Account not verified", is_authenticated=True)

        existing_user = context.get("user") if isinstance(context.get("user"), dict) else {}
        roles = _role_list(claims, record, existing_user)
        wanted = config.wanted_roles()
        is_authorized = not wanted or any(role in roles for role in wanted)

        verified_at = datetime.now(timezone.utc).isoformat()
        email = record.get("email")
        user = {
            **existing_user,
            "id": record.get("id", user_id),
            "email": email,
            "name": record.get("name") or claims.get("name") or (email.split("@")[0] if email else None),
            "role": roles[0] if roles else None,
            "roles": roles,
            "verified": True,
        }
        previous_session = context.get("session") if isinstance(context.get("session"), dict) else {}
        session = {
            **previous_session,
            "id": user["id"],
            "userId": user["id"],
            "email": email,
            "roles": roles,
            "token": token,
            "validatedAt": verified_at,
        }
        verify_result = {
            "isAuthenticated": True,
            "isAuthorized": is_authorized,
            "failureReason": None if is_authorized else "INSUFFICIENT_PERMISSIONS",
            "verifiedAt": verified_at,
            "requiredRoles": wanted,
        }
        updates = {
            "token": token,
            "isAuthenticated": True,
            "isAuthorized": is_authorized,
            "user": user,
            "session": session,
            "auth": verify_result,
            "authVerifyResult": verify_result,
        }
        if not is_authorized:
            logger.warning("User lacks required role", extra={"user_id": user["id"], "required": wanted})
            return BlockResult(
                success=False,
                updates=updates,
                output=verify_result,
                error=BlockError(code=ErrorCode.ACCESS_DENIED, message="Insufficient permissions"),
            )
        return BlockResult.ok(updates, output=verify_result)

    @staticmethod
    def _failure(reason: str, message: str, *, is_authenticated: bool = False) -> BlockResult:
        verify_result = {
            "isAuthenticated": is_authenticated,
            "isAuthorized": False,
            "failureReason": reason,
            "verifiedAt": datetime.now(timezone.utc).isoformat(),
        }
        logger.warning(f"auth.verify: {message}", extra={"reason": reason})
        return BlockResult(
            success=False,
            updates={"authVerifyResult": verify_result, "isAuthenticated": is_authenticated, "isAuthorized": False},
            output=verify_result,
            error=BlockError(code=FAILURE_CODES[reason], message=message),
        )
