from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

import jwt
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from shared.config import config
from shared.logger import get_logger

logger = get_logger("api.middleware.auth")


@dataclass
class AuthenticatedUser:
    """The caller identified by a verified bearer token."""

    user_id: int
    email: Optional[str]
    roles: list
    claims: Dict[str, Any]


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Verifies shared-secret bearer tokens and attaches the caller to the request."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        secret: Optional[str] = None,
        algorithm: Optional[str] = None,
        allow_unauthenticated_paths: Optional[Iterable[str]] = None,
    ) -> None:
        super().__init__(app)
        self._secret = secret or config.jwt_secret
        self._algorithm = algorithm or config.jwt_algorithm
        self._allowed_paths = set(allow_unauthenticated_paths or [])

    async def dispatch(self, request: Request, call_next):
        request.state.user = None
        if self._should_skip(request):
            return await call_next(request)

        token = self._extract_token(request)
        if not token:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing or invalid Authorization header"},
            )

        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
            user_id = self._extract_user_id(claims)
        except ExpiredSignatureError:
            return JSONResponse(status_code=401, content={"detail": "Token has expired"})
        except InvalidTokenError as exc:
            return JSONResponse(status_code=401, content={"detail": str(exc)})

        roles = claims.get("roles") or ([claims["role"]] if claims.get("role") else [])
        request.state.user = AuthenticatedUser(
            user_id=user_id,
            email=claims.get("email"),
            roles=list(roles),
            claims=claims,
        )
        return await call_next(request)

    def _extract_token(self, request: Request) -> Optional[str]:
        authorization = request.headers.get("Authorization")
        if authorization and authorization.startswith("Bearer "):
            token = authorization.removeprefix("Bearer ").strip()
            if token:
                return token
        return None

    def _should_skip(self, request: Request) -> bool:
        if request.method == "OPTIONS":
            return True

        path = request.scope.get("path") or request.url.path
        for allowed in self._allowed_paths:
            normalized = allowed.rstrip("/") or "/"
            if path == normalized or (normalized != "/" and path.startswith(f"{normalized}/")):
                return True
        return False

    @staticmethod
    def _extract_user_id(claims: Dict[str, Any]) -> int:
        for key in ("id", "userId", "user_id", "sub"):
            if claims.get(key) is not None:
                try:
                    return int(claims[key])
                except (TypeError, ValueError):
                    break
        raise InvalidTokenError("Token missing numeric user identifier")


def require_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency returning the authenticated caller."""
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user


__all__ = ["AuthenticatedUser", "JWTAuthMiddleware", "require_user"]
