"""
Outbound HTTP block.

URLs are checked by the SSRF guard before any connection is opened, and again
for every redirect hop. Responses are streamed so the size ceiling holds even
when servers omit ``Content-Length``.
"""

from __future__ import annotations

import base64
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

import httpx
from pydantic import BaseModel, Field, field_validator

from shared.logger import get_logger
from workflow_engine.blocks.base import BlockConfig, BlockHandler, BlockScope, register_block
from workflow_engine.context import ExecutionContext
from workflow_engine.errors import BlockConfigError, ErrorCode, ExternalServiceError, ValidationError
from workflow_engine.schema import BlockError, BlockResult

logger = get_logger(__name__)

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
BODY_METHODS = ("POST", "PUT", "PATCH")


class HeaderEntry(BaseModel):
    key: str = ""
    value: Any = ""


class HttpAuth(BaseModel):
    type: Literal["none", "bearer", "api-key", "basic"] = "none"
    token: Optional[str] = None
    apiKey: Optional[str] = None
    headerName: str = "X-API-Key"
    username: Optional[str] = None
    password: Optional[str] = None


class HttpRequestConfig(BlockConfig):
    url: str
    method: str = "GET"
    headers: Union[List[HeaderEntry], Dict[str, Any]] = Field(default_factory=list)
    bodyType: Literal["json", "raw"] = "json"
    body: Any = None
    auth: HttpAuth = Field(default_factory=HttpAuth)
    timeout: int = 30_000
    maxRedirects: int = 5
    maxResponseSize: Optional[int] = None
    responseType: Literal["auto", "json", "text"] = "auto"
    saveResponseTo: str = "httpResponse"

    @field_validator("method")
    @classmethod
    def _method(cls, value: str) -> str:
        method = (value or "GET").upper()
        if method not in ALLOWED_METHODS:
            raise ValueError(f"unsupported method '{value}'")
        return method

    @field_validator("timeout")
    @classmethod
    def _timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    def header_pairs(self) -> List[HeaderEntry]:
        if isinstance(self.headers, dict):
            return [HeaderEntry(key=key, value=value) for key, value in self.headers.items()]
        return list(self.headers)


def build_headers(config: HttpRequestConfig, context: ExecutionContext) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for entry in config.header_pairs():
        key = context.substitute_text(entry.key).strip()
        if key:
            headers[key] = context.substitute_text(entry.value)

    auth = config.auth
    if auth.type == "bearer" and auth.token:
        headers["Authorization"] = f"Bearer {context.substitute_text(auth.token)}"
    elif auth.type == "api-key" and (auth.apiKey or auth.token):
        headers[auth.headerName or "X-API-Key"] = context.substitute_text(auth.apiKey or auth.token)
    elif auth.type == "basic" and auth.username:
        credentials = f"{context.substitute_text(auth.username)}:{context.substitute_text(auth.password)}"
        headers["Authorization"] = "Basic " + base64.b64encode(credentials.encode("utf-8")).decode("ascii")
    return headers


def build_body(config: HttpRequestConfig, context: ExecutionContext) -> Dict[str, Any]:
    if config.method not in BODY_METHODS or config.body in (None, ""):
        return {}
    if config.bodyType == "raw":
        return {"content": context.substitute_text(config.body)}
    body = config.body
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except json.JSONDecodeError:
            # Placeholders inside a JSON template are substituted as text first.
            rendered = context.substitute_text(body)
            try:
                return {"json": json.loads(rendered)}
            except json.JSONDecodeError as exc:
                raise ValidationError(f"Request body is not valid JSON: {exc.msg}") from exc
    return {"json": context.substitute_payload(body)}


async def read_limited(response: httpx.Response, max_bytes: int) -> bytes:
    declared = response.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise ExternalServiceError(f"Response of {declared} bytes exceeds limit of {max_bytes}")
    chunks: List[bytes] = []
    size = 0
    async for chunk in response.aiter_bytes():
        size += len(chunk)
        if size > max_bytes:
            raise ExternalServiceError(f"Response exceeds limit of {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def decode_body(raw: bytes, content_type: str, response_type: str, encoding: Optional[str]) -> Any:
    text = raw.decode(encoding or "utf-8", errors="replace")
    wants_json = response_type == "json" or (response_type == "auto" and "json" in content_type.lower())
    if wants_json and text.strip():
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


@register_block
class HttpRequestBlock(BlockHandler):
    label = "http.request"
    config_model = HttpRequestConfig
    rate_limit_action = "http.request"

    async def execute(self, config: HttpRequestConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        url = context.substitute_text(config.url).strip()
        if not url:
            raise BlockConfigError("http.request requires a url")
        guard = scope.services.ssrf_guard
        await guard.validate(url)

        settings = scope.settings
        headers = build_headers(config, context)
        body_kwargs = build_body(config, context)
        max_bytes = config.maxResponseSize or settings.http_max_response_bytes
        max_redirects = max(0, min(config.maxRedirects, settings.http_max_redirects))
        save_to = config.saveResponseTo.strip() or "httpResponse"

        started_at = datetime.now(timezone.utc).isoformat()
        started = time.perf_counter()
        method = config.method
        redirects = 0

        try:
            async with scope.services.http_client(config.timeout / 1000.0) as client:
                while True:
                    request = client.build_request(method, url, headers=headers, **body_kwargs)
                    response = await client.send(request, stream=True)
                    try:
                        if response.is_redirect and redirects < max_redirects:
                            url = str(response.url.join(response.headers["location"]))
                            await guard.validate(url)
                            redirects += 1
                            if response.status_code == 303 or (
                                response.status_code in (301, 302) and method not in ("GET", "HEAD")
                            ):
                                method = "GET"
                                body_kwargs = {}
                            continue
                        raw = await read_limited(response, max_bytes)
                    finally:
                        await response.aclose()
                    break
        except httpx.TimeoutException as exc:
            return self._transport_failure(save_to, ErrorCode.TIMEOUT, "TIMEOUT", f"Request timed out: {exc}", started)
        except httpx.ConnectError as exc:
            error_type = "DNS_ERROR" if "name" in str(exc).lower() else "CONNECTION_REFUSED"
            return self._transport_failure(save_to, ErrorCode.EXTERNAL_SERVICE_ERROR, error_type, f"Connection failed: {exc}", started)
        except httpx.HTTPError as exc:
            return self._transport_failure(save_to, ErrorCode.EXTERNAL_SERVICE_ERROR, "HTTP_ERROR", f"HTTP error: {exc}", started)

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        success = 200 <= response.status_code < 300
        result = {
            "success": success,
            "statusCode": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "data": decode_body(raw, response.headers.get("content-type", ""), config.responseType, response.encoding),
            "url": str(response.url),
            "redirects": redirects,
            "timing": {"startedAt": started_at, "durationMs": duration_ms},
        }
        logger.info(
            "HTTP request completed",
            extra={"method": method, "status": response.status_code, "duration_ms": duration_ms},
        )
        updates = {save_to: result, "http": {"lastResponse": result}}
        if success:
            return BlockResult.ok(updates, output=result)
        return BlockResult(
            success=False,
            updates=updates,
            output=result,
            error=BlockError(code=ErrorCode.EXTERNAL_SERVICE_ERROR, message=f"HTTP {response.status_code}"),
        )

    def _transport_failure(
        self, save_to: str, code: ErrorCode, error_type: str, message: str, started: float
    ) -> BlockResult:
        result = {
            "success": False,
            "errorType": error_type,
            "error": message,
            "timing": {"durationMs": round((time.perf_counter() - started) * 1000, 2)},
        }
        logger.warning(message, extra={"error_type": error_type})
        return BlockResult(
            success=False,
            updates={save_to: result, "http": {"lastResponse": result}},
            output=result,
            error=BlockError(code=code, message=message),
        )
