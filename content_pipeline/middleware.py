"""
FastAPI 中间件集合。

- RequestIDMiddleware:   生成 X-Request-ID 并注入 structlog 上下文
- RequestBodyLimitMiddleware: Content-Length 上限
"""

from __future__ import annotations

import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response, JSONResponse

from .errors import AppError, ErrorCode
from .logging_config import bind_request_id


# ---------------------------------------------------------------------------
# Request ID
# ---------------------------------------------------------------------------

class RequestIDMiddleware(BaseHTTPMiddleware):
    """为每个请求生成唯一 ID，注入 structlog 上下文并写入响应头。"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        bind_request_id(request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 请求体大小限制
# ---------------------------------------------------------------------------

class RequestBodyLimitMiddleware(BaseHTTPMiddleware):
    """限制请求体大小，默认 1 MB。"""

    MAX_BYTES = 1024 * 1024  # 1 MB

    def __init__(self, app, max_content_length: int = MAX_BYTES):
        super().__init__(app)
        self._max_bytes = max_content_length

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self._max_bytes:
            error = AppError(
                ErrorCode.VALIDATION_BODY_TOO_LARGE,
                f"请求体超过 {self._max_bytes // 1024} KB 上限",
            )
            return JSONResponse(status_code=error.status_code, content=error.to_dict())
        return await call_next(request)
