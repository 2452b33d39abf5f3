"""
标准化错误码与统一异常处理。

定义全局错误码枚举、应用异常类、FastAPI 异常处理器注册。
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


# ---------------------------------------------------------------------------
# 错误码枚举
# ---------------------------------------------------------------------------

class ErrorCode(str, Enum):
    """应用级标准错误码。

    命名规则: 全大写 + 下划线，前缀表示模块。
    """

    # ── 输入校验 ──
    INVALID_INPUT = "INVALID_INPUT"
    TEMPLATE_MISSING_VARIABLE = "TEMPLATE_MISSING_VARIABLE"
    VALIDATION_BODY_TOO_LARGE = "VALIDATION_BODY_TOO_LARGE"

    # ── 认证 & 授权 ──
    AUTH_MISSING_TOKEN = "AUTH_MISSING_TOKEN"
    AUTH_INVALID_TOKEN = "AUTH_INVALID_TOKEN"
    AUTH_USER_MISMATCH = "AUTH_USER_MISMATCH"

    # ── 速率限制 ──
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # ── 积分 ──
    CREDITS_INSUFFICIENT = "CREDITS_INSUFFICIENT"
    CREDITS_ACCOUNT_NOT_FOUND = "CREDITS_ACCOUNT_NOT_FOUND"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    LEDGER_WRITE_FAILED = "LEDGER_WRITE_FAILED"

    # ── 生成服务 ──
    PROVIDER_RATE_LIMITED = "PROVIDER_RATE_LIMITED"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PROVIDER_INVALID_RESPONSE = "PROVIDER_INVALID_RESPONSE"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"

    # ── 流水线 ──
    PIPELINE_TIMEOUT = "PIPELINE_TIMEOUT"
    GENERATION_FAILED = "GENERATION_FAILED"

    # ── 系统 ──
    SYSTEM_INTERNAL_ERROR = "SYSTEM_INTERNAL_ERROR"


# ---------------------------------------------------------------------------
# 错误码元信息（默认 HTTP 状态码 & retriable 标记）
# ---------------------------------------------------------------------------

_ERROR_META: dict[ErrorCode, dict[str, Any]] = {
    # 校验
    ErrorCode.INVALID_INPUT:                {"status": 400, "retriable": False},
    ErrorCode.TEMPLATE_MISSING_VARIABLE:    {"status": 400, "retriable": False},
    ErrorCode.VALIDATION_BODY_TOO_LARGE:    {"status": 413, "retriable": False},
    # 认证
    ErrorCode.AUTH_MISSING_TOKEN:           {"status": 401, "retriable": False},
    ErrorCode.AUTH_INVALID_TOKEN:           {"status": 401, "retriable": False},
    ErrorCode.AUTH_USER_MISMATCH:           {"status": 403, "retriable": False},
    # 速率
    ErrorCode.RATE_LIMIT_EXCEEDED:          {"status": 429, "retriable": True},
    # 积分
    ErrorCode.CREDITS_INSUFFICIENT:         {"status": 402, "retriable": False},
    ErrorCode.CREDITS_ACCOUNT_NOT_FOUND:    {"status": 404, "retriable": False},
    ErrorCode.LEDGER_UNAVAILABLE:           {"status": 503, "retriable": True},
    ErrorCode.LEDGER_WRITE_FAILED:          {"status": 500, "retriable": False},
    # 生成服务
    ErrorCode.PROVIDER_RATE_LIMITED:        {"status": 429, "retriable": True},
    ErrorCode.PROVIDER_TIMEOUT:             {"status": 504, "retriable": True},
    ErrorCode.PROVIDER_INVALID_RESPONSE:    {"status": 502, "retriable": False},
    ErrorCode.PROVIDER_UNAVAILABLE:         {"status": 503, "retriable": True},
    # 流水线
    ErrorCode.PIPELINE_TIMEOUT:             {"status": 504, "retriable": True},
    ErrorCode.GENERATION_FAILED:            {"status": 502, "retriable": True},
    # 系统
    ErrorCode.SYSTEM_INTERNAL_ERROR:        {"status": 500, "retriable": True},
}


# ---------------------------------------------------------------------------
# 应用异常类
# ---------------------------------------------------------------------------

class AppError(Exception):
    """统一应用异常。

    使用方式::

        raise AppError(
            ErrorCode.CREDITS_INSUFFICIENT,
            "积分不足（当前 1，需要 2）",
            extra={"balance": 1, "required": 2},
        )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        status_code: Optional[int] = None,
        retriable: Optional[bool] = None,
        retry_after_seconds: Optional[int] = None,
        extra: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        meta = _ERROR_META.get(code, {"status": 500, "retriable": False})
        self.code = code
        self.message = message
        self.status_code = status_code or meta["status"]
        self.retriable = retriable if retriable is not None else meta["retriable"]
        self.retry_after_seconds = retry_after_seconds
        self.extra = extra or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "error": self.message,
            "code": self.code.value,
            "retriable": self.retriable,
        }
        if self.retry_after_seconds is not None:
            body["retry_after_seconds"] = self.retry_after_seconds
        if self.extra:
            body.update(self.extra)
        return body


class MissingTemplateVariable(AppError):
    """提示词模板缺少必填变量（在任何网络调用之前失败）。"""

    def __init__(self, template_id: str, variable: str):
        super().__init__(
            ErrorCode.TEMPLATE_MISSING_VARIABLE,
            f"模板 {template_id} 缺少必填变量: {variable}",
            extra={"variable": variable},
        )
        self.template_id = template_id
        self.variable = variable


class LedgerWriteFailed(AppError):
    """生成已成功但积分扣减写入失败。

    ``value`` 保存已生成的结果，调用方据此告知用户内容已生成、计费待对账。
    """

    def __init__(self, user_id: str, message: str, value: Any = None):
        super().__init__(
            ErrorCode.LEDGER_WRITE_FAILED,
            message,
            extra={"user_id": user_id},
        )
        self.user_id = user_id
        self.value = value


# ---------------------------------------------------------------------------
# FastAPI 异常处理器
# ---------------------------------------------------------------------------

async def _app_error_handler(_request: Request, exc: AppError) -> JSONResponse:
    headers = {}
    if exc.retry_after_seconds is not None:
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=headers or None,
    )


async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求体校验失败统一映射为 400 INVALID_INPUT。"""
    fields = []
    for item in exc.errors():
        loc = ".".join(str(part) for part in item.get("loc", ()) if part != "body")
        fields.append({"field": loc, "message": item.get("msg", "")})
    error = AppError(
        ErrorCode.INVALID_INPUT,
        "请求参数不合法",
        extra={"fields": fields},
    )
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def _generic_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """兜底异常处理器，将未捕获异常转为标准格式。"""
    detail = f"内部服务器错误: {type(exc).__name__}"
    return JSONResponse(
        status_code=500,
        content={
            "error": detail,
            "code": ErrorCode.SYSTEM_INTERNAL_ERROR.value,
            "retriable": True,
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    """向 FastAPI 应用注册统一异常处理器。"""
    app.add_exception_handler(AppError, _app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    # 注意: 仅在非 debug 模式下注册兜底处理器，debug 时保留默认堆栈
    from .config import settings
    if not settings.debug:
        app.add_exception_handler(Exception, _generic_error_handler)  # type: ignore[arg-type]
