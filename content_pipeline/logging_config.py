"""
结构化日志配置

所有模块通过 ``get_logger`` 取得 structlog 日志实例。请求级上下文
（request_id / user_id）与流水线上下文（mode / stage）都放在
structlog 的 contextvars 中，同一请求内的每条日志自动带上这些字段，
并发请求之间互不干扰。
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, bound_contextvars, clear_contextvars

from .config import settings

# 第三方库只保留 WARNING 以上
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "openai")


def bind_request_id(request_id: str) -> None:
    """新请求开始：清掉上一个请求残留的上下文，再绑定 request_id。"""
    clear_contextvars()
    bind_contextvars(request_id=request_id)


def bind_user_id(user_id: str) -> None:
    bind_contextvars(user_id=user_id)


@contextmanager
def pipeline_context(mode: str, stage: Optional[str] = None) -> Iterator[None]:
    """在代码块内为日志附加 mode / stage 字段，退出时恢复原值。"""
    fields: dict[str, Any] = {"mode": mode}
    if stage is not None:
        fields["stage"] = stage
    with bound_contextvars(**fields):
        yield


def _use_json(log_format: str) -> bool:
    # auto: 终端输出用彩色 console，其它情况（容器 / 重定向）用 JSON
    if log_format == "auto":
        return not sys.stderr.isatty()
    return log_format == "json"


_configured = False


def setup_logging() -> None:
    """配置 structlog 并接管标准 logging（幂等）。"""
    global _configured
    if _configured:
        return
    _configured = True

    renderer: Any
    if _use_json(settings.log_format):
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        # 不缓存，便于 structlog.testing.capture_logs 在测试中替换处理链
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    if not _configured:
        setup_logging()
    return structlog.get_logger(name)  # type: ignore[return-value]
