"""
FastAPI 应用入口

提供积分门控的内容生成 API：一次性 JSON 返回与 SSE 流式返回。
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .auth import IdentityProvider, get_identity_provider, resolve_user
from .config import settings
from .errors import AppError, ErrorCode, register_error_handlers
from .llm import get_text_gateway
from .llm.client import OpenAICompatGateway
from .logging_config import bind_user_id, get_logger, setup_logging
from .middleware import RequestBodyLimitMiddleware, RequestIDMiddleware
from .pipeline import GenerationMode, GenerationRequest, GenerationService, get_generation_service
from .pipeline.events import EventSink, stream_pipeline

logger = get_logger(__name__)

# ── 速率限制器 ──
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri="memory://",
)


# ============== Pydantic 模型 ==============


class GenerateRequestBody(BaseModel):
    """生成请求（字段同时接受 snake_case 与 camelCase）"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    topic: str = Field(..., min_length=1, max_length=500, description="主题")
    mode: GenerationMode = Field(GenerationMode.SHORT_FORM, description="生成模式")
    user_id: Optional[str] = Field(None, max_length=128, description="用户 ID")
    audience: Optional[str] = Field(None, max_length=300, description="目标受众")
    intent: Optional[str] = Field(None, max_length=300, description="主要意图")
    key_points: Optional[str] = Field(None, max_length=1000, description="核心要点")
    word_count: Optional[int] = Field(None, ge=50, le=5000, description="目标字数")
    tone: Optional[str] = Field(None, max_length=100, description="语气 / 风格")
    knowledge_level: Optional[str] = Field(None, max_length=100, description="受众知识水平")
    format: Optional[str] = Field(None, max_length=100, description="大纲体裁")
    main_ideas: Optional[str] = Field(None, max_length=1000, description="标题聚焦点")
    aspect_ratio: Optional[str] = Field(None, pattern=r"^\d{1,2}:\d{1,2}$", description="图片画幅")
    image_count: Optional[int] = Field(None, ge=1, description="图片数量")
    image_model: Optional[str] = Field(None, max_length=50, description="图片模型（flux / ideogram）")

    @field_validator("topic")
    @classmethod
    def _topic_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("topic must not be blank")
        return value


_OPTION_FIELDS = (
    "audience",
    "intent",
    "key_points",
    "word_count",
    "tone",
    "knowledge_level",
    "format",
    "main_ideas",
    "aspect_ratio",
    "image_model",
)


class LLMStatusResponse(BaseModel):
    ok: bool
    provider: str
    base_url: str
    model: str
    api_key_set: bool
    ping: dict


# ── Lifespan ──
@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    # 启动阶段
    setup_logging()
    warnings = settings.validate_startup()
    for w in warnings:
        logger.warning("config_warning", detail=w)
    logger.info(
        "app_starting",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        ledger_backend=settings.ledger_backend,
    )
    # 语料在此加载一次，之后只读
    if get_service not in app_instance.dependency_overrides:
        get_generation_service()
    yield
    logger.info("app_stopped")


app = FastAPI(
    title="Content Pipeline API",
    description="积分门控的 AI 内容生成流水线",
    version="0.1.0",
    lifespan=lifespan,
)

# 注册错误处理器
register_error_handlers(app)


# 速率限制异常处理器
@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    error = AppError(
        ErrorCode.RATE_LIMIT_EXCEEDED,
        "请求频率超限，请稍后重试",
        retry_after_seconds=60,
    )
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_dict(),
        headers={"Retry-After": str(error.retry_after_seconds)},
    )


app.state.limiter = limiter

# 中间件注册（注意顺序：后加的先执行）
app.add_middleware(RequestBodyLimitMiddleware, max_content_length=1024 * 1024)
app.add_middleware(RequestIDMiddleware)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.frontend_url,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== 依赖 ==============


def get_service() -> GenerationService:
    return get_generation_service()


def get_identity() -> Optional[IdentityProvider]:
    return get_identity_provider()


def get_status_gateway() -> OpenAICompatGateway:
    return get_text_gateway()


# ============== 辅助函数 ==============


def _build_request(body: GenerateRequestBody, user_id: str) -> GenerationRequest:
    """API 边界：请求体 -> GenerationRequest（积分价格只取服务端配置）。"""
    cost = settings.credit_cost_for(body.mode.value)
    if cost <= 0:
        raise AppError(ErrorCode.INVALID_INPUT, f"模式暂不可用: {body.mode.value}")

    image_count = body.image_count or settings.default_image_count
    if image_count > settings.max_image_count:
        raise AppError(
            ErrorCode.INVALID_INPUT,
            f"image_count 超过上限 {settings.max_image_count}",
            extra={"fields": [{"field": "image_count", "message": f"<= {settings.max_image_count}"}]},
        )
    if body.image_model is not None and body.image_model not in settings.replicate_image_models:
        allowed = ", ".join(sorted(settings.replicate_image_models))
        raise AppError(
            ErrorCode.INVALID_INPUT,
            f"不支持的图片模型: {body.image_model}",
            extra={"fields": [{"field": "image_model", "message": f"one of: {allowed}"}]},
        )

    options: dict[str, str] = {}
    for name in _OPTION_FIELDS:
        value = getattr(body, name)
        if value is not None and str(value).strip():
            options[name] = str(value).strip()

    return GenerationRequest(
        topic=body.topic,
        mode=body.mode,
        user_id=user_id,
        credit_cost=cost,
        options=options,
        image_count=image_count,
    )


async def _authorize(
    identity: Optional[IdentityProvider],
    authorization: Optional[str],
    claimed_user_id: Optional[str],
) -> str:
    user_id = await resolve_user(identity, authorization, claimed_user_id)
    bind_user_id(user_id)
    return user_id


# ============== API 端点 ==============


@app.get("/")
async def root():
    """根路径"""
    return {
        "name": "Content Pipeline API",
        "version": "0.1.0",
        "status": "running",
        "docs_url": "/docs",
    }


@app.get("/api/health")
async def health_check():
    """健康检查"""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
    }


@app.get("/api/llm/status", response_model=LLMStatusResponse)
async def llm_status(gateway: OpenAICompatGateway = Depends(get_status_gateway)):
    """
    检查文本生成端点是否可用（会发起一次最小调用）。
    """
    ping = await gateway.ping(timeout_s=10.0)
    return LLMStatusResponse(
        ok=bool(ping.get("ok")),
        provider=gateway.name,
        base_url=str(gateway.base_url),
        model=gateway.model,
        api_key_set=bool(gateway.api_key),
        ping=ping,
    )


@app.get("/api/credits")
@limiter.limit(settings.rate_limit_query)
async def get_credits(
    request: Request,
    user_id: Optional[str] = None,
    authorization: Optional[str] = Header(None),
    service: GenerationService = Depends(get_service),
    identity: Optional[IdentityProvider] = Depends(get_identity),
):
    """查询当前用户积分余额。"""
    uid = await _authorize(identity, authorization, user_id)
    balance = await service.balance_of(uid)
    return {"user_id": uid, "balance": balance, "costs": settings.credit_costs}


@app.post("/api/generate")
@limiter.limit(settings.rate_limit_generate)
async def generate(
    body: GenerateRequestBody,
    request: Request,
    authorization: Optional[str] = Header(None),
    service: GenerationService = Depends(get_service),
    identity: Optional[IdentityProvider] = Depends(get_identity),
):
    """
    一次性生成：返回全部产物与扣减后的余额。

    - **topic**: 主题（必填）
    - **mode**: short_form / long_form / curated_notes / outline / titles / images
    """
    user_id = await _authorize(identity, authorization, body.user_id)
    gen_request = _build_request(body, user_id)
    outcome = await service.generate(gen_request)
    return {"mode": gen_request.mode.value, **outcome.to_dict()}


@app.post("/api/generate/stream")
@limiter.limit(settings.rate_limit_generate)
async def generate_stream(
    body: GenerateRequestBody,
    request: Request,
    authorization: Optional[str] = Header(None),
    service: GenerationService = Depends(get_service),
    identity: Optional[IdentityProvider] = Depends(get_identity),
):
    """流式生成（SSE）：progress / chunk / success / error 事件，最后一个事件总是 done。"""
    user_id = await _authorize(identity, authorization, body.user_id)
    gen_request = _build_request(body, user_id)

    # 余额不足在建立流之前以 402 返回
    balance = await service.balance_of(user_id)
    if balance < gen_request.credit_cost:
        raise AppError(
            ErrorCode.CREDITS_INSUFFICIENT,
            f"积分不足（当前 {balance}，需要 {gen_request.credit_cost}）",
            extra={"balance": balance, "required": gen_request.credit_cost},
        )

    async def work(emit: EventSink) -> dict[str, Any]:
        outcome = await service.generate(gen_request, emit=emit)
        return {
            "mode": gen_request.mode.value,
            "balance": outcome.balance,
            "artifacts": len(outcome.result.artifacts),
            "errors": len(outcome.result.errors),
            "degraded": outcome.result.degraded,
        }

    return StreamingResponse(
        stream_pipeline(work),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ============== 启动入口 ==============


def start_server():
    """启动服务器"""
    import uvicorn

    uvicorn.run(
        "content_pipeline.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    start_server()
