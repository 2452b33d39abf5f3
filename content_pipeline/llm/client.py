"""
LLM 客户端模块

封装 OpenAI SDK，支持自定义 base_url，用于调用兼容 OpenAI 格式的大语言模型
（DeepSeek / Groq / Together / OpenAI）。实现 ProviderGateway 的 complete 与 stream。
"""

import time
from typing import Any, AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

from ..config import settings
from ..logging_config import get_logger
from .gateway import GenerationParams, ProviderError, ProviderErrorKind, ProviderGateway

logger = get_logger(__name__)


def normalize_openai_error(exc: Exception, provider: str = "") -> ProviderError:
    """把 OpenAI SDK 异常映射到固定的错误分类。"""
    if isinstance(exc, ProviderError):
        return exc
    name = type(exc).__name__
    msg = f"{name}: {str(exc)[:200]}"

    if isinstance(exc, openai.RateLimitError):
        return ProviderError(ProviderErrorKind.RATE_LIMITED, msg, provider=provider)
    if isinstance(exc, openai.APITimeoutError):
        return ProviderError(ProviderErrorKind.TIMEOUT, msg, provider=provider)
    if isinstance(exc, openai.APIConnectionError):
        return ProviderError(ProviderErrorKind.UNAVAILABLE, msg, provider=provider)
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderError(ProviderErrorKind.UNAVAILABLE, msg, provider=provider, transient=False)
    if isinstance(exc, openai.InternalServerError):
        return ProviderError(ProviderErrorKind.UNAVAILABLE, msg, provider=provider)
    if isinstance(exc, openai.APIStatusError):
        return ProviderError(ProviderErrorKind.INVALID_RESPONSE, msg, provider=provider)
    if isinstance(exc, TimeoutError) or "timed out" in str(exc).lower():
        return ProviderError(ProviderErrorKind.TIMEOUT, msg, provider=provider)
    return ProviderError(ProviderErrorKind.UNAVAILABLE, msg, provider=provider)


class OpenAICompatGateway(ProviderGateway):
    """OpenAI 兼容文本生成网关"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        name: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        初始化 LLM 客户端

        Args:
            api_key: API Key，默认从配置读取
            base_url: API Base URL，默认从配置读取
            model: 模型名称，默认从配置读取
            name: 网关名称（日志 / 错误中使用）
            client: 预先构造的 AsyncOpenAI 客户端（测试注入）
        """
        self.api_key = api_key or settings.text_api_key
        self.base_url = base_url or settings.text_base_url
        self.model = model or settings.text_model
        self.name = name or settings.text_provider_name

        # SDK 自带重试关闭，重试由编排器按阶段策略执行
        self.client = client or AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            max_retries=0,
        )

        # Token 用量追踪
        self._total_prompt_tokens: int = 0
        self._total_completion_tokens: int = 0
        self._total_tokens: int = 0
        self._total_calls: int = 0

    def _track_usage(self, response: Any) -> None:
        """累加 token 用量。"""
        usage = getattr(response, "usage", None)
        if usage:
            self._total_prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self._total_completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self._total_tokens += getattr(usage, "total_tokens", 0) or 0
        self._total_calls += 1

    def get_token_usage(self) -> dict[str, int]:
        """取得累计 token 用量。"""
        return {
            "total_prompt_tokens": self._total_prompt_tokens,
            "total_completion_tokens": self._total_completion_tokens,
            "total_tokens": self._total_tokens,
            "total_calls": self._total_calls,
        }

    def normalize_error(self, exc: Exception) -> ProviderError:
        return normalize_openai_error(exc, provider=self.name)

    def _messages(self, prompt: str, params: GenerationParams) -> list[dict[str, str]]:
        messages = []
        if params.system_prompt:
            messages.append({"role": "system", "content": params.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def ping(self, timeout_s: float = 30.0) -> dict:
        """
        检查 LLM 是否可用（最小调用）。

        Returns:
            dict: { ok, latency_ms, reply, error }
        """
        start = time.perf_counter()
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "Reply with exactly: pong"},
                    {"role": "user", "content": "ping"},
                ],
                temperature=0,
                max_tokens=10,
                timeout=timeout_s,
            )
            content = (resp.choices[0].message.content or "").strip()
            lower = content.lower()
            # 部分兼容网关会回显用户消息，成功响应即视为在线
            ok = bool(content) and (lower == "pong" or lower == "ping" or "pong" in lower)
            return {
                "ok": ok,
                "latency_ms": int((time.perf_counter() - start) * 1000),
                "reply": content,
                "error": None if ok else f"Unexpected reply: {content!r}",
            }
        except Exception as e:
            return {
                "ok": False,
                "latency_ms": int((time.perf_counter() - start) * 1000),
                "error": f"{type(e).__name__}: {str(e)}",
            }

    async def complete(self, prompt: str, params: GenerationParams) -> str:
        """
        生成文本

        Args:
            prompt: 用户提示词
            params: 调用参数（温度 / 最大 token / 超时 / 系统提示）

        Returns:
            生成的文本内容
        """
        try:
            response = await self.client.chat.completions.create(
                model=params.model or self.model,
                messages=self._messages(prompt, params),
                temperature=params.temperature,
                max_tokens=params.max_tokens,
                timeout=params.timeout_seconds,
            )
        except Exception as exc:
            raise self.normalize_error(exc) from exc

        self._track_usage(response)
        choices = getattr(response, "choices", None) or []
        content = (choices[0].message.content or "") if choices else ""
        if not content.strip():
            raise ProviderError(
                ProviderErrorKind.INVALID_RESPONSE,
                f"{self.name} 返回空内容",
                provider=self.name,
            )
        logger.debug(
            "llm_generate",
            provider=self.name,
            model=params.model or self.model,
            prompt_len=len(prompt),
            response_len=len(content),
            tokens=getattr(getattr(response, "usage", None), "total_tokens", None),
        )
        return content

    async def _stream_chunks(self, prompt: str, params: GenerationParams) -> AsyncIterator[str]:
        stream = await self.client.chat.completions.create(
            model=params.model or self.model,
            messages=self._messages(prompt, params),
            temperature=params.temperature,
            max_tokens=params.max_tokens,
            timeout=params.timeout_seconds,
            stream=True,
        )
        self._total_calls += 1
        async for event in stream:
            choices = getattr(event, "choices", None) or []
            if not choices:
                continue
            delta = getattr(choices[0], "delta", None)
            content = getattr(delta, "content", None) if delta is not None else None
            if content:
                yield content
