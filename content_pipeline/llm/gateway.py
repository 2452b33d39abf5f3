"""
生成服务网关抽象

统一不同厂商的文本 / 图片生成后端：complete（一次请求一次响应）与
stream（一次请求，按顺序产出增量片段）。厂商异常统一归一为 ProviderError。
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Optional

from ..config import settings
from ..errors import AppError, ErrorCode
from ..logging_config import get_logger

logger = get_logger(__name__)


class ProviderErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"
    UNAVAILABLE = "unavailable"


_KIND_TO_CODE: dict[ProviderErrorKind, ErrorCode] = {
    ProviderErrorKind.RATE_LIMITED: ErrorCode.PROVIDER_RATE_LIMITED,
    ProviderErrorKind.TIMEOUT: ErrorCode.PROVIDER_TIMEOUT,
    ProviderErrorKind.INVALID_RESPONSE: ErrorCode.PROVIDER_INVALID_RESPONSE,
    ProviderErrorKind.UNAVAILABLE: ErrorCode.PROVIDER_UNAVAILABLE,
}

_TRANSIENT_KINDS = {
    ProviderErrorKind.RATE_LIMITED,
    ProviderErrorKind.TIMEOUT,
    ProviderErrorKind.UNAVAILABLE,
}


class ProviderError(AppError):
    """归一化后的生成服务异常。

    ``transient`` 为 True 时阶段内可重试（限流 / 超时 / 服务不可用），
    invalid_response 默认不可重试。
    """

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        *,
        provider: str = "",
        transient: Optional[bool] = None,
        retry_after_seconds: Optional[int] = None,
    ):
        self.kind = kind
        self.provider = provider
        self.transient = kind in _TRANSIENT_KINDS if transient is None else transient
        super().__init__(
            _KIND_TO_CODE[kind],
            message,
            retriable=self.transient,
            retry_after_seconds=retry_after_seconds,
            extra={"provider": provider} if provider else None,
        )


@dataclass
class GenerationParams:
    """单次调用参数。"""

    temperature: float = 0.7
    max_tokens: int = 2000
    timeout_seconds: float = 60.0
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


class _Closed:
    pass


@dataclass
class _Failure:
    error: BaseException


_CLOSED = _Closed()


class ChunkChannel:
    """有界片段通道。

    正常结束时 close()，消费端迭代自然结束；异常结束时 fail(exc)，
    消费端迭代抛出该异常。两种结束方式不会混淆。
    """

    def __init__(self, maxsize: int = 64):
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(1, maxsize))
        self._finished = False

    async def send(self, chunk: str) -> None:
        if self._finished:
            raise RuntimeError("channel already finished")
        await self._queue.put(chunk)

    async def close(self) -> None:
        if not self._finished:
            self._finished = True
            await self._queue.put(_CLOSED)

    async def fail(self, error: BaseException) -> None:
        if not self._finished:
            self._finished = True
            await self._queue.put(_Failure(error))

    def __aiter__(self) -> "ChunkChannel":
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is _CLOSED:
            # 保持终止状态，重复迭代同样结束
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._queue.put_nowait(item)
            raise item.error
        return item


class ProviderGateway(ABC):
    """生成后端统一接口，编排器只依赖此抽象。"""

    name: str = "provider"

    @abstractmethod
    async def complete(self, prompt: str, params: GenerationParams) -> str:
        """单次请求，返回完整文本（图片后端返回图片 URL）。"""

    async def _stream_chunks(self, prompt: str, params: GenerationParams) -> AsyncIterator[str]:
        """厂商原始片段迭代器；默认把 complete 结果作为单个片段。"""
        yield await self.complete(prompt, params)

    def normalize_error(self, exc: Exception) -> ProviderError:
        """把厂商异常归一为 ProviderError，子类按 SDK 细化。"""
        if isinstance(exc, ProviderError):
            return exc
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return ProviderError(ProviderErrorKind.TIMEOUT, f"{self.name} 调用超时", provider=self.name)
        return ProviderError(
            ProviderErrorKind.UNAVAILABLE,
            f"{self.name} 调用失败: {type(exc).__name__}: {exc}",
            provider=self.name,
        )

    async def stream(self, prompt: str, params: GenerationParams) -> AsyncGenerator[str, None]:
        """
        流式生成

        厂商片段经由有界通道按顺序转发；通道关闭表示正常完成，
        异常终止时迭代抛出 ProviderError。消费端提前退出会取消上游读取。
        """
        channel = ChunkChannel(maxsize=settings.stream_channel_size)
        pump = asyncio.create_task(self._pump(prompt, params, channel))
        try:
            async for chunk in channel:
                yield chunk
        finally:
            if not pump.done():
                pump.cancel()
                try:
                    await pump
                except asyncio.CancelledError:
                    pass

    async def _pump(self, prompt: str, params: GenerationParams, channel: ChunkChannel) -> None:
        try:
            async for chunk in self._stream_chunks(prompt, params):
                if chunk:
                    await channel.send(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = self.normalize_error(exc)
            logger.warning(
                "provider_stream_failed",
                provider=self.name,
                kind=error.kind.value,
                error=str(exc)[:200],
            )
            await channel.fail(error)
            return
        await channel.close()
