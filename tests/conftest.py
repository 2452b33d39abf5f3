"""
测试会话级别配置。

- 测试环境禁用速率限制器，避免限流对测试的干扰。
- 提供脚本化的生成后端与内存账本，流水线测试不发起任何网络请求。
"""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Iterable, Optional

import pytest

from content_pipeline.errors import AppError, ErrorCode
from content_pipeline.llm.gateway import GenerationParams, ProviderGateway
from content_pipeline.main import limiter
from content_pipeline.pipeline.credit_gate import CreditGate
from content_pipeline.pipeline.models import CorpusExample
from content_pipeline.pipeline.orchestrator import StageOrchestrator
from content_pipeline.pipeline.service import GenerationService
from content_pipeline.retrieval import SimilarityRetriever

HANG = object()


@pytest.fixture(autouse=True)
def _disable_rate_limiter():
    """在测试环境中禁用速率限制。"""
    limiter.enabled = False
    yield
    limiter.enabled = True


class ScriptedGateway(ProviderGateway):
    """按脚本依次返回：字符串为响应，异常实例为抛出，HANG 为永不返回。"""

    def __init__(self, script: Iterable[Any] = (), default: Any = "ok", name: str = "scripted", chunk_size: int = 16):
        self.script = list(script)
        self.default = default
        self.name = name
        self.chunk_size = chunk_size
        self.calls = 0
        self.prompts: list[str] = []
        self.params: list[GenerationParams] = []

    async def _next(self, prompt: str, params: GenerationParams) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        self.params.append(params)
        item = self.script.pop(0) if self.script else self.default
        if item is HANG:
            await asyncio.sleep(3600)
        if isinstance(item, BaseException):
            raise item
        return item

    async def complete(self, prompt: str, params: GenerationParams) -> str:
        return await self._next(prompt, params)

    async def _stream_chunks(self, prompt: str, params: GenerationParams) -> AsyncIterator[str]:
        text = await self._next(prompt, params)
        for start in range(0, len(text), self.chunk_size):
            yield text[start : start + self.chunk_size]


class InMemoryLedger:
    def __init__(self, balances: Optional[dict[str, int]] = None):
        self.balances = dict(balances or {})
        self.usage: list[tuple[str, str, int]] = []
        self.fail_writes = False
        self.reads = 0
        self.writes = 0

    def get_balance(self, user_id: str) -> int:
        self.reads += 1
        if user_id not in self.balances:
            raise AppError(ErrorCode.CREDITS_ACCOUNT_NOT_FOUND, f"账户不存在: {user_id}")
        return self.balances[user_id]

    def set_balance(self, user_id: str, balance: int) -> None:
        self.writes += 1
        if self.fail_writes:
            raise RuntimeError("ledger offline")
        self.balances[user_id] = balance

    def record_usage(self, user_id: str, action: str, credits: int) -> None:
        self.usage.append((user_id, action, credits))


SAMPLE_CORPUS = (
    CorpusExample(text="Pricing psychology: why $9.99 still works on your readers.", popularity_score=120),
    CorpusExample(text="Your newsletter growth depends on one habit: consistency.", popularity_score=80),
    CorpusExample(text="Anchoring is the quiet engine of pricing psychology.", popularity_score=95),
    CorpusExample(text="Write for one reader, not for everyone.", popularity_score=60),
)


def make_service(
    text_gateway: ProviderGateway,
    ledger: InMemoryLedger,
    image_gateway: Optional[ProviderGateway] = None,
    corpus: Iterable[CorpusExample] = SAMPLE_CORPUS,
    **orchestrator_kwargs: Any,
) -> GenerationService:
    orchestrator_kwargs.setdefault("retry_backoff_seconds", 0)
    orchestrator = StageOrchestrator(
        retriever=SimilarityRetriever(tuple(corpus)),
        text_gateway=text_gateway,
        image_gateway=image_gateway,
        **orchestrator_kwargs,
    )
    return GenerationService(orchestrator, CreditGate(ledger))
