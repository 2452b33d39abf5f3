"""
生成服务

积分门控 + 编排器的组合，是 API 层访问账本与生成流水线的唯一入口。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..config import settings
from ..errors import LedgerWriteFailed
from ..logging_config import bind_user_id, get_logger
from .credit_gate import CreditGate, CreditLedger
from .events import EventSink
from .models import CreditReservation, GenerationRequest, PipelineResult
from .orchestrator import StageOrchestrator

logger = get_logger(__name__)


@dataclass
class GenerationOutcome:
    result: PipelineResult
    balance: int
    reservation: CreditReservation

    def to_dict(self) -> dict:
        return {**self.result.to_dict(), "balance": self.balance}


class GenerationService:
    """生成服务"""

    def __init__(self, orchestrator: StageOrchestrator, gate: CreditGate):
        self.orchestrator = orchestrator
        self.gate = gate

    async def balance_of(self, user_id: str) -> int:
        return await self.gate.balance_of(user_id)

    async def generate(self, request: GenerationRequest, emit: Optional[EventSink] = None) -> GenerationOutcome:
        """
        在积分门控下执行一次生成

        Raises:
            AppError: 余额不足 / 生成失败 / 超时
            LedgerWriteFailed: 生成成功但扣减失败，extra 中附带已生成的产物
        """
        bind_user_id(request.user_id)
        try:
            credited = await self.gate.with_credits(
                request.user_id,
                request.credit_cost,
                lambda: self.orchestrator.run(request, emit=emit),
                action=f"generate_{request.mode.value}",
            )
        except LedgerWriteFailed as exc:
            if isinstance(exc.value, PipelineResult):
                exc.extra.update(exc.value.to_dict())
            raise

        return GenerationOutcome(
            result=credited.value,
            balance=credited.reservation.balance_after,
            reservation=credited.reservation,
        )


_generation_service: Optional[GenerationService] = None


def build_generation_service(ledger: Optional[CreditLedger] = None) -> GenerationService:
    """按配置组装生产环境依赖（语料只在此处加载一次）。"""
    from ..llm import get_image_gateway, get_text_gateway
    from ..retrieval import SimilarityRetriever, load_corpus
    from ..storage import get_ledger

    corpus = load_corpus(settings.corpus_file)
    orchestrator = StageOrchestrator(
        retriever=SimilarityRetriever(corpus, min_similarity=settings.retrieval_min_similarity),
        text_gateway=get_text_gateway(),
        image_gateway=get_image_gateway(),
    )
    return GenerationService(orchestrator, CreditGate(ledger or get_ledger()))


def get_generation_service() -> GenerationService:
    global _generation_service
    if _generation_service is None:
        _generation_service = build_generation_service()
    return _generation_service
