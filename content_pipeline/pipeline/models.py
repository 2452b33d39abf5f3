"""Pipeline 领域模型。"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class GenerationMode(str, Enum):
    """生成模式。"""

    SHORT_FORM = "short_form"
    LONG_FORM = "long_form"
    CURATED_NOTES = "curated_notes"
    OUTLINE = "outline"
    TITLES = "titles"
    IMAGES = "images"


class ArtifactKind(str, Enum):
    """产物类型。"""

    SHORT_NOTE = "short_note"
    LONG_FORM_NOTE = "long_form_note"
    OUTLINE = "outline"
    TITLE = "title"
    IMAGE_URL = "image_url"


class ProviderCall(str, Enum):
    """阶段调用方式：一次性返回 / 流式返回。"""

    COMPLETE = "complete"
    STREAM = "stream"


class ReservationState(str, Enum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class CorpusExample:
    """语料库中的参考样例（进程生命周期内只读）。"""

    text: str
    popularity_score: Optional[float] = None


@dataclass(frozen=True)
class RetrievalResult:
    """一次检索的单条结果，similarity 取值 [0, 1]。"""

    example: CorpusExample
    similarity: float


@dataclass
class GenerationRequest:
    """生成请求（API 边界校验后创建，单次流水线独占）。"""

    topic: str
    mode: GenerationMode
    user_id: str
    credit_cost: int
    options: dict[str, str] = field(default_factory=dict)
    image_count: int = 3

    def __post_init__(self) -> None:
        if not self.topic or not self.topic.strip():
            raise ValueError("topic must not be empty")
        if self.credit_cost <= 0:
            raise ValueError(f"credit_cost must be positive: {self.credit_cost}")
        if self.image_count < 1:
            raise ValueError(f"image_count must be >= 1: {self.image_count}")


@dataclass(frozen=True)
class PipelineStage:
    """流水线阶段定义（按 mode 静态声明，线性依赖链）。"""

    name: str
    template_id: str
    provider_call: ProviderCall
    artifact_kind: ArtifactKind
    delimiter: str = ""
    depends_on: Optional["PipelineStage"] = None
    backend: str = "text"  # "text" | "image"
    retries: int = 1
    timeout_seconds: Optional[float] = None
    temperature: float = 0.7
    max_tokens: int = 2000
    retrieval_k: int = 0
    fan_out: bool = False
    single_artifact: bool = False
    # 检索结果为空时跳过本阶段
    requires_examples: bool = False


@dataclass(frozen=True)
class ParsedArtifact:
    """对外可见的生成产物。"""

    kind: ArtifactKind
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "content": self.content}


@dataclass(frozen=True)
class UnitError:
    """扇出任务中单个单元的失败记录。"""

    index: int
    code: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "code": self.code, "message": self.message}


@dataclass
class PipelineResult:
    """流水线最终产物。"""

    artifacts: list[ParsedArtifact] = field(default_factory=list)
    errors: list[UnitError] = field(default_factory=list)
    degraded: bool = False
    stages: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifacts": [item.to_dict() for item in self.artifacts],
            "errors": [item.to_dict() for item in self.errors],
            "degraded": self.degraded,
        }


@dataclass
class CreditReservation:
    """积分预留记录，终态只能是 committed 或 refunded。"""

    user_id: str
    amount: int
    balance_before: int
    state: ReservationState = ReservationState.RESERVED

    @property
    def balance_after(self) -> int:
        if self.state is ReservationState.COMMITTED:
            return self.balance_before - self.amount
        return self.balance_before

    def commit(self) -> None:
        self._transition(ReservationState.COMMITTED)

    def refund(self) -> None:
        self._transition(ReservationState.REFUNDED)

    def _transition(self, target: ReservationState) -> None:
        if self.state is not ReservationState.RESERVED:
            raise RuntimeError(
                f"reservation already {self.state.value}, cannot move to {target.value}"
            )
        self.state = target
