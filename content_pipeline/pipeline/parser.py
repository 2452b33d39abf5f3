"""
模型输出解析器

按分隔符契约把原始文本切分为离散产物：
先执行一组有序的纯函数规范化规则（去掉推理片段、代码块标记等），
再按分隔符切分；分隔符缺失时退化为按句切分，返回单个合成产物，从不抛错。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Sequence

from ..logging_config import get_logger
from .models import ArtifactKind, ParsedArtifact

logger = get_logger(__name__)

TextRule = Callable[[str], str]

_REASONING_SPAN_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
_REASONING_CLOSE_RE = re.compile(r"^.*?</think>", re.DOTALL | re.IGNORECASE)
_REASONING_OPEN_RE = re.compile(r"<think>.*$", re.DOTALL | re.IGNORECASE)
_CODE_FENCE_RE = re.compile(r"^```[\w-]*\s*$", re.MULTILINE)
_LEADING_NUMBERING_RE = re.compile(
    r"^\s*(?:(?:note|title)\s*#?\d+\s*[:.)-]|\d+\s*[.)]|[-*•])\s+",
    re.IGNORECASE,
)
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+")


# ---------------------------------------------------------------------------
# 规范化规则（整段）
# ---------------------------------------------------------------------------

def strip_reasoning(text: str) -> str:
    """去掉 <think>...</think> 推理片段；只剩闭合标签时丢弃其之前的内容。"""
    text = _REASONING_SPAN_RE.sub("", text)
    if re.search(r"</think>", text, re.IGNORECASE):
        text = _REASONING_CLOSE_RE.sub("", text, count=1)
    # 未闭合的 <think> 之后都是推理内容
    return _REASONING_OPEN_RE.sub("", text)


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE_RE.sub("", text)


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


# ---------------------------------------------------------------------------
# 规范化规则（单个片段）
# ---------------------------------------------------------------------------

def strip_leading_numbering(segment: str) -> str:
    """去掉 "1." / "2)" / "- " / "Note 3:" 之类的前导编号。"""
    return _LEADING_NUMBERING_RE.sub("", segment, count=1)


def strip_whitespace(segment: str) -> str:
    return segment.strip()


DEFAULT_TEXT_RULES: tuple[TextRule, ...] = (normalize_newlines, strip_reasoning, strip_code_fences)
DEFAULT_SEGMENT_RULES: tuple[TextRule, ...] = (strip_whitespace, strip_leading_numbering, strip_whitespace)


def apply_rules(text: str, rules: Sequence[TextRule]) -> str:
    for rule in rules:
        text = rule(text)
    return text


def split_sentences(text: str) -> list[str]:
    """按 ". " / "! " / "? " 边界切句。"""
    return [part.strip() for part in _SENTENCE_BOUNDARY_RE.split(text) if part.strip()]


@dataclass
class ParseResult:
    artifacts: list[ParsedArtifact] = field(default_factory=list)
    degraded: bool = False

    @property
    def contents(self) -> list[str]:
        return [item.content for item in self.artifacts]

    @property
    def is_empty(self) -> bool:
        return not any(item.content for item in self.artifacts)


class ResponseParser:
    """模型输出解析器"""

    def __init__(
        self,
        text_rules: Sequence[TextRule] = DEFAULT_TEXT_RULES,
        segment_rules: Sequence[TextRule] = DEFAULT_SEGMENT_RULES,
    ):
        self.text_rules = tuple(text_rules)
        self.segment_rules = tuple(segment_rules)

    def parse(
        self,
        raw: str,
        expected_delimiter: str,
        kind: ArtifactKind = ArtifactKind.SHORT_NOTE,
        single: bool = False,
    ) -> ParseResult:
        """
        解析原始输出

        Args:
            raw: 模型原始文本
            expected_delimiter: 提示词中约定的分隔符
            kind: 产物类型
            single: 整段输出作为一个产物（大纲等）

        Returns:
            ParseResult；artifacts 至少包含一个元素
        """
        remainder = apply_rules(raw or "", self.text_rules).strip()

        if single:
            return ParseResult(artifacts=[ParsedArtifact(kind=kind, content=remainder)])

        segments: list[str] = []
        if expected_delimiter and expected_delimiter in remainder:
            for segment in remainder.split(expected_delimiter):
                cleaned = apply_rules(segment, self.segment_rules)
                if cleaned:
                    segments.append(cleaned)

        if segments:
            return ParseResult(artifacts=[ParsedArtifact(kind=kind, content=s) for s in segments])

        # 分隔符缺失或切分结果为空：按句切分并合成单个产物
        if expected_delimiter:
            remainder = remainder.replace(expected_delimiter, "\n")
        sentences = split_sentences(remainder)
        logger.warning(
            "parse_degraded",
            kind=kind.value,
            raw_len=len(raw or ""),
            sentences=len(sentences),
        )
        return ParseResult(
            artifacts=[ParsedArtifact(kind=kind, content="\n".join(sentences))],
            degraded=True,
        )


def parse(raw: str, expected_delimiter: str) -> list[str]:
    """便捷函数：返回切分后的产物文本列表。"""
    return ResponseParser().parse(raw, expected_delimiter).contents
