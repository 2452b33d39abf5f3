"""
相似度检索

对主题与语料样例分词后计算 Jaccard 指数并排序，纯本地计算、结果确定。
"""

from __future__ import annotations

import re
from typing import Iterable, Sequence

from ..pipeline.models import CorpusExample, RetrievalResult

_TOKEN_SPLIT_RE = re.compile(r"\W+")


def tokenize(text: str) -> frozenset[str]:
    """按非单词字符切分、转小写并去掉空 token，返回 token 集合。"""
    return frozenset(token for token in _TOKEN_SPLIT_RE.split((text or "").lower()) if token)


def similarity(a: str, b: str) -> float:
    """
    两段文本 token 集合的 Jaccard 指数

    两段文本都切不出 token（如纯标点）时，完全相同的非空文本记为 1.0，
    否则为 0.0。
    """
    left, right = tokenize(a), tokenize(b)
    if not left and not right:
        return 1.0 if a == b and (a or "").strip() else 0.0
    return len(left & right) / len(left | right)


def retrieve(
    topic: str,
    corpus: Iterable[CorpusExample],
    k: int,
    min_similarity: float = 0.0,
) -> list[RetrievalResult]:
    """
    检索与主题最相似的 k 条样例

    Args:
        topic: 用户主题
        corpus: 语料样例
        k: 返回条数上限
        min_similarity: 相似度低于该阈值的样例被丢弃（0 表示不过滤）

    Returns:
        按相似度降序排列的结果；相同分数保持语料原始顺序
    """
    if k <= 0:
        return []
    scored = [
        RetrievalResult(example=example, similarity=similarity(topic, example.text))
        for example in corpus
    ]
    if min_similarity > 0:
        scored = [item for item in scored if item.similarity >= min_similarity]
    # sorted 是稳定排序，相同分数保持语料顺序
    scored = sorted(scored, key=lambda item: item.similarity, reverse=True)
    return scored[:k]


class SimilarityRetriever:
    """持有已加载语料的检索器（构造时注入，之后只读）。"""

    def __init__(self, corpus: Sequence[CorpusExample], min_similarity: float = 0.0):
        self.corpus: tuple[CorpusExample, ...] = tuple(corpus)
        self.min_similarity = min_similarity

    def __len__(self) -> int:
        return len(self.corpus)

    def retrieve(self, topic: str, k: int) -> list[RetrievalResult]:
        return retrieve(topic, self.corpus, k, min_similarity=self.min_similarity)
