"""语料库加载。"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from ..logging_config import get_logger
from ..pipeline.models import CorpusExample

logger = get_logger(__name__)


def _to_example(item: Any) -> CorpusExample | None:
    if isinstance(item, str):
        text = item.strip()
        return CorpusExample(text=text) if text else None
    if not isinstance(item, dict):
        return None
    text = str(item.get("text") or "").strip()
    if not text:
        return None
    score = item.get("popularity_score", item.get("popularityScore"))
    return CorpusExample(
        text=text,
        popularity_score=float(score) if isinstance(score, (int, float)) else None,
    )


def load_corpus(path: Path | str) -> tuple[CorpusExample, ...]:
    """
    从 JSON 文件加载语料（进程启动时调用一次）

    文件内容为数组，元素可以是 ``{"text": ..., "popularity_score": ...}`` 或纯字符串。
    空文本与无法识别的元素会被跳过。
    """
    corpus_path = Path(path)
    if not corpus_path.exists():
        raise FileNotFoundError(f"语料库不存在: {corpus_path}")

    with open(corpus_path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    if not isinstance(raw, list):
        raise ValueError(f"语料库格式错误，应为 JSON 数组: {corpus_path}")

    examples = [example for example in (_to_example(item) for item in raw) if example is not None]
    skipped = len(raw) - len(examples)
    logger.info("corpus_loaded", path=str(corpus_path), examples=len(examples), skipped=skipped)
    return tuple(examples)
