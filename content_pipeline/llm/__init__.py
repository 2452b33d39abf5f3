"""
生成后端模块

ProviderGateway 抽象与厂商适配器（OpenAI 兼容文本端点、Replicate 图片端点）。
"""

from typing import Optional

from .client import OpenAICompatGateway, normalize_openai_error
from .gateway import (
    ChunkChannel,
    GenerationParams,
    ProviderError,
    ProviderErrorKind,
    ProviderGateway,
)
from .replicate import ReplicateImageGateway, parse_replicate_output

_text_gateway: Optional[OpenAICompatGateway] = None
_image_gateway: Optional[ReplicateImageGateway] = None


def get_text_gateway() -> OpenAICompatGateway:
    """获取文本生成网关单例"""
    global _text_gateway
    if _text_gateway is None:
        _text_gateway = OpenAICompatGateway()
    return _text_gateway


def get_image_gateway() -> ReplicateImageGateway:
    """获取图片生成网关单例"""
    global _image_gateway
    if _image_gateway is None:
        _image_gateway = ReplicateImageGateway()
    return _image_gateway


__all__ = [
    "ChunkChannel",
    "GenerationParams",
    "OpenAICompatGateway",
    "ProviderError",
    "ProviderErrorKind",
    "ProviderGateway",
    "ReplicateImageGateway",
    "get_image_gateway",
    "get_text_gateway",
    "normalize_openai_error",
    "parse_replicate_output",
]
