"""
Replicate 图片生成网关

通过 Replicate HTTP predictions API 同步生成图片（``Prefer: wait``），
返回图片 URL。
"""

from typing import Any, Optional

import httpx

from ..config import settings
from ..logging_config import get_logger
from .gateway import GenerationParams, ProviderError, ProviderErrorKind, ProviderGateway

logger = get_logger(__name__)


# 各模型的固定输入参数（按 Replicate 模型 owner/name 区分）
MODEL_INPUTS: dict[str, dict[str, Any]] = {
    "ideogram-ai/ideogram-v2-turbo": {
        "resolution": "None",
        "style_type": "Design",
        "magic_prompt_option": "On",
    },
    "black-forest-labs/flux-1.1-pro": {
        "output_format": "jpg",
        "output_quality": 90,
        "safety_tolerance": 2,
        "prompt_upsampling": True,
    },
}


def parse_replicate_output(output: Any, provider: str = "replicate") -> str:
    """
    从预测结果的 output 字段中取出图片 URL

    支持：字符串、字符串列表、``{"image": url}`` 列表、``{"image": url}`` 对象。
    """
    candidate: Any = output
    if isinstance(candidate, list):
        candidate = candidate[0] if candidate else None
    if isinstance(candidate, dict):
        candidate = candidate.get("image") or candidate.get("url")
    if isinstance(candidate, str) and candidate.strip():
        return candidate.strip()
    raise ProviderError(
        ProviderErrorKind.INVALID_RESPONSE,
        f"无法从 {provider} 输出中解析图片 URL: {str(output)[:200]}",
        provider=provider,
    )


def normalize_http_error(exc: Exception, provider: str = "replicate") -> ProviderError:
    """把 httpx 异常映射到固定的错误分类。"""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(ProviderErrorKind.TIMEOUT, f"{provider} 请求超时", provider=provider)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        detail = f"HTTP {status}: {exc.response.text[:200]}"
        if status == 429:
            retry_after = exc.response.headers.get("retry-after")
            return ProviderError(
                ProviderErrorKind.RATE_LIMITED,
                detail,
                provider=provider,
                retry_after_seconds=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status in (401, 403):
            return ProviderError(ProviderErrorKind.UNAVAILABLE, detail, provider=provider, transient=False)
        if status >= 500:
            return ProviderError(ProviderErrorKind.UNAVAILABLE, detail, provider=provider)
        return ProviderError(ProviderErrorKind.INVALID_RESPONSE, detail, provider=provider)
    if isinstance(exc, httpx.RequestError):
        return ProviderError(
            ProviderErrorKind.UNAVAILABLE,
            f"{provider} 连接失败: {type(exc).__name__}",
            provider=provider,
        )
    return ProviderError(
        ProviderErrorKind.UNAVAILABLE,
        f"{provider} 调用失败: {type(exc).__name__}: {exc}",
        provider=provider,
    )


class ReplicateImageGateway(ProviderGateway):
    """Replicate 图片生成网关"""

    def __init__(
        self,
        api_token: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_token = api_token or settings.replicate_api_token
        self.model = model or settings.replicate_image_model
        self.base_url = (base_url or settings.replicate_base_url).rstrip("/")
        self.name = "replicate"
        self._client = client or httpx.AsyncClient()

    async def aclose(self) -> None:
        await self._client.aclose()

    def normalize_error(self, exc: Exception) -> ProviderError:
        return normalize_http_error(exc, provider=self.name)

    async def complete(self, prompt: str, params: GenerationParams) -> str:
        """
        生成一张图片

        Args:
            prompt: 图片描述
            params: 调用参数；``model`` 覆盖默认模型，``extra["aspect_ratio"]`` 指定画幅

        Returns:
            图片 URL
        """
        model = params.model or self.model
        inputs: dict[str, Any] = {"prompt": prompt, **MODEL_INPUTS.get(model, {})}
        aspect_ratio = params.extra.get("aspect_ratio")
        if aspect_ratio:
            inputs["aspect_ratio"] = aspect_ratio
        payload = {"input": inputs}

        try:
            response = await self._client.post(
                f"{self.base_url}/models/{model}/predictions",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Prefer": "wait",
                },
                timeout=params.timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                ProviderErrorKind.INVALID_RESPONSE,
                f"{self.name} 返回了无法解析的 JSON",
                provider=self.name,
            ) from exc
        except Exception as exc:
            raise self.normalize_error(exc) from exc

        status = data.get("status")
        if status in ("failed", "canceled"):
            raise ProviderError(
                ProviderErrorKind.UNAVAILABLE,
                f"{self.name} 预测失败: {str(data.get('error'))[:200]}",
                provider=self.name,
            )

        url = parse_replicate_output(data.get("output"), provider=self.name)
        logger.debug("image_generated", provider=self.name, model=model, prediction_status=status)
        return url
