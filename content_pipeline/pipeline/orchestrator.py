"""生成流水线编排器（检索 → 组装提示词 → 调用生成后端 → 解析）。"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

from ..config import settings
from ..errors import AppError, ErrorCode
from ..llm.gateway import GenerationParams, ProviderError, ProviderErrorKind, ProviderGateway
from ..logging_config import get_logger, pipeline_context
from ..retrieval.similarity import SimilarityRetriever
from .events import EventSink, chunk_event, error_event, progress_event, success_event
from .models import (
    CorpusExample,
    GenerationRequest,
    ParsedArtifact,
    PipelineResult,
    PipelineStage,
    ProviderCall,
    RetrievalResult,
    UnitError,
)
from .parser import ResponseParser
from .stages import stages_for
from .templates import assemble, system_prompt_for

logger = get_logger(__name__)


class StageOrchestrator:
    """按模式的阶段链顺序执行生成，每个阶段独立超时与重试。"""

    def __init__(
        self,
        retriever: SimilarityRetriever,
        text_gateway: ProviderGateway,
        image_gateway: Optional[ProviderGateway] = None,
        parser: Optional[ResponseParser] = None,
        *,
        stage_timeout_seconds: Optional[float] = None,
        pipeline_timeout_seconds: Optional[float] = None,
        retry_backoff_seconds: Optional[float] = None,
    ):
        self.retriever = retriever
        self.text_gateway = text_gateway
        self.image_gateway = image_gateway
        self.parser = parser or ResponseParser()

        self.stage_timeout_seconds = float(
            stage_timeout_seconds if stage_timeout_seconds is not None else settings.stage_timeout_seconds
        )
        self.pipeline_timeout_seconds = float(
            pipeline_timeout_seconds
            if pipeline_timeout_seconds is not None
            else settings.pipeline_timeout_seconds
        )
        self.retry_backoff_seconds = float(
            retry_backoff_seconds if retry_backoff_seconds is not None else settings.retry_backoff_seconds
        )

    # ------------------------------------------------------------------ #
    # 入口
    # ------------------------------------------------------------------ #

    async def run(self, request: GenerationRequest, emit: Optional[EventSink] = None) -> PipelineResult:
        """
        执行一次生成

        Args:
            request: 已校验的生成请求
            emit: 事件回调（流式响应时传入），None 表示一次性返回

        Returns:
            完整的 PipelineResult

        Raises:
            AppError: 阶段失败（重试耗尽 / 不可重试）、扇出全部失败或整体超时
        """
        start = time.perf_counter()
        logger.info("pipeline_started", mode=request.mode.value, topic_len=len(request.topic))
        try:
            result = await asyncio.wait_for(
                self._run_stages(request, emit),
                timeout=self.pipeline_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "pipeline_timeout",
                mode=request.mode.value,
                timeout_s=self.pipeline_timeout_seconds,
            )
            raise AppError(
                ErrorCode.PIPELINE_TIMEOUT,
                f"生成超过 {self.pipeline_timeout_seconds:g}s 未完成",
            ) from None

        logger.info(
            "pipeline_completed",
            mode=request.mode.value,
            artifacts=len(result.artifacts),
            errors=len(result.errors),
            degraded=result.degraded,
            latency_ms=int((time.perf_counter() - start) * 1000),
        )
        return result

    async def _run_stages(self, request: GenerationRequest, emit: Optional[EventSink]) -> PipelineResult:
        mode = request.mode.value
        stages = stages_for(request.mode)
        variables: dict[str, str] = {**request.options, "topic": request.topic}

        with pipeline_context(mode):
            candidates = self._retrieve(request.topic, stages[0].retrieval_k)
        examples = candidates
        previous: Optional[list[ParsedArtifact]] = None
        result = PipelineResult()

        for position, stage in enumerate(stages, start=1):
            if stage.depends_on is not None and previous is not None:
                examples = self._examples_from(previous, candidates)
            if stage.requires_examples and not examples:
                logger.info("stage_skipped", mode=mode, stage=stage.name, reason="no_examples")
                result.stages.append({"name": stage.name, "skipped": True})
                continue

            is_final = position == len(stages)
            await self._emit(
                emit,
                progress_event(f"正在执行阶段 {position}/{len(stages)}: {stage.name}", stage=stage.name),
            )

            with pipeline_context(mode, stage.name):
                if stage.fan_out:
                    artifacts, errors = await self._run_fan_out(stage, request, variables, examples, emit)
                    result.errors.extend(errors)
                    previous = artifacts
                else:
                    previous = await self._run_stage(stage, variables, examples, emit if is_final else None, result)

            if is_final:
                result.artifacts = list(previous)

        return result

    # ------------------------------------------------------------------ #
    # 检索
    # ------------------------------------------------------------------ #

    def _retrieve(self, topic: str, k: int) -> list[RetrievalResult]:
        if k <= 0:
            return []
        results = self.retriever.retrieve(topic, k)
        if not results:
            # 非致命：无参考样例时照常生成
            logger.info("retrieval_empty", k=k, corpus_size=len(self.retriever))
        else:
            logger.debug("retrieval_done", k=k, hits=len(results), top=round(results[0].similarity, 4))
        return results

    @staticmethod
    def _examples_from(
        artifacts: list[ParsedArtifact],
        candidates: list[RetrievalResult],
    ) -> list[RetrievalResult]:
        """把上一阶段的解析结果映射回候选样例（找不到对应候选时相似度记为 0）。"""
        by_text = {" ".join(item.example.text.split()): item for item in candidates}
        examples: list[RetrievalResult] = []
        for artifact in artifacts:
            if not artifact.content:
                continue
            matched = by_text.get(" ".join(artifact.content.split()))
            if matched is None:
                matched = RetrievalResult(example=CorpusExample(text=artifact.content), similarity=0.0)
            examples.append(matched)
        return examples

    # ------------------------------------------------------------------ #
    # 单阶段
    # ------------------------------------------------------------------ #

    def _gateway_for(self, stage: PipelineStage) -> ProviderGateway:
        if stage.backend == "image":
            if self.image_gateway is None:
                raise ProviderError(
                    ProviderErrorKind.UNAVAILABLE,
                    "图片生成后端未配置",
                    provider="image",
                    transient=False,
                )
            return self.image_gateway
        return self.text_gateway

    def _params(self, stage: PipelineStage, variables: dict[str, str]) -> GenerationParams:
        extra: dict[str, Any] = {}
        model: Optional[str] = None
        if stage.backend == "image":
            extra["aspect_ratio"] = variables.get("aspect_ratio") or settings.default_aspect_ratio
            # 未知别名在 API 边界已拒绝，这里查不到时交给网关的默认模型
            model = settings.replicate_image_models.get(variables.get("image_model", ""))
        return GenerationParams(
            temperature=stage.temperature,
            max_tokens=stage.max_tokens,
            timeout_seconds=stage.timeout_seconds or self.stage_timeout_seconds,
            system_prompt=system_prompt_for(stage.template_id) or None,
            model=model,
            extra=extra,
        )

    async def _run_stage(
        self,
        stage: PipelineStage,
        variables: dict[str, str],
        examples: list[RetrievalResult],
        emit: Optional[EventSink],
        result: PipelineResult,
    ) -> list[ParsedArtifact]:
        # 缺少必填变量时在任何网络调用之前失败
        prompt = assemble(stage.template_id, variables, examples)
        gateway = self._gateway_for(stage)
        params = self._params(stage, variables)

        start = time.perf_counter()
        logger.info("stage_started", stage=stage.name, provider=gateway.name, examples=len(examples))
        raw, attempts = await self._call_with_retries(stage, gateway, prompt, params, emit, surface_chunks=True)

        parsed = self.parser.parse(
            raw,
            stage.delimiter,
            kind=stage.artifact_kind,
            single=stage.single_artifact,
        )
        if parsed.is_empty:
            raise ProviderError(
                ProviderErrorKind.INVALID_RESPONSE,
                f"阶段 {stage.name} 未解析出任何内容",
                provider=gateway.name,
            )
        if parsed.degraded:
            result.degraded = True

        latency_ms = int((time.perf_counter() - start) * 1000)
        result.stages.append(
            {
                "name": stage.name,
                "attempts": attempts,
                "artifacts": len(parsed.artifacts),
                "degraded": parsed.degraded,
                "latency_ms": latency_ms,
            }
        )
        logger.info(
            "stage_completed",
            stage=stage.name,
            attempts=attempts,
            artifacts=len(parsed.artifacts),
            degraded=parsed.degraded,
            latency_ms=latency_ms,
        )

        for index, artifact in enumerate(parsed.artifacts):
            await self._emit(emit, success_event(index, artifact))
        return parsed.artifacts

    async def _run_fan_out(
        self,
        stage: PipelineStage,
        request: GenerationRequest,
        variables: dict[str, str],
        examples: list[RetrievalResult],
        emit: Optional[EventSink],
    ) -> tuple[list[ParsedArtifact], list[UnitError]]:
        """N 个相互独立的生成单元顺序执行，单元失败只记录，全部失败才升级。"""
        prompt = assemble(stage.template_id, variables, examples)
        gateway = self._gateway_for(stage)
        params = self._params(stage, variables)
        total = request.image_count

        artifacts: list[ParsedArtifact] = []
        errors: list[UnitError] = []
        for index in range(total):
            await self._emit(emit, progress_event(f"正在生成 {index + 1}/{total}", index=index))
            try:
                content, _ = await self._call_with_retries(stage, gateway, prompt, params, emit, index=index)
            except ProviderError as exc:
                errors.append(UnitError(index=index, code=exc.code.value, message=exc.message))
                logger.warning(
                    "fan_out_unit_failed",
                    stage=stage.name,
                    index=index,
                    code=exc.code.value,
                    error=exc.message,
                )
                await self._emit(emit, error_event(exc.message, code=exc.code.value, index=index))
                continue

            artifact = ParsedArtifact(kind=stage.artifact_kind, content=content.strip())
            artifacts.append(artifact)
            await self._emit(emit, success_event(index, artifact))

        logger.info("fan_out_completed", stage=stage.name, succeeded=len(artifacts), failed=len(errors))
        if not artifacts:
            raise AppError(
                ErrorCode.GENERATION_FAILED,
                f"{total} 个生成任务全部失败",
                extra={"errors": [item.to_dict() for item in errors]},
            )
        return artifacts, errors

    # ------------------------------------------------------------------ #
    # 调用 & 重试
    # ------------------------------------------------------------------ #

    async def _call_with_retries(
        self,
        stage: PipelineStage,
        gateway: ProviderGateway,
        prompt: str,
        params: GenerationParams,
        emit: Optional[EventSink],
        *,
        surface_chunks: bool = False,
        index: Optional[int] = None,
    ) -> tuple[str, int]:
        """
        带重试的单次阶段调用，返回 (原始输出, 尝试次数)

        可重试错误按固定间隔重试 ``stage.retries`` 次；流式阶段一旦有片段
        已推送给调用方就不再重试。超时覆盖整个重试过程。
        """
        timeout = stage.timeout_seconds or self.stage_timeout_seconds
        state = {"attempts": 0, "surfaced": False}

        async def attempt_loop() -> str:
            while True:
                state["attempts"] += 1
                try:
                    return await self._invoke(stage, gateway, prompt, params, emit if surface_chunks else None, state)
                except ProviderError as exc:
                    retry = exc.transient and state["attempts"] <= stage.retries and not state["surfaced"]
                    if not retry:
                        logger.warning(
                            "stage_failed",
                            stage=stage.name,
                            index=index,
                            attempts=state["attempts"],
                            code=exc.code.value,
                            surfaced=state["surfaced"],
                            error=exc.message,
                        )
                        raise
                    logger.warning(
                        "stage_retry",
                        stage=stage.name,
                        index=index,
                        attempt=state["attempts"],
                        code=exc.code.value,
                        backoff_s=self.retry_backoff_seconds,
                    )
                    await self._emit(
                        emit,
                        progress_event(
                            f"{stage.name} 重试中（第 {state['attempts'] + 1} 次尝试）",
                            status="retrying",
                            index=index,
                        ),
                    )
                    await asyncio.sleep(self.retry_backoff_seconds)

        try:
            raw = await asyncio.wait_for(attempt_loop(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("stage_timeout", stage=stage.name, index=index, timeout_s=timeout)
            raise ProviderError(
                ProviderErrorKind.TIMEOUT,
                f"阶段 {stage.name} 超过 {timeout:g}s 未返回",
                provider=gateway.name,
            ) from None
        return raw, int(state["attempts"])

    async def _invoke(
        self,
        stage: PipelineStage,
        gateway: ProviderGateway,
        prompt: str,
        params: GenerationParams,
        emit: Optional[EventSink],
        state: dict[str, Any],
    ) -> str:
        if stage.provider_call is not ProviderCall.STREAM:
            return await gateway.complete(prompt, params)

        parts: list[str] = []
        stream = gateway.stream(prompt, params)
        try:
            async for chunk in stream:
                parts.append(chunk)
                if emit is not None:
                    state["surfaced"] = True
                    await emit(chunk_event(len(parts) - 1, chunk))
        finally:
            await stream.aclose()
        return "".join(parts)

    @staticmethod
    async def _emit(emit: Optional[EventSink], event: dict[str, Any]) -> None:
        if emit is not None:
            await emit(event)
