"""
各生成模式的静态阶段表

每个 mode 对应一条线性阶段链（无分支、无环）。依赖阶段通过 ``depends_on``
引用前一阶段，编排器据此把前一阶段的解析结果作为下一阶段的参考样例。
"""

from __future__ import annotations

from .models import ArtifactKind, GenerationMode, PipelineStage, ProviderCall
from .templates import NOTE_DELIMITER, TemplateId

SHORT_FORM_GENERATE = PipelineStage(
    name="generate_short_notes",
    template_id=TemplateId.SHORT_NOTES.value,
    provider_call=ProviderCall.STREAM,
    artifact_kind=ArtifactKind.SHORT_NOTE,
    delimiter=NOTE_DELIMITER,
    retrieval_k=3,
)

LONG_FORM_GENERATE = PipelineStage(
    name="generate_long_notes",
    template_id=TemplateId.LONG_NOTES.value,
    provider_call=ProviderCall.STREAM,
    artifact_kind=ArtifactKind.LONG_FORM_NOTE,
    delimiter=NOTE_DELIMITER,
    retrieval_k=2,
    max_tokens=3000,
)

CURATE_EXAMPLES = PipelineStage(
    name="curate_examples",
    template_id=TemplateId.CURATE_EXAMPLES.value,
    provider_call=ProviderCall.COMPLETE,
    artifact_kind=ArtifactKind.SHORT_NOTE,
    delimiter=NOTE_DELIMITER,
    retrieval_k=8,
    temperature=0.2,
    requires_examples=True,
)

CURATED_GENERATE = PipelineStage(
    name="generate_curated_notes",
    template_id=TemplateId.SHORT_NOTES.value,
    provider_call=ProviderCall.STREAM,
    artifact_kind=ArtifactKind.SHORT_NOTE,
    delimiter=NOTE_DELIMITER,
    depends_on=CURATE_EXAMPLES,
)

OUTLINE_GENERATE = PipelineStage(
    name="generate_outline",
    template_id=TemplateId.OUTLINE.value,
    provider_call=ProviderCall.STREAM,
    artifact_kind=ArtifactKind.OUTLINE,
    delimiter=NOTE_DELIMITER,
    single_artifact=True,
    max_tokens=3000,
)

TITLES_GENERATE = PipelineStage(
    name="generate_titles",
    template_id=TemplateId.TITLES.value,
    provider_call=ProviderCall.COMPLETE,
    artifact_kind=ArtifactKind.TITLE,
    delimiter="\n",
    temperature=0.8,
)

IMAGES_GENERATE = PipelineStage(
    name="generate_images",
    template_id=TemplateId.IMAGE.value,
    provider_call=ProviderCall.COMPLETE,
    artifact_kind=ArtifactKind.IMAGE_URL,
    backend="image",
    retries=2,
    fan_out=True,
)

STAGES_BY_MODE: dict[GenerationMode, tuple[PipelineStage, ...]] = {
    GenerationMode.SHORT_FORM: (SHORT_FORM_GENERATE,),
    GenerationMode.LONG_FORM: (LONG_FORM_GENERATE,),
    GenerationMode.CURATED_NOTES: (CURATE_EXAMPLES, CURATED_GENERATE),
    GenerationMode.OUTLINE: (OUTLINE_GENERATE,),
    GenerationMode.TITLES: (TITLES_GENERATE,),
    GenerationMode.IMAGES: (IMAGES_GENERATE,),
}


def stages_for(mode: GenerationMode | str) -> tuple[PipelineStage, ...]:
    """获取某个模式的阶段链（按执行顺序）。"""
    return STAGES_BY_MODE[GenerationMode(mode)]
