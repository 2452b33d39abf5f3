from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import pytest

from content_pipeline.errors import AppError, ErrorCode
from content_pipeline.llm.gateway import GenerationParams, ProviderError, ProviderErrorKind
from content_pipeline.pipeline.models import ArtifactKind, GenerationMode, GenerationRequest
from content_pipeline.pipeline.templates import NOTE_DELIMITER

from conftest import HANG, SAMPLE_CORPUS, InMemoryLedger, ScriptedGateway, make_service

NOTES = [
    "Did you know $9.99 beats $10?",
    "Anchor high, then reveal the real price.",
    "Free trials trade money for habit.",
    "Scarcity only works when it is true.",
]


def _request(mode: GenerationMode = GenerationMode.SHORT_FORM, cost: int = 2, **kwargs: Any) -> GenerationRequest:
    return GenerationRequest(
        topic=kwargs.pop("topic", "pricing psychology"),
        mode=mode,
        user_id="u1",
        credit_cost=cost,
        **kwargs,
    )


def _rate_limited() -> ProviderError:
    return ProviderError(ProviderErrorKind.RATE_LIMITED, "slow down", provider="scripted")


class _Collector:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def __call__(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.events if event["type"] == event_type]


class _FlakyStreamGateway(ScriptedGateway):
    """第一次流式调用先推送一个片段再失败，之后按脚本正常返回。"""

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.stream_calls = 0

    async def _stream_chunks(self, prompt: str, params: GenerationParams) -> AsyncIterator[str]:
        self.stream_calls += 1
        if self.stream_calls == 1:
            self.calls += 1
            yield "partial "
            raise ProviderError(ProviderErrorKind.UNAVAILABLE, "connection dropped", provider=self.name)
        async for chunk in super()._stream_chunks(prompt, params):
            yield chunk


def test_short_form_happy_path_returns_four_notes_and_charges_once() -> None:
    gateway = ScriptedGateway([NOTE_DELIMITER.join(NOTES)])
    ledger = InMemoryLedger({"u1": 10})
    service = make_service(gateway, ledger)

    outcome = asyncio.run(service.generate(_request()))

    assert [item.content for item in outcome.result.artifacts] == NOTES
    assert all(item.kind is ArtifactKind.SHORT_NOTE for item in outcome.result.artifacts)
    assert outcome.balance == 8
    assert ledger.balances["u1"] == 8
    assert gateway.calls == 1
    # 检索到的参考样例被注入提示词
    assert "Anchoring is the quiet engine of pricing psychology." in gateway.prompts[0]
    assert NOTE_DELIMITER in gateway.prompts[0]


def test_stream_stage_emits_chunks_then_success_events() -> None:
    gateway = ScriptedGateway([NOTE_DELIMITER.join(NOTES)], chunk_size=10)
    service = make_service(gateway, InMemoryLedger({"u1": 10}))
    collector = _Collector()

    asyncio.run(service.generate(_request(), emit=collector))

    chunks = collector.of_type("chunk")
    assert "".join(event["text"] for event in chunks) == NOTE_DELIMITER.join(NOTES)
    assert [event["index"] for event in chunks] == list(range(len(chunks)))
    successes = collector.of_type("success")
    assert [event["content"] for event in successes] == NOTES
    assert collector.events.index(chunks[-1]) < collector.events.index(successes[0])


def test_fan_out_partial_failure_keeps_successes_and_commits() -> None:
    images = ScriptedGateway(
        [
            "https://img.example/1.png",
            _rate_limited(),
            _rate_limited(),
            _rate_limited(),
            "https://img.example/3.png",
        ],
        name="images",
    )
    ledger = InMemoryLedger({"u1": 10})
    service = make_service(ScriptedGateway(), ledger, image_gateway=images)
    collector = _Collector()

    outcome = asyncio.run(
        service.generate(_request(GenerationMode.IMAGES, cost=3, image_count=3), emit=collector)
    )

    assert [item.content for item in outcome.result.artifacts] == [
        "https://img.example/1.png",
        "https://img.example/3.png",
    ]
    assert [(item.index, item.code) for item in outcome.result.errors] == [
        (1, ErrorCode.PROVIDER_RATE_LIMITED.value)
    ]
    assert images.calls == 5  # 第 2 张：1 次 + 2 次重试
    assert ledger.balances["u1"] == 7
    assert [event["index"] for event in collector.of_type("success")] == [0, 2]
    assert collector.of_type("success")[0]["imageUrl"] == "https://img.example/1.png"
    assert [event["index"] for event in collector.of_type("error")] == [1]
    assert all(event["fatal"] is False for event in collector.of_type("error"))


def test_fan_out_total_failure_escalates_without_charging() -> None:
    bad = ProviderError(ProviderErrorKind.INVALID_RESPONSE, "no url", provider="images")
    images = ScriptedGateway(default=bad, name="images")
    ledger = InMemoryLedger({"u1": 10})
    service = make_service(ScriptedGateway(), ledger, image_gateway=images)

    with pytest.raises(AppError) as exc_info:
        asyncio.run(service.generate(_request(GenerationMode.IMAGES, cost=3, image_count=2)))

    assert exc_info.value.code == ErrorCode.GENERATION_FAILED
    assert len(exc_info.value.extra["errors"]) == 2
    assert images.calls == 2  # 不可重试错误不重试
    assert ledger.balances["u1"] == 10


def test_stage_timeout_returns_timeout_and_keeps_balance() -> None:
    gateway = ScriptedGateway([HANG])
    ledger = InMemoryLedger({"u1": 10})
    service = make_service(gateway, ledger, stage_timeout_seconds=0.05)

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(service.generate(_request()))

    assert exc_info.value.code == ErrorCode.PROVIDER_TIMEOUT
    assert exc_info.value.status_code == 504
    assert ledger.balances["u1"] == 10


def test_pipeline_timeout_bounds_the_whole_run() -> None:
    ledger = InMemoryLedger({"u1": 10})
    service = make_service(
        ScriptedGateway([HANG]),
        ledger,
        stage_timeout_seconds=10,
        pipeline_timeout_seconds=0.05,
    )

    with pytest.raises(AppError) as exc_info:
        asyncio.run(service.generate(_request()))

    assert exc_info.value.code == ErrorCode.PIPELINE_TIMEOUT
    assert ledger.balances["u1"] == 10


def test_curated_notes_feed_first_stage_output_into_second() -> None:
    curated = [SAMPLE_CORPUS[2].text, SAMPLE_CORPUS[0].text]
    gateway = ScriptedGateway([NOTE_DELIMITER.join(curated), NOTE_DELIMITER.join(NOTES[:2])])
    ledger = InMemoryLedger({"u1": 10})
    service = make_service(gateway, ledger)

    outcome = asyncio.run(service.generate(_request(GenerationMode.CURATED_NOTES, cost=3)))

    assert gateway.calls == 2
    assert "Select the 3 candidates" in gateway.prompts[0]
    second_prompt = gateway.prompts[1]
    assert f"Example 1:\n{curated[0]}" in second_prompt
    assert f"Example 2:\n{curated[1]}" in second_prompt
    # 未被选中的候选不会进入第二阶段
    assert SAMPLE_CORPUS[3].text not in second_prompt
    assert [item.content for item in outcome.result.artifacts] == NOTES[:2]
    assert [stage["name"] for stage in outcome.result.stages] == [
        "curate_examples",
        "generate_curated_notes",
    ]
    assert ledger.balances["u1"] == 7


def test_curate_stage_is_skipped_when_retrieval_is_empty() -> None:
    gateway = ScriptedGateway([NOTE_DELIMITER.join(NOTES)])
    service = make_service(gateway, InMemoryLedger({"u1": 10}), corpus=())

    outcome = asyncio.run(service.generate(_request(GenerationMode.CURATED_NOTES, cost=3)))

    assert gateway.calls == 1
    assert outcome.result.stages[0] == {"name": "curate_examples", "skipped": True}
    assert len(outcome.result.artifacts) == 4


def test_transient_error_is_retried_once() -> None:
    gateway = ScriptedGateway([_rate_limited(), NOTE_DELIMITER.join(NOTES)])
    service = make_service(gateway, InMemoryLedger({"u1": 10}))

    outcome = asyncio.run(service.generate(_request()))

    assert gateway.calls == 2
    assert outcome.result.stages[0]["attempts"] == 2


def test_retries_exhausted_escalates() -> None:
    gateway = ScriptedGateway([_rate_limited(), _rate_limited(), "never reached"])
    ledger = InMemoryLedger({"u1": 10})
    service = make_service(gateway, ledger)

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(service.generate(_request()))

    assert exc_info.value.kind is ProviderErrorKind.RATE_LIMITED
    assert gateway.calls == 2
    assert ledger.balances["u1"] == 10


def test_permanent_error_is_not_retried() -> None:
    bad = ProviderError(ProviderErrorKind.INVALID_RESPONSE, "garbage", provider="scripted")
    gateway = ScriptedGateway([bad, NOTE_DELIMITER.join(NOTES)])
    service = make_service(gateway, InMemoryLedger({"u1": 10}))

    with pytest.raises(ProviderError):
        asyncio.run(service.generate(_request()))

    assert gateway.calls == 1


def test_stream_is_not_retried_after_chunk_was_surfaced() -> None:
    gateway = _FlakyStreamGateway([NOTE_DELIMITER.join(NOTES)])
    ledger = InMemoryLedger({"u1": 10})
    service = make_service(gateway, ledger)
    collector = _Collector()

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(service.generate(_request(), emit=collector))

    assert exc_info.value.kind is ProviderErrorKind.UNAVAILABLE
    assert gateway.stream_calls == 1
    assert [event["text"] for event in collector.of_type("chunk")] == ["partial "]
    assert collector.of_type("success") == []
    assert ledger.balances["u1"] == 10


def test_stream_without_listener_is_retried() -> None:
    gateway = _FlakyStreamGateway([NOTE_DELIMITER.join(NOTES)])
    service = make_service(gateway, InMemoryLedger({"u1": 10}))

    outcome = asyncio.run(service.generate(_request()))

    assert gateway.stream_calls == 2
    # 失败前的部分输出不会出现在结果中
    assert [item.content for item in outcome.result.artifacts] == NOTES


def test_empty_provider_output_is_invalid_response() -> None:
    gateway = ScriptedGateway(["   "])
    ledger = InMemoryLedger({"u1": 10})
    service = make_service(gateway, ledger)

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(service.generate(_request()))

    assert exc_info.value.code == ErrorCode.PROVIDER_INVALID_RESPONSE
    assert ledger.balances["u1"] == 10


def test_missing_delimiter_degrades_but_succeeds() -> None:
    gateway = ScriptedGateway(["One idea. Another idea."])
    ledger = InMemoryLedger({"u1": 10})
    service = make_service(gateway, ledger)

    outcome = asyncio.run(service.generate(_request()))

    assert outcome.result.degraded is True
    assert [item.content for item in outcome.result.artifacts] == ["One idea.\nAnother idea."]
    assert ledger.balances["u1"] == 8


def test_titles_use_single_completion_split_by_line() -> None:
    gateway = ScriptedGateway(["1. Price like a pro\n2. The $9.99 myth\n3. Anchors away"])
    service = make_service(gateway, InMemoryLedger({"u1": 5}))

    outcome = asyncio.run(
        service.generate(_request(GenerationMode.TITLES, cost=1, options={"main_ideas": "anchoring"}))
    )

    assert [item.content for item in outcome.result.artifacts] == [
        "Price like a pro",
        "The $9.99 myth",
        "Anchors away",
    ]
    assert all(item.kind is ArtifactKind.TITLE for item in outcome.result.artifacts)
    assert "Focus on: anchoring" in gateway.prompts[0]
    assert gateway.params[0].system_prompt


def test_outline_is_a_single_artifact() -> None:
    outline = "# Pricing psychology\n\n## Hook\n- Why $9.99 works"
    gateway = ScriptedGateway([outline])
    service = make_service(gateway, InMemoryLedger({"u1": 5}))

    outcome = asyncio.run(service.generate(_request(GenerationMode.OUTLINE)))

    assert [item.content for item in outcome.result.artifacts] == [outline]
    assert outcome.result.artifacts[0].kind is ArtifactKind.OUTLINE


def test_image_aspect_ratio_is_forwarded() -> None:
    images = ScriptedGateway(default="https://img.example/x.png", name="images")
    service = make_service(ScriptedGateway(), InMemoryLedger({"u1": 10}), image_gateway=images)

    asyncio.run(
        service.generate(
            _request(GenerationMode.IMAGES, cost=3, image_count=1, options={"aspect_ratio": "16:9", "tone": "minimal"})
        )
    )

    assert images.params[0].extra == {"aspect_ratio": "16:9"}
    assert images.params[0].model is None
    assert images.prompts[0] == "pricing psychology\nStyle: minimal"


@pytest.mark.parametrize(
    "image_model,expected",
    [
        ("flux", "black-forest-labs/flux-1.1-pro"),
        ("ideogram", "ideogram-ai/ideogram-v2-turbo"),
    ],
)
def test_image_model_choice_sets_provider_model(image_model: str, expected: str) -> None:
    images = ScriptedGateway(default="https://img.example/x.png", name="images")
    service = make_service(ScriptedGateway(), InMemoryLedger({"u1": 10}), image_gateway=images)

    asyncio.run(
        service.generate(_request(GenerationMode.IMAGES, cost=3, image_count=2, options={"image_model": image_model}))
    )

    assert [params.model for params in images.params] == [expected, expected]
    # 未指定画幅时使用默认 3:2
    assert images.params[0].extra == {"aspect_ratio": "3:2"}


def test_request_validation() -> None:
    with pytest.raises(ValueError):
        _request(topic="   ")
    with pytest.raises(ValueError):
        _request(cost=0)
