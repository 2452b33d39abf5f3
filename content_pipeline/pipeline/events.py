"""
流式事件传输

把编排器的进度 / 片段 / 结果编码为 SSE 记录（``event: <type>\\ndata: <json>\\n\\n``）。
每个流恰好一个 done 事件，且一定是最后一个；done 之后不允许再写任何事件。
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from ..config import settings
from ..errors import AppError, ErrorCode
from ..logging_config import get_logger
from .models import ArtifactKind, ParsedArtifact

logger = get_logger(__name__)

Event = dict[str, Any]
EventSink = Callable[[Event], Awaitable[None]]


# ---------------------------------------------------------------------------
# 事件构造
# ---------------------------------------------------------------------------

def progress_event(message: str, status: str = "generating", **data: Any) -> Event:
    return {"type": "progress", "status": status, "message": message, **data}


def chunk_event(index: int, text: str) -> Event:
    return {"type": "chunk", "status": "streaming", "index": index, "text": text}


def success_event(index: int, artifact: ParsedArtifact) -> Event:
    event: Event = {
        "type": "success",
        "status": "success",
        "index": index,
        "kind": artifact.kind.value,
        "content": artifact.content,
    }
    if artifact.kind is ArtifactKind.IMAGE_URL:
        event["imageUrl"] = artifact.content
    return event


def error_event(
    message: str,
    code: str = ErrorCode.GENERATION_FAILED.value,
    index: Optional[int] = None,
    fatal: bool = False,
    **extra: Any,
) -> Event:
    event: Event = {"type": "error", "status": "error", "message": message, "code": code, "fatal": fatal}
    if index is not None:
        event["index"] = index
    event.update(extra)
    return event


def done_event(**summary: Any) -> Event:
    return {"type": "done", "status": "complete", **summary}


def encode_sse(event: Event) -> str:
    """SSE 帧：event 行 + data 行（JSON）+ 空行。"""
    payload = json.dumps(event, ensure_ascii=False)
    return f"event: {event['type']}\ndata: {payload}\n\n"


class EventStream:
    """单个响应流的事件编码器，保证 done 唯一且最后。"""

    def __init__(self) -> None:
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def encode(self, event: Event) -> str:
        if self._finished:
            raise RuntimeError(f"stream already finished, cannot write {event.get('type')!r}")
        if event.get("type") == "done":
            self._finished = True
        return encode_sse(event)


def _failure_event(exc: BaseException) -> Event:
    if isinstance(exc, AppError):
        return error_event(exc.message, code=exc.code.value, fatal=True, **exc.extra)
    if isinstance(exc, asyncio.CancelledError):
        return error_event("生成已取消", code=ErrorCode.SYSTEM_INTERNAL_ERROR.value, fatal=True)
    return error_event("服务器内部错误", code=ErrorCode.SYSTEM_INTERNAL_ERROR.value, fatal=True)


async def stream_pipeline(
    work: Callable[[EventSink], Awaitable[Optional[dict[str, Any]]]],
    maxsize: Optional[int] = None,
) -> AsyncIterator[str]:
    """
    运行一次流水线并产出编码后的 SSE 记录

    Args:
        work: 接收事件回调的协程函数，返回值（字典）并入 done 事件
        maxsize: 事件队列容量，默认取 stream_channel_size

    失败时先产出一个 fatal error 事件，再产出 done；调用方断开连接
    （生成器被关闭）时取消正在执行的任务。
    """
    queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(1, maxsize or settings.stream_channel_size))
    stream = EventStream()
    task = asyncio.create_task(work(queue.put))
    getter: Optional[asyncio.Future[Event]] = None

    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                yield stream.encode(getter.result())
                continue
            getter.cancel()
            while not queue.empty():
                yield stream.encode(queue.get_nowait())
            break

        if task.cancelled():
            failure: Optional[BaseException] = asyncio.CancelledError()
        else:
            failure = task.exception()

        if failure is None:
            summary = task.result() or {}
            yield stream.encode(done_event(ok=True, **summary))
        else:
            if isinstance(failure, AppError):
                logger.warning("stream_failed", code=failure.code.value, error=failure.message)
            else:
                logger.error("stream_failed", error=f"{type(failure).__name__}: {failure}")
            yield stream.encode(_failure_event(failure))
            yield stream.encode(done_event(ok=False))
    finally:
        if getter is not None and not getter.done():
            getter.cancel()
        if not task.done():
            task.cancel()
            logger.info("stream_cancelled")
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.warning("stream_cleanup_failed", error=f"{type(exc).__name__}: {exc}")
