# sse.py
import asyncio
import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, Optional, TypeVar, Union

import structlog
from pydantic import ValidationError

from schemas import StreamEvent, Usage

logger = structlog.get_logger()

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass
class StreamOptions:
    on_text: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    on_usage: Optional[Callable[[Usage], None]] = None
    on_stop: Optional[Callable[[], None]] = None


def sse(payload: Dict[str, Any]) -> bytes:
    return (DATA_PREFIX + json.dumps(payload, ensure_ascii=False) + "\n\n").encode("utf-8")


def encode_event(event: StreamEvent) -> bytes:
    return sse(event.to_payload())


class FrameParseError(ValueError):
    pass


def parse_frame(line: str) -> Optional[StreamEvent]:
    """
    Parse one `data: ...` line into a StreamEvent.

    Returns None for lines that carry no frame (blank lines, comments,
    `event:` / `id:` fields). `data: [DONE]` becomes a `done` event.
    Raises FrameParseError for malformed JSON or an unrecognized `type`.
    """
    line = line.rstrip("\r\n")
    if not line.startswith("data:"):
        return None

    body = line[5:]
    if body.startswith(" "):
        body = body[1:]
    if body.strip() == DONE_SENTINEL:
        return StreamEvent(type="done")

    try:
        obj = json.loads(body)
    except json.JSONDecodeError as e:
        raise FrameParseError(f"malformed frame JSON: {e.msg}") from e

    if not isinstance(obj, dict):
        raise FrameParseError("frame is not a JSON object")

    # Older producers put the text delta under `content`.
    if obj.get("type") == "text" and "data" not in obj and "content" in obj:
        obj = {"type": "text", "data": obj["content"]}

    try:
        event = StreamEvent.model_validate({"type": obj.get("type"), "data": obj.get("data")})
    except ValidationError as e:
        raise FrameParseError(f"unrecognized frame type: {obj.get('type')!r}") from e

    if event.type == "text" and not isinstance(event.data, str):
        raise FrameParseError("text frame without a string payload")
    return event


def dispatch_event(event: StreamEvent, options: StreamOptions) -> None:
    if event.type == "text":
        if options.on_text:
            options.on_text(event.data)
    elif event.type == "error":
        if options.on_error:
            options.on_error(RuntimeError(str(event.data or "Unknown error")))
    elif event.type == "usage":
        if options.on_usage:
            options.on_usage(Usage.model_validate(event.data or {}))
    elif options.on_stop:
        options.on_stop()


async def iter_sse_lines(chunks: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[str]:
    """
    Split a byte stream into SSE lines.

    Only LF (optionally preceded by CR) ends a line. U+2028, U+2029 and
    U+0085 inside a JSON payload stay part of the line, and a multibyte
    character split across chunks is decoded once both halves arrive.
    """
    decoder = codecs.getincrementaldecoder("utf-8")()
    buffer = ""

    async for chunk in chunks:
        buffer += decoder.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            yield line[:-1] if line.endswith("\r") else line

    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer[:-1] if buffer.endswith("\r") else buffer


T = TypeVar("T")

_EXHAUSTED = object()


async def _next_item(iterator: AsyncIterator[T]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


async def until_cancelled(source: AsyncIterable[T], cancel_event: Optional[asyncio.Event]) -> AsyncIterator[T]:
    """
    Yield from `source` until it ends or `cancel_event` is set.

    A read that is still waiting when the event fires is abandoned right
    away, so a stalled upstream cannot hold a cancelled turn open.
    """
    iterator = source.__aiter__()
    waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
    step: Optional[asyncio.Future] = None
    try:
        if waiter is None:
            async for item in iterator:
                yield item
            return

        while not cancel_event.is_set():
            step = asyncio.ensure_future(_next_item(iterator))
            await asyncio.wait({step, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if not step.done():
                step.cancel()
                await asyncio.gather(step, return_exceptions=True)
                return

            item = step.result()
            if item is _EXHAUSTED:
                return
            yield item
    finally:
        if waiter is not None:
            waiter.cancel()
        if step is not None and not step.done():
            step.cancel()
        else:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()


async def relay_sse(
    upstream: AsyncIterator[bytes],
    options: Optional[StreamOptions] = None,
) -> AsyncIterator[bytes]:
    """
    Re-read an already SSE-framed byte stream, fire the matching callback
    for every frame and pass each frame downstream unchanged.

    Frames split across chunk boundaries are reassembled, CRLF framing is
    accepted and a last frame without its blank line is still delivered.
    A malformed frame is logged and dropped; the relay keeps going.
    """
    options = options or StreamOptions()

    async for line in iter_sse_lines(upstream):
        try:
            event = parse_frame(line)
        except FrameParseError as e:
            logger.warning("sse_relay_bad_frame", error=str(e), line=line[:200])
            continue
        if event is None:
            continue

        dispatch_event(event, options)
        yield (line + "\n\n").encode("utf-8")
