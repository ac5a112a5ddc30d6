# stream_client.py
import asyncio
import json
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx
import structlog

from errors import ChatStreamError, short_error_message
from schemas import ChatMessage, StreamEvent, Usage
from sse import FrameParseError, iter_sse_lines, parse_frame, until_cancelled

logger = structlog.get_logger()

DEFAULT_STREAM_PATH = "/v1/chat/stream"


@dataclass
class StreamAccumulator:
    """Growing text of one assistant reply. Owned by a single turn."""

    full_text: str = ""
    is_streaming: bool = False

    def start(self) -> None:
        self.full_text = ""
        self.is_streaming = True

    def append(self, text: str) -> str:
        if self.is_streaming:
            self.full_text += text
        return self.full_text

    def finish(self) -> None:
        self.is_streaming = False


async def iter_events(lines: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
    """Decode SSE lines into events, skipping (and logging) bad frames."""
    async for line in lines:
        try:
            event = parse_frame(line)
        except FrameParseError as e:
            logger.warning("chat_stream_bad_frame", error=str(e), line=line[:200])
            continue
        if event is not None:
            yield event


def error_message_from_body(body: bytes, status: int) -> str:
    try:
        data = json.loads(body or b"null")
    except ValueError:
        data = None

    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if data.get("detail"):
            return str(data["detail"])

    text = (body or b"").decode("utf-8", errors="replace").strip()
    return text or f"Request failed with status {status}"


class ChatSession:
    """
    Client side of one chat: the message list, the input box and the
    state of the in-flight turn.

    `submit()` appends the user message plus an empty assistant
    placeholder, posts the history to the chat endpoint and rewrites the
    placeholder as text frames arrive. On an `error` frame or a failed
    request both speculative messages are removed, the input is restored
    and ChatStreamError is raised with `error` set for display.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        model: str,
        provider: str,
        api_key: str,
        chat_id: Optional[str] = None,
        use_gateway: bool = False,
        endpoint: str = DEFAULT_STREAM_PATH,
        messages: Optional[List[ChatMessage]] = None,
        on_update: Optional[Callable[[str, bool], None]] = None,
    ):
        self._http = http
        self.model = model
        self.provider = provider
        self.api_key = api_key
        self.chat_id = chat_id
        self.use_gateway = use_gateway
        self.endpoint = endpoint
        self.on_update = on_update

        self.messages: List[ChatMessage] = list(messages or [])
        self.input = ""
        self.is_loading = False
        self.error: Optional[str] = None
        self.usage: Optional[Usage] = None
        self.accumulator = StreamAccumulator()
        self._cancel = asyncio.Event()

    def build_body(self, history: List[ChatMessage], attachments: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "messages": [m.model_dump(by_alias=True) for m in history],
            "model": self.model,
            "provider": self.provider,
            "apiKey": self.api_key,
            "openRouter": self.use_gateway,
        }
        if self.chat_id:
            body["chatId"] = self.chat_id
        if attachments:
            body["attachments"] = attachments
        return body

    async def submit(
        self,
        text: Optional[str] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[str]:
        if self.is_loading:
            logger.info("chat_submit_blocked", chat_id=self.chat_id)
            return None

        user_text = (self.input if text is None else text).strip()
        if not user_text:
            return None

        history = self.messages + [ChatMessage(role="user", content=user_text)]
        body = self.build_body(history, attachments)

        self.error = None
        self.usage = None
        self.input = ""
        self.messages = history + [ChatMessage(role="assistant", content="")]
        self.accumulator = StreamAccumulator()
        self.accumulator.start()
        self._cancel = asyncio.Event()
        self.is_loading = True
        self._notify()

        try:
            await self._read_stream(body)
        except ChatStreamError as e:
            self._fail(user_text, e)
            raise
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as e:
            err = ChatStreamError(f"Network error: {e}")
            self._fail(user_text, err)
            raise err from e
        finally:
            self.is_loading = False
            self.accumulator.finish()
            self._notify()

        return self.accumulator.full_text

    def cancel(self) -> None:
        """Stop reading the current turn; text received so far is kept."""
        self._cancel.set()

    async def _read_stream(self, body: Dict[str, Any]) -> None:
        async with self._http.stream("POST", self.endpoint, json=body) as response:
            if not 200 <= response.status_code < 300:
                raw = await response.aread()
                raise ChatStreamError(error_message_from_body(raw, response.status_code), status=response.status_code)

            events = until_cancelled(iter_events(iter_sse_lines(response.aiter_bytes())), self._cancel)
            async with aclosing(events):
                async for event in events:
                    if event.type == "text":
                        self._replace_last_assistant(self.accumulator.append(event.data))
                        self._notify()
                    elif event.type == "usage":
                        self.usage = Usage.model_validate(event.data or {})
                    elif event.type == "error":
                        raise ChatStreamError(str(event.data or "Unknown error"))
                    else:
                        return

        if self._cancel.is_set():
            logger.info("chat_stream_cancelled", chat_id=self.chat_id, chars=len(self.accumulator.full_text))
            return
        logger.warning("chat_stream_ended_without_terminal", chat_id=self.chat_id)

    def _replace_last_assistant(self, text: str) -> None:
        if self.messages and self.messages[-1].role == "assistant":
            self.messages[-1] = ChatMessage(role="assistant", content=text)

    def _fail(self, user_text: str, err: ChatStreamError) -> None:
        self._rollback(user_text)
        self.error = short_error_message(str(err))
        logger.warning("chat_turn_failed", chat_id=self.chat_id, error=str(err), status=err.status)

    def _rollback(self, user_text: str) -> None:
        if self.messages and self.messages[-1].role == "assistant":
            self.messages.pop()
        if self.messages and self.messages[-1].role == "user":
            self.messages.pop()
        self.input = user_text
        self.accumulator.full_text = ""

    def _notify(self) -> None:
        if self.on_update:
            self.on_update(self.accumulator.full_text, self.accumulator.is_streaming)
