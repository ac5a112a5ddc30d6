# providers.py
import asyncio
import base64
import inspect
import time
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx
import structlog

from clients import (
    gateway_base_url,
    get_anthropic_client,
    get_gemini_client,
    get_openai_compatible_client,
    openrouter_extra_headers,
    resolve_gateway_model,
)
from errors import ConfigurationError, ProviderError
from schemas import ChatMessage, ChatRequest, ChatResponse, FilePart, StreamEvent, TextPart, Usage
from sse import StreamOptions, encode_event, until_cancelled

logger = structlog.get_logger()

DEFAULT_TEMPERATURE = 0.7
ANTHROPIC_DEFAULT_MAX_TOKENS = 4096
GEMINI_EMPTY_PROMPT = "Hello"

ChatResult = Union[ChatResponse, AsyncIterator[bytes]]


class Provider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OPENROUTER = "openrouter"


async def _close_quietly(stream: Any) -> None:
    close = getattr(stream, "aclose", None) or getattr(stream, "close", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning("vendor_stream_close_failed", error=f"{type(e).__name__}: {e}")


class BaseProvider:
    """
    Wraps exactly one vendor SDK call and normalizes its output.

    `chat()` returns a ChatResponse for non-streaming requests and an
    async iterator of SSE frames (bytes) for streaming ones. Every stream
    ends with exactly one terminal frame: `stop`, or `error` when the
    vendor fails mid-stream.

    When a provider is built with `use_gateway=True`, `_gateway` holds an
    OpenAI-compatible provider pointed at OpenRouter and every call is
    forwarded to it unchanged.
    """

    name = "base"

    _gateway: Optional["OpenAICompatibleProvider"] = None

    async def chat(
        self,
        request: ChatRequest,
        options: Optional[StreamOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ChatResult:
        if self._gateway is not None:
            return await self._gateway.chat(request, options, cancel_event)

        logger.info(
            "provider_chat_start",
            provider=self.name,
            model=request.model,
            stream=request.stream,
            messages=len(request.messages),
        )
        try:
            if not request.stream:
                return await self._complete(request)
            vendor_stream = await self._open_stream(request)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error("provider_call_failed", provider=self.name, error=f"{type(e).__name__}: {e}")
            raise ProviderError.wrap(self.name, e) from e

        return self._normalize(vendor_stream, options or StreamOptions(), cancel_event)

    async def _normalize(
        self,
        vendor_stream: Any,
        options: StreamOptions,
        cancel_event: Optional[asyncio.Event],
    ) -> AsyncIterator[bytes]:
        usage: Optional[Usage] = None
        failure: Optional[ProviderError] = None
        delta_count = 0
        deltas = until_cancelled(self._deltas(vendor_stream), cancel_event)

        try:
            while True:
                # Only the vendor read is wrapped; callback errors propagate as-is.
                try:
                    item = await deltas.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as e:
                    failure = ProviderError.wrap(self.name, e)
                    break

                if isinstance(item, Usage):
                    usage = item
                    continue
                if not item:
                    continue
                delta_count += 1
                yield encode_event(StreamEvent.text(item))
                if options.on_text:
                    options.on_text(item)
        finally:
            await deltas.aclose()
            await _close_quietly(vendor_stream)

        if failure is None and cancel_event is not None and cancel_event.is_set():
            logger.info("provider_stream_cancelled", provider=self.name, deltas=delta_count)

        if failure is not None:
            logger.error("provider_stream_failed", provider=self.name, deltas=delta_count, error=str(failure))
            yield encode_event(StreamEvent.error(str(failure)))
            if options.on_error:
                options.on_error(failure)
            return

        if usage is not None:
            yield encode_event(StreamEvent.usage(usage))
            if options.on_usage:
                options.on_usage(usage)

        logger.info("provider_stream_done", provider=self.name, deltas=delta_count)
        yield encode_event(StreamEvent.stop())
        if options.on_stop:
            options.on_stop()

    async def _open_stream(self, request: ChatRequest) -> Any:
        raise NotImplementedError

    async def _complete(self, request: ChatRequest) -> ChatResponse:
        raise NotImplementedError

    def _deltas(self, vendor_stream: Any) -> AsyncIterator[Union[str, Usage]]:
        raise NotImplementedError


def _temperature(request: ChatRequest) -> float:
    return DEFAULT_TEMPERATURE if request.temperature is None else float(request.temperature)


def _extract_delta_text(delta_obj: Any) -> Optional[str]:
    if not delta_obj:
        return None

    c = getattr(delta_obj, "content", None)
    if isinstance(c, str) and c:
        return c

    if isinstance(delta_obj, dict):
        c2 = delta_obj.get("content")
        if isinstance(c2, str) and c2:
            return c2

    return None


class OpenAICompatibleProvider(BaseProvider):
    name = "OpenAI"

    def __init__(self, api_key: str, use_gateway: bool = False, client: Any = None):
        self.api_key = api_key
        self.use_gateway = use_gateway
        self.base_url = gateway_base_url() if use_gateway else None
        self._client = client or get_openai_compatible_client(api_key, self.base_url)

    def build_kwargs(self, request: ChatRequest) -> Dict[str, Any]:
        model = resolve_gateway_model(request.model) if self.use_gateway else request.model

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content_as_text()} for m in request.messages],
            "temperature": _temperature(request),
        }
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        if request.reasoning_effort:
            kwargs["reasoning_effort"] = request.reasoning_effort

        if self.use_gateway:
            hdrs = openrouter_extra_headers()
            if hdrs:
                kwargs["extra_headers"] = hdrs
        return kwargs

    async def _open_stream(self, request: ChatRequest) -> Any:
        kwargs = self.build_kwargs(request)
        return await self._client.chat.completions.create(
            **kwargs,
            stream=True,
            stream_options={"include_usage": True},
        )

    async def _complete(self, request: ChatRequest) -> ChatResponse:
        response = await self._client.chat.completions.create(**self.build_kwargs(request))
        usage = getattr(response, "usage", None)
        content = response.choices[0].message.content if response.choices else None
        return ChatResponse(
            id=response.id,
            content=content or "",
            usage=Usage(
                prompt_tokens=getattr(usage, "prompt_tokens", None) or 0,
                completion_tokens=getattr(usage, "completion_tokens", None) or 0,
                total_tokens=getattr(usage, "total_tokens", None) or 0,
            ),
        )

    async def _deltas(self, vendor_stream: Any) -> AsyncIterator[Union[str, Usage]]:
        async for event in vendor_stream:
            usage = getattr(event, "usage", None)
            if usage:
                yield Usage(
                    prompt_tokens=getattr(usage, "prompt_tokens", None) or 0,
                    completion_tokens=getattr(usage, "completion_tokens", None) or 0,
                    total_tokens=getattr(usage, "total_tokens", None) or 0,
                )

            choices = getattr(event, "choices", None)
            if not choices:
                continue
            delta = _extract_delta_text(getattr(choices[0], "delta", None))
            if delta:
                yield delta


class AnthropicProvider(BaseProvider):
    name = "Anthropic"

    def __init__(self, api_key: str, use_gateway: bool = False, client: Any = None):
        self.api_key = api_key
        self.use_gateway = use_gateway
        if use_gateway:
            self._gateway = OpenAICompatibleProvider(api_key, use_gateway=True)
            self._client = None
        else:
            self._client = client or get_anthropic_client(api_key)

    def build_kwargs(self, request: ChatRequest) -> Dict[str, Any]:
        # The Messages API has no system turn in the message list.
        messages = [
            {"role": "user" if m.role == "system" else m.role, "content": m.content_as_text()}
            for m in request.messages
        ]
        return {
            "model": request.model,
            "messages": messages,
            "temperature": _temperature(request),
            "max_tokens": request.max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
        }

    async def _open_stream(self, request: ChatRequest) -> Any:
        return await self._client.messages.create(**self.build_kwargs(request), stream=True)

    async def _complete(self, request: ChatRequest) -> ChatResponse:
        response = await self._client.messages.create(**self.build_kwargs(request))
        first = response.content[0] if response.content else None
        text = first.text if first is not None and getattr(first, "type", None) == "text" else ""
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", None) or 0
        output_tokens = getattr(usage, "output_tokens", None) or 0
        return ChatResponse(
            id=response.id,
            content=text,
            usage=Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
        )

    async def _deltas(self, vendor_stream: Any) -> AsyncIterator[Union[str, Usage]]:
        input_tokens = 0
        async for event in vendor_stream:
            etype = getattr(event, "type", None)

            if etype == "message_start":
                usage = getattr(getattr(event, "message", None), "usage", None)
                input_tokens = getattr(usage, "input_tokens", None) or 0

            elif etype == "content_block_delta":
                text = getattr(getattr(event, "delta", None), "text", None)
                if text:
                    yield text

            elif etype == "message_delta":
                output_tokens = getattr(getattr(event, "usage", None), "output_tokens", None) or 0
                yield Usage(
                    prompt_tokens=input_tokens,
                    completion_tokens=output_tokens,
                    total_tokens=input_tokens + output_tokens,
                )


class GeminiProvider(BaseProvider):
    name = "Google"

    def __init__(
        self,
        api_key: str,
        use_gateway: bool = False,
        client: Any = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.use_gateway = use_gateway
        self._http_client = http_client
        if use_gateway:
            self._gateway = OpenAICompatibleProvider(api_key, use_gateway=True)
            self._client = None
        else:
            self._client = client or get_gemini_client(api_key)

    async def convert_messages(self, messages: List[ChatMessage]) -> List[Dict[str, Any]]:
        """
        Flatten the conversation into one ordered list of Gemini parts.

        Text accumulates in a running buffer. Each image or file part is
        fetched and inlined as base64; the buffer is flushed into its own
        text part first so ordering is kept. An attachment that cannot be
        fetched is replaced by a bracketed note in the text.
        """
        parts: List[Dict[str, Any]] = []
        conversation_text = ""

        http = self._http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            follow_redirects=True,
        )
        try:
            for message in messages:
                if message.role == "system":
                    if isinstance(message.content, str):
                        conversation_text += f"System: {message.content}\n\n"
                    continue

                if isinstance(message.content, str):
                    conversation_text += f"{message.content}\n\n"
                    continue

                message_text = ""
                for part in message.content:
                    if isinstance(part, TextPart):
                        message_text += part.text
                        continue

                    if message_text.strip():
                        conversation_text += message_text + "\n\n"
                        message_text = ""

                    label = "File" if isinstance(part, FilePart) else "Image"
                    try:
                        inline = await self._fetch_inline(http, part)
                    except (httpx.HTTPError, httpx.InvalidURL) as e:
                        logger.warning("gemini_attachment_fetch_failed", url=part.url, error=str(e))
                        message_text += f"\n[{label} could not be processed: {part.url}]"
                        continue

                    if conversation_text.strip():
                        parts.append({"text": conversation_text.strip()})
                        conversation_text = ""
                    parts.append({"inline_data": inline})

                if message_text.strip():
                    conversation_text += message_text + "\n\n"
        finally:
            if self._http_client is None:
                await http.aclose()

        if conversation_text.strip():
            parts.append({"text": conversation_text.strip()})

        if not parts:
            parts.append({"text": GEMINI_EMPTY_PROMPT})

        return parts

    async def _fetch_inline(self, http: httpx.AsyncClient, part: Any) -> Dict[str, str]:
        response = await http.get(part.url)
        response.raise_for_status()

        if isinstance(part, FilePart) and part.mime_type:
            mime = part.mime_type
        else:
            mime = (response.headers.get("content-type") or "image/jpeg").split(";")[0].strip()

        return {
            "mime_type": mime,
            "data": base64.b64encode(response.content).decode("utf-8"),
        }

    def build_config(self, request: ChatRequest) -> Dict[str, Any]:
        cfg: Dict[str, Any] = {"temperature": _temperature(request)}
        if request.max_tokens is not None:
            cfg["max_output_tokens"] = request.max_tokens
        return cfg

    async def _open_stream(self, request: ChatRequest) -> Any:
        contents = await self.convert_messages(request.messages)
        return await self._client.aio.models.generate_content_stream(
            model=request.model,
            contents=contents,
            config=self.build_config(request),
        )

    async def _complete(self, request: ChatRequest) -> ChatResponse:
        contents = await self.convert_messages(request.messages)
        response = await self._client.aio.models.generate_content(
            model=request.model,
            contents=contents,
            config=self.build_config(request),
        )
        meta = getattr(response, "usage_metadata", None)
        return ChatResponse(
            id=f"google-{int(time.time() * 1000)}",
            content=getattr(response, "text", None) or "",
            usage=_gemini_usage(meta),
        )

    async def _deltas(self, vendor_stream: Any) -> AsyncIterator[Union[str, Usage]]:
        async for chunk in vendor_stream:
            meta = getattr(chunk, "usage_metadata", None)
            if meta:
                yield _gemini_usage(meta)

            text = getattr(chunk, "text", None)
            if text:
                yield text


def _gemini_usage(meta: Any) -> Usage:
    return Usage(
        prompt_tokens=getattr(meta, "prompt_token_count", None) or 0,
        completion_tokens=getattr(meta, "candidates_token_count", None) or 0,
        total_tokens=getattr(meta, "total_token_count", None) or 0,
    )


def get_provider(
    provider: Union[Provider, str, None],
    api_key: str,
    use_gateway: bool = False,
) -> Optional[BaseProvider]:
    """
    Pick and build the normalizer for `provider`. Unrecognized values give
    None; callers treat that as a configuration error.
    """
    try:
        selected = Provider((provider or "").strip().lower())
    except ValueError:
        logger.warning("unknown_provider", provider=provider)
        return None

    if selected is Provider.OPENAI:
        return OpenAICompatibleProvider(api_key, use_gateway=use_gateway)
    if selected is Provider.OPENROUTER:
        return OpenAICompatibleProvider(api_key, use_gateway=True)
    if selected is Provider.ANTHROPIC:
        return AnthropicProvider(api_key, use_gateway=use_gateway)
    if selected is Provider.GOOGLE:
        return GeminiProvider(api_key, use_gateway=use_gateway)
    return None
