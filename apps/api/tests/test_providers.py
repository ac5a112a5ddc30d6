"""Tests for the vendor stream normalizers and the provider factory.

Vendor SDK clients are replaced by SimpleNamespace/AsyncMock fakes so no
network access is needed.
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

import providers
from errors import ConfigurationError, ProviderError
from providers import (
    AnthropicProvider,
    GeminiProvider,
    OpenAICompatibleProvider,
    Provider,
    get_provider,
)
from schemas import ChatMessage, ChatRequest, ChatResponse, TextPart
from sse import StreamOptions


def _request(stream=True, messages=None, **overrides):
    return ChatRequest(
        messages=messages or [ChatMessage(role="user", content="hi")],
        model=overrides.pop("model", "gpt-4o"),
        stream=stream,
        **overrides,
    )


def _assert_single_terminal(events):
    terminals = [e for e in events if e.is_terminal]
    assert len(terminals) == 1
    assert events[-1] is terminals[0]


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_openai_stream_emits_text_usage_then_stop(fake_stream, openai_client, make_openai_chunk, collect_events):
    usage = SimpleNamespace(prompt_tokens=3, completion_tokens=2, total_tokens=5)
    vendor = fake_stream([make_openai_chunk("He"), make_openai_chunk(""), make_openai_chunk("llo"), make_openai_chunk(usage=usage)])
    client = openai_client(result=vendor)
    texts, stops = [], []
    provider = OpenAICompatibleProvider("sk-test", client=client)

    stream = await provider.chat(_request(), StreamOptions(on_text=texts.append, on_stop=lambda: stops.append(True)))
    events = await collect_events(stream)

    assert [e.type for e in events] == ["text", "text", "usage", "stop"]
    assert [e.data for e in events[:2]] == ["He", "llo"]
    assert events[2].data == {"promptTokens": 3, "completionTokens": 2, "totalTokens": 5}
    assert texts == ["He", "llo"]
    assert stops == [True]
    assert vendor.closed
    _assert_single_terminal(events)


@pytest.mark.asyncio
async def test_openai_stream_with_no_text_still_stops(fake_stream, openai_client, collect_events):
    vendor = fake_stream([])
    provider = OpenAICompatibleProvider("sk-test", client=openai_client(result=vendor))

    events = await collect_events(await provider.chat(_request()))

    assert [e.type for e in events] == ["stop"]
    assert vendor.closed


@pytest.mark.asyncio
async def test_openai_mid_stream_failure_ends_with_one_error(fake_stream, openai_client, make_openai_chunk, collect_events):
    vendor = fake_stream([make_openai_chunk("Par")], exc=RuntimeError("connection reset"))
    errors = []
    provider = OpenAICompatibleProvider("sk-test", client=openai_client(result=vendor))

    stream = await provider.chat(_request(), StreamOptions(on_error=errors.append))
    events = await collect_events(stream)

    assert [e.type for e in events] == ["text", "error"]
    assert events[-1].data == "OpenAI API error: connection reset"
    assert isinstance(errors[0], ProviderError)
    assert vendor.closed
    _assert_single_terminal(events)


@pytest.mark.asyncio
async def test_openai_create_failure_is_wrapped(openai_client):
    provider = OpenAICompatibleProvider("sk-test", client=openai_client(side_effect=RuntimeError("Incorrect API key provided")))

    with pytest.raises(ProviderError) as exc_info:
        await provider.chat(_request())

    assert str(exc_info.value) == "OpenAI API error: Incorrect API key provided"
    assert exc_info.value.provider == "OpenAI"


@pytest.mark.asyncio
async def test_vendor_error_without_message_becomes_unknown(openai_client):
    provider = OpenAICompatibleProvider("sk-test", client=openai_client(side_effect=RuntimeError()))

    with pytest.raises(ProviderError, match="OpenAI API error: Unknown error"):
        await provider.chat(_request(stream=False))


@pytest.mark.asyncio
async def test_openai_kwargs_stringify_structured_content(fake_stream, openai_client):
    client = openai_client(result=fake_stream([]))
    provider = OpenAICompatibleProvider("sk-test", client=client)
    messages = [
        ChatMessage(role="system", content="Be brief."),
        ChatMessage(role="user", content=[TextPart(text="describe")]),
    ]

    await provider.chat(_request(messages=messages, max_tokens=256, reasoning_effort="high"))

    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o"
    assert kwargs["stream"] is True
    assert kwargs["stream_options"] == {"include_usage": True}
    assert kwargs["temperature"] == 0.7
    assert kwargs["max_tokens"] == 256
    assert kwargs["reasoning_effort"] == "high"
    assert kwargs["messages"][0] == {"role": "system", "content": "Be brief."}
    assert json.loads(kwargs["messages"][1]["content"]) == [{"type": "text", "text": "describe"}]


@pytest.mark.asyncio
async def test_openai_non_streaming_defaults_usage_to_zero(openai_client):
    response = SimpleNamespace(
        id="chatcmpl-1",
        choices=[SimpleNamespace(message=SimpleNamespace(content="Hi there"))],
        usage=None,
    )
    provider = OpenAICompatibleProvider("sk-test", client=openai_client(result=response))

    result = await provider.chat(_request(stream=False))

    assert isinstance(result, ChatResponse)
    assert result.id == "chatcmpl-1"
    assert result.content == "Hi there"
    assert result.role == "assistant"
    assert (result.usage.prompt_tokens, result.usage.completion_tokens, result.usage.total_tokens) == (0, 0, 0)


@pytest.mark.asyncio
async def test_cancel_event_stops_stream_and_closes_vendor(fake_stream, openai_client, make_openai_chunk, collect_events):
    vendor = fake_stream([make_openai_chunk("a"), make_openai_chunk("b")])
    cancel = asyncio.Event()
    provider = OpenAICompatibleProvider("sk-test", client=openai_client(result=vendor))
    stream = await provider.chat(_request(), StreamOptions(on_text=lambda _t: cancel.set()), cancel_event=cancel)

    events = await collect_events(stream)

    assert [e.type for e in events] == ["text", "stop"]
    assert vendor.closed


@pytest.mark.asyncio
async def test_cancel_interrupts_a_stalled_vendor_stream(fake_stream, openai_client, make_openai_chunk, collect_events):
    class StalledStream(fake_stream):
        async def _gen(self):
            for item in self.items:
                yield item
            await asyncio.Event().wait()

    vendor = StalledStream([make_openai_chunk("a")])
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    provider = OpenAICompatibleProvider("sk-test", client=openai_client(result=vendor))
    stream = await provider.chat(_request(), StreamOptions(on_text=lambda _t: loop.call_later(0.01, cancel.set)), cancel_event=cancel)

    events = await asyncio.wait_for(collect_events(stream), timeout=2)

    assert [e.type for e in events] == ["text", "stop"]
    assert vendor.closed


@pytest.mark.asyncio
async def test_callback_error_is_not_reported_as_vendor_error(fake_stream, openai_client, make_openai_chunk, collect_events):
    vendor = fake_stream([make_openai_chunk("a"), make_openai_chunk("b")])
    provider = OpenAICompatibleProvider("sk-test", client=openai_client(result=vendor))

    def render(_text):
        raise ValueError("render failed")

    stream = await provider.chat(_request(), StreamOptions(on_text=render))

    with pytest.raises(ValueError, match="render failed"):
        await collect_events(stream)
    assert vendor.closed


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


def _anthropic_client(result=None, side_effect=None):
    create = AsyncMock(return_value=result, side_effect=side_effect)
    return SimpleNamespace(messages=SimpleNamespace(create=create))


@pytest.mark.asyncio
async def test_anthropic_folds_system_into_user_and_defaults_max_tokens(fake_stream):
    client = _anthropic_client(result=fake_stream([]))
    provider = AnthropicProvider("sk-ant", client=client)
    messages = [ChatMessage(role="system", content="Be brief."), ChatMessage(role="user", content="hi")]

    await provider.chat(_request(messages=messages, model="claude-3-5-haiku-20241022"))

    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["messages"] == [
        {"role": "user", "content": "Be brief."},
        {"role": "user", "content": "hi"},
    ]
    assert kwargs["max_tokens"] == 4096
    assert kwargs["temperature"] == 0.7
    assert kwargs["stream"] is True


@pytest.mark.asyncio
async def test_anthropic_stream_events_are_normalized(fake_stream, collect_events):
    vendor = fake_stream([
        SimpleNamespace(type="message_start", message=SimpleNamespace(usage=SimpleNamespace(input_tokens=10))),
        SimpleNamespace(type="content_block_start"),
        SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text="Hel")),
        SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text="lo")),
        SimpleNamespace(type="message_delta", usage=SimpleNamespace(output_tokens=4)),
        SimpleNamespace(type="message_stop"),
    ])
    provider = AnthropicProvider("sk-ant", client=_anthropic_client(result=vendor))

    events = await collect_events(await provider.chat(_request(model="claude-3-5-haiku-20241022")))

    assert [e.type for e in events] == ["text", "text", "usage", "stop"]
    assert "".join(e.data for e in events if e.type == "text") == "Hello"
    assert events[2].data["totalTokens"] == 14
    assert vendor.closed


@pytest.mark.asyncio
async def test_anthropic_non_streaming_sums_usage():
    response = SimpleNamespace(
        id="msg_1",
        content=[SimpleNamespace(type="text", text="Hey")],
        usage=SimpleNamespace(input_tokens=5, output_tokens=7),
    )
    provider = AnthropicProvider("sk-ant", client=_anthropic_client(result=response))

    result = await provider.chat(_request(stream=False, model="claude-3-5-haiku-20241022"))

    assert result.content == "Hey"
    assert result.usage.total_tokens == 12


@pytest.mark.asyncio
async def test_anthropic_failure_is_tagged_with_vendor():
    provider = AnthropicProvider("sk-ant", client=_anthropic_client(side_effect=RuntimeError("overloaded_error")))

    with pytest.raises(ProviderError, match="^Anthropic API error: overloaded_error$"):
        await provider.chat(_request(stream=False, model="claude-3-5-haiku-20241022"))


# ---------------------------------------------------------------------------
# Aggregation gateway redirect
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway_clients(monkeypatch, openai_client, fake_stream):
    built = []

    def _fake_openai_client(api_key, base_url=None):
        client = openai_client(result=fake_stream([]))
        built.append((api_key, base_url, client))
        return client

    def _forbidden(*args, **kwargs):
        raise AssertionError("direct vendor client must not be built on the gateway path")

    monkeypatch.setattr(providers, "get_openai_compatible_client", _fake_openai_client)
    monkeypatch.setattr(providers, "get_anthropic_client", _forbidden)
    monkeypatch.setattr(providers, "get_gemini_client", _forbidden)
    return built


@pytest.mark.asyncio
@pytest.mark.parametrize("provider_cls", [AnthropicProvider, GeminiProvider])
async def test_gateway_redirect_matches_direct_openai_call(gateway_clients, provider_cls):
    request = _request(model="anthropic/claude-3.5-sonnet", temperature=0.2)

    await provider_cls("sk-or", use_gateway=True).chat(request)
    await OpenAICompatibleProvider("sk-or", use_gateway=True).chat(request)

    (key_a, url_a, redirected), (key_b, url_b, direct) = gateway_clients
    assert (key_a, url_a) == (key_b, url_b) == ("sk-or", "https://openrouter.ai/api/v1")
    assert redirected.chat.completions.create.call_args == direct.chat.completions.create.call_args


@pytest.mark.asyncio
async def test_gateway_maps_catalog_model_ids(gateway_clients):
    await AnthropicProvider("sk-or", use_gateway=True).chat(_request(model="claude-3-5-sonnet-20241022"))

    client = gateway_clients[0][2]
    assert client.chat.completions.create.call_args.kwargs["model"] == "anthropic/claude-3.5-sonnet"


@pytest.mark.asyncio
async def test_gateway_without_model_mapping_is_configuration_error(gateway_clients):
    with pytest.raises(ConfigurationError, match="mystery-model"):
        await GeminiProvider("sk-or", use_gateway=True).chat(_request(model="mystery-model"))

    assert not gateway_clients[0][2].chat.completions.create.called


@pytest.mark.asyncio
async def test_gateway_sends_attribution_headers(gateway_clients, monkeypatch):
    monkeypatch.setenv("OPENROUTER_X_TITLE", "Multi LLM Chat")

    await OpenAICompatibleProvider("sk-or", use_gateway=True).chat(_request(model="openai/gpt-4o"))

    kwargs = gateway_clients[0][2].chat.completions.create.call_args.kwargs
    assert kwargs["extra_headers"] == {"X-Title": "Multi LLM Chat"}


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


def _gemini_client(stream=None, response=None):
    return SimpleNamespace(
        aio=SimpleNamespace(
            models=SimpleNamespace(
                generate_content_stream=AsyncMock(return_value=stream),
                generate_content=AsyncMock(return_value=response),
            )
        )
    )


@pytest.mark.asyncio
async def test_gemini_stream_sends_parts_and_normalizes_chunks(fake_stream, collect_events):
    meta = SimpleNamespace(prompt_token_count=2, candidates_token_count=1, total_token_count=3)
    vendor = fake_stream([
        SimpleNamespace(text="Hi", usage_metadata=None),
        SimpleNamespace(text=None, usage_metadata=meta),
    ])
    client = _gemini_client(stream=vendor)
    provider = GeminiProvider("g-key", client=client)

    events = await collect_events(await provider.chat(_request(model="gemini-1.5-flash")))

    assert [e.type for e in events] == ["text", "usage", "stop"]
    kwargs = client.aio.models.generate_content_stream.call_args.kwargs
    assert kwargs["contents"] == [{"text": "hi"}]
    assert kwargs["config"] == {"temperature": 0.7}
    assert vendor.closed


@pytest.mark.asyncio
async def test_gemini_non_streaming_response():
    response = SimpleNamespace(text="Hello!", usage_metadata=None)
    provider = GeminiProvider("g-key", client=_gemini_client(response=response))

    result = await provider.chat(_request(stream=False, model="gemini-1.5-flash", max_tokens=64))

    assert result.id.startswith("google-")
    assert result.content == "Hello!"
    assert result.usage.total_tokens == 0
    config = provider._client.aio.models.generate_content.call_args.kwargs["config"]
    assert config == {"temperature": 0.7, "max_output_tokens": 64}


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


@pytest.fixture
def stub_clients(monkeypatch):
    monkeypatch.setattr(providers, "get_openai_compatible_client", lambda api_key, base_url=None: SimpleNamespace(base_url=base_url))
    monkeypatch.setattr(providers, "get_anthropic_client", lambda api_key: SimpleNamespace())
    monkeypatch.setattr(providers, "get_gemini_client", lambda api_key: SimpleNamespace())


@pytest.mark.parametrize(
    "name, expected",
    [
        ("openai", OpenAICompatibleProvider),
        ("Anthropic", AnthropicProvider),
        (Provider.GOOGLE, GeminiProvider),
        ("openrouter", OpenAICompatibleProvider),
    ],
)
def test_get_provider_selects_normalizer(stub_clients, name, expected):
    assert type(get_provider(name, "key")) is expected


def test_openrouter_provider_always_uses_gateway(stub_clients):
    provider = get_provider("openrouter", "key")
    assert provider.use_gateway is True
    assert provider.base_url == "https://openrouter.ai/api/v1"


@pytest.mark.parametrize("name", ["mistral", "", None])
def test_get_provider_unknown_returns_none(stub_clients, name):
    assert get_provider(name, "key") is None
