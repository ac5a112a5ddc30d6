"""
Shared fixtures for the chat streaming test suite.

Provides offline stand-ins for the vendor SDK objects:
- FakeVendorStream: async-iterable vendor stream that records close()
- ManualFrameScheduler: frame primitive driven by hand, one tick at a time
- collect_events: drains a normalized byte stream into StreamEvents
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from sse import parse_frame


class FakeVendorStream:
    def __init__(self, items, exc=None):
        self.items = list(items)
        self.exc = exc
        self.closed = False

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for item in self.items:
            yield item
        if self.exc is not None:
            raise self.exc

    async def close(self):
        self.closed = True


class ManualFrameScheduler:
    def __init__(self):
        self.pending = {}
        self.now = 0.0
        self._next_handle = 0

    def request_frame(self, callback):
        self._next_handle += 1
        self.pending[self._next_handle] = callback
        return self._next_handle

    def cancel_frame(self, handle):
        self.pending.pop(handle, None)

    def tick(self, ms=16.0):
        self.now += ms
        callbacks = list(self.pending.values())
        self.pending.clear()
        for cb in callbacks:
            cb(self.now)

    def run(self, frames, ms=16.0):
        for _ in range(frames):
            self.tick(ms)


@pytest.fixture
def fake_stream():
    return FakeVendorStream


@pytest.fixture
def scheduler():
    return ManualFrameScheduler()


@pytest.fixture
def collect_events():
    async def _collect(stream):
        events = []
        async for frame in stream:
            assert frame.endswith(b"\n\n")
            events.append(parse_frame(frame.decode("utf-8").strip()))
        return events

    return _collect


@pytest.fixture
def openai_client():
    """Builds a fake AsyncOpenAI whose completions.create returns `result`."""

    def _make(result=None, side_effect=None):
        create = AsyncMock(return_value=result, side_effect=side_effect)
        return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    return _make


def openai_chunk(content=None, usage=None):
    choices = [] if content is None else [SimpleNamespace(delta=SimpleNamespace(content=content))]
    return SimpleNamespace(choices=choices, usage=usage)


@pytest.fixture
def make_openai_chunk():
    return openai_chunk


@pytest.fixture(autouse=True)
def _clean_gateway_env(monkeypatch):
    for name in ("OPENROUTER_BASE_URL", "OPENROUTER_HTTP_REFERER", "OPENROUTER_X_TITLE"):
        monkeypatch.delenv(name, raising=False)
