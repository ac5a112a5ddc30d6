# typewriter.py
import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

MIN_REVEAL_INTERVAL_MS = 15.0
FRAME_INTERVAL_SEC = 1 / 60


class FrameScheduler(Protocol):
    """Per-frame callback primitive. Callbacks receive a timestamp in ms."""

    def request_frame(self, callback: Callable[[float], None]) -> Any:
        ...

    def cancel_frame(self, handle: Any) -> None:
        ...


class AsyncioFrameScheduler:
    """Runs frame callbacks on the event loop at a fixed frame rate."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None, frame_interval: float = FRAME_INTERVAL_SEC):
        self._loop = loop
        self.frame_interval = frame_interval

    def request_frame(self, callback: Callable[[float], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(self.frame_interval, lambda: callback(loop.time() * 1000.0))

    def cancel_frame(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()


@dataclass(frozen=True)
class RenderState:
    animated_text: str
    cursor: int


class RevealTask:
    """
    Reveals `delta` after `base` one character per step. A step happens
    on a frame only when at least `min_interval_ms` passed since the last
    step, so the pace follows the real frame rate. The first frame only
    records its timestamp.
    """

    def __init__(
        self,
        scheduler: FrameScheduler,
        base: str,
        delta: str,
        on_step: Callable[[str], None],
        min_interval_ms: float = MIN_REVEAL_INTERVAL_MS,
    ):
        self._scheduler = scheduler
        self.base = base
        self.delta = delta
        self._on_step = on_step
        self.min_interval_ms = min_interval_ms
        self.cursor = 0
        self._last_ts: Optional[float] = None
        self._handle: Any = None

    @property
    def is_active(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self.is_active or self.cursor >= len(self.delta):
            return
        self._handle = self._scheduler.request_frame(self._on_frame)

    def cancel(self) -> None:
        if self._handle is not None:
            self._scheduler.cancel_frame(self._handle)
            self._handle = None

    def _on_frame(self, timestamp: float) -> None:
        self._handle = None
        if self._last_ts is None:
            self._last_ts = timestamp

        if timestamp - self._last_ts >= self.min_interval_ms and self.cursor < len(self.delta):
            self.cursor += 1
            self._last_ts = timestamp
            self._on_step(self.base + self.delta[: self.cursor])

        if self.cursor < len(self.delta):
            self._handle = self._scheduler.request_frame(self._on_frame)


class Typewriter:
    """
    Turns the accumulated reply text into a display string that grows one
    character at a time, whatever the shape of the network bursts.

    Call `update()` every time the accumulated text or the streaming flag
    changes, and `close()` when the message goes away. At most one
    RevealTask is alive per Typewriter.
    """

    def __init__(
        self,
        role: str = "assistant",
        scheduler: Optional[FrameScheduler] = None,
        on_change: Optional[Callable[[str], None]] = None,
        min_interval_ms: float = MIN_REVEAL_INTERVAL_MS,
    ):
        self.role = role
        self._scheduler = scheduler or AsyncioFrameScheduler()
        self.on_change = on_change
        self.min_interval_ms = min_interval_ms
        self.animated_text = ""
        self._previous = ""
        self._task: Optional[RevealTask] = None

    @property
    def is_animating(self) -> bool:
        return self._task is not None and self._task.is_active

    @property
    def render_state(self) -> RenderState:
        return RenderState(self.animated_text, self._task.cursor if self._task else 0)

    def update(self, content: str, is_streaming: bool) -> None:
        if self.role == "user":
            self._cancel()
            self._set(content)
            self._previous = content
            return

        previous = self._previous

        if len(content) < len(previous):
            # Rewritten or restarted: no animation.
            self._cancel()
            self._set(content)
        elif len(content) > len(previous) and is_streaming:
            self._cancel()
            self._task = RevealTask(
                self._scheduler,
                previous,
                content[len(previous):],
                self._set,
                self.min_interval_ms,
            )
            self._task.start()
        elif not is_streaming:
            self._cancel()
            self._set(content)

        self._previous = content

    def close(self) -> None:
        self._cancel()

    def _cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()

    def _set(self, text: str) -> None:
        if text == self.animated_text:
            return
        self.animated_text = text
        if self.on_change:
            self.on_change(text)
