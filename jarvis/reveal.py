"""Caption reveal paced against the audio clock.

A session reveals ``target_text`` one character slice at a time. Progress is
measured against the playing audio's ``current_time`` (allowed to lead it by
at most ``lead_cap`` seconds) instead of a fixed timer, so captions stay close
to the speech without any phoneme alignment. When no audio is attached the
session paces itself on wall-clock time against the fallback duration.
"""

import asyncio
import math
import time
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Tuple


MAX_TEXT_LEAD_SECONDS = 0.35
KICKSTART_DELAY_SECONDS = 0.22
FRAME_INTERVAL_SECONDS = 1 / 60
DURATION_EVENTS = ("loadedmetadata", "durationchange")

ProgressCallback = Callable[[str, int, int], None]


class Clock(Protocol):
    def now(self) -> float:
        ...


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()


class FrameScheduler(Protocol):
    def request_frame(self, callback: Callable[[], None]) -> Any:
        ...

    def cancel_frame(self, handle: Any) -> None:
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> Any:
        ...

    def cancel_timer(self, handle: Any) -> None:
        ...


class AsyncioFrameScheduler:
    """Runs frame callbacks on the event loop at a fixed rate."""

    def __init__(self, frame_interval: float = FRAME_INTERVAL_SECONDS):
        self.frame_interval = frame_interval

    def request_frame(self, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(self.frame_interval, callback)

    def cancel_frame(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

    def cancel_timer(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()


class AudioSource(Protocol):
    current_time: float
    duration: float
    paused: bool

    def add_listener(self, event: str, callback: Callable[..., None]) -> None:
        ...

    def remove_listener(self, event: str, callback: Callable[..., None]) -> None:
        ...


class RevealState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELED = "canceled"


class RevealSession:
    def __init__(
        self,
        text: str,
        audio: Optional[AudioSource],
        fallback_duration: float,
        on_progress: ProgressCallback,
        clock: Clock,
        scheduler: FrameScheduler,
        lead_cap: float = MAX_TEXT_LEAD_SECONDS,
        kickstart_delay: float = KICKSTART_DELAY_SECONDS,
    ):
        self.target_text = text or ""
        self.total_length = len(self.target_text)
        self.revealed_count = 0
        self.audio = audio
        self.fallback_duration = fallback_duration
        self.target_duration = fallback_duration
        self.started_at: Optional[float] = None
        self.state = RevealState.IDLE
        self.on_progress = on_progress
        self.clock = clock
        self.scheduler = scheduler
        self.lead_cap = lead_cap
        self.kickstart_delay = kickstart_delay
        self._frame: Any = None
        self._timer: Any = None
        self._listeners: List[Tuple[str, Callable[..., None]]] = []
        self._released = False

    @property
    def active(self) -> bool:
        return self.state is RevealState.RUNNING

    def start(self) -> None:
        if self.state is not RevealState.IDLE:
            return
        self.started_at = self.clock.now()
        if self.total_length == 0:
            self.state = RevealState.COMPLETED
            self.on_progress("", 0, 0)
            return
        self.state = RevealState.RUNNING
        self._refresh_duration()
        if self.audio is not None:
            for event in DURATION_EVENTS:
                self._listen(event, self._on_duration_change)
            self._listen("playing", self._on_playing)
            self._listen("timeupdate", self._on_time_update)
        self._timer = self.scheduler.call_later(self.kickstart_delay, self._on_kickstart)
        self._ensure_frame()

    def reference_time(self) -> float:
        elapsed = max(0.0, self.clock.now() - (self.started_at or 0.0))
        if self.audio is None:
            return elapsed
        audio_time = self.audio.current_time or 0.0
        if audio_time <= 0:
            return min(elapsed, self.lead_cap)
        return max(audio_time, min(elapsed, audio_time + self.lead_cap))

    def tick(self) -> None:
        if self.state is not RevealState.RUNNING:
            return
        self._refresh_duration()
        duration = self.target_duration
        if not (math.isfinite(duration) and duration > 0):
            duration = self.fallback_duration
        reference = self.reference_time()
        progress = min(reference / duration, 1.0) if duration > 0 else 1.0
        count = min(self.total_length, int(math.floor(progress * self.total_length)))
        if progress > 0 and count == 0:
            count = 1
        if count <= self.revealed_count:
            self._ensure_frame()
            return
        self.revealed_count = count
        self.on_progress(self.target_text[:count], count, self.total_length)
        if count >= self.total_length:
            self.state = RevealState.COMPLETED
            self._stop_loop()
            self._clear_timer()
            return
        self._ensure_frame()

    def cancel(self) -> None:
        if self._released:
            return
        self._released = True
        self._clear_timer()
        self._stop_loop()
        if self.audio is not None:
            for event, callback in self._listeners:
                self.audio.remove_listener(event, callback)
        self._listeners = []
        if self.state in (RevealState.IDLE, RevealState.RUNNING):
            self.state = RevealState.CANCELED

    def _listen(self, event: str, callback: Callable[..., None]) -> None:
        if self.audio is None:
            return
        self.audio.add_listener(event, callback)
        self._listeners.append((event, callback))

    def _refresh_duration(self) -> None:
        if self.audio is None:
            return
        duration = self.audio.duration
        if duration is not None and math.isfinite(duration) and duration > 0:
            self.target_duration = duration

    def _ensure_frame(self) -> None:
        if self.state is not RevealState.RUNNING or self._frame is not None:
            return
        self._frame = self.scheduler.request_frame(self._on_frame)

    def _on_frame(self) -> None:
        self._frame = None
        self.tick()

    def _stop_loop(self) -> None:
        if self._frame is not None:
            self.scheduler.cancel_frame(self._frame)
            self._frame = None

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self.scheduler.cancel_timer(self._timer)
            self._timer = None

    def _on_kickstart(self) -> None:
        self._timer = None
        self._ensure_frame()

    def _on_duration_change(self, *_: Any) -> None:
        self._refresh_duration()

    def _on_playing(self, *_: Any) -> None:
        self._clear_timer()
        self._ensure_frame()

    def _on_time_update(self, *_: Any) -> None:
        if self.audio is not None and not self.audio.paused:
            self._ensure_frame()


class TextRevealEngine:
    """Owns at most one running reveal session at a time."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        scheduler: Optional[FrameScheduler] = None,
        lead_cap: float = MAX_TEXT_LEAD_SECONDS,
        kickstart_delay: float = KICKSTART_DELAY_SECONDS,
    ):
        self.clock = clock or MonotonicClock()
        self.scheduler = scheduler or AsyncioFrameScheduler()
        self.lead_cap = lead_cap
        self.kickstart_delay = kickstart_delay
        self.current: Optional[RevealSession] = None

    def begin_reveal(
        self,
        text: str,
        audio: Optional[AudioSource],
        fallback_duration: float,
        on_progress: ProgressCallback,
    ) -> RevealSession:
        self.cancel_current()
        session = RevealSession(
            text,
            audio,
            fallback_duration,
            on_progress,
            clock=self.clock,
            scheduler=self.scheduler,
            lead_cap=self.lead_cap,
            kickstart_delay=self.kickstart_delay,
        )
        self.current = session
        session.start()
        return session

    def cancel_current(self) -> None:
        if self.current is not None:
            self.current.cancel()
            self.current = None
