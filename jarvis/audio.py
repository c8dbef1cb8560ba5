import asyncio
import io
import logging
import math
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import soundfile as sf

from .reveal import Clock, MonotonicClock
from .tts import SynthesizedAudio


logger = logging.getLogger("uvicorn.error")

RESUME_EVENTS = ("pointerdown", "pointerup", "keydown", "touchstart")
TIMEUPDATE_INTERVAL_SECONDS = 0.25


class PlaybackError(RuntimeError):
    pass


class PlaybackBlocked(PlaybackError):
    """Autoplay refused until the user interacts with the page."""


class PlaybackPreempted(PlaybackError):
    """The element was loaded with a newer source before playback ended."""


class EventEmitter:
    def __init__(self) -> None:
        self._listeners: Dict[str, List[Tuple[Callable[..., None], bool]]] = {}

    def add_listener(self, event: str, callback: Callable[..., None], once: bool = False) -> None:
        self._listeners.setdefault(event, []).append((callback, once))

    def remove_listener(self, event: str, callback: Callable[..., None]) -> None:
        entries = self._listeners.get(event)
        if not entries:
            return
        self._listeners[event] = [entry for entry in entries if entry[0] is not callback]
        if not self._listeners[event]:
            self._listeners.pop(event, None)

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(entries) for entries in self._listeners.values())

    def emit(self, event: str, *args: Any) -> None:
        entries = list(self._listeners.get(event, []))
        for callback, once in entries:
            if once:
                self.remove_listener(event, callback)
            callback(*args)


class InteractionGate(EventEmitter):
    """Receives user gestures reported by the client."""

    def notify(self, event: str) -> None:
        self.emit(event, event)


def media_duration(audio: SynthesizedAudio) -> float:
    """Media duration in seconds as reported by libsndfile; ``nan`` when unknown."""
    data = audio.data or b""
    if not data:
        return math.nan
    try:
        info = sf.info(io.BytesIO(data))
    except (RuntimeError, TypeError) as exc:
        logger.warning("Unable to read audio duration: %s", exc)
        return math.nan
    return info.duration if info.samplerate else math.nan


class AudioElement(EventEmitter):
    """Single audio output owned by the reply orchestrator.

    Playback position advances with the clock while playing; events mirror a
    browser media element (``loadedmetadata``, ``durationchange``,
    ``playing``, ``timeupdate``, ``pause``, ``ended``, ``error``,
    ``emptied``).
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        autoplay_allowed: bool = True,
        timeupdate_interval: float = TIMEUPDATE_INTERVAL_SECONDS,
    ):
        super().__init__()
        self.clock = clock or MonotonicClock()
        self.autoplay_allowed = autoplay_allowed
        self.timeupdate_interval = timeupdate_interval
        self.src: Optional[SynthesizedAudio] = None
        self.source_id: Optional[str] = None
        self.duration = math.nan
        self.playback_rate = 1.0
        self.paused = True
        self.ended = False
        self._offset = 0.0
        self._resumed_at: Optional[float] = None
        self._end_handle: Optional[asyncio.TimerHandle] = None
        self._timeupdate_handle: Optional[asyncio.TimerHandle] = None

    @property
    def current_time(self) -> float:
        if self.paused or self._resumed_at is None:
            return self._offset
        position = self._offset + (self.clock.now() - self._resumed_at) * self.playback_rate
        if math.isfinite(self.duration):
            return min(position, self.duration)
        return position

    def load(self, audio: SynthesizedAudio, source_id: Optional[str] = None) -> None:
        had_source = self.src is not None
        self._cancel_timers()
        self.paused = True
        self._resumed_at = None
        if had_source:
            self.emit("emptied")
        self.src = audio
        self.source_id = source_id
        self.ended = False
        self._offset = 0.0
        self.duration = media_duration(audio)
        loop = asyncio.get_running_loop()
        if math.isfinite(self.duration) and self.duration > 0:
            loop.call_soon(self._announce_metadata, audio)
        else:
            loop.call_soon(self._announce_error, audio)

    def unlock(self) -> None:
        self.autoplay_allowed = True

    async def play(self) -> None:
        # Pending metadata/error events fire before playback starts.
        await asyncio.sleep(0)
        if self.src is None:
            raise PlaybackError("No audio source loaded")
        if not self.autoplay_allowed:
            raise PlaybackBlocked("Audio playback is waiting for a user gesture")
        if not math.isfinite(self.duration) or self.duration <= 0:
            raise PlaybackError("Failed to play TTS audio")
        if not self.paused:
            return
        if self.ended:
            self._offset = 0.0
            self.ended = False
        self.paused = False
        self._resumed_at = self.clock.now()
        self._schedule_timers()
        self.emit("playing")

    def pause(self) -> None:
        if self.paused:
            return
        self._offset = self.current_time
        self.paused = True
        self._resumed_at = None
        self._cancel_timers()
        self.emit("pause")

    def _announce_metadata(self, audio: SynthesizedAudio) -> None:
        if audio is not self.src:
            return
        self.emit("loadedmetadata")
        self.emit("durationchange")

    def _announce_error(self, audio: SynthesizedAudio) -> None:
        if audio is not self.src:
            return
        self.emit("error")

    def _schedule_timers(self) -> None:
        loop = asyncio.get_running_loop()
        remaining = max(0.0, (self.duration - self._offset) / max(self.playback_rate, 1e-6))
        self._end_handle = loop.call_later(remaining, self._finish)
        self._timeupdate_handle = loop.call_later(self.timeupdate_interval, self._on_timeupdate)

    def _cancel_timers(self) -> None:
        for handle in (self._end_handle, self._timeupdate_handle):
            if handle is not None:
                handle.cancel()
        self._end_handle = None
        self._timeupdate_handle = None

    def _on_timeupdate(self) -> None:
        self._timeupdate_handle = None
        if self.paused:
            return
        self.emit("timeupdate")
        self._timeupdate_handle = asyncio.get_running_loop().call_later(
            self.timeupdate_interval, self._on_timeupdate
        )

    def _finish(self) -> None:
        self._end_handle = None
        self._cancel_timers()
        self._offset = self.duration
        self.paused = True
        self._resumed_at = None
        self.ended = True
        self.emit("timeupdate")
        self.emit("ended")


async def play_to_end(
    audio: AudioElement,
    gate: Optional[InteractionGate] = None,
    resume_events: Tuple[str, ...] = RESUME_EVENTS,
) -> None:
    """Start playback and wait for ``ended``.

    A blocked autoplay is retried once the next user gesture arrives through
    ``gate``. Errors and preemption by a newer source raise ``PlaybackError``.
    """
    loop = asyncio.get_running_loop()
    done: asyncio.Future = loop.create_future()
    retry_tasks: Set[asyncio.Task] = set()
    gate_handlers: List[Tuple[str, Callable[..., None]]] = []

    def settle(exc: Optional[BaseException] = None) -> None:
        if done.done():
            return
        if exc is None:
            done.set_result(None)
        else:
            done.set_exception(exc)

    def on_ended(*_: Any) -> None:
        settle()

    def on_error(*_: Any) -> None:
        settle(PlaybackError("Failed to play TTS audio"))

    def on_emptied(*_: Any) -> None:
        settle(PlaybackPreempted("Playback replaced by a newer reply"))

    def remove_gate_handlers() -> None:
        if gate is not None:
            for event, handler in gate_handlers:
                gate.remove_listener(event, handler)
        gate_handlers.clear()

    def setup_interaction_retry() -> None:
        remove_gate_handlers()

        def handler(*_: Any) -> None:
            remove_gate_handlers()
            task = loop.create_task(attempt_play())
            retry_tasks.add(task)
            task.add_done_callback(retry_tasks.discard)

        for event in resume_events:
            gate.add_listener(event, handler, once=True)
            gate_handlers.append((event, handler))

    async def attempt_play() -> None:
        if done.done():
            return
        try:
            await audio.play()
        except PlaybackBlocked as exc:
            if gate is None:
                settle(exc)
                return
            logger.info("Audio playback blocked; waiting for a user gesture")
            setup_interaction_retry()
        except PlaybackError as exc:
            settle(exc)

    audio.add_listener("ended", on_ended)
    audio.add_listener("error", on_error)
    audio.add_listener("emptied", on_emptied)
    try:
        await attempt_play()
        await done
    finally:
        audio.remove_listener("ended", on_ended)
        audio.remove_listener("error", on_error)
        audio.remove_listener("emptied", on_emptied)
        remove_gate_handlers()
        for task in list(retry_tasks):
            task.cancel()
