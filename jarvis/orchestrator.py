import asyncio
import logging
import re
from typing import Callable, List, Optional

from .audio import AudioElement, InteractionGate, PlaybackPreempted, play_to_end
from .config import AgentSettings
from .dispatcher import DispatchError, ModelDispatcher
from .fallback import decide_secondary_models
from .reveal import RevealSession, TextRevealEngine
from .schemas import ChatTurn, DispatchResult, ModelOutput, RegionOfInterest, Turn
from .speech import clamp_speech_rate, estimate_reveal_duration, reply_text, speakable_text
from .store import ConversationStore, MemoryStore
from .tools import ToolEventRecorder, ToolRunner
from .tts import ElevenLabsClient
from .vision import CapturedFrame, capture_frame


logger = logging.getLogger("uvicorn.error")

DEFAULT_PROMPT = "Describe what you see and call out anything important."

IDENTITY_PATTERNS = [
    re.compile(r"\bwho\s+are\s+you\b"),
    re.compile(r"\bwho\s+are\s+u\b"),
    re.compile(r"\bwho\s+is\s+this\b"),
    re.compile(r"\bwhat(?:'s|\s+is)\s+your\s+name\b"),
    re.compile(r"\bwho\s+am\s+i\s+(?:speaking|talking)\s+to\b"),
    re.compile(r"\bidentify\s+yourself\b"),
    re.compile(r"\bsay\s+your\s+name\b"),
]

IDENTITY_RESPONSE = (
    "**Jarvis online.** I'm Jarvis, your operational intelligence interface crafted by Ayaan. "
    "Explore his work at github.com/ayxn07 while I coordinate sensors, summarize observations, "
    "and orchestrate tools so you can stay focused."
)


def is_identity_question(text: str) -> bool:
    normalized = (text or "").strip().lower()
    return any(pattern.search(normalized) for pattern in IDENTITY_PATTERNS)


def failure_summary(result: DispatchResult) -> Optional[str]:
    if not result.failures:
        return None
    detail = "; ".join(f"{failure.model}: {failure.error}" for failure in result.failures)
    return f"Secondary model issue - {detail}"


class ReplyOrchestrator:
    """Drives one assistant reply from dispatch result to finalized turn.

    Owns the audio element and the reveal engine; every turn mutation goes
    through the conversation store. A newer reply preempts an older one:
    the older reveal is canceled and its audio is replaced, after which the
    older turn is finalized without an error turn.
    """

    def __init__(
        self,
        store: ConversationStore,
        dispatcher: ModelDispatcher,
        speech: ElevenLabsClient,
        audio: AudioElement,
        engine: TextRevealEngine,
        settings: Callable[[], AgentSettings],
        gate: Optional[InteractionGate] = None,
        tools: Optional[ToolRunner] = None,
        memory: Optional[MemoryStore] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.speech = speech
        self.audio = audio
        self.engine = engine
        self.settings = settings
        self.gate = gate
        self.tools = tools or ToolRunner()
        self.recorder = ToolEventRecorder(store)
        self.memory = memory
        self._generation = 0
        self._request = 0
        self._silent_waiter: Optional[asyncio.Future] = None

    async def handle_reply(self, result: DispatchResult) -> Turn:
        self.engine.cancel_current()
        self._preempt_silent_reveal()
        self._generation += 1
        generation = self._generation
        request = self._request

        settings = self.settings()
        text = reply_text(result.primary.text)
        speech_text = speakable_text(text)
        rate = clamp_speech_rate(settings.speech_rate)
        turn = self.store.append(
            Turn(
                role="assistant",
                text=text,
                display_text="",
                partial=True,
                primary_model=result.primary.model,
                comparisons=list(result.alternatives),
            )
        )
        fallback_duration = estimate_reveal_duration(text, rate)
        session: Optional[RevealSession] = None
        error_text: Optional[str] = None

        def on_progress(display: str, count: int, total: int) -> None:
            current = self.store.get(turn.id)
            if current is None or not current.partial:
                return
            self.store.update(turn.id, {"display_text": display})

        try:
            self.store.set_phase("speaking")
            if settings.speech_enabled:
                audio = await self.speech.synthesize(speech_text, voice_id=settings.voice or None)
                if generation != self._generation:
                    raise PlaybackPreempted("Speech arrived after a newer reply started")
                self.audio.load(audio, source_id=turn.id)
                self.audio.playback_rate = rate
                session = self.engine.begin_reveal(text, self.audio, fallback_duration, on_progress)
                await play_to_end(self.audio, self.gate)
            else:
                session = await self._reveal_silently(text, fallback_duration, on_progress)
        except PlaybackPreempted:
            logger.info("Reply %s preempted by a newer reply", turn.id)
        except Exception as exc:
            if generation != self._generation:
                logger.info("Ignoring playback failure of superseded reply %s: %s", turn.id, exc)
            else:
                logger.exception("Reply playback failed: %s", exc)
                error_text = str(exc) or "Unable to synthesize voice"
        except asyncio.CancelledError:
            if self.audio.source_id == turn.id:
                self.audio.pause()
            raise
        finally:
            self._stop_session(session)
            self._finalize(turn, result)
            if error_text is not None:
                self.store.append(Turn(role="system", text=error_text))
                self.store.set_phase("error")
            if generation == self._generation and request == self._request:
                self.store.set_phase("idle")

        summary = failure_summary(result)
        if summary:
            self.store.append(Turn(role="system", text=summary))
        return self.store.get(turn.id) or turn

    async def _reveal_silently(self, text: str, fallback_duration: float, on_progress) -> RevealSession:
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future = loop.create_future()
        self._silent_waiter = waiter

        def track(display: str, count: int, total: int) -> None:
            on_progress(display, count, total)
            if count >= total and not waiter.done():
                waiter.set_result(None)

        session = self.engine.begin_reveal(text, None, fallback_duration, track)
        try:
            await waiter
        except asyncio.CancelledError:
            session.cancel()
            raise
        finally:
            if self._silent_waiter is waiter:
                self._silent_waiter = None
        return session

    def _preempt_silent_reveal(self) -> None:
        waiter = self._silent_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(PlaybackPreempted("Reveal replaced by a newer reply"))
        self._silent_waiter = None

    def _stop_session(self, session: Optional[RevealSession]) -> None:
        if session is None:
            return
        if self.engine.current is session:
            self.engine.cancel_current()
        else:
            session.cancel()

    def _finalize(self, turn: Turn, result: DispatchResult) -> None:
        self.store.update(
            turn.id,
            {
                "display_text": turn.text,
                "partial": False,
                "primary_model": result.primary.model,
                "comparisons": list(result.alternatives),
                "text": turn.text,
            },
        )

    # User-turn entry points

    def add_user_text(self, text: str) -> Optional[Turn]:
        trimmed = (text or "").strip()
        if not trimmed:
            return None
        return self.store.append(Turn(role="user", text=trimmed))

    def add_frame_turn(self, frame: CapturedFrame) -> Turn:
        return self.store.append(Turn(role="user", image_thumbnail=frame.data_url))

    async def reply_to_text(self, turn: Turn) -> None:
        settings = self.settings()
        request = self._begin_request()
        if is_identity_question(turn.text or ""):
            await self.handle_reply(DispatchResult(primary=ModelOutput(model=settings.model, text=IDENTITY_RESPONSE)))
            await self.remember()
            return
        chat_turn = ChatTurn(text=turn.text)
        result = await self._dispatch(chat_turn, turn.id, settings, request)
        if result is not None:
            await self.handle_reply(result)
        await self.remember()

    async def reply_to_frame(self, turn: Turn, frame: CapturedFrame, roi: Optional[RegionOfInterest] = None) -> None:
        settings = self.settings()
        detail_level = "detailed" if roi is not None else "normal"
        request = self._begin_request()
        chat_turn = ChatTurn(text=DEFAULT_PROMPT, image_base64=frame.base64)
        result = await self._dispatch(chat_turn, turn.id, settings, request)
        if result is not None:
            await self.handle_reply(result)
            await self.tools.run_and_record(self.recorder, "describe_scene", {"detailLevel": detail_level})
        await self.remember()

    async def send_user_text(self, text: str) -> Optional[Turn]:
        turn = self.add_user_text(text)
        if turn is None:
            return None
        await self.reply_to_text(turn)
        return turn

    async def capture_and_send_frame(
        self, image_bytes: bytes, roi: Optional[RegionOfInterest] = None
    ) -> CapturedFrame:
        frame = capture_frame(image_bytes, roi)
        turn = self.add_frame_turn(frame)
        await self.reply_to_frame(turn, frame, roi)
        return frame

    def _begin_request(self) -> int:
        self._request += 1
        self.store.set_phase("thinking")
        return self._request

    async def _dispatch(
        self, chat_turn: ChatTurn, turn_id: str, settings: AgentSettings, request: int
    ) -> Optional[DispatchResult]:
        secondaries = decide_secondary_models(
            chat_turn.text, chat_turn.image_base64, settings, allow_fallback=True
        )
        models: List[str] = [settings.model, *secondaries]
        try:
            result = await self.dispatcher.dispatch(chat_turn, self.store.history(exclude=turn_id), models)
        except (DispatchError, ValueError) as exc:
            logger.warning("Dispatch failed: %s", exc)
            self.store.append(Turn(role="system", text=str(exc) or "Gemini request failed"))
            if request == self._request:
                self.store.set_phase("error")
            return None
        if request != self._request:
            logger.info("Dropping reply for turn %s; a newer turn is in flight", turn_id)
            return None
        return result

    async def record_tool(self, name: str, args) -> Turn:
        return await self.tools.run_and_record(self.recorder, name, args)

    async def remember(self) -> None:
        if self.memory is None:
            return
        try:
            await self.memory.persist(self.store.messages)
        except Exception as exc:
            logger.warning("Failed to persist conversation memory: %s", exc)

    async def forget(self) -> None:
        self.engine.cancel_current()
        self._preempt_silent_reveal()
        self.store.clear()
        if self.memory is not None:
            await self.memory.clear()
