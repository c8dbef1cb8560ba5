import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import Response, StreamingResponse
from pydantic import ValidationError

from .audio import AudioElement, InteractionGate
from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .db import Database
from .dispatcher import DispatchError, ModelDispatcher
from .llm import GeminiClient
from .orchestrator import ReplyOrchestrator
from .reveal import Clock, FrameScheduler, MonotonicClock, TextRevealEngine
from .schemas import ChatRequest, ChatTurn, RegionOfInterest, TTSRequest, UserTextRequest
from .search import WebSearchClient
from .store import ConversationStore, MemoryStore
from .tools import ToolArgumentError, ToolRunner, make_tool_schema, TOOL_PARAMETERS
from .tts import ElevenLabsClient, SpeechError
from .vision import FrameCaptureError, capture_frame


MAX_FRAME_BYTES = 10 * 1024 * 1024


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> ReplyOrchestrator:
    return request.app.state.orchestrator


def get_gemini_client(request: Request) -> GeminiClient:
    return request.app.state.gemini_client


def get_tts_client(request: Request) -> ElevenLabsClient:
    return request.app.state.tts_client


def get_audio(request: Request) -> AudioElement:
    return request.app.state.audio


def get_gate(request: Request) -> InteractionGate:
    return request.app.state.gate


def get_turn_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.turn_tasks


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def track_turn(turn_tasks: Dict[str, asyncio.Task], turn_id: str, coro) -> asyncio.Task:
    async def run_and_cleanup() -> None:
        try:
            await coro
        finally:
            turn_tasks.pop(turn_id, None)

    task = asyncio.create_task(run_and_cleanup())
    turn_tasks[turn_id] = task
    return task


async def read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict(), "agent": settings.agent.to_public_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    config_path: Path = Depends(get_config_path),
):
    body = await read_json(request)
    patch = body.get("agent", body) if isinstance(body, dict) else None
    if not isinstance(patch, dict):
        raise HTTPException(status_code=400, detail="Invalid settings payload")
    try:
        agent = settings.agent.merged(patch)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid settings payload")
    new_settings = settings.model_copy(update={"agent": agent})
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.to_safe_dict())
    request.app.state.settings = new_settings
    return {"ok": True, "agent": agent.to_public_dict()}


@router.post("/api/chat")
async def send_chat(
    payload: UserTextRequest,
    orchestrator: ReplyOrchestrator = Depends(get_orchestrator),
    turn_tasks: Dict[str, asyncio.Task] = Depends(get_turn_tasks),
):
    turn = orchestrator.add_user_text(payload.text)
    if turn is None:
        raise HTTPException(status_code=400, detail="Text is required.")
    track_turn(turn_tasks, turn.id, orchestrator.reply_to_text(turn))
    return {"turn_id": turn.id}


@router.post("/api/frame")
async def send_frame(
    file: UploadFile = File(...),
    x: Optional[int] = Form(None),
    y: Optional[int] = Form(None),
    width: Optional[int] = Form(None),
    height: Optional[int] = Form(None),
    orchestrator: ReplyOrchestrator = Depends(get_orchestrator),
    turn_tasks: Dict[str, asyncio.Task] = Depends(get_turn_tasks),
):
    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Only images are allowed.")
    data = await file.read()
    if len(data) > MAX_FRAME_BYTES:
        raise HTTPException(status_code=400, detail="Frame too large.")
    roi = None
    if None not in (x, y, width, height):
        roi = RegionOfInterest(x=x, y=y, width=width, height=height)
    try:
        frame = await asyncio.to_thread(capture_frame, data, roi)
    except FrameCaptureError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    turn = orchestrator.add_frame_turn(frame)
    track_turn(turn_tasks, turn.id, orchestrator.reply_to_frame(turn, frame, roi))
    return {"turn_id": turn.id, "width": frame.width, "height": frame.height}


@router.post("/api/interaction")
async def report_interaction(
    request: Request,
    audio: AudioElement = Depends(get_audio),
    gate: InteractionGate = Depends(get_gate),
):
    body = await read_json(request)
    event = "pointerdown"
    if isinstance(body, dict) and isinstance(body.get("event"), str):
        event = body["event"]
    audio.unlock()
    gate.notify(event)
    return {"ok": True}


@router.get("/api/messages")
async def list_messages(store: ConversationStore = Depends(get_store)):
    return {
        "phase": store.phase,
        "messages": [turn.to_public_dict() for turn in store.render_order()],
    }


@router.delete("/api/messages")
async def clear_messages(orchestrator: ReplyOrchestrator = Depends(get_orchestrator)):
    await orchestrator.forget()
    return {"ok": True}


@router.get("/api/audio/current")
async def current_audio(audio: AudioElement = Depends(get_audio)):
    if audio.src is None:
        raise HTTPException(status_code=404, detail="No audio loaded")
    headers = {"Cache-Control": "no-store"}
    if audio.source_id:
        headers["X-Turn-Id"] = audio.source_id
    return Response(content=audio.src.data, media_type=audio.src.content_type, headers=headers)


@router.get("/events")
async def stream_events(store: ConversationStore = Depends(get_store)):
    async def event_generator():
        queue = store.subscribe()
        try:
            yield sse_format({"event_type": "phase", "payload": {"phase": store.phase}})
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            store.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.post("/api/gemini/chat")
async def gemini_chat(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    gemini_client: GeminiClient = Depends(get_gemini_client),
):
    if not gemini_client.enabled:
        raise HTTPException(status_code=500, detail="GEMINI_API_KEY is not configured")
    body = await read_json(request)
    try:
        payload = ChatRequest.model_validate(body)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid request payload")
    turn = ChatTurn(text=payload.text, image_base64=payload.image_base64)
    if turn.is_empty:
        raise HTTPException(status_code=400, detail="Nothing to send")
    dispatcher = ModelDispatcher(gemini_client, default_model=settings.agent.model)
    models = [payload.model or settings.agent.model, *payload.models]
    try:
        result = await dispatcher.dispatch(turn, payload.history, models)
    except DispatchError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    outputs = [result.primary, *result.alternatives]
    return {
        "outputs": [item.model_dump() for item in outputs],
        "primary": result.primary.model_dump(),
        "text": result.primary.text,
        "failures": [item.model_dump() for item in result.failures],
    }


@router.post("/api/tts")
async def synthesize_speech(
    request: Request,
    tts_client: ElevenLabsClient = Depends(get_tts_client),
):
    if not tts_client.enabled:
        raise HTTPException(status_code=500, detail="ELEVENLABS_API_KEY is not configured")
    body = await read_json(request)
    try:
        payload = TTSRequest.model_validate(body)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid TTS payload")
    try:
        audio = await tts_client.synthesize(payload.text, voice_id=payload.voice_id)
    except SpeechError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return Response(content=audio.data, media_type=audio.content_type, headers={"Cache-Control": "no-store"})


@router.get("/api/tools")
async def list_tools():
    return {"tools": [make_tool_schema(name) for name in TOOL_PARAMETERS]}


@router.post("/api/tools/{name}")
async def run_tool(
    name: str,
    request: Request,
    orchestrator: ReplyOrchestrator = Depends(get_orchestrator),
):
    tool_name = name.replace("-", "_")
    if tool_name not in TOOL_PARAMETERS:
        raise HTTPException(status_code=404, detail="Tool not found")
    body = await read_json(request)
    try:
        orchestrator.tools.validate(tool_name, body)
    except ToolArgumentError:
        raise HTTPException(status_code=400, detail="Invalid parameters")
    turn = await orchestrator.record_tool(tool_name, body)
    if isinstance(turn.tool_result, dict) and set(turn.tool_result) == {"error"}:
        raise HTTPException(status_code=502, detail=turn.tool_result["error"])
    return turn.tool_result


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    gemini_client: Optional[GeminiClient] = None,
    tts_client: Optional[ElevenLabsClient] = None,
    search_client: Optional[WebSearchClient] = None,
    clock: Optional[Clock] = None,
    scheduler: Optional[FrameScheduler] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        if app.state.memory is not None:
            app.state.store.replace_all(await app.state.memory.load())
        try:
            yield
        finally:
            for task in list(app.state.turn_tasks.values()):
                task.cancel()
            app.state.orchestrator.engine.cancel_current()
            await app.state.gemini_client.close()
            await app.state.tts_client.close()
            await app.state.search_client.close()

    app = FastAPI(title="Jarvis Orchestrator", lifespan=lifespan)
    clock = clock or MonotonicClock()
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.gemini_client = gemini_client or GeminiClient(
        settings.gemini_api_key, base_url=settings.gemini_base_url, timeout=settings.model_timeout_s
    )
    app.state.tts_client = tts_client or ElevenLabsClient(
        settings.elevenlabs_api_key,
        default_voice_id=settings.elevenlabs_voice_id,
        model_id=settings.elevenlabs_model_id,
        base_url=settings.elevenlabs_base_url,
        timeout=settings.tts_timeout_s,
    )
    app.state.search_client = search_client or WebSearchClient(settings.tavily_api_key)
    app.state.store = ConversationStore()
    app.state.memory = (
        MemoryStore(app.state.db, settings.memory_max_messages) if settings.persist_memory else None
    )
    app.state.audio = AudioElement(clock=clock, autoplay_allowed=settings.autoplay_allowed)
    app.state.gate = InteractionGate()
    app.state.orchestrator = ReplyOrchestrator(
        store=app.state.store,
        dispatcher=ModelDispatcher(app.state.gemini_client, default_model=settings.agent.model),
        speech=app.state.tts_client,
        audio=app.state.audio,
        engine=TextRevealEngine(clock=clock, scheduler=scheduler),
        settings=lambda: app.state.settings.agent,
        gate=app.state.gate,
        tools=ToolRunner(app.state.search_client),
        memory=app.state.memory,
    )
    app.state.turn_tasks = {}
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("JARVIS_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "jarvis.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
