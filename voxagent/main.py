from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from voxagent.audio.vad import EnergyVoiceActivityDetector
from voxagent.audio.wakeword.base import WakeWordDetector
from voxagent.audio.wakeword.energy import EnergyWakeWordDetector
from voxagent.audio.wakeword.openwakeword import OpenWakeWordDetector
from voxagent.client import ControllerFactory, VoicePipelineClient
from voxagent.config import AppSettings, load_settings
from voxagent.llm.intent import HttpIntentClassifier, IntentClassifier, RuleBasedIntentClassifier
from voxagent.llm.planner import HttpPlanner, Planner, RuleBasedPlanner
from voxagent.llm.providers.openai import OpenAIClient
from voxagent.memory.store import ContextStore, NullTurnRepository, SqlTurnRepository, TurnRepository
from voxagent.orchestrator.errors import ConfigError, InitializationError
from voxagent.orchestrator.event_bus import EventBus
from voxagent.orchestrator.events import PipelineMode
from voxagent.orchestrator.policies import PipelineConfig
from voxagent.orchestrator.state_machine import PipelineAdapters, PipelineController
from voxagent.telemetry.logging import configure_logging, get_logger
from voxagent.telemetry.tracing import configure_tracing
from voxagent.tools.registry import ToolContext, ToolRegistry
from voxagent.tools.skills import SkillState, register_builtin_skills
from voxagent.tools.taskgraph import PlanToolExecutor
from voxagent.transcription.base import SpeechToText
from voxagent.transcription.mock import ScriptedSpeechToText
from voxagent.transcription.openai import HttpSpeechToText
from voxagent.tts.base import TextToSpeech
from voxagent.tts.mock import ScriptedTextToSpeech
from voxagent.ui.websocket import PipelineEventBridge

logger = get_logger(__name__)


class ModeRequest(BaseModel):
    mode: Literal["voice", "manual"]


class TextRequest(BaseModel):
    text: str


class PushToTalkRequest(BaseModel):
    pressed: bool


@dataclass(slots=True)
class Runtime:
    client: VoicePipelineClient
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def shutdown(self) -> None:
        await self.client.aclose()
        for close in self.closers:
            await close()


def build_wakeword(settings: AppSettings) -> WakeWordDetector:
    if settings.wakeword.engine == "openwakeword":
        return OpenWakeWordDetector(model_name=settings.wakeword.model)
    return EnergyWakeWordDetector()


def build_controller_factory(
    settings: AppSettings,
    http: httpx.AsyncClient,
    repository: TurnRepository,
    closers: list[Callable[[], Awaitable[None]]],
) -> ControllerFactory:
    skills = SkillState()
    registry = ToolRegistry()
    register_builtin_skills(registry)
    executor = PlanToolExecutor(registry, lambda: ToolContext(http=http, extras={"skills": skills}))

    stt: SpeechToText
    nlu: IntentClassifier
    planner: Planner
    tts: TextToSpeech
    if settings.ADAPTER_BACKEND == "openai":
        from voxagent.tts.openai import HttpTextToSpeech

        openai = OpenAIClient(
            settings.openai.base_url,
            settings.openai.api_key,
            timeout=settings.openai.timeout_s,
        )
        closers.append(openai.aclose)
        stt = HttpSpeechToText(openai)
        nlu = HttpIntentClassifier(openai, fallback=RuleBasedIntentClassifier())
        planner = HttpPlanner(
            openai,
            model=settings.pipeline_config().nlu.model,
            tools=registry.available(),
            fallback=RuleBasedPlanner(),
        )
        tts = HttpTextToSpeech(openai, model=settings.openai.tts_model)
    else:
        stt = ScriptedSpeechToText()
        nlu = RuleBasedIntentClassifier()
        planner = RuleBasedPlanner()
        tts = ScriptedTextToSpeech()

    def factory(bus: EventBus, config: PipelineConfig, mode: PipelineMode) -> PipelineController:
        audio = settings.audio
        source = None
        if audio.enabled:
            from voxagent.audio.capture import AudioCapture

            source = AudioCapture(samplerate=audio.sample_rate, frame_ms=audio.frame_ms, device=audio.input_device)
        adapters = PipelineAdapters(
            vad=EnergyVoiceActivityDetector(),
            stt=stt,
            nlu=nlu,
            planner=planner,
            tools=executor,
            tts=tts,
            wake_word=build_wakeword(settings),
            audio_source=source,
        )
        store = ContextStore(config.context, repository=repository)
        return PipelineController(adapters, config=config, mode=mode, bus=bus, store=store)

    return factory


async def bootstrap_runtime(settings: AppSettings) -> Runtime:
    closers: list[Callable[[], Awaitable[None]]] = []
    http = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
    closers.append(http.aclose)

    database = settings.database
    repository: TurnRepository
    if database is not None:
        repository = SqlTurnRepository(database.dsn, database.max_pool_size)
    else:
        repository = NullTurnRepository()
    closers.append(repository.aclose)

    factory = build_controller_factory(settings, http, repository, closers)
    client = VoicePipelineClient(factory, config=settings.pipeline_config(), mode=settings.PIPELINE_MODE)
    logger.info(
        "runtime.bootstrapped",
        backend=settings.ADAPTER_BACKEND,
        persistence=database is not None,
        audio=settings.audio.enabled,
    )
    return Runtime(client=client, closers=closers)


def _client(request: Request) -> VoicePipelineClient:
    client = getattr(request.app.state, "client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="runtime unavailable")
    return client


def status_payload(client: VoicePipelineClient) -> dict[str, Any]:
    return {
        "state": client.state,
        "mode": client.mode,
        "is_initialized": client.is_initialized,
        "is_listening": client.is_listening,
        "is_processing": client.is_processing,
        "is_speaking": client.is_speaking,
        "is_active": client.is_active,
        "has_error": client.has_error,
        "last_error": str(client.last_error) if client.last_error else None,
        "last_response": client.last_response,
    }


router = APIRouter(prefix="/pipeline")


@router.post("/initialize")
async def initialize_pipeline(request: Request) -> dict[str, Any]:
    client = _client(request)
    try:
        await client.initialize()
    except InitializationError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return status_payload(client)


@router.post("/shutdown")
async def shutdown_pipeline(request: Request) -> dict[str, Any]:
    client = _client(request)
    await client.shutdown()
    return status_payload(client)


@router.get("/status")
async def pipeline_status(request: Request) -> dict[str, Any]:
    return status_payload(_client(request))


@router.post("/mode")
async def set_mode(req: ModeRequest, request: Request) -> dict[str, Any]:
    client = _client(request)
    applied = client.set_mode(req.mode)
    await client.drain()
    return {"applied": applied, **status_payload(client)}


@router.post("/text")
async def submit_text(req: TextRequest, request: Request) -> dict[str, Any]:
    client = _client(request)
    try:
        accepted = await client.process_text(req.text)
    except InitializationError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"accepted": accepted, **status_payload(client)}


@router.post("/push-to-talk")
async def push_to_talk(req: PushToTalkRequest, request: Request) -> dict[str, Any]:
    client = _client(request)
    try:
        await client.handle_push_to_talk(req.pressed)
    except InitializationError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return status_payload(client)


@router.post("/barge-in")
async def barge_in(request: Request) -> dict[str, Any]:
    client = _client(request)
    try:
        handled = await client.handle_barge_in()
    except InitializationError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"handled": handled, **status_payload(client)}


@router.patch("/config")
async def update_config(updates: dict[str, Any], request: Request) -> dict[str, Any]:
    client = _client(request)
    try:
        config = await client.update_config(updates)
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return config.model_dump()


@router.get("/events")
async def recent_events(request: Request) -> dict[str, Any]:
    return {"events": [event.to_dict() for event in _client(request).events]}


@router.post("/error/clear")
async def clear_error(request: Request) -> dict[str, Any]:
    client = _client(request)
    client.clear_error()
    return status_payload(client)


def create_app(client: VoicePipelineClient | None = None, settings: AppSettings | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.telemetry.log_level, json=settings.telemetry.log_json)
    configure_tracing("voxagent", settings.telemetry.otlp_endpoint, settings.ENVIRONMENT)

    app = FastAPI(title="voxagent voice pipeline")
    bridge = PipelineEventBridge()
    app.include_router(bridge.router)
    app.include_router(router)

    origins = {settings.ui.floating_ui_origin}
    if "localhost" in settings.ui.floating_ui_origin:
        origins.add(settings.ui.floating_ui_origin.replace("localhost", "127.0.0.1"))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(origins),
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )
    app.state.client = client
    app.state.runtime = None
    app.state.bridge = bridge

    @app.on_event("startup")
    async def startup_event() -> None:
        if app.state.client is None:
            runtime = await bootstrap_runtime(settings)
            app.state.runtime = runtime
            app.state.client = runtime.client
        app.state.unsubscribe = app.state.client.on_event(bridge.publish)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        unsubscribe = getattr(app.state, "unsubscribe", None)
        if unsubscribe:
            unsubscribe()
        runtime = app.state.runtime
        if runtime is not None:
            await runtime.shutdown()
        elif app.state.client is not None:
            await app.state.client.shutdown()

    return app


app = create_app()


__all__ = ["app", "create_app", "bootstrap_runtime", "build_controller_factory", "Runtime"]
