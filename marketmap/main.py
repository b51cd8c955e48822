import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Set

import httpx
from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.responses import Response, StreamingResponse

from .admission import AdmissionGate
from .cache import ResultCache
from .citations import CitationChecker
from .config import AppSettings, load_settings
from .gemini import GeminiClient
from .model_registry import ModelRegistry
from .orchestrator import Orchestrator
from .pipeline import MarketMapService, apology_dict
from .plan_store import PlanStore
from .schemas import AnalyzeRequest, Stage
from .tracing import TraceRecorder, TraceStore


logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_service(request: Request) -> MarketMapService:
    return request.app.state.service


def get_gate(request: Request) -> AdmissionGate:
    return request.app.state.gate


def get_pipeline_tasks(request: Request) -> Set[asyncio.Task]:
    return request.app.state.pipeline_tasks


def sse_format(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


router = APIRouter()


@router.get("/api/health")
async def health(settings: AppSettings = Depends(get_settings), gate: AdmissionGate = Depends(get_gate)):
    return {
        "ok": True,
        "model": settings.gemini_model,
        "api_key": bool(settings.gemini_api_key),
        "active": gate.active,
        "waiting": gate.waiting,
    }


@router.get("/api/config")
async def ui_config(settings: AppSettings = Depends(get_settings)):
    ui_mode = "multi" if settings.ui_mode == "multi" else "single"
    return Response(
        content=f"window.__MM_CONFIG__ = {{ uiMode: {json.dumps(ui_mode)} }};",
        media_type="application/javascript",
        headers={"Cache-Control": "no-store"},
    )


@router.post("/api/analyze")
async def analyze(
    payload: AnalyzeRequest = Body(...),
    service: MarketMapService = Depends(get_service),
):
    return await service.handle(payload)


@router.get("/api/analyze/stream")
async def analyze_stream(
    input: str = "",
    stage: Stage = "results",
    plan_id: str = "",
    conversation_id: str = "",
    plan_snapshot: str = "",
    service: MarketMapService = Depends(get_service),
    pipeline_tasks: Set[asyncio.Task] = Depends(get_pipeline_tasks),
):
    analyze_request = AnalyzeRequest(
        input=input,
        stage=stage,
        plan_id=plan_id,
        conversation_id=conversation_id,
        plan_snapshot=plan_snapshot,
    )
    queue: "asyncio.Queue[tuple]" = asyncio.Queue()
    closed = False

    def emit(event: str, data: Dict[str, Any]) -> None:
        if not closed:
            queue.put_nowait((event, data))

    async def run_pipeline() -> None:
        try:
            result = await service.handle(analyze_request, emit)
        except Exception as exc:
            logger.exception("Stream pipeline crashed")
            result = apology_dict(str(exc) or "Unknown error")
        emit("final", result)

    # The pipeline outlives a disconnected client and stops at its own deadline.
    task = asyncio.create_task(run_pipeline())
    pipeline_tasks.add(task)
    task.add_done_callback(pipeline_tasks.discard)

    async def event_generator():
        nonlocal closed
        try:
            yield "\n"
            while True:
                event, data = await queue.get()
                yield sse_format(event, data)
                if event == "final":
                    break
        finally:
            closed = True

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
    )


def create_app(
    settings: AppSettings,
    *,
    gemini_client: Optional[GeminiClient] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    orchestrator: Optional[Orchestrator] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = app.state
        if state.settings.gemini_warmup and state.gemini_client.enabled:
            state.warmup_task = asyncio.create_task(state.orchestrator.warm_up(TraceRecorder("warmup")))
        try:
            yield
        finally:
            warmup = getattr(state, "warmup_task", None)
            if warmup is not None and not warmup.done():
                warmup.cancel()
            await state.checker.close()
            await state.gemini_client.close()

    app = FastAPI(title="Market Map", lifespan=lifespan)
    app.state.settings = settings
    app.state.gemini_client = gemini_client or GeminiClient(
        settings.gemini_api_key,
        base_url=settings.gemini_base_url,
        timeout=settings.request_timeout_s,
    )
    app.state.registry = ModelRegistry(app.state.gemini_client, ttl_s=settings.model_cache_ttl_s)
    app.state.orchestrator = orchestrator or Orchestrator(app.state.gemini_client, app.state.registry, settings)
    app.state.gate = AdmissionGate(settings.max_concurrency, settings.queue_timeout_s)
    app.state.checker = CitationChecker(
        http_client,
        timeout_s=settings.citation_check_timeout_s,
        concurrency=settings.citation_check_concurrency,
    )
    app.state.service = MarketMapService(
        orchestrator=app.state.orchestrator,
        gate=app.state.gate,
        cache=ResultCache(settings.cache_ttl_minutes * 60),
        plans=PlanStore(settings.plan_ttl_minutes * 60),
        traces=TraceStore(settings.trace_ttl_minutes * 60),
        checker=app.state.checker,
    )
    app.state.pipeline_tasks = set()
    app.state.warmup_task = None

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    try:
        uvicorn.run("marketmap.main:app", host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass
