"""Stage flows behind the analyze endpoints, shared by the JSON and SSE routes."""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from .admission import AdmissionGate
from .cache import ResultCache
from .citations import CitationChecker, verify_and_repair_citations
from .gemini import grounding_summary
from .orchestrator import Orchestrator
from .plan_store import PlanStore, build_replan_input, decode_plan_snapshot, encode_plan_snapshot, new_plan_id
from .schemas import AnalyzeRequest, PlanPayload, PlanReview, default_apology
from .tracing import TraceRecorder, TraceStore


logger = logging.getLogger("uvicorn.error")

Emit = Callable[[str, Dict[str, Any]], None]

BUSY_MESSAGE = "Server busy. Please retry."
PLAN_EXPIRED_MESSAGE = "Plan expired. Please submit a new query."


def summarize_event(step: str, data: Optional[Dict[str, Any]]) -> Tuple[List[str], List[str]]:
    """Progress lines (status, detail) for one trace event."""
    data = data or {}
    status: List[str] = []
    detail: List[str] = []
    if step == "upstream_request":
        model = f" ({data['model']})" if data.get("model") else ""
        grounding = " with grounding" if data.get("use_tools") else " without grounding"
        status.append(f"Calling Gemini{model}{grounding}...")
    elif step == "upstream_response":
        if data.get("status", 200) >= 400:
            status.append(f"Gemini returned {data.get('status')}.")
            return status, detail
        status.append("Received grounded response." if data.get("grounding") else "Received response.")
        queries, sources = grounding_summary(data.get("grounding"))
        if queries:
            detail.append(f"Search queries: {', '.join(queries[:5])}")
        if sources:
            detail.append(f"Sources: {', '.join(sources)}")
    elif step == "overloaded_retry":
        detail.append(f"Gemini overloaded. Retrying in {float(data.get('delay_s') or 0):.1f}s...")
    elif step == "model_fallback" and data.get("from") and data.get("to"):
        detail.append(f"Model fallback: {data['from']} -> {data['to']}")
    elif step == "overload_fallback" and data.get("from") and data.get("to"):
        detail.append(f"Overload fallback: {data['from']} -> {data['to']}")
    elif step == "tools_fallback":
        detail.append("Retrying with Google Search grounding.")
    elif step == "grounding_fallback":
        detail.append("Grounding failed. Retrying without grounding.")
    elif step == "timeout_retry":
        detail.append("Gemini timed out. Retrying...")
    elif step in ("parse_retry", "validation_retry"):
        detail.append("Output incomplete. Retrying...")
    return status, detail


def payload_to_dict(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, BaseModel):
        data = payload.model_dump()
    else:
        data = dict(payload or {})
    if data.get("mode") == "apology" and not data.get("debug"):
        data.pop("debug", None)
    return data


def apology_dict(debug_message: Optional[str] = None) -> Dict[str, Any]:
    return payload_to_dict(default_apology(debug_message))


def _noop_emit(_event: str, _data: Dict[str, Any]) -> None:
    return None


class MarketMapService:
    def __init__(
        self,
        orchestrator: Orchestrator,
        gate: AdmissionGate,
        cache: ResultCache,
        plans: PlanStore,
        traces: TraceStore,
        checker: CitationChecker,
    ) -> None:
        self.orchestrator = orchestrator
        self.gate = gate
        self.cache = cache
        self.plans = plans
        self.traces = traces
        self.checker = checker

    def _open_trace(self, request: AnalyzeRequest) -> Tuple[TraceRecorder, bool]:
        if request.conversation_id:
            return self.traces.get_or_create(request.conversation_id, request.input), True
        return TraceRecorder(request.input), False

    async def handle(self, request: AnalyzeRequest, emit: Optional[Emit] = None) -> Dict[str, Any]:
        emit = emit or _noop_emit
        input_text = (request.input or "").strip()
        trace, persistent = self._open_trace(request)
        trace.record(
            "input_received",
            {
                "input": input_text,
                "stage": request.stage,
                "plan_id": request.plan_id,
                "conversation_id": request.conversation_id or None,
            },
        )

        def _progress(step: str, data: Dict[str, Any]) -> None:
            status, detail = summarize_event(step, data)
            for message in status:
                emit("status", {"message": message})
            for message in detail:
                emit("detail", {"message": message})

        trace.add_listener(_progress)
        keep_open = False
        try:
            if not input_text and request.stage != "execute":
                emit("status", {"message": "No market signal detected."})
                payload = apology_dict()
            elif request.stage == "plan":
                payload = await self._plan(input_text, request.plan_id, trace, emit, stage="initial")
                keep_open = persistent and payload.get("mode") == "plan"
            elif request.stage == "execute":
                payload = await self._execute(request, input_text, trace, emit)
                keep_open = persistent and payload.get("mode") == "plan"
            else:
                payload = await self._results(input_text, trace, emit)
        except Exception as exc:
            message = str(exc) or "Unknown error"
            logger.warning("Analyze %s failed: %s", request.stage, message)
            trace.record("error", {"message": message})
            trace.error(exc)
            if persistent:
                self.traces.delete(request.conversation_id)
            emit("debug", {"message": message})
            return apology_dict(message)
        finally:
            trace.remove_listener(_progress)

        debug = payload.get("debug") if payload.get("mode") == "apology" else None
        if debug and debug.get("message"):
            emit("debug", {"message": debug["message"]})
        if not keep_open:
            trace.end(payload)
            if persistent:
                self.traces.delete(request.conversation_id)
        return payload

    def _queue_listener(self, trace: TraceRecorder, emit: Emit, label: str, stage: str):
        def _on_queue(position: int) -> None:
            trace.record("queue_wait", {"position": position, "stage": stage})
            emit("status", {"message": f"Queued for {label} ({position})..."})

        return _on_queue

    async def _results(self, input_text: str, trace: TraceRecorder, emit: Emit) -> Dict[str, Any]:
        cached = self.cache.find(input_text)
        if cached:
            trace.record("cache_hit", {"key": cached.key, "source": cached.source})
            emit("status", {"message": "Cache hit. Returning cached results."})
            return cached.payload

        emit("status", {"message": "Analyzing input..."})
        queued = await self.gate.admit(
            lambda: self.orchestrator.analyze(input_text, trace),
            on_queue_position=self._queue_listener(trace, emit, "analysis", "results"),
        )
        if not queued.ok:
            stale = self.cache.find(input_text, allow_stale=True)
            if stale:
                trace.record("queue_timeout_cache", {"key": stale.key, "source": stale.source, "stale": stale.stale})
                emit("status", {"message": "Queue timeout. Returning cached results."})
                return stale.payload
            return apology_dict(BUSY_MESSAGE)

        result = await self._check_citations(queued.value, trace, emit)
        emit("status", {"message": "Finalizing results..."})
        payload = payload_to_dict(result)
        self.cache.store(input_text, payload)
        return payload

    async def _plan(
        self,
        input_text: str,
        plan_id: str,
        trace: TraceRecorder,
        emit: Emit,
        stage: str,
    ) -> Dict[str, Any]:
        emit("status", {"message": "Drafting analysis plan..." if stage == "initial" else "Revising plan..."})
        label = "planning" if stage == "initial" else "replanning"
        queued = await self.gate.admit(
            lambda: self.orchestrator.plan(input_text, trace),
            on_queue_position=self._queue_listener(trace, emit, label, stage),
        )
        if not queued.ok:
            return apology_dict(BUSY_MESSAGE)
        result = queued.value
        if not isinstance(result, PlanPayload):
            return payload_to_dict(result)

        plan_id = plan_id or new_plan_id()
        plan = payload_to_dict(result)
        self.plans.store(plan_id, plan, input_text)
        trace.record(
            "plan_payload",
            {"plan_id": plan_id, "stage": stage, "category": result.category, "ranking_basis": result.ranking_basis},
        )
        return {
            **plan,
            "plan_id": plan_id,
            "base_input": input_text,
            "plan_snapshot": encode_plan_snapshot(plan, input_text),
        }

    def _load_plan(self, request: AnalyzeRequest) -> Optional[Dict[str, Any]]:
        entry = self.plans.get(request.plan_id)
        if entry:
            return entry
        return decode_plan_snapshot(request.plan_snapshot)

    async def _review(self, entry: Dict[str, Any], clarification: str, trace: TraceRecorder, emit: Emit) -> Optional[PlanReview]:
        emit("status", {"message": "Reviewing plan updates..."})
        try:
            queued = await self.gate.admit(
                lambda: self.orchestrator.assess_plan_change(
                    clarification,
                    trace,
                    plan=entry["plan"],
                    base_input=entry["base_input"],
                    clarification=clarification,
                ),
                on_queue_position=self._queue_listener(trace, emit, "plan review", "plan_review"),
            )
        except Exception as exc:
            trace.record("plan_review_error", {"message": str(exc)})
            emit("detail", {"message": "Plan review failed. Proceeding with existing plan."})
            return None
        if not queued.ok:
            trace.record("plan_review_timeout", {"message": "Queue timeout"})
            emit("detail", {"message": "Plan review skipped due to queue load."})
            return None
        review = queued.value
        trace.record("plan_review", review.model_dump())
        return review

    async def _execute(
        self,
        request: AnalyzeRequest,
        clarification: str,
        trace: TraceRecorder,
        emit: Emit,
    ) -> Dict[str, Any]:
        entry = self._load_plan(request)
        if not entry:
            return apology_dict(PLAN_EXPIRED_MESSAGE)

        review = await self._review(entry, clarification, trace, emit)
        if review is not None and review.mode == "replan":
            replan_input = build_replan_input(entry["base_input"], clarification)
            return await self._plan(replan_input, request.plan_id, trace, emit, stage="replan")

        emit("status", {"message": "Executing plan..."})
        queued = await self.gate.admit(
            lambda: self.orchestrator.execute_plan(
                clarification,
                trace,
                plan=entry["plan"],
                base_input=entry["base_input"],
                clarification=clarification,
            ),
            on_queue_position=self._queue_listener(trace, emit, "execution", "execute"),
        )
        if not queued.ok:
            return apology_dict(BUSY_MESSAGE)

        result = await self._check_citations(queued.value, trace, emit)
        if request.plan_id:
            self.plans.pop(request.plan_id)
        return payload_to_dict(result)

    async def _check_citations(self, result: Any, trace: TraceRecorder, emit: Emit) -> Any:
        if getattr(result, "mode", None) != "results":
            return result
        emit("status", {"message": "Checking citations..."})
        return await verify_and_repair_citations(
            result,
            self.orchestrator,
            self.checker,
            recorder=trace,
            on_status=lambda message: emit("status", {"message": message}),
            on_detail=lambda message: emit("detail", {"message": message}),
        )
