"""Retry/fallback engine shared by every market-map sub-task.

One call to :meth:`Orchestrator.run` owns a single chain of upstream requests.
The chain is an explicit loop over :class:`AttemptState`; each transition
helper mutates the state and returns ``True`` when another request should be
issued. The deadline is checked before every request and wins over any retry
policy.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel

from .config import DEFAULT_MODEL, AppSettings
from .deadline import DeadlinePolicy, backoff_delay
from .errors import DeadlineExceeded, InvalidOutputError, MissingApiKeyError, UpstreamError
from .gemini import GeminiClient, error_message, extract_grounding, extract_text, sanitize_model_name
from .json_extract import extract_json
from .model_registry import ModelRegistry
from .schemas import CitationRepair, PlanReview, default_apology
from .tasks import (
    ANALYZE,
    EXECUTE,
    PLAN,
    REPAIR,
    REVIEW,
    AnalyzeTask,
    ExecutePlanTask,
    PlanReviewTask,
    PlanTask,
    RepairCitationsTask,
    TaskConfig,
    TaskStrategy,
    looks_like_market_input,
    task_config,
    with_options,
)
from .tracing import NullRecorder, Recorder, SafeRecorder


logger = logging.getLogger("uvicorn.error")

PROMPT_PREVIEW_CHARS = 800
Sleep = Callable[[float], Awaitable[Any]]


def is_overloaded(status: int, message: str) -> bool:
    if status in (429, 503):
        return True
    lowered = (message or "").lower()
    return "overloaded" in lowered or "try again later" in lowered


def is_model_error(status: int, message: str) -> bool:
    if status in (400, 404):
        return True
    lowered = (message or "").lower()
    return "model" in lowered and any(
        token in lowered for token in ("not found", "not supported", "permission", "access")
    )


def build_request_body(
    prompt: str,
    temperature: float,
    use_tools: bool,
    thinking_budget: Optional[int] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": {"temperature": temperature},
    }
    if use_tools:
        body["tools"] = [{"google_search": {}}]
        if thinking_budget is not None:
            body["generationConfig"]["thinkingConfig"] = {"thinkingBudget": thinking_budget}
    return body


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


@dataclass
class AttemptState:
    model: str
    use_tools: bool
    deadline: Optional[float]
    attempt: int = 1
    transient_attempt: int = 0
    tried_fallback: bool = False
    tried_overload_fallback: bool = False
    tried_no_tools: bool = False
    tried_tools_escalation: bool = False
    last_error: str = ""
    models_tried: List[str] = field(default_factory=list)

    def switch_model(self, model: str) -> None:
        self.model = model
        if model not in self.models_tried:
            self.models_tried.append(model)


class Orchestrator:
    def __init__(
        self,
        client: GeminiClient,
        registry: ModelRegistry,
        settings: AppSettings,
        policy: Optional[DeadlinePolicy] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.client = client
        self.registry = registry
        self.settings = settings
        self.policy = policy or DeadlinePolicy(
            request_timeout_s=settings.request_timeout_s,
            min_request_timeout_s=settings.min_request_timeout_s,
            safety_margin_s=settings.safety_margin_s,
        )
        self.sleep = sleep
        self.clock = clock
        self.rng = rng

    def config_for(self, name: str) -> TaskConfig:
        return task_config(self.settings, name)

    def new_deadline(self) -> float:
        return self.clock() + self.settings.total_timeout_s

    async def run(
        self,
        task: TaskStrategy,
        config: TaskConfig,
        recorder: Optional[Recorder] = None,
        deadline: Optional[float] = None,
    ) -> BaseModel:
        if not self.client.enabled:
            raise MissingApiKeyError()
        recorder = SafeRecorder(recorder)
        if deadline is None:
            deadline = self.new_deadline()
        if self.policy.expired(deadline, self.clock()):
            raise DeadlineExceeded()
        model = await self.registry.preferred_model(self.settings.gemini_model, recorder)
        state = AttemptState(model=model, use_tools=config.use_tools, deadline=deadline, models_tried=[model])

        while True:
            now = self.clock()
            if self.policy.expired(state.deadline, now):
                raise DeadlineExceeded()
            prompt = task.build_prompt(state.attempt, state.last_error, state.use_tools)
            body = build_request_body(
                prompt,
                config.temperature,
                state.use_tools,
                self.settings.grounding_thinking_budget,
            )
            recorder.record(
                "upstream_request",
                {
                    "task": config.name,
                    "model": state.model,
                    "attempt": state.attempt,
                    "use_tools": state.use_tools,
                    "prompt_preview": prompt[:PROMPT_PREVIEW_CHARS],
                },
            )
            timeout = self.policy.request_timeout(state.deadline, now)
            if timeout <= 0:
                raise DeadlineExceeded("Gemini timeout before request")

            try:
                response = await self.client.generate_content(state.model, body, timeout=timeout)
            except httpx.TimeoutException as exc:
                recorder.record(
                    "upstream_timeout",
                    {"status": 0, "message": str(exc) or "timeout", "model": state.model, "timeout_s": timeout},
                )
                if self.retry_after_timeout(state, config, recorder):
                    continue
                raise UpstreamError(f"Gemini request failed: {str(exc) or 'timeout'}") from exc
            except httpx.HTTPError as exc:
                recorder.record("upstream_error", {"status": 0, "message": str(exc), "model": state.model})
                raise UpstreamError(f"Gemini request failed: {exc}") from exc

            payload = _json_or_none(response)
            recorder.record(
                "upstream_response",
                {
                    "task": config.name,
                    "status": response.status_code,
                    "model": state.model,
                    "use_tools": state.use_tools,
                    "grounding": extract_grounding(payload),
                },
            )

            if response.is_error:
                message = error_message(payload, response.status_code)
                recorder.record(
                    "upstream_error",
                    {"status": response.status_code, "message": message, "model": state.model},
                )
                if await self.recover_http_error(state, config, response.status_code, message, recorder):
                    continue
                logger.warning("Gemini %s failed on %s: %s", config.name, state.model, message)
                raise UpstreamError(f"Gemini error: {message}")

            if payload is None:
                raise UpstreamError("Gemini response was not JSON")

            parsed = extract_json(extract_text(payload))
            if parsed is None:
                if self.retry_after_parse_failure(state, config, recorder):
                    continue
                raise InvalidOutputError("Gemini returned invalid JSON")

            output = task.normalize(parsed)
            errors = task.validate(output)
            if self.escalate_to_tools(state, config, task, output, errors, recorder):
                continue
            if errors and self.retry_after_validation(state, config, errors, recorder):
                continue
            recorder.record(
                "result",
                {"task": config.name, "mode": getattr(output, "mode", None), "errors": errors, "model": state.model},
            )
            return output

    async def recover_http_error(
        self,
        state: AttemptState,
        config: TaskConfig,
        status: int,
        message: str,
        recorder: Recorder,
    ) -> bool:
        """Pick the next transition for an HTTP error, in priority order."""
        if self.policy.expired(state.deadline, self.clock()):
            raise DeadlineExceeded()
        overloaded = is_overloaded(status, message)
        if overloaded:
            if await self.retry_overloaded(state, config, status, message, recorder):
                return True
            if await self.switch_overloaded_model(state, config, message, recorder):
                return True
        if not state.tried_fallback and is_model_error(status, message):
            if await self.switch_model_after_error(state, config, message, recorder):
                return True
        if not overloaded and state.use_tools and not state.tried_no_tools:
            state.use_tools = False
            state.tried_no_tools = True
            recorder.record("grounding_fallback", {"status": status, "message": message, "model": state.model})
            logger.info("Gemini %s retrying without grounding after %s", config.name, status)
            return True
        return False

    async def retry_overloaded(
        self,
        state: AttemptState,
        config: TaskConfig,
        status: int,
        message: str,
        recorder: Recorder,
    ) -> bool:
        if state.transient_attempt >= config.overload_max_retries:
            return False
        next_attempt = state.transient_attempt + 1
        delay = backoff_delay(
            next_attempt,
            config.overload_base_delay_s,
            config.overload_max_delay_s,
            self.settings.overload_jitter_s,
            rng=self.rng,
        )
        if not self.policy.has_time_for_retry(state.deadline, delay, self.clock()):
            recorder.record(
                "overloaded_retry_skipped",
                {"reason": "deadline", "time_left_s": self.policy.time_left(state.deadline, self.clock())},
            )
            return False
        recorder.record(
            "overloaded_retry",
            {"status": status, "message": message, "attempt": next_attempt, "delay_s": delay, "model": state.model},
        )
        logger.info("Gemini %s overloaded on %s; retry %d in %.2fs", config.name, state.model, next_attempt, delay)
        await self.sleep(delay)
        state.transient_attempt = next_attempt
        return True

    async def switch_overloaded_model(
        self,
        state: AttemptState,
        config: TaskConfig,
        message: str,
        recorder: Recorder,
    ) -> bool:
        if state.tried_overload_fallback or not self.policy.has_time_for_request(state.deadline, self.clock()):
            return False
        fallback = await self.registry.pick_overload_fallback(
            state.model,
            config.overload_fallback_models,
            recorder,
            exclude=state.models_tried,
        )
        if not fallback or fallback == state.model:
            return False
        recorder.record("overload_fallback", {"from": state.model, "to": fallback, "reason": message})
        logger.info("Gemini %s switching %s -> %s after overload", config.name, state.model, fallback)
        state.switch_model(fallback)
        state.transient_attempt = 0
        state.tried_overload_fallback = True
        return True

    async def switch_model_after_error(
        self,
        state: AttemptState,
        config: TaskConfig,
        message: str,
        recorder: Recorder,
    ) -> bool:
        fallback = await self.registry.pick_fallback(
            state.model,
            config.fallback_models,
            recorder,
            exclude=state.models_tried,
        )
        if not fallback or fallback == state.model:
            fallback = DEFAULT_MODEL if sanitize_model_name(state.model) != DEFAULT_MODEL else None
        state.tried_fallback = True
        if not fallback:
            return False
        recorder.record("model_fallback", {"from": state.model, "to": fallback, "reason": message})
        logger.warning("Gemini %s model %s unavailable (%s); falling back to %s", config.name, state.model, message, fallback)
        state.switch_model(fallback)
        return True

    def retry_after_timeout(self, state: AttemptState, config: TaskConfig, recorder: Recorder) -> bool:
        if state.attempt >= config.max_attempts:
            return False
        if not self.policy.has_time_for_request(state.deadline, self.clock()):
            return False
        state.attempt += 1
        recorder.record("timeout_retry", {"attempt": state.attempt, "model": state.model})
        logger.info("Gemini %s timed out on %s; retry %d", config.name, state.model, state.attempt)
        return True

    def retry_after_parse_failure(self, state: AttemptState, config: TaskConfig, recorder: Recorder) -> bool:
        if state.use_tools and not state.tried_no_tools:
            state.use_tools = False
            state.tried_no_tools = True
            recorder.record("grounding_fallback", {"reason": "invalid_json", "model": state.model})
            return True
        if state.attempt < config.max_attempts:
            state.attempt += 1
            state.last_error = "Invalid JSON output."
            recorder.record("parse_retry", {"attempt": state.attempt, "model": state.model})
            return True
        return False

    def escalate_to_tools(
        self,
        state: AttemptState,
        config: TaskConfig,
        task: TaskStrategy,
        output: BaseModel,
        errors: List[str],
        recorder: Recorder,
    ) -> bool:
        if not config.escalate_to_tools or state.use_tools:
            return False
        if state.tried_tools_escalation or state.tried_no_tools:
            return False
        if not (errors or task.is_apology(output)) or not looks_like_market_input(task.input_text):
            return False
        reason = " | ".join(errors) if errors else "apology"
        recorder.record("tools_fallback", {"reason": reason, "model": state.model})
        state.use_tools = True
        state.tried_tools_escalation = True
        state.attempt = 1
        state.transient_attempt = 0
        state.last_error = ""
        return True

    def retry_after_validation(
        self,
        state: AttemptState,
        config: TaskConfig,
        errors: List[str],
        recorder: Recorder,
    ) -> bool:
        if state.attempt >= config.max_attempts:
            logger.info("Gemini %s returning best effort with %d defects", config.name, len(errors))
            return False
        state.attempt += 1
        state.last_error = " | ".join(errors)
        recorder.record("validation_retry", {"attempt": state.attempt, "errors": errors, "model": state.model})
        return True

    async def analyze(
        self,
        input_text: str,
        recorder: Optional[Recorder] = None,
        use_tools: Optional[bool] = None,
        max_attempts: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> BaseModel:
        if not (input_text or "").strip():
            return default_apology()
        config = with_options(self.config_for(ANALYZE), use_tools=use_tools, max_attempts=max_attempts)
        return await self.run(AnalyzeTask(input_text.strip()), config, recorder, deadline)

    async def plan(
        self,
        input_text: str,
        recorder: Optional[Recorder] = None,
        use_tools: Optional[bool] = None,
        max_attempts: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> BaseModel:
        if not (input_text or "").strip():
            return default_apology()
        config = with_options(self.config_for(PLAN), use_tools=use_tools, max_attempts=max_attempts)
        return await self.run(PlanTask(input_text.strip()), config, recorder, deadline)

    async def assess_plan_change(
        self,
        input_text: str,
        recorder: Optional[Recorder] = None,
        plan: Optional[Dict[str, Any]] = None,
        base_input: str = "",
        clarification: str = "",
        deadline: Optional[float] = None,
    ) -> PlanReview:
        if not (clarification or "").strip():
            return PlanReview(mode="keep", reason="No clarification provided")
        task = PlanReviewTask(input_text, plan, base_input, clarification)
        result = await self.run(task, self.config_for(REVIEW), recorder, deadline)
        return result if isinstance(result, PlanReview) else PlanReview()

    async def execute_plan(
        self,
        input_text: str,
        recorder: Optional[Recorder] = None,
        plan: Optional[Dict[str, Any]] = None,
        base_input: str = "",
        clarification: str = "",
        deadline: Optional[float] = None,
    ) -> BaseModel:
        task = ExecutePlanTask(input_text, plan, base_input, clarification)
        return await self.run(task, self.config_for(EXECUTE), recorder, deadline)

    async def repair_citations(
        self,
        recorder: Optional[Recorder] = None,
        category: str = "",
        company: str = "",
        items: Optional[List[Dict[str, Any]]] = None,
        deadline: Optional[float] = None,
    ) -> CitationRepair:
        if not items:
            return CitationRepair()
        task = RepairCitationsTask(category, company, items)
        result = await self.run(task, self.config_for(REPAIR), recorder, deadline)
        return result if isinstance(result, CitationRepair) else CitationRepair()

    async def warm_up(self, recorder: Optional[Recorder] = None) -> Optional[str]:
        """Send a one-token ping so the first user request skips cold start."""
        recorder = SafeRecorder(recorder or NullRecorder())
        if not self.client.enabled:
            return None
        model = await self.registry.preferred_model(self.settings.gemini_model, recorder)
        body = {
            "contents": [{"role": "user", "parts": [{"text": "ping"}]}],
            "generationConfig": {"temperature": 0, "maxOutputTokens": 1},
        }
        try:
            response = await self.client.generate_content(model, body, timeout=self.settings.request_timeout_s)
        except httpx.HTTPError as exc:
            recorder.record("warmup_error", {"model": model, "message": str(exc)})
            logger.warning("Gemini warm-up failed for %s: %s", model, exc)
            return None
        if response.is_error:
            message = error_message(_json_or_none(response), response.status_code)
            recorder.record("warmup_error", {"model": model, "status": response.status_code, "message": message})
            logger.warning("Gemini warm-up failed for %s: %s", model, message)
            return None
        recorder.record("warmup", {"model": model, "status": response.status_code})
        logger.info("Gemini warm-up ok (%s)", model)
        return model
