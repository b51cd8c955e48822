"""Sub-task strategies plugged into the shared retry/fallback engine.

Each strategy carries its own context (plan, clarification, broken citations)
and supplies the prompt builder, normalizer and validator for one sub-task.
``TaskConfig`` holds the retry knobs, which differ per sub-task and can be
overridden from settings.
"""

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .config import AppSettings
from . import normalize
from . import prompts


ANALYZE = "analyze"
PLAN = "plan"
REVIEW = "review"
EXECUTE = "execute"
REPAIR = "repair"
TASK_NAMES = (ANALYZE, PLAN, REVIEW, EXECUTE, REPAIR)

_LETTER_RE = re.compile(r"[a-zA-Z]")


@dataclass(frozen=True)
class TaskConfig:
    name: str
    use_tools: bool = False
    max_attempts: int = 2
    temperature: float = 0.2
    overload_max_retries: int = 2
    overload_base_delay_s: float = 1.0
    overload_max_delay_s: float = 6.0
    fallback_models: List[str] = field(default_factory=list)
    overload_fallback_models: List[str] = field(default_factory=list)
    # Retry grounded when an ungrounded answer is an apology or fails validation.
    escalate_to_tools: bool = False


TASK_DEFAULTS: Dict[str, Dict[str, Any]] = {
    ANALYZE: {"use_tools": False, "max_attempts": 2, "escalate_to_tools": True},
    PLAN: {"use_tools": True, "max_attempts": 2},
    REVIEW: {"use_tools": False, "max_attempts": 1, "temperature": 0.0, "overload_max_retries": 0},
    EXECUTE: {"use_tools": True, "max_attempts": 2},
    REPAIR: {"use_tools": True, "max_attempts": 1},
}


def task_config(settings: AppSettings, name: str) -> TaskConfig:
    """Settings-wide knobs, then the per-task defaults, then ``task_overrides``."""
    values: Dict[str, Any] = {
        "overload_max_retries": settings.overload_max_retries,
        "overload_base_delay_s": settings.overload_base_delay_s,
        "overload_max_delay_s": settings.overload_max_delay_s,
        "fallback_models": list(settings.fallback_models),
        "overload_fallback_models": list(settings.overload_fallback_models),
    }
    values.update(TASK_DEFAULTS.get(name, {}))
    override = settings.task_overrides.get(name)
    if override is not None:
        values.update(override.model_dump(exclude_none=True))
    values["max_attempts"] = max(1, int(values.get("max_attempts", 1)))
    values["overload_max_retries"] = max(0, int(values.get("overload_max_retries", 0)))
    return TaskConfig(name=name, **values)


def with_options(config: TaskConfig, use_tools: Optional[bool] = None, max_attempts: Optional[int] = None) -> TaskConfig:
    changes: Dict[str, Any] = {}
    if use_tools is not None:
        changes["use_tools"] = use_tools
    if max_attempts is not None:
        changes["max_attempts"] = max(1, int(max_attempts))
    return replace(config, **changes) if changes else config


def looks_like_market_input(value: str) -> bool:
    text = (value or "").strip()
    return len(text) >= 2 and bool(_LETTER_RE.search(text))


class TaskStrategy:
    name = ""

    def __init__(self, input_text: str = "") -> None:
        self.input_text = input_text

    def build_prompt(self, attempt: int, last_error: str, use_tools: bool) -> str:
        raise NotImplementedError

    def normalize(self, raw: Any) -> BaseModel:
        raise NotImplementedError

    def validate(self, output: BaseModel) -> List[str]:
        return normalize.no_defects(output)

    def is_apology(self, output: BaseModel) -> bool:
        return getattr(output, "mode", None) == "apology"


class AnalyzeTask(TaskStrategy):
    name = ANALYZE

    def build_prompt(self, attempt: int, last_error: str, use_tools: bool) -> str:
        return prompts.build_analyze_prompt(self.input_text, attempt, last_error, use_tools=use_tools)

    def normalize(self, raw: Any) -> BaseModel:
        return normalize.normalize_output(raw)

    def validate(self, output: BaseModel) -> List[str]:
        return normalize.validate_output(output)


class PlanTask(TaskStrategy):
    name = PLAN

    def build_prompt(self, attempt: int, last_error: str, use_tools: bool) -> str:
        return prompts.build_plan_prompt(self.input_text, attempt, last_error, use_tools=use_tools)

    def normalize(self, raw: Any) -> BaseModel:
        return normalize.normalize_plan(raw)

    def validate(self, output: BaseModel) -> List[str]:
        return normalize.validate_plan(output)


class _PlanContextTask(TaskStrategy):
    def __init__(
        self,
        input_text: str,
        plan: Optional[Dict[str, Any]],
        base_input: str,
        clarification: str,
    ) -> None:
        super().__init__(input_text)
        self.plan = plan or {}
        self.base_input = base_input or input_text
        self.clarification = clarification or ""


class PlanReviewTask(_PlanContextTask):
    name = REVIEW

    def build_prompt(self, attempt: int, last_error: str, use_tools: bool) -> str:
        return prompts.build_review_prompt(self.plan, self.base_input, self.clarification, attempt, last_error)

    def normalize(self, raw: Any) -> BaseModel:
        return normalize.normalize_review(raw)


class ExecutePlanTask(_PlanContextTask):
    name = EXECUTE

    def build_prompt(self, attempt: int, last_error: str, use_tools: bool) -> str:
        return prompts.build_execute_prompt(
            self.plan,
            self.base_input,
            self.clarification,
            attempt,
            last_error,
            use_tools=use_tools,
        )

    def normalize(self, raw: Any) -> BaseModel:
        return normalize.normalize_output(raw)

    def validate(self, output: BaseModel) -> List[str]:
        return normalize.validate_output(output)


class RepairCitationsTask(TaskStrategy):
    name = REPAIR

    def __init__(self, category: str, company: str, items: List[Dict[str, Any]]) -> None:
        super().__init__(company)
        self.category = category or ""
        self.company = company or ""
        self.items = list(items or [])

    def build_prompt(self, attempt: int, last_error: str, use_tools: bool) -> str:
        return prompts.build_repair_prompt(self.category, self.company, self.items, attempt, last_error)

    def normalize(self, raw: Any) -> BaseModel:
        return normalize.normalize_repair(raw)
