import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "MARKETMAP_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_MODEL = "gemini-2.5-flash"
GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models"


class TaskOverride(BaseModel):
    use_tools: Optional[bool] = None
    max_attempts: Optional[int] = None
    temperature: Optional[float] = None
    overload_max_retries: Optional[int] = None
    overload_base_delay_s: Optional[float] = None
    overload_max_delay_s: Optional[float] = None
    fallback_models: Optional[List[str]] = None
    overload_fallback_models: Optional[List[str]] = None

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    gemini_api_key: Optional[str] = None
    gemini_model: str = DEFAULT_MODEL
    gemini_base_url: str = GEMINI_ENDPOINT
    fallback_models: List[str] = Field(
        default_factory=lambda: [DEFAULT_MODEL, "gemini-2.0-pro", "gemini-2.0-flash"]
    )
    overload_fallback_models: List[str] = Field(default_factory=lambda: ["gemini-2.0-pro", "gemini-2.0-flash"])

    # Deadline budget
    request_timeout_s: float = 25.0
    total_timeout_s: float = 45.0
    min_request_timeout_s: float = 2.0
    safety_margin_s: float = 1.5

    # Admission gate
    max_concurrency: int = 3
    queue_timeout_s: float = 2.0

    # Overload backoff
    overload_max_retries: int = 2
    overload_base_delay_s: float = 1.0
    overload_max_delay_s: float = 6.0
    overload_jitter_s: float = 0.3

    model_cache_ttl_s: float = 10 * 60
    cache_ttl_minutes: float = 15
    plan_ttl_minutes: float = 30
    trace_ttl_minutes: float = 45

    grounding_thinking_budget: Optional[int] = None
    citation_check_timeout_s: float = 8.0
    citation_check_concurrency: int = 8

    ui_mode: str = "single"
    gemini_warmup: bool = True
    host: str = "0.0.0.0"
    port: int = 3000
    task_overrides: Dict[str, TaskOverride] = Field(default_factory=dict)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("gemini_api_key"):
            data["gemini_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _ms_to_s(value: str) -> float:
    return float(value) / 1000.0


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "gemini_model": os.getenv("GEMINI_MODEL"),
        "gemini_base_url": os.getenv("GEMINI_BASE_URL"),
        "request_timeout_s": os.getenv("GEMINI_REQUEST_TIMEOUT_MS"),
        "total_timeout_s": os.getenv("GEMINI_TOTAL_TIMEOUT_MS"),
        "max_concurrency": os.getenv("GEMINI_MAX_CONCURRENCY"),
        "queue_timeout_s": os.getenv("GEMINI_QUEUE_TIMEOUT_MS"),
        "overload_max_retries": os.getenv("GEMINI_OVERLOAD_MAX_RETRIES"),
        "grounding_thinking_budget": os.getenv("GEMINI_THINKING_BUDGET"),
        "gemini_warmup": os.getenv("GEMINI_WARMUP"),
        "cache_ttl_minutes": os.getenv("CACHE_TTL_MINUTES"),
        "plan_ttl_minutes": os.getenv("PLAN_TTL_MINUTES"),
        "trace_ttl_minutes": os.getenv("TRACE_TTL_MINUTES"),
        "ui_mode": os.getenv("UI_MODE"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("request_timeout_s", "total_timeout_s", "queue_timeout_s"):
        if key in cleaned:
            cleaned[key] = _ms_to_s(cleaned[key])
    for key in ("max_concurrency", "overload_max_retries", "grounding_thinking_budget", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("cache_ttl_minutes", "plan_ttl_minutes", "trace_ttl_minutes"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "gemini_warmup" in cleaned:
        cleaned["gemini_warmup"] = str(cleaned["gemini_warmup"]).lower() not in ("0", "false", "no", "off")
    if "ui_mode" in cleaned:
        cleaned["ui_mode"] = "multi" if cleaned["ui_mode"] == "multi" else "single"
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("gemini_api_key") and env_data.get("gemini_api_key"):
        merged["gemini_api_key"] = env_data["gemini_api_key"]
    return AppSettings(**merged)
