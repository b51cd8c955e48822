import time
from typing import Callable, Iterable, List, Optional

import httpx

from .config import DEFAULT_MODEL
from .gemini import GeminiClient, sanitize_model_name
from .tracing import Recorder, NullRecorder


MODEL_CACHE_TTL_S = 10 * 60.0
GENERATE_METHOD = "generateContent"


def pick_next(
    current: Optional[str],
    available: Iterable[str],
    priorities: Iterable[str],
    exclude: Iterable[str] = (),
) -> Optional[str]:
    """Next candidate after ``current`` in ``priorities`` that the upstream offers.

    The walk starts after the current model's position (or at the head when it
    is not listed), so repeated calls along one chain never revisit a model.
    With no usable availability list every candidate is accepted.
    """
    ordered: List[str] = []
    for name in priorities:
        cleaned = sanitize_model_name(name)
        if cleaned not in ordered:
            ordered.append(cleaned)
    current_name = sanitize_model_name(current) if current else ""
    skip = {sanitize_model_name(m) for m in exclude}
    available_set = {sanitize_model_name(m) for m in available if m}
    start = ordered.index(current_name) + 1 if current_name in ordered else 0
    for candidate in ordered[start:]:
        if candidate == current_name or candidate in skip:
            continue
        if not available_set or candidate in available_set:
            return candidate
    return None


class ModelRegistry:
    """Cached view of upstream models that support content generation."""

    def __init__(
        self,
        client: GeminiClient,
        ttl_s: float = MODEL_CACHE_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.ttl_s = ttl_s
        self.clock = clock
        self._models: Optional[List[str]] = None
        self._fetched_at = 0.0

    def invalidate(self) -> None:
        self._models = None
        self._fetched_at = 0.0

    async def list_models(self, recorder: Optional[Recorder] = None) -> List[str]:
        recorder = recorder or NullRecorder()
        now = self.clock()
        if self._models is not None and now - self._fetched_at < self.ttl_s:
            return list(self._models)
        try:
            data = await self.client.list_models()
        except httpx.HTTPStatusError as exc:
            recorder.record("models_error", {"status": exc.response.status_code})
            return list(self._models or [])
        except (httpx.RequestError, ValueError) as exc:
            recorder.record("models_error", {"status": 0, "message": str(exc)})
            return list(self._models or [])
        models = data.get("models") if isinstance(data, dict) else None
        supported = [
            sanitize_model_name(model.get("name"), default="")
            for model in models or []
            if isinstance(model, dict)
            and isinstance(model.get("supportedGenerationMethods"), list)
            and GENERATE_METHOD in model["supportedGenerationMethods"]
        ]
        supported = [name for name in supported if name]
        self._models = supported
        self._fetched_at = now
        recorder.record("models_available", {"count": len(supported), "models": supported[:5]})
        return list(supported)

    async def pick_fallback(
        self,
        current: str,
        priorities: Iterable[str],
        recorder: Optional[Recorder] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[str]:
        available = await self.list_models(recorder)
        return pick_next(current, available, priorities, exclude=exclude)

    async def pick_overload_fallback(
        self,
        current: str,
        priorities: Iterable[str],
        recorder: Optional[Recorder] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[str]:
        available = await self.list_models(recorder)
        picked = pick_next(current, available, priorities, exclude=exclude)
        if picked:
            return picked
        skip = {sanitize_model_name(current)} | {sanitize_model_name(m) for m in exclude}
        for model in available:
            if model not in skip:
                return model
        return None

    async def preferred_model(self, preferred: str, recorder: Optional[Recorder] = None) -> str:
        """Preferred model when listed, otherwise the first fallback the upstream offers."""
        available = await self.list_models(recorder)
        preferred = sanitize_model_name(preferred)
        if not available or preferred in available:
            return preferred
        return pick_next(None, available, [preferred, DEFAULT_MODEL]) or available[0]
