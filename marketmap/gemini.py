from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import DEFAULT_MODEL, GEMINI_ENDPOINT


def sanitize_model_name(value: Any, default: str = DEFAULT_MODEL) -> str:
    if not isinstance(value, str):
        return default
    cleaned = value.strip()
    if cleaned.startswith("models/"):
        cleaned = cleaned[len("models/") :]
    return cleaned or default


def _first_candidate(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    candidates = payload.get("candidates") or []
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return {}
    return candidates[0]


def extract_text(payload: Any) -> str:
    content = _first_candidate(payload).get("content") or {}
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return ""
    return "".join(str(part.get("text") or "") for part in parts if isinstance(part, dict) and not part.get("thought"))


def extract_grounding(payload: Any) -> Optional[Dict[str, Any]]:
    grounding = _first_candidate(payload).get("groundingMetadata")
    return grounding if isinstance(grounding, dict) else None


def grounding_summary(grounding: Any) -> Tuple[List[str], List[str]]:
    """Search queries and source titles from grounding metadata."""
    if not isinstance(grounding, dict):
        return [], []
    queries = [q for q in grounding.get("webSearchQueries") or [] if isinstance(q, str) and q.strip()]
    sources: List[str] = []
    for chunk in grounding.get("groundingChunks") or []:
        web = chunk.get("web") if isinstance(chunk, dict) else None
        if not isinstance(web, dict):
            continue
        title = web.get("title") or web.get("uri")
        if title and title not in sources:
            sources.append(str(title))
    return queries, sources[:6]


def error_message(payload: Any, status: int) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"].strip():
            return error["message"]
        if isinstance(error, str) and error.strip():
            return error
    return str(status)


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = GEMINI_ENDPOINT,
        timeout: float = 25.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        # Admitted orchestration calls share one pool.
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def list_models(self) -> Dict[str, Any]:
        resp = await self.client.get(self.base_url, params={"key": self.api_key or ""})
        resp.raise_for_status()
        return resp.json()

    async def generate_content(
        self,
        model: str,
        body: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """POST one generateContent call; HTTP error statuses are returned, not raised."""
        url = f"{self.base_url}/{model}:generateContent"
        kwargs: Dict[str, Any] = {
            "json": body,
            "params": {"key": self.api_key or ""},
            "headers": {"Content-Type": "application/json"},
        }
        if timeout is not None:
            kwargs["timeout"] = timeout
        return await self.client.post(url, **kwargs)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
