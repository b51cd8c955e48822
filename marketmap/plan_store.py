import base64
import binascii
import json
import time
import uuid
from typing import Any, Callable, Dict, Optional


def new_plan_id() -> str:
    return str(uuid.uuid4())


def build_replan_input(base_input: str, clarification: str) -> str:
    base = (base_input or "").strip()
    detail = (clarification or "").strip()
    if not detail:
        return base
    if not base:
        return detail
    return f"{base}\nClarification: {detail}"


def encode_plan_snapshot(plan: Dict[str, Any], base_input: str) -> str:
    raw = json.dumps({"plan": plan, "baseInput": base_input}, ensure_ascii=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_plan_snapshot(value: Optional[str]) -> Optional[Dict[str, Any]]:
    """Client-held plan copy, url-safe base64 JSON ``{plan, baseInput}``."""
    if not value or not isinstance(value, str):
        return None
    padded = value + "=" * ((4 - len(value) % 4) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        parsed = json.loads(decoded)
    except (binascii.Error, UnicodeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None
    plan = parsed.get("plan") if isinstance(parsed.get("plan"), dict) else None
    base_input = parsed.get("baseInput") if isinstance(parsed.get("baseInput"), str) else ""
    if not plan or not base_input:
        return None
    return {"plan": plan, "base_input": base_input}


class PlanStore:
    """Pending plans awaiting execution, keyed by plan id."""

    def __init__(self, ttl_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = ttl_s
        self.clock = clock
        self._plans: Dict[str, Dict[str, Any]] = {}

    def store(self, plan_id: str, plan: Dict[str, Any], base_input: str) -> None:
        if not plan_id or not plan:
            return
        self._plans[plan_id] = {"plan": plan, "base_input": base_input, "timestamp": self.clock()}

    def get(self, plan_id: str) -> Optional[Dict[str, Any]]:
        if not plan_id:
            return None
        entry = self._plans.get(plan_id)
        if not entry:
            return None
        if self.clock() - entry["timestamp"] > self.ttl_s:
            self._plans.pop(plan_id, None)
            return None
        return entry

    def pop(self, plan_id: str) -> Optional[Dict[str, Any]]:
        return self._plans.pop(plan_id, None)

    def __contains__(self, plan_id: str) -> bool:
        return self.get(plan_id) is not None

    def __len__(self) -> int:
        return len(self._plans)
