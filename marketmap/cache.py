import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Optional


def normalize_key(value: str) -> str:
    return (value or "").strip().lower()


@dataclass
class CacheHit:
    payload: Dict[str, Any]
    stale: bool
    key: str
    source: Literal["input", "category"]


class ResultCache:
    """Finished results indexed by raw input and by inferred category.

    A later query that names the category directly hits the category index even
    though its raw text never produced a cached result.
    """

    def __init__(self, ttl_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = ttl_s
        self.clock = clock
        self.by_input: Dict[str, Dict[str, Any]] = {}
        self.by_category: Dict[str, Dict[str, Any]] = {}

    def _lookup(self, index: Dict[str, Dict[str, Any]], key: str, allow_stale: bool) -> Optional[Dict[str, Any]]:
        entry = index.get(key)
        if not entry:
            return None
        stale = self.clock() - entry["timestamp"] > self.ttl_s
        if stale and not allow_stale:
            index.pop(key, None)
            return None
        return {"payload": entry["payload"], "stale": stale}

    def find(self, input_text: str, allow_stale: bool = False) -> Optional[CacheHit]:
        if not input_text:
            return None
        key = normalize_key(input_text)
        if not key:
            return None
        hit = self._lookup(self.by_input, key, allow_stale)
        if hit:
            return CacheHit(payload=hit["payload"], stale=hit["stale"], key=key, source="input")
        hit = self._lookup(self.by_category, key, allow_stale)
        if hit:
            return CacheHit(payload=hit["payload"], stale=hit["stale"], key=key, source="category")
        return None

    def store(self, input_text: str, payload: Dict[str, Any]) -> None:
        if not payload or payload.get("mode") != "results":
            return
        now = self.clock()
        key = normalize_key(input_text)
        if key:
            self.by_input[key] = {"payload": payload, "timestamp": now}
        category = normalize_key(payload.get("category") or "")
        if category:
            self.by_category[category] = {"payload": payload, "timestamp": now}
