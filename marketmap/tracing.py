import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol


logger = logging.getLogger("uvicorn.error")

TraceListener = Callable[[str, Dict[str, Any]], None]


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Recorder(Protocol):
    def record(self, event: str, data: Dict[str, Any]) -> None: ...


class NullRecorder:
    def record(self, event: str, data: Dict[str, Any]) -> None:
        return None


class SafeRecorder:
    """Forward events to another recorder without ever raising into the caller."""

    def __init__(self, inner: Optional[Recorder]) -> None:
        self.inner = inner or NullRecorder()

    def record(self, event: str, data: Dict[str, Any]) -> None:
        try:
            self.inner.record(event, dict(data or {}))
        except Exception as exc:
            logger.warning("Trace recorder failed on %s: %s", event, exc)


class TraceRecorder:
    """In-process trace for one request or multi-turn conversation."""

    def __init__(self, input_text: str = "", session_id: Optional[str] = None) -> None:
        self.input = input_text
        self.session_id = session_id or str(uuid.uuid4())
        self.events: List[Dict[str, Any]] = []
        self.listeners: List[TraceListener] = []
        self.started_at = utc_iso()
        self.output: Optional[Dict[str, Any]] = None
        self.error_message: Optional[str] = None
        self.finished = False

    def add_listener(self, listener: TraceListener) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener: TraceListener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    def record(self, event: str, data: Dict[str, Any]) -> None:
        payload = dict(data or {})
        self.events.append({"step": event, "data": payload, "ts": utc_iso()})
        logger.debug("trace %s %s %s", self.session_id, event, payload)
        for listener in list(self.listeners):
            try:
                listener(event, payload)
            except Exception as exc:
                logger.warning("Trace listener failed on %s: %s", event, exc)

    def event_names(self) -> List[str]:
        return [ev["step"] for ev in self.events]

    def end(self, output: Dict[str, Any]) -> None:
        if self.finished:
            return
        self.finished = True
        self.output = output
        logger.info(
            "Trace %s finished: mode=%s events=%d",
            self.session_id,
            (output or {}).get("mode"),
            len(self.events),
        )

    def error(self, exc: BaseException) -> None:
        if self.finished:
            return
        self.finished = True
        self.error_message = str(exc)
        logger.warning("Trace %s failed after %d events: %s", self.session_id, len(self.events), exc)


class TraceStore:
    """Conversation id -> open trace, expired lazily on read."""

    def __init__(self, ttl_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = ttl_s
        self.clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}

    def get(self, conversation_id: str) -> Optional[TraceRecorder]:
        if not conversation_id:
            return None
        entry = self._entries.get(conversation_id)
        if not entry:
            return None
        now = self.clock()
        if now - entry["timestamp"] > self.ttl_s:
            self._entries.pop(conversation_id, None)
            return None
        entry["timestamp"] = now
        return entry["trace"]

    def put(self, conversation_id: str, trace: TraceRecorder) -> None:
        if conversation_id:
            self._entries[conversation_id] = {"trace": trace, "timestamp": self.clock()}

    def delete(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)

    def get_or_create(self, conversation_id: str, input_text: str) -> TraceRecorder:
        trace = self.get(conversation_id)
        if trace is not None and not trace.finished:
            return trace
        trace = TraceRecorder(input_text, session_id=conversation_id or None)
        self.put(conversation_id, trace)
        return trace

    def __len__(self) -> int:
        return len(self._entries)
