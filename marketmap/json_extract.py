import json
import re
from typing import Any, Iterator, List, Optional, Tuple

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_SMART_QUOTES = {
    "“": '"',
    "”": '"',
    "„": '"',
    "‘": "'",
    "’": "'",
}
_PAIRS = {"}": "{", "]": "["}


def _loads(candidate: str) -> Optional[Any]:
    try:
        parsed = json.loads(candidate)
    except (ValueError, TypeError):
        return None
    if isinstance(parsed, (dict, list)):
        return parsed
    return None


def clean_json_text(text: str) -> str:
    """Strip code fences, straighten smart quotes, and drop trailing commas."""
    cleaned = _FENCE_RE.sub("", text)
    for src, dst in _SMART_QUOTES.items():
        cleaned = cleaned.replace(src, dst)
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
    return cleaned.strip()


def _scan_spans(text: str, begin: int) -> Tuple[List[str], int]:
    """Spans closed while scanning from ``begin``, plus the start of any opener left unclosed (-1 if none)."""
    spans: List[str] = []
    stack: List[str] = []
    start = -1
    in_string = False
    escaped = False
    for idx in range(begin, len(text)):
        ch = text[idx]
        if stack and in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if stack and ch == '"':
            in_string = True
            continue
        if ch in "{[":
            if not stack:
                start = idx
            stack.append(ch)
        elif ch in "}]":
            if not stack:
                continue
            if stack[-1] != _PAIRS[ch]:
                stack = []
                start = -1
                continue
            stack.pop()
            if not stack and start >= 0:
                spans.append(text[start : idx + 1])
                start = -1
    return spans, (start if stack else -1)


def balanced_spans(text: str) -> List[str]:
    """Collect every top-level balanced {...} / [...] span, skipping string contents.

    When an opener never closes, the scan resumes just past it.
    """
    spans: List[str] = []
    pos = 0
    while pos < len(text):
        found, unclosed = _scan_spans(text, pos)
        spans.extend(found)
        if unclosed < 0:
            break
        pos = unclosed + 1
    return spans


def _candidates(text: str) -> Iterator[str]:
    trimmed = text.strip()
    base = [trimmed]
    first = trimmed.find("{")
    last = trimmed.rfind("}")
    if first != -1 and last > first:
        base.append(trimmed[first : last + 1])
    for candidate in base:
        yield candidate
    for candidate in base:
        yield clean_json_text(candidate)
    cleaned = clean_json_text(trimmed)
    for span in balanced_spans(cleaned):
        yield span
        yield clean_json_text(span)


def extract_json(text: Optional[str]) -> Optional[Any]:
    """Recover a JSON object from model text that may carry fences or prose around it."""
    if not text or not isinstance(text, str):
        return None
    seen = set()
    for candidate in _candidates(text):
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        parsed = _loads(candidate)
        if parsed is not None:
            return parsed
    return None
