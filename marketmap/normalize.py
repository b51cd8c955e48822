"""Coerce raw model JSON into typed payloads and list what is still missing.

Normalizers never raise: anything malformed is dropped or replaced with a
safe default. Validators return human-readable defect strings which double as
corrective feedback for the next prompt attempt.
"""

import math
from typing import Any, Dict, List, Optional, Union
from urllib.parse import parse_qs, unquote, urlparse

from .schemas import (
    MAX_METRICS,
    MAX_SOURCES,
    RANKING_BASES,
    Apology,
    ApologyPayload,
    CitationRepair,
    CitationReplacement,
    Company,
    Metric,
    PlanDetails,
    PlanPayload,
    PlanReview,
    ResultPayload,
    ResultsPayload,
    Source,
    DEFAULT_APOLOGY_HINT,
    DEFAULT_APOLOGY_MESSAGE,
    DEFAULT_APOLOGY_TITLE,
)

MIN_COMPANIES = 3
MIN_METRICS = 2
_REDIRECT_KEYS = (
    "url",
    "u",
    "target",
    "target_url",
    "targetUrl",
    "dest",
    "destination",
    "redirect",
    "redirect_url",
)


def safe_string(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def to_number(value: Any) -> Optional[Union[int, float]]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = float(text)
        except ValueError:
            return None
        if not math.isfinite(parsed):
            return None
        return int(parsed) if parsed.is_integer() and "." not in text and "e" not in text.lower() else parsed
    return None


def _is_http(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def _normalize_redirect_candidate(value: Optional[str]) -> str:
    if not value:
        return ""
    decoded = value
    for _ in range(2):
        nxt = unquote(decoded)
        if nxt == decoded:
            break
        decoded = nxt
    return decoded if _is_http(decoded) else ""


def unwrap_redirect_url(value: str) -> str:
    """Resolve grounding redirect links (vertexaisearch hosts) to their target URL."""
    try:
        parsed = urlparse(value)
    except ValueError:
        return value
    host = (parsed.hostname or "").lower()
    if "vertexaisearch" not in host:
        return value
    params = parse_qs(parsed.query)
    for key in _REDIRECT_KEYS:
        for candidate in params.get(key, []):
            resolved = _normalize_redirect_candidate(candidate)
            if resolved:
                return resolved
    return value


def safe_url(value: Any) -> str:
    text = safe_string(value)
    if not _is_http(text):
        return ""
    try:
        parsed = urlparse(text)
    except ValueError:
        return ""
    if not parsed.netloc:
        return ""
    return unwrap_redirect_url(text) or text


def normalize_metric(metric: Any) -> Optional[Metric]:
    if not isinstance(metric, dict):
        return None
    value = to_number(metric.get("value"))
    if value is None:
        return None
    source_url = safe_url(metric.get("source_url"))
    if not source_url:
        return None
    return Metric(
        label=safe_string(metric.get("label")) or "Metric",
        value=value,
        unit=safe_string(metric.get("unit")),
        period=safe_string(metric.get("period")) or None,
        source_name=safe_string(metric.get("source_name")) or "Source",
        source_url=source_url,
    )


def normalize_source(source: Any) -> Optional[Source]:
    if not isinstance(source, dict):
        return None
    url = safe_url(source.get("url"))
    if not url:
        return None
    return Source(name=safe_string(source.get("name")) or "Source", url=url)


def _normalize_list(items: Any, normalizer, limit: Optional[int] = None) -> list:
    if not isinstance(items, list):
        return []
    cleaned = [entry for entry in (normalizer(item) for item in items) if entry is not None]
    return cleaned[:limit] if limit is not None else cleaned


def normalize_company(company: Any) -> Optional[Company]:
    if not isinstance(company, dict):
        return None
    name = safe_string(company.get("name"))
    if not name:
        return None
    return Company(
        name=name,
        rank=to_number(company.get("rank")) or 0,
        metrics=_normalize_list(company.get("metrics"), normalize_metric, MAX_METRICS),
        value_prop=safe_string(company.get("value_prop")),
        sources=_normalize_list(company.get("sources"), normalize_source, MAX_SOURCES),
    )


def _ranking_basis(value: Any) -> Optional[str]:
    text = safe_string(value)
    return text if text in RANKING_BASES else None


def normalize_apology(raw: Dict[str, Any]) -> ApologyPayload:
    apology = raw.get("apology") if isinstance(raw.get("apology"), dict) else {}
    return ApologyPayload(
        apology=Apology(
            title=safe_string(apology.get("title")) or DEFAULT_APOLOGY_TITLE,
            message=safe_string(apology.get("message")) or DEFAULT_APOLOGY_MESSAGE,
            hint=safe_string(apology.get("hint")) or DEFAULT_APOLOGY_HINT,
        )
    )


def normalize_output(raw: Any) -> ResultPayload:
    if not isinstance(raw, dict):
        return ApologyPayload()
    if raw.get("mode") == "apology":
        return normalize_apology(raw)
    return ResultsPayload(
        category=safe_string(raw.get("category")),
        ranking_basis=_ranking_basis(raw.get("ranking_basis")),
        companies=_normalize_list(raw.get("companies"), normalize_company),
    )


def validate_output(output: Any) -> List[str]:
    if isinstance(output, ApologyPayload):
        return []
    if not isinstance(output, ResultsPayload):
        return ["Output is not an object"]
    errors: List[str] = []
    if not output.category:
        errors.append("Missing category")
    if len(output.companies) < MIN_COMPANIES:
        errors.append(f"Need at least {MIN_COMPANIES} companies")
        return errors
    for index, company in enumerate(output.companies):
        label = company.name or str(index + 1)
        if not company.name:
            errors.append(f"Company {index + 1} missing name")
        if len(company.metrics) < MIN_METRICS:
            errors.append(f"Company {label} needs {MIN_METRICS} metrics")
    return errors


def _plan_item(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return safe_string(value.get("name") or value.get("label") or value.get("title")) or None
    return safe_string(value) or None


def normalize_plan(raw: Any) -> Union[PlanPayload, ApologyPayload]:
    if not isinstance(raw, dict):
        return ApologyPayload()
    if raw.get("mode") == "apology":
        return normalize_apology(raw)
    plan = raw.get("plan") if isinstance(raw.get("plan"), dict) else {}
    return PlanPayload(
        category=safe_string(raw.get("category")),
        ranking_basis=_ranking_basis(raw.get("ranking_basis")),
        plan=PlanDetails(
            sources=_normalize_list(plan.get("sources"), _plan_item),
            metrics=_normalize_list(plan.get("metrics"), _plan_item),
            approach=safe_string(plan.get("approach")),
        ),
        clarifying_question=safe_string(raw.get("clarifying_question")),
    )


def validate_plan(output: Any) -> List[str]:
    if isinstance(output, ApologyPayload):
        return []
    if not isinstance(output, PlanPayload):
        return ["Output is not an object"]
    errors: List[str] = []
    if not output.category:
        errors.append("Missing category")
    if not output.plan.sources:
        errors.append("Plan needs at least 1 source")
    if not output.plan.metrics:
        errors.append("Plan needs at least 1 metric")
    if not output.plan.approach:
        errors.append("Plan missing approach")
    if not output.clarifying_question:
        errors.append("Missing clarifying question")
    return errors


def normalize_review(raw: Any) -> PlanReview:
    if not isinstance(raw, dict):
        return PlanReview(mode="keep", reason="")
    mode = safe_string(raw.get("mode")).lower()
    return PlanReview(mode="replan" if mode == "replan" else "keep", reason=safe_string(raw.get("reason")))


def normalize_repair(raw: Any) -> CitationRepair:
    if not isinstance(raw, dict):
        return CitationRepair()
    replacements: List[CitationReplacement] = []
    items = raw.get("replacements")
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        bad_url = safe_string(item.get("bad_url"))
        source = normalize_source(item.get("source"))
        if not bad_url or source is None:
            continue
        replacements.append(CitationReplacement(bad_url=bad_url, source=source))
    return CitationRepair(replacements=replacements)


def no_defects(_output: Any) -> List[str]:
    return []
