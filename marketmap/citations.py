"""Post-pass over finished results: probe every cited URL and repair dead links.

Probes fail open. Only a definitive 404 marks a citation broken; network
errors, timeouts and redirects count as reachable.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from urllib.parse import urlparse

import httpx

from .errors import UpstreamError
from .schemas import Company, Metric, ResultsPayload, Source
from .tracing import Recorder, SafeRecorder


logger = logging.getLogger("uvicorn.error")

ProgressCallback = Callable[[str], None]
GET_FALLBACK_STATUSES = (403, 405)


@dataclass
class ProbeResult:
    ok: bool
    status: int = 0
    error: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "status": self.status, "error": self.error}


@dataclass
class CitationItem:
    kind: str
    company_name: str
    company: Company
    target: Union[Metric, Source]
    label: str
    url: str

    def for_prompt(self) -> Dict[str, Any]:
        return {"type": self.kind, "label": self.label, "url": self.url}


def short_host(url: str) -> str:
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return url
    if not host:
        return url
    return host[4:] if host.startswith("www.") else host


class CitationChecker:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 8.0,
        concurrency: int = 8,
    ) -> None:
        self.timeout_s = timeout_s
        self.concurrency = max(1, int(concurrency))
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout_s, follow_redirects=False)

    async def check(self, url: str) -> ProbeResult:
        """HEAD the URL, retrying as GET when the server refuses HEAD."""
        if not url:
            return ProbeResult(ok=False)
        try:
            resp = await self.client.head(url, timeout=self.timeout_s)
            if resp.status_code in GET_FALLBACK_STATUSES:
                resp = await self.client.get(url, timeout=self.timeout_s)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.debug("Citation probe failed for %s: %s", url, exc)
            return ProbeResult(ok=True, status=0, error=True)
        return ProbeResult(ok=resp.status_code != 404, status=resp.status_code)

    async def check_many(self, urls: Iterable[str]) -> Dict[str, ProbeResult]:
        unique = list(dict.fromkeys(url for url in urls if url))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _probe(url: str) -> ProbeResult:
            async with semaphore:
                return await self.check(url)

        results = await asyncio.gather(*(_probe(url) for url in unique))
        return dict(zip(unique, results))

    async def close(self) -> None:
        if self._owns_client and not self.client.is_closed:
            await self.client.aclose()


def collect_citation_items(payload: ResultsPayload) -> List[CitationItem]:
    items: List[CitationItem] = []
    for index, company in enumerate(payload.companies):
        name = company.name or f"Company {index + 1}"
        for metric in company.metrics:
            if metric.source_url:
                items.append(CitationItem("metric", name, company, metric, metric.label or "Metric", metric.source_url))
        for source in company.sources:
            if source.url:
                items.append(CitationItem("source", name, company, source, source.name or "Source", source.url))
    return items


def group_by_company(items: List[CitationItem]) -> Dict[str, List[CitationItem]]:
    grouped: Dict[str, List[CitationItem]] = {}
    for item in items:
        grouped.setdefault(item.company_name, []).append(item)
    return grouped


def apply_replacement(item: CitationItem, source: Source) -> None:
    if isinstance(item.target, Metric):
        item.target.source_name = source.name or item.target.source_name
        item.target.source_url = source.url
    else:
        item.target.name = source.name or item.target.name
        item.target.url = source.url


def remove_citation(item: CitationItem) -> None:
    if isinstance(item.target, Metric):
        item.target.source_url = ""
        return
    item.company.sources = [src for src in item.company.sources if src is not item.target]


async def verify_and_repair_citations(
    payload: Any,
    orchestrator: Any,
    checker: CitationChecker,
    recorder: Optional[Recorder] = None,
    on_status: Optional[ProgressCallback] = None,
    on_detail: Optional[ProgressCallback] = None,
    deadline: Optional[float] = None,
) -> Any:
    """Verify every citation in a results payload, repairing or stripping 404s in place."""
    if not isinstance(payload, ResultsPayload):
        return payload
    items = collect_citation_items(payload)
    if not items:
        return payload
    recorder = SafeRecorder(recorder)
    send_status = on_status or (lambda _msg: None)
    send_detail = on_detail or (lambda _msg: None)

    send_status("Verifying citations...")
    probes = await checker.check_many(item.url for item in items)
    invalid: List[CitationItem] = []
    reported = set()
    for item in items:
        probe = probes[item.url]
        if item.url not in reported:
            reported.add(item.url)
            recorder.record("citation_check", {"url": item.url, **probe.as_dict()})
            if probe.error:
                send_detail(f"Citation check unavailable ({short_host(item.url)}).")
            elif not probe.ok:
                send_detail(f"Broken link ({short_host(item.url)}).")
        if not probe.ok:
            invalid.append(item)
    if not invalid:
        send_detail("Citations look good.")
        return payload

    replaced = set()
    for company_name, group in group_by_company(invalid).items():
        send_status(f"Repairing citations for {company_name}...")
        recorder.record("citation_repair_start", {"company": company_name, "count": len(group)})
        try:
            repair = await orchestrator.repair_citations(
                recorder,
                category=payload.category,
                company=company_name,
                items=[item.for_prompt() for item in group],
                deadline=deadline,
            )
        except UpstreamError as exc:
            recorder.record("citation_repair_error", {"company": company_name, "message": str(exc)})
            logger.warning("Citation repair failed for %s: %s", company_name, exc)
            send_detail(f"Citation repair failed for {company_name}.")
            continue
        if not repair.replacements:
            send_detail(f"No replacement citations found for {company_name}.")
            continue
        for replacement in repair.replacements:
            affected = [item for item in group if item.url == replacement.bad_url and id(item) not in replaced]
            if not affected:
                continue
            check = await checker.check(replacement.source.url)
            recorder.record("citation_check", {"url": replacement.source.url, **check.as_dict()})
            if not check.ok:
                send_detail(f"Replacement failed ({short_host(replacement.source.url)}).")
                continue
            for item in affected:
                apply_replacement(item, replacement.source)
                replaced.add(id(item))
            send_detail(
                f"Replaced citation for {company_name}: "
                f"{short_host(replacement.bad_url)} -> {short_host(replacement.source.url)}"
            )

    for item in invalid:
        if id(item) in replaced:
            continue
        remove_citation(item)
        send_detail(f"Removed invalid citation for {item.company_name}: {short_host(item.url)}")
    return payload
