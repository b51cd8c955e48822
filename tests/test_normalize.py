import pytest

from marketmap.normalize import (
    normalize_output,
    normalize_plan,
    normalize_repair,
    normalize_review,
    safe_url,
    to_number,
    validate_output,
    validate_plan,
)
from marketmap.schemas import ApologyPayload, PlanPayload, ResultsPayload
from tests.fakes import company, plan_json, results_json


def test_to_number_coerces_numeric_strings():
    assert to_number("1200") == 1200
    assert to_number(" 12.5 ") == 12.5
    assert to_number("1e3") == 1000.0
    assert to_number("1,200") is None
    assert to_number(True) is None
    assert to_number(float("nan")) is None
    assert to_number("inf") is None


def test_safe_url_rejects_non_http_and_unwraps_redirects():
    assert safe_url("ftp://x.example") == ""
    assert safe_url("https://") == ""
    assert safe_url(42) == ""
    wrapped = "https://vertexaisearch.cloud.google.com/grounding-api-redirect/abc?url=https%3A%2F%2Fidc.com%2Freport"
    assert safe_url(wrapped) == "https://idc.com/report"
    opaque = "https://vertexaisearch.cloud.google.com/grounding-api-redirect/abc"
    assert safe_url(opaque) == opaque


def test_normalize_output_drops_bad_entries():
    raw = results_json()
    raw["ranking_basis"] = "vibes"
    raw["companies"][0]["metrics"].append({"label": "Bad", "value": "n/a", "source_url": "https://x.example"})
    raw["companies"][0]["metrics"].insert(0, {"label": "No url", "value": 3})
    raw["companies"].append({"rank": 4})
    raw["companies"].append("junk")

    payload = normalize_output(raw)

    assert isinstance(payload, ResultsPayload)
    assert payload.ranking_basis is None
    assert [c.name for c in payload.companies] == ["Salesforce", "HubSpot", "Zoho"]
    assert [m.label for m in payload.companies[0].metrics] == ["Revenue", "Customers"]


def test_metrics_and_sources_are_capped_at_two():
    raw = results_json()
    extra = company("Salesforce")
    raw["companies"][0]["metrics"] += extra["metrics"]
    raw["companies"][0]["sources"] += extra["sources"] * 3
    payload = normalize_output(raw)
    assert len(payload.companies[0].metrics) == 2
    assert len(payload.companies[0].sources) == 2


def test_apology_fills_defaults():
    payload = normalize_output({"mode": "apology", "apology": {"title": "Nope"}})
    assert isinstance(payload, ApologyPayload)
    assert payload.apology.title == "Nope"
    assert payload.apology.hint.startswith("Try:")
    assert isinstance(normalize_output("text"), ApologyPayload)


def test_validate_output_lists_defects():
    assert validate_output(normalize_output(results_json())) == []
    assert validate_output(ApologyPayload()) == []

    short = normalize_output(results_json(category="", names=["A", "B"]))
    assert validate_output(short) == ["Missing category", "Need at least 3 companies"]

    thin = results_json()
    thin["companies"][2]["metrics"] = thin["companies"][2]["metrics"][:1]
    assert validate_output(normalize_output(thin)) == ["Company Zoho needs 2 metrics"]


def test_plan_normalizes_item_objects():
    raw = plan_json()
    raw["plan"]["sources"] = [{"name": "IDC"}, "Gartner", "", {"url": "x"}]
    plan = normalize_plan(raw)
    assert isinstance(plan, PlanPayload)
    assert plan.plan.sources == ["IDC", "Gartner"]
    assert validate_plan(plan) == []


def test_validate_plan_lists_missing_parts():
    assert validate_plan(normalize_plan({"category": "CRM"})) == [
        "Plan needs at least 1 source",
        "Plan needs at least 1 metric",
        "Plan missing approach",
        "Missing clarifying question",
    ]


def test_review_defaults_to_keep():
    assert normalize_review({"mode": "REPLAN", "reason": "new segment"}).mode == "replan"
    assert normalize_review({"mode": "maybe"}).mode == "keep"
    assert normalize_review(None).mode == "keep"


def test_repair_skips_incomplete_replacements():
    repair = normalize_repair(
        {
            "replacements": [
                {"bad_url": "https://a.example/old", "source": {"name": "New", "url": "https://a.example/new"}},
                {"bad_url": "", "source": {"url": "https://b.example"}},
                {"bad_url": "https://c.example", "source": {"url": "javascript:alert(1)"}},
                "junk",
            ]
        }
    )
    assert [r.source.url for r in repair.replacements] == ["https://a.example/new"]


def _with(path, value):
    raw = results_json()
    target = raw
    for key in path[:-1]:
        target = target[key]
    target[path[-1]] = value
    return raw


@pytest.mark.parametrize(
    "raw",
    [
        None,
        [],
        ["results"],
        "results",
        42,
        {"mode": "apology", "apology": "sorry"},
        {"mode": "apology", "apology": ["sorry"]},
        _with(("companies",), {"name": "Salesforce"}),
        _with(("companies",), "Salesforce, HubSpot"),
        _with(("companies", 0, "metrics"), "Revenue 1200"),
        _with(("companies", 0, "sources"), {"url": "https://x.example"}),
        _with(("companies", 0, "metrics", 0, "source_url"), "http://[::1"),
        _with(("companies", 0, "sources", 0, "url"), "http://[::1"),
        _with(("companies", 0, "name"), 7),
        _with(("companies", 0, "rank"), {"n": 1}),
        _with(("category",), ["CRM"]),
    ],
)
def test_normalizers_never_raise_on_wrong_types(raw):
    output = normalize_output(raw)
    assert isinstance(output, (ResultsPayload, ApologyPayload))
    assert isinstance(validate_output(output), list)
    plan = normalize_plan(raw)
    assert isinstance(plan, (PlanPayload, ApologyPayload))
    assert isinstance(validate_plan(plan), list)
    normalize_review(raw)
    normalize_repair(raw)


def test_malformed_ipv6_url_is_dropped():
    payload = normalize_output(_with(("companies", 0, "metrics", 0, "source_url"), "http://[::1"))
    assert [m.label for m in payload.companies[0].metrics] == ["Customers"]
