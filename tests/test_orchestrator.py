import json

import httpx
import pytest

from marketmap.config import TaskOverride
from marketmap.errors import DeadlineExceeded, InvalidOutputError, MissingApiKeyError, UpstreamError
from marketmap.normalize import validate_output
from marketmap.orchestrator import AttemptState, build_request_body, is_model_error, is_overloaded
from marketmap.schemas import ApologyPayload, CitationRepair, PlanPayload, PlanReview, ResultsPayload
from tests.fakes import FakeGeminiClient, gemini_error, gemini_response, make_orchestrator, plan_json, results_json


PLAN_CONTEXT = {
    "plan": plan_json(),
    "base_input": "CRM software",
    "clarification": "enterprise",
}


def _fenced_with_trailing_comma(payload: dict) -> str:
    body = json.dumps(payload, indent=2)
    return "```json\n" + body[:-1].rstrip() + ",\n}\n```"


def test_error_classification():
    assert is_overloaded(503, "")
    assert is_overloaded(429, "")
    assert is_overloaded(500, "The model is overloaded. Please try again later.")
    assert not is_overloaded(500, "internal")
    assert is_model_error(404, "")
    assert is_model_error(403, "Permission denied on model gemini-x")
    assert not is_model_error(500, "model overloaded")


def test_build_request_body_adds_tools_and_thinking_budget_only_when_grounded():
    grounded = build_request_body("hi", 0.2, True, thinking_budget=256)
    assert grounded["tools"] == [{"google_search": {}}]
    assert grounded["generationConfig"]["thinkingConfig"] == {"thinkingBudget": 256}
    plain = build_request_body("hi", 0.2, False, thinking_budget=256)
    assert "tools" not in plain
    assert "thinkingConfig" not in plain["generationConfig"]


def test_attempt_state_tracks_models_tried():
    state = AttemptState(model="a", use_tools=False, deadline=None, models_tried=["a"])
    state.switch_model("b")
    state.switch_model("a")
    assert state.model == "a"
    assert state.models_tried == ["a", "b"]


@pytest.mark.asyncio
async def test_empty_input_returns_default_apology_without_upstream_call(clock, recorder):
    fake = FakeGeminiClient()
    orch = make_orchestrator(fake, clock)
    result = await orch.analyze("   ", recorder)
    assert isinstance(result, ApologyPayload)
    assert result.apology.title == "Signal Lost"
    assert fake.calls == []
    assert fake.list_calls == 0


@pytest.mark.asyncio
async def test_missing_api_key_raises(clock):
    fake = FakeGeminiClient(api_key=None)
    orch = make_orchestrator(fake, clock)
    with pytest.raises(MissingApiKeyError):
        await orch.analyze("CRM")
    assert fake.calls == []


@pytest.mark.asyncio
async def test_fenced_output_with_trailing_comma_parses_without_retry(clock, recorder):
    fake = FakeGeminiClient([gemini_response(_fenced_with_trailing_comma(results_json()))])
    orch = make_orchestrator(fake, clock)

    result = await orch.analyze("CRM software", recorder)

    assert isinstance(result, ResultsPayload)
    assert len(result.companies) == 3
    assert all(len(c.metrics) == 2 for c in result.companies)
    assert validate_output(result) == []
    assert len(fake.calls) == 1
    assert "tools" not in fake.calls[0]["body"]
    assert fake.calls[0]["timeout"] == 25.0
    names = recorder.names()
    assert "parse_retry" not in names
    assert "validation_retry" not in names
    assert names.index("upstream_request") < names.index("upstream_response") < names.index("result")


@pytest.mark.asyncio
async def test_overloaded_response_backs_off_once_then_succeeds(clock, fake_sleep, recorder):
    fake = FakeGeminiClient(
        [
            httpx.Response(503, json={"error": {"message": "model overloaded"}}),
            gemini_response(results_json()),
        ]
    )
    orch = make_orchestrator(fake, clock, fake_sleep)

    result = await orch.analyze("CRM software", recorder)

    assert isinstance(result, ResultsPayload)
    assert fake_sleep.delays == [1.0]
    assert [call["model"] for call in fake.calls] == ["gemini-2.5-flash", "gemini-2.5-flash"]
    names = recorder.names()
    success_index = len(names) - 1 - names[::-1].index("upstream_response")
    assert names.index("overloaded_retry") < success_index
    assert recorder.first("overloaded_retry")["attempt"] == 1


@pytest.mark.asyncio
async def test_overload_backoff_doubles_then_switches_model_then_gives_up(clock, fake_sleep, recorder):
    fake = FakeGeminiClient([gemini_error(503, "model overloaded") for _ in range(6)])
    orch = make_orchestrator(fake, clock, fake_sleep)

    with pytest.raises(UpstreamError) as excinfo:
        await orch.analyze("CRM software", recorder)

    assert "model overloaded" in str(excinfo.value)
    assert fake_sleep.delays == [1.0, 2.0, 1.0, 2.0]
    models = [call["model"] for call in fake.calls]
    assert models == ["gemini-2.5-flash"] * 3 + ["gemini-2.0-pro"] * 3
    assert recorder.first("overload_fallback") == {
        "from": "gemini-2.5-flash",
        "to": "gemini-2.0-pro",
        "reason": "model overloaded",
    }


@pytest.mark.asyncio
async def test_overload_retry_skipped_when_deadline_is_tight(clock, fake_sleep, recorder):
    fake = FakeGeminiClient([gemini_error(503, "busy"), gemini_response(results_json())])
    orch = make_orchestrator(fake, clock, fake_sleep)

    result = await orch.analyze("CRM software", recorder, deadline=clock() + 4.0)

    assert isinstance(result, ResultsPayload)
    assert fake_sleep.delays == []
    assert "overloaded_retry_skipped" in recorder.names()
    assert fake.calls[1]["model"] == "gemini-2.0-pro"


@pytest.mark.asyncio
async def test_no_upstream_call_once_deadline_is_inside_safety_margin(clock, recorder):
    fake = FakeGeminiClient([gemini_response(results_json())])
    orch = make_orchestrator(fake, clock)

    with pytest.raises(DeadlineExceeded) as excinfo:
        await orch.analyze("CRM software", recorder, deadline=clock() + 1.0)

    assert "timeout before completion" in str(excinfo.value)
    assert fake.calls == []
    assert fake.list_calls == 0


@pytest.mark.asyncio
async def test_deadline_reached_during_retries_stops_the_chain(clock, recorder):
    def slow_timeout(model, body):
        clock.advance(10.0)
        raise httpx.ReadTimeout("timed out")

    fake = FakeGeminiClient([slow_timeout, slow_timeout])
    orch = make_orchestrator(fake, clock, total_timeout_s=12.0)

    with pytest.raises(UpstreamError):
        await orch.analyze("CRM software", recorder)

    assert len(fake.calls) == 1
    assert "timeout_retry" not in recorder.names()


@pytest.mark.asyncio
async def test_model_error_falls_back_to_next_listed_model(clock, recorder):
    fake = FakeGeminiClient(
        [gemini_error(404, "models/gemini-2.5-flash is not found"), gemini_response(results_json())]
    )
    orch = make_orchestrator(fake, clock)

    result = await orch.analyze("CRM software", recorder)

    assert isinstance(result, ResultsPayload)
    assert [call["model"] for call in fake.calls] == ["gemini-2.5-flash", "gemini-2.0-pro"]
    assert recorder.first("model_fallback")["to"] == "gemini-2.0-pro"


@pytest.mark.asyncio
async def test_model_error_substitutes_only_once_per_chain(clock, recorder):
    fake = FakeGeminiClient([gemini_error(404, "not found"), gemini_error(404, "not found")])
    orch = make_orchestrator(fake, clock)

    with pytest.raises(UpstreamError):
        await orch.analyze("CRM software", recorder)

    models = [call["model"] for call in fake.calls]
    assert len(models) == 2
    assert len(set(models)) == 2
    assert recorder.names().count("model_fallback") == 1


@pytest.mark.asyncio
async def test_model_error_forces_default_model_when_no_listed_fallback(clock, recorder):
    fake = FakeGeminiClient(
        [gemini_error(404, "not found"), gemini_response(results_json())],
        models=["gemini-legacy", "gemini-2.5-flash"],
    )
    orch = make_orchestrator(
        fake,
        clock,
        gemini_model="gemini-legacy",
        task_overrides={"analyze": TaskOverride(fallback_models=["gemini-legacy"])},
    )

    await orch.analyze("CRM software", recorder)

    assert [call["model"] for call in fake.calls] == ["gemini-legacy", "gemini-2.5-flash"]


@pytest.mark.asyncio
async def test_grounded_http_failure_retries_without_grounding(clock, recorder):
    fake = FakeGeminiClient([gemini_error(500, "Search tool failed"), gemini_response(results_json())])
    orch = make_orchestrator(fake, clock, grounding_thinking_budget=512)

    result = await orch.execute_plan("enterprise", recorder, **PLAN_CONTEXT)

    assert isinstance(result, ResultsPayload)
    first, second = fake.calls
    assert first["body"]["tools"] == [{"google_search": {}}]
    assert first["body"]["generationConfig"]["thinkingConfig"] == {"thinkingBudget": 512}
    assert "tools" not in second["body"]
    assert "grounding_fallback" in recorder.names()


@pytest.mark.asyncio
async def test_unparseable_grounded_output_retries_ungrounded(clock, recorder):
    fake = FakeGeminiClient([gemini_response("I could not find data."), gemini_response(results_json())])
    orch = make_orchestrator(fake, clock)

    await orch.execute_plan("enterprise", recorder, **PLAN_CONTEXT)

    assert recorder.first("grounding_fallback")["reason"] == "invalid_json"
    assert "tools" not in fake.calls[1]["body"]


@pytest.mark.asyncio
async def test_unparseable_output_retries_with_hint_then_fails(clock, recorder):
    fake = FakeGeminiClient([gemini_response("no json here"), gemini_response("still nothing")])
    orch = make_orchestrator(fake, clock)

    with pytest.raises(InvalidOutputError):
        await orch.analyze("CRM software", recorder)

    assert "Fix these issues from the previous attempt: Invalid JSON output." in fake.prompt(1)
    assert recorder.names().count("parse_retry") == 1


@pytest.mark.asyncio
async def test_validation_errors_are_fed_back_then_best_effort_returned(clock, recorder):
    thin = results_json(names=["Salesforce", "HubSpot"])
    fake = FakeGeminiClient([gemini_response(thin), gemini_response(thin)])
    orch = make_orchestrator(fake, clock)

    result = await orch.execute_plan("enterprise", recorder, **PLAN_CONTEXT)

    assert isinstance(result, ResultsPayload)
    assert len(result.companies) == 2
    assert len(fake.calls) == 2
    assert "Need at least 3 companies" in fake.prompt(1)
    assert recorder.first("validation_retry")["errors"] == ["Need at least 3 companies"]


@pytest.mark.asyncio
async def test_ungrounded_analyze_escalates_to_grounding_on_incomplete_output(clock, recorder):
    thin = results_json(names=["Salesforce"])
    fake = FakeGeminiClient([gemini_response(thin), gemini_response(results_json())])
    orch = make_orchestrator(fake, clock)

    result = await orch.analyze("CRM software", recorder)

    assert len(result.companies) == 3
    assert "tools" not in fake.calls[0]["body"]
    assert fake.calls[1]["body"]["tools"] == [{"google_search": {}}]
    assert "tools_fallback" in recorder.names()


@pytest.mark.asyncio
async def test_apology_for_non_market_input_is_not_escalated(clock, recorder):
    apology = {"mode": "apology", "apology": {"title": "Hmm", "message": "No market", "hint": "Try CRM"}}
    fake = FakeGeminiClient([gemini_response(apology)])
    orch = make_orchestrator(fake, clock)

    result = await orch.analyze("??", recorder)

    assert isinstance(result, ApologyPayload)
    assert result.apology.title == "Hmm"
    assert len(fake.calls) == 1


@pytest.mark.asyncio
async def test_transport_timeout_retries_same_model_then_fails(clock, recorder):
    fake = FakeGeminiClient([httpx.ReadTimeout("timed out"), httpx.ReadTimeout("timed out")])
    orch = make_orchestrator(fake, clock)

    with pytest.raises(UpstreamError) as excinfo:
        await orch.analyze("CRM software", recorder)

    assert "Gemini request failed" in str(excinfo.value)
    assert [call["model"] for call in fake.calls] == ["gemini-2.5-flash", "gemini-2.5-flash"]
    assert recorder.names().count("upstream_timeout") == 2
    assert recorder.names().count("timeout_retry") == 1


@pytest.mark.asyncio
async def test_connection_error_is_fatal(clock, recorder):
    fake = FakeGeminiClient([httpx.ConnectError("connection refused")])
    orch = make_orchestrator(fake, clock)

    with pytest.raises(UpstreamError):
        await orch.analyze("CRM software", recorder)

    assert len(fake.calls) == 1
    assert recorder.first("upstream_error")["status"] == 0


@pytest.mark.asyncio
async def test_plan_task_is_grounded_and_validated(clock, recorder):
    fake = FakeGeminiClient([gemini_response(plan_json())])
    orch = make_orchestrator(fake, clock)

    result = await orch.plan("CRM software", recorder)

    assert isinstance(result, PlanPayload)
    assert result.plan.sources == ["IDC", "Gartner"]
    assert fake.calls[0]["body"]["tools"] == [{"google_search": {}}]


@pytest.mark.asyncio
async def test_plan_review_is_fast_and_ungrounded(clock, recorder):
    fake = FakeGeminiClient([gemini_response({"mode": "replan", "reason": "Different segment"})])
    orch = make_orchestrator(fake, clock)

    review = await orch.assess_plan_change("consumer apps", recorder, **{**PLAN_CONTEXT, "clarification": "consumer apps"})

    assert review == PlanReview(mode="replan", reason="Different segment")
    body = fake.calls[0]["body"]
    assert "tools" not in body
    assert body["generationConfig"]["temperature"] == 0.0


@pytest.mark.asyncio
async def test_plan_review_without_clarification_keeps_plan(clock):
    fake = FakeGeminiClient()
    orch = make_orchestrator(fake, clock)

    review = await orch.assess_plan_change("", plan=plan_json(), base_input="CRM", clarification="  ")

    assert review.mode == "keep"
    assert fake.calls == []


@pytest.mark.asyncio
async def test_repair_citations_returns_replacements(clock, recorder):
    reply = {
        "replacements": [
            {"bad_url": "https://dead.example.com/a", "source": {"name": "IR", "url": "https://live.example.com/a"}},
            {"bad_url": "", "source": {"name": "x", "url": "https://ignored.example.com"}},
        ]
    }
    fake = FakeGeminiClient([gemini_response(reply)])
    orch = make_orchestrator(fake, clock)

    repair = await orch.repair_citations(
        recorder,
        category="CRM",
        company="Salesforce",
        items=[{"type": "metric", "label": "Revenue", "url": "https://dead.example.com/a"}],
    )

    assert isinstance(repair, CitationRepair)
    assert [r.source.url for r in repair.replacements] == ["https://live.example.com/a"]
    assert "https://dead.example.com/a" in fake.prompt(0)


@pytest.mark.asyncio
async def test_warm_up_pings_preferred_model(clock, recorder):
    fake = FakeGeminiClient([gemini_response("ok")])
    orch = make_orchestrator(fake, clock)

    model = await orch.warm_up(recorder)

    assert model == "gemini-2.5-flash"
    assert fake.calls[0]["body"]["generationConfig"]["maxOutputTokens"] == 1
    assert "warmup" in recorder.names()


@pytest.mark.asyncio
async def test_warm_up_failure_is_recorded_not_raised(clock, recorder):
    fake = FakeGeminiClient([httpx.ConnectError("down")])
    orch = make_orchestrator(fake, clock)

    assert await orch.warm_up(recorder) is None
    assert recorder.first("warmup_error")["model"] == "gemini-2.5-flash"
