"""Prompt profiles for the market-map sub-tasks sharing the retry engine."""

import json
from typing import Any, Dict, List, Optional


RESULTS_SCHEMA = """
Schema:
{
  "mode": "results" | "apology",
  "category": string | null,
  "ranking_basis": "market_share_revenue" | "valuation" | "customers" | "g2_ratings_4plus" | null,
  "apology": { "title": string, "message": string, "hint": string } | null,
  "companies": [
    {
      "name": string,
      "rank": number,
      "metrics": [
        { "label": string, "value": number, "unit": string, "period": string | null, "source_name": string, "source_url": string }
      ],
      "value_prop": string,
      "sources": [ { "name": string, "url": string } ]
    }
  ]
}
""".strip()

PLAN_SCHEMA = """
Schema:
{
  "mode": "plan" | "apology",
  "category": string | null,
  "ranking_basis": "market_share_revenue" | "valuation" | "customers" | "g2_ratings_4plus" | null,
  "apology": { "title": string, "message": string, "hint": string } | null,
  "plan": {
    "sources": [string],
    "metrics": [string],
    "approach": string
  },
  "clarifying_question": string
}
""".strip()

REVIEW_SCHEMA = """
Schema:
{ "mode": "keep" | "replan", "reason": string }
""".strip()

REPAIR_SCHEMA = """
Schema:
{
  "replacements": [
    { "bad_url": string, "source": { "name": string, "url": string } }
  ]
}
""".strip()

RANKING_RULES = (
    "Ranking priority: market share (revenue) -> valuation/market cap -> number of customers -> "
    "number of G2 ratings above 4."
)
EVIDENCE_RULES = [
    "Only include statements backed by numeric evidence. Every metric and value prop must include numbers and source URLs in the sources list.",
    "Provide exactly 3 companies. Each company must include exactly 2 metrics and a differentiated value_prop statement that explains why the vendor leads.",
    "Limit sources to 2 per company.",
    "Numbers must be plain numeric values (no commas). Put units in a separate unit field.",
]
JSON_ONLY = "Return JSON only, no markdown or extra commentary."


def _grounding_line(use_tools: bool) -> str:
    if use_tools:
        return "Use Google Search grounding. Prefer parallel searches and stop after finding 2 strong sources per company."
    return "Do not use any external tools or grounding for this response."


def _with_feedback(lines: List[str], attempt: int, last_error: str, position: int = 5) -> str:
    if attempt > 1 and last_error:
        lines.insert(position, f"Fix these issues from the previous attempt: {last_error}")
    return "\n".join(lines)


def _plan_json(plan: Optional[Dict[str, Any]]) -> str:
    return json.dumps(plan or {}, ensure_ascii=True, indent=2)


def build_analyze_prompt(input_text: str, attempt: int = 1, last_error: str = "", use_tools: bool = False) -> str:
    lines = [
        "You are a market research analyst for software categories.",
        "Task: infer the closest software market category for the user input, then list the top 3 players.",
        "Single-turn only. Do not ask clarifying questions.",
        "Only return mode=apology if the input is empty or clearly unrelated to software markets (emoji-only, random characters).",
        _grounding_line(use_tools),
        RANKING_RULES,
        *EVIDENCE_RULES,
        JSON_ONLY,
        "",
        RESULTS_SCHEMA,
        "",
        f"User input: {input_text}",
    ]
    return _with_feedback(lines, attempt, last_error)


def build_plan_prompt(input_text: str, attempt: int = 1, last_error: str = "", use_tools: bool = True) -> str:
    lines = [
        "You are a market research analyst for software categories.",
        "Task: infer the closest software market category for the user input and draft a research plan for ranking its top 3 players.",
        "Name the sources you will consult, the metrics you will compare, and a one-paragraph approach.",
        "Ask exactly one clarifying question that would most change the ranking (segment, region, company size, or time period).",
        _grounding_line(use_tools),
        RANKING_RULES,
        "Only return mode=apology if the input is empty or clearly unrelated to software markets.",
        JSON_ONLY,
        "",
        PLAN_SCHEMA,
        "",
        f"User input: {input_text}",
    ]
    return _with_feedback(lines, attempt, last_error)


def build_review_prompt(
    plan: Optional[Dict[str, Any]],
    base_input: str,
    clarification: str,
    attempt: int = 1,
    last_error: str = "",
) -> str:
    lines = [
        "You review a proposed market research plan against the user's follow-up answer.",
        "Return mode=replan only if the answer changes the market category, the segment, or the metrics enough that the plan no longer fits.",
        "Return mode=keep when the answer only narrows or confirms the plan, or when it is empty.",
        "Keep the reason to one short sentence.",
        "Do not use any external tools or grounding for this response.",
        JSON_ONLY,
        "",
        REVIEW_SCHEMA,
        "",
        f"Original input: {base_input}",
        f"Plan: {_plan_json(plan)}",
        f"User answer: {clarification}",
    ]
    return _with_feedback(lines, attempt, last_error)


def build_execute_prompt(
    plan: Optional[Dict[str, Any]],
    base_input: str,
    clarification: str,
    attempt: int = 1,
    last_error: str = "",
    use_tools: bool = True,
) -> str:
    lines = [
        "You are a market research analyst for software categories.",
        "Task: execute the approved research plan below and list the top 3 players in the category.",
        "Apply the user's answer to the clarifying question. Do not ask further questions.",
        "Only return mode=apology if the plan cannot be applied to a software market.",
        _grounding_line(use_tools),
        RANKING_RULES,
        *EVIDENCE_RULES,
        JSON_ONLY,
        "",
        RESULTS_SCHEMA,
        "",
        f"Original input: {base_input}",
        f"Plan: {_plan_json(plan)}",
        f"User answer: {clarification or '(none)'}",
    ]
    return _with_feedback(lines, attempt, last_error)


def build_repair_prompt(
    category: str,
    company: str,
    items: List[Dict[str, Any]],
    attempt: int = 1,
    last_error: str = "",
) -> str:
    broken = "\n".join(
        f"- [{item.get('type', 'source')}] {item.get('label') or 'Source'}: {item.get('url')}" for item in items
    )
    lines = [
        "You repair broken citations in a software market report.",
        f"Company: {company}",
        f"Category: {category or 'Software Market'}",
        "Each URL below returned 404. Find a live page that supports the same claim for the same company.",
        "Use Google Search grounding and return only URLs that appear in your search results.",
        "Skip any URL you cannot replace; never invent URLs.",
        JSON_ONLY,
        "",
        REPAIR_SCHEMA,
        "",
        "Broken citations:",
        broken,
    ]
    return _with_feedback(lines, attempt, last_error)
