from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


RankingBasis = Literal["market_share_revenue", "valuation", "customers", "g2_ratings_4plus"]
RANKING_BASES = ("market_share_revenue", "valuation", "customers", "g2_ratings_4plus")
Stage = Literal["results", "plan", "execute"]

MAX_METRICS = 2
MAX_SOURCES = 2

DEFAULT_APOLOGY_TITLE = "Signal Lost"
DEFAULT_APOLOGY_MESSAGE = "Sorry - I analyze software markets only."
DEFAULT_APOLOGY_HINT = "Try: CRM, payments, video conferencing."


class AnalyzeRequest(BaseModel):
    input: str = ""
    stage: Stage = "results"
    plan_id: str = ""
    conversation_id: str = ""
    plan_snapshot: str = ""

    model_config = {"extra": "ignore"}


class Apology(BaseModel):
    title: str = DEFAULT_APOLOGY_TITLE
    message: str = DEFAULT_APOLOGY_MESSAGE
    hint: str = DEFAULT_APOLOGY_HINT


class ApologyPayload(BaseModel):
    mode: Literal["apology"] = "apology"
    apology: Apology = Field(default_factory=Apology)
    debug: Optional[Dict[str, Any]] = None


class Metric(BaseModel):
    label: str
    value: Union[int, float]
    unit: str = ""
    period: Optional[str] = None
    source_name: str = "Source"
    source_url: str


class Source(BaseModel):
    name: str = "Source"
    url: str


class Company(BaseModel):
    name: str
    rank: Union[int, float] = 0
    metrics: List[Metric] = Field(default_factory=list)
    value_prop: str = ""
    sources: List[Source] = Field(default_factory=list)


class ResultsPayload(BaseModel):
    mode: Literal["results"] = "results"
    category: str = ""
    ranking_basis: Optional[RankingBasis] = None
    companies: List[Company] = Field(default_factory=list)


class PlanDetails(BaseModel):
    sources: List[str] = Field(default_factory=list)
    metrics: List[str] = Field(default_factory=list)
    approach: str = ""


class PlanPayload(BaseModel):
    mode: Literal["plan"] = "plan"
    category: str = ""
    ranking_basis: Optional[RankingBasis] = None
    plan: PlanDetails = Field(default_factory=PlanDetails)
    clarifying_question: str = ""


class PlanReview(BaseModel):
    mode: Literal["keep", "replan"] = "keep"
    reason: str = ""


class CitationReplacement(BaseModel):
    bad_url: str
    source: Source


class CitationRepair(BaseModel):
    replacements: List[CitationReplacement] = Field(default_factory=list)


ResultPayload = Union[ApologyPayload, ResultsPayload]
AnyPayload = Union[ApologyPayload, ResultsPayload, PlanPayload]


def default_apology(debug_message: Optional[str] = None) -> ApologyPayload:
    payload = ApologyPayload()
    if debug_message:
        payload.debug = {"message": debug_message}
    return payload
