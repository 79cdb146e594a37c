from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

MatchRule = Literal["text", "category", "hybrid"]
DemandType = Literal["valid", "filtered"]
RangeField = Literal["created_time_ts", "message_time_ts", "last_updated_ts", "updated_at_ts"]


class DemandHints(BaseModel):
    module_codes: list[str] | str | None = None
    city: str | None = None
    is_remote: bool | None = None
    duration_text: str | None = None
    years_text: str | None = None
    language: str | None = None
    daily_rate: str | None = None
    cooperation_mode: str | None = None
    work_mode: str | None = None
    consultant_level: str | None = None
    project_cycle: str | None = None
    time_requirement: str | None = None


class DemandIngestRequest(BaseModel):
    raw_text: str = Field(min_length=1, max_length=20000)
    hints: DemandHints = Field(default_factory=DemandHints)
    source: str | None = Field(default=None, max_length=200)
    parse_missing_hints: bool = False


class RankedCandidateOut(BaseModel):
    canonical_id: str
    text_similarity: float
    category_similarity: float
    matched: bool


class MatchDiagnosticsOut(BaseModel):
    decision: Literal["matched", "none", "disabled"]
    reason: str | None = None
    rule: MatchRule
    threshold: float
    selected_canonical_id: str | None = None
    text_similarity: float | None = None
    category_similarity: float | None = None
    ranked_candidates: list[RankedCandidateOut] = Field(default_factory=list)
    candidate_pool_size: int = 0
    retrieval_field: str | None = None
    non_critical_failures: list[str] = Field(default_factory=list)


class DemandIngestOut(BaseModel):
    raw_id: str
    canonical_id: str
    created_canonical: bool
    match: MatchDiagnosticsOut


class CheckSimilarRequest(BaseModel):
    raw_text: str = Field(min_length=1, max_length=20000)
    hints: DemandHints = Field(default_factory=DemandHints)
    since_days: int = Field(default=7, ge=0, le=365)
    limit: int = Field(default=5, ge=1, le=50)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    rule: MatchRule | None = None


class SimilarCandidateOut(BaseModel):
    canonical_id: str
    raw_text: str
    text_similarity: float
    category_similarity: float
    last_updated_at: datetime | None = None
    is_same_submitter: bool = False


class CheckSimilarOut(BaseModel):
    has_similar: bool
    candidates: list[SimilarCandidateOut] = Field(default_factory=list)
    rule: MatchRule
    threshold: float
    candidate_pool_size: int = 0
    non_critical_failures: list[str] = Field(default_factory=list)


class DemandTextRequest(BaseModel):
    raw_text: str = Field(min_length=1, max_length=20000)


class ParsedDemandOut(BaseModel):
    module_codes: list[str] = Field(default_factory=list)
    city: str | None = None
    is_remote: bool | None = None
    duration_text: str | None = None
    years_text: str | None = None
    language: str | None = None
    daily_rate: str | None = None


class SplitDemandOut(BaseModel):
    has_multiple: bool
    demands: list[str] = Field(default_factory=list)


class RawPostingOut(BaseModel):
    id: str
    raw_text: str
    hints: dict[str, Any] = Field(default_factory=dict)
    submitter_id: str | None = None
    source: str | None = None
    unique_demand_id: str | None = None
    link_overridden_by: str | None = None
    link_overridden_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class CanonicalDemandOut(BaseModel):
    id: str
    local_id: int | None = None
    raw_text: str
    normalized_text: str
    attributes_json: dict[str, Any] = Field(default_factory=dict)
    canonical_raw_id: str | None = None
    canonical_raw_set_by: str | None = None
    canonical_raw_set_at: datetime | None = None
    publisher_id: str | None = None
    richness_score: int = 0
    demand_type: DemandType
    created_at: datetime
    message_time: datetime | None = None
    last_updated_at: datetime
    updated_at: datetime
    created_time_ts: int | None = None
    message_time_ts: int | None = None
    last_updated_ts: int | None = None
    updated_at_ts: int | None = None


class CanonicalDemandCountOut(BaseModel):
    count: int
    field: RangeField
    start_ts: int
    end_ts: int
    only_valid: bool
