from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

MatchRule = Literal["text", "category", "hybrid"]


class SimilarityConfigOut(BaseModel):
    enabled: bool
    rule: MatchRule
    threshold: float


class SimilarityConfigPatchRequest(BaseModel):
    enabled: bool | None = None
    rule: MatchRule | None = None
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class RawLinkRequest(BaseModel):
    canonical_id: str = Field(min_length=1)
    reason: str | None = None


class CanonicalRawRequest(BaseModel):
    raw_id: str = Field(min_length=1)
    reason: str | None = None


class DemandEventOut(BaseModel):
    id: int
    entity_type: str
    entity_id: str | None = None
    event_type: str
    actor_type: str
    actor_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
