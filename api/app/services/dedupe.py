from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from app.services.categories import CategoryAttributes, category_similarity
from app.services.text import text_similarity

MatchRule = Literal["text", "category", "hybrid"]
MatchOutcome = Literal["matched", "none", "disabled"]

MATCH_RULES: tuple[MatchRule, ...] = ("text", "category", "hybrid")
THRESHOLD_MIN = 0.5
THRESHOLD_MAX = 0.99


@dataclass(slots=True, frozen=True)
class SimilarityConfig:
    enabled: bool = True
    rule: MatchRule = "hybrid"
    threshold: float = 0.85

    def as_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "rule": self.rule, "threshold": self.threshold}


@dataclass(slots=True)
class CandidateSnapshot:
    canonical_id: str
    raw_text: str
    category: CategoryAttributes
    publisher_id: str | None = None
    last_updated_at: datetime | None = None


@dataclass(slots=True)
class CandidateScore:
    canonical_id: str
    text_similarity: float
    category_similarity: float
    matched: bool
    snapshot: CandidateSnapshot


@dataclass(slots=True)
class MatchDecision:
    decision: MatchOutcome
    canonical_id: str | None
    text_similarity: float | None
    category_similarity: float | None
    metadata: dict[str, Any] = field(default_factory=dict)


def normalize_threshold(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return min(THRESHOLD_MAX, max(THRESHOLD_MIN, float(value)))


def normalize_rule(value: Any, default: MatchRule) -> MatchRule:
    if isinstance(value, str) and value.strip().lower() in MATCH_RULES:
        return value.strip().lower()  # type: ignore[return-value]
    return default


def rule_accepts(*, rule: MatchRule, threshold: float, text_score: float, category_score: float) -> bool:
    if rule == "text":
        return text_score >= threshold
    if rule == "category":
        return category_score >= threshold
    return category_score >= threshold or text_score >= threshold


def score_candidates(
    *,
    incoming_text: str,
    incoming_category: CategoryAttributes,
    candidates: list[CandidateSnapshot],
    rule: MatchRule,
    threshold: float,
) -> list[CandidateScore]:
    """Score every candidate and order them best-first.

    Order is category score, then text score, both descending, then
    canonical id ascending so equal scores always resolve the same way.
    """
    scores: list[CandidateScore] = []
    for candidate in candidates:
        text_score = text_similarity(incoming_text, candidate.raw_text)
        category_score = category_similarity(incoming_category, candidate.category)
        scores.append(
            CandidateScore(
                canonical_id=candidate.canonical_id,
                text_similarity=text_score,
                category_similarity=category_score,
                matched=rule_accepts(
                    rule=rule,
                    threshold=threshold,
                    text_score=text_score,
                    category_score=category_score,
                ),
                snapshot=candidate,
            )
        )
    return sorted(scores, key=lambda row: (-row.category_similarity, -row.text_similarity, row.canonical_id))


def evaluate_match_policy(
    *,
    incoming_text: str,
    incoming_category: CategoryAttributes,
    candidates: list[CandidateSnapshot],
    config: SimilarityConfig,
) -> MatchDecision:
    if not config.enabled:
        return MatchDecision(
            decision="disabled",
            canonical_id=None,
            text_similarity=None,
            category_similarity=None,
            metadata={"reason": "similarity_disabled", **_config_metadata(config)},
        )

    if not candidates:
        return MatchDecision(
            decision="none",
            canonical_id=None,
            text_similarity=None,
            category_similarity=None,
            metadata={"reason": "no_candidates", **_config_metadata(config)},
        )

    ranked = score_candidates(
        incoming_text=incoming_text,
        incoming_category=incoming_category,
        candidates=candidates,
        rule=config.rule,
        threshold=config.threshold,
    )
    matching = [row for row in ranked if row.matched]
    best = matching[0] if matching else None

    metadata: dict[str, Any] = {
        **_config_metadata(config),
        "reason": "matched" if best else "below_threshold",
        "ranked_candidates": [
            {
                "canonical_id": row.canonical_id,
                "text_similarity": round(row.text_similarity, 4),
                "category_similarity": round(row.category_similarity, 4),
                "matched": row.matched,
            }
            for row in ranked[:3]
        ],
    }
    if best is None:
        return MatchDecision(
            decision="none",
            canonical_id=None,
            text_similarity=None,
            category_similarity=None,
            metadata=metadata,
        )

    return MatchDecision(
        decision="matched",
        canonical_id=best.canonical_id,
        text_similarity=round(best.text_similarity, 4),
        category_similarity=round(best.category_similarity, 4),
        metadata=metadata,
    )


def rank_similar_candidates(
    *,
    incoming_text: str,
    incoming_category: CategoryAttributes,
    candidates: list[CandidateSnapshot],
    rule: MatchRule,
    threshold: float,
    limit: int,
) -> list[CandidateScore]:
    """Best-first candidates that clear ``threshold`` under ``rule``, capped at ``limit``."""
    ranked = score_candidates(
        incoming_text=incoming_text,
        incoming_category=incoming_category,
        candidates=candidates,
        rule=rule,
        threshold=threshold,
    )
    return [row for row in ranked if row.matched][: max(0, limit)]


def _config_metadata(config: SimilarityConfig) -> dict[str, Any]:
    return {"rule": config.rule, "threshold": config.threshold, "enabled": config.enabled}
