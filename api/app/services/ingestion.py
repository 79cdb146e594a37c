"""Demand ingestion and pre-submission similarity checks.

Ingestion stores the raw posting first, then either attaches it to the best
matching canonical demand or creates a new canonical demand for it, and
finally links the raw posting to whichever canonical id won.

Concurrency: without the exact-text lock two near-identical postings that
arrive together can both miss each other and create two canonical demands.
Enabling ``exact_text_lock_enabled`` serializes ingestion of postings whose
normalized text is identical; postings that are merely similar can still
race, which is accepted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from fastapi import Depends
from opentelemetry import trace

from app.core.config import Settings, get_settings
from app.services.categories import CategoryAttributes, extract_category
from app.services.dedupe import (
    CandidateSnapshot,
    MatchDecision,
    MatchRule,
    SimilarityConfig,
    evaluate_match_policy,
    normalize_rule,
    normalize_threshold,
    rank_similar_candidates,
)
from app.services.parser import merge_hints, parse_demand_text
from app.services.repository import RepositoryError, get_repository
from app.services.retrieval import CandidatePool, fetch_candidate_pool
from app.services.similarity_config import SimilarityConfigProvider, default_similarity_config
from app.services.text import canonical_demand_id, normalize_text, normalized_text_lock_key

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MIN_VALID_DEMAND_LENGTH = 10
MAX_CANDIDATE_POOL_SIZE = 500


class DemandValidationError(ValueError):
    """Raised when a posting is rejected before any storage access."""


class DemandRepository(Protocol):
    async def create_raw_posting(
        self, *, raw_text: str, hints: dict[str, Any], submitter_id: str | None, source: str | None
    ) -> dict[str, Any]: ...

    async def link_raw_posting(self, *, raw_id: str, unique_demand_id: str) -> dict[str, Any]: ...

    async def override_raw_posting_link(
        self, *, raw_id: str, unique_demand_id: str | None, actor_user_id: str, reason: str | None
    ) -> dict[str, Any]: ...

    async def create_canonical_demand(self, **kwargs: Any) -> dict[str, Any]: ...

    async def touch_canonical_demand(self, *, canonical_id: str, raw_id: str, now: datetime) -> dict[str, Any]: ...

    async def get_raw_posting(self, *, raw_id: str) -> dict[str, Any]: ...

    async def get_canonical_demand(self, *, canonical_id: str) -> dict[str, Any]: ...

    async def set_canonical_raw(self, **kwargs: Any) -> dict[str, Any]: ...

    async def list_canonical_demands(
        self, *, order_by: str | None, limit: int, since: datetime | None = None, only_valid: bool = False
    ) -> list[dict[str, Any]]: ...

    async def get_similarity_config(self) -> dict[str, Any] | None: ...

    async def upsert_similarity_config(
        self, *, enabled: bool, rule: str, threshold: float, actor_user_id: str
    ) -> dict[str, Any]: ...

    def exact_text_lock(self, key: int) -> AbstractAsyncContextManager[None]: ...


@dataclass(slots=True)
class IngestResult:
    raw_posting: dict[str, Any]
    canonical: dict[str, Any]
    created_canonical: bool
    diagnostics: dict[str, Any]


@dataclass(slots=True)
class SimilarCandidate:
    canonical_id: str
    raw_text: str
    text_similarity: float
    category_similarity: float
    last_updated_at: datetime | None
    is_same_submitter: bool


@dataclass(slots=True)
class CheckSimilarResult:
    has_similar: bool
    candidates: list[SimilarCandidate]
    rule: MatchRule
    threshold: float
    candidate_pool_size: int
    non_critical_failures: list[str] = field(default_factory=list)


def classify_demand_type(normalized_text: str, category: CategoryAttributes) -> str:
    if category.richness() == 0 and len(normalized_text) < MIN_VALID_DEMAND_LENGTH:
        return "filtered"
    return "valid"


def candidate_snapshot(row: dict[str, Any]) -> CandidateSnapshot:
    return CandidateSnapshot(
        canonical_id=row["id"],
        raw_text=row.get("raw_text") or "",
        category=extract_category(row),
        publisher_id=row.get("publisher_id"),
        last_updated_at=row.get("last_updated_at"),
    )


class DemandService:
    def __init__(
        self,
        repository: DemandRepository,
        config_provider: SimilarityConfigProvider,
        *,
        candidate_pool_size: int = 200,
        check_similar_max_limit: int = 50,
        exact_text_lock_enabled: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.config_provider = config_provider
        self.candidate_pool_size = min(MAX_CANDIDATE_POOL_SIZE, max(1, candidate_pool_size))
        self.check_similar_max_limit = max(1, check_similar_max_limit)
        self.exact_text_lock_enabled = exact_text_lock_enabled
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def ingest(
        self,
        *,
        raw_text: str | None,
        hints: dict[str, Any] | None = None,
        submitter_id: str | None = None,
        source: str | None = None,
        parse_missing_hints: bool = False,
    ) -> IngestResult:
        text = _require_text(raw_text)
        supplied_hints = _present_hints(hints)
        if parse_missing_hints:
            supplied_hints = merge_hints(supplied_hints, parse_demand_text(text))

        with tracer.start_as_current_span("demand.ingest") as span:
            config = await self.config_provider.get()
            span.set_attribute("demand.similarity.enabled", config.enabled)
            span.set_attribute("demand.similarity.rule", config.rule)

            raw_posting = await self.repository.create_raw_posting(
                raw_text=text,
                hints=supplied_hints,
                submitter_id=submitter_id,
                source=source,
            )
            raw_id = raw_posting["id"]
            normalized = normalize_text(text)
            category = extract_category(supplied_hints)

            async with self._exact_text_lock(normalized, config):
                pool = CandidatePool(rows=[], order_field=None)
                if config.enabled:
                    pool = await self._retrieve(limit=self.candidate_pool_size)
                decision = evaluate_match_policy(
                    incoming_text=text,
                    incoming_category=category,
                    candidates=[candidate_snapshot(row) for row in pool.rows],
                    config=config,
                )
                non_critical_failures = list(pool.failures)
                now = self._clock()

                if decision.decision == "matched" and decision.canonical_id is not None:
                    canonical = await self._refresh_matched(
                        pool=pool,
                        canonical_id=decision.canonical_id,
                        raw_id=raw_id,
                        now=now,
                        failures=non_critical_failures,
                    )
                    created = False
                else:
                    canonical = await self.repository.create_canonical_demand(
                        canonical_id=canonical_demand_id(normalized, raw_id),
                        raw_text=text,
                        normalized_text=normalized,
                        attributes_json=category.to_json_dict(),
                        canonical_raw_id=raw_id,
                        publisher_id=submitter_id,
                        richness_score=category.richness(),
                        demand_type=classify_demand_type(normalized, category),
                        now=now,
                    )
                    created = True

                raw_posting = await self.repository.link_raw_posting(
                    raw_id=raw_id,
                    unique_demand_id=canonical["id"],
                )

            span.set_attribute("demand.match.decision", decision.decision)
            span.set_attribute("demand.candidate_pool.size", len(pool.rows))
            logger.info(
                "demand ingested raw_id=%s canonical_id=%s created=%s decision=%s pool=%s",
                raw_id,
                canonical["id"],
                created,
                decision.decision,
                len(pool.rows),
            )
            return IngestResult(
                raw_posting=raw_posting,
                canonical=canonical,
                created_canonical=created,
                diagnostics=_match_diagnostics(decision, pool, non_critical_failures),
            )

    async def check_similar(
        self,
        *,
        raw_text: str | None,
        hints: dict[str, Any] | None = None,
        submitter_id: str | None = None,
        since_days: int = 7,
        limit: int = 5,
        threshold: float | None = None,
        rule: MatchRule | None = None,
    ) -> CheckSimilarResult:
        """Rank recent canonical demands against a draft posting without writing anything."""
        text = _require_text(raw_text)
        if since_days < 0:
            raise DemandValidationError("since_days must be >= 0")
        capped_limit = min(self.check_similar_max_limit, max(1, limit))

        with tracer.start_as_current_span("demand.check_similar") as span:
            config = await self.config_provider.get()
            effective_rule = normalize_rule(rule, config.rule) if rule is not None else config.rule
            effective_threshold = (
                normalize_threshold(threshold, config.threshold) if threshold is not None else config.threshold
            )
            since = self._clock() - timedelta(days=since_days)
            pool = await self._retrieve(limit=self.candidate_pool_size, since=since)
            ranked = rank_similar_candidates(
                incoming_text=text,
                incoming_category=extract_category(_present_hints(hints)),
                candidates=[candidate_snapshot(row) for row in pool.rows],
                rule=effective_rule,
                threshold=effective_threshold,
                limit=capped_limit,
            )
            span.set_attribute("demand.similar.count", len(ranked))

        candidates = [
            SimilarCandidate(
                canonical_id=row.canonical_id,
                raw_text=row.snapshot.raw_text,
                text_similarity=round(row.text_similarity, 4),
                category_similarity=round(row.category_similarity, 4),
                last_updated_at=row.snapshot.last_updated_at,
                is_same_submitter=submitter_id is not None and row.snapshot.publisher_id == submitter_id,
            )
            for row in ranked
        ]
        return CheckSimilarResult(
            has_similar=bool(candidates),
            candidates=candidates,
            rule=effective_rule,
            threshold=effective_threshold,
            candidate_pool_size=len(pool.rows),
            non_critical_failures=list(pool.failures),
        )

    async def admin_link_raw(
        self,
        *,
        raw_id: str,
        canonical_id: str,
        actor_user_id: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        row = await self.repository.override_raw_posting_link(
            raw_id=raw_id,
            unique_demand_id=canonical_id,
            actor_user_id=actor_user_id,
            reason=reason,
        )
        logger.info("raw posting relinked raw_id=%s canonical_id=%s actor=%s", raw_id, canonical_id, actor_user_id)
        return row

    async def admin_unlink_raw(
        self,
        *,
        raw_id: str,
        actor_user_id: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        row = await self.repository.override_raw_posting_link(
            raw_id=raw_id,
            unique_demand_id=None,
            actor_user_id=actor_user_id,
            reason=reason,
        )
        logger.info("raw posting unlinked raw_id=%s actor=%s", raw_id, actor_user_id)
        return row

    async def admin_set_canonical_raw(
        self,
        *,
        canonical_id: str,
        raw_id: str,
        actor_user_id: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Make ``raw_id`` the representative posting and adopt its text for future matching.

        Attributes are taken from the chosen posting's hints when it has any;
        otherwise the canonical demand keeps its current attributes.
        """
        canonical = await self.repository.get_canonical_demand(canonical_id=canonical_id)
        raw_posting = await self.repository.get_raw_posting(raw_id=raw_id)
        normalized = normalize_text(raw_posting["raw_text"])
        category = extract_category(raw_posting.get("hints") or {})
        if category.richness() == 0:
            category = extract_category(canonical)

        row = await self.repository.set_canonical_raw(
            canonical_id=canonical_id,
            raw_id=raw_id,
            raw_text=raw_posting["raw_text"],
            normalized_text=normalized,
            attributes_json=category.to_json_dict(),
            richness_score=category.richness(),
            demand_type=classify_demand_type(normalized, category),
            actor_user_id=actor_user_id,
            reason=reason,
        )
        logger.info(
            "canonical representative overridden canonical_id=%s raw_id=%s actor=%s",
            canonical_id,
            raw_id,
            actor_user_id,
        )
        return row

    async def _retrieve(self, *, limit: int, since: datetime | None = None) -> CandidatePool:
        with tracer.start_as_current_span("demand.retrieve_candidates") as span:
            pool = await fetch_candidate_pool(self.repository, limit=limit, since=since)
            span.set_attribute("demand.candidate_pool.order_field", pool.order_field or "unordered")
            return pool

    async def _refresh_matched(
        self,
        *,
        pool: CandidatePool,
        canonical_id: str,
        raw_id: str,
        now: datetime,
        failures: list[str],
    ) -> dict[str, Any]:
        try:
            return await self.repository.touch_canonical_demand(canonical_id=canonical_id, raw_id=raw_id, now=now)
        except RepositoryError as exc:
            failures.append(f"touch_canonical:{type(exc).__name__}")
            logger.warning("canonical refresh failed canonical_id=%s error=%s", canonical_id, exc)
        return next(row for row in pool.rows if row["id"] == canonical_id)

    def _exact_text_lock(self, normalized: str, config: SimilarityConfig) -> AbstractAsyncContextManager[Any]:
        if not (self.exact_text_lock_enabled and config.enabled and normalized):
            return nullcontext()
        return self.repository.exact_text_lock(normalized_text_lock_key(normalized))


def _require_text(raw_text: str | None) -> str:
    if raw_text is None or not raw_text.strip():
        raise DemandValidationError("raw_text is required")
    return raw_text


def _present_hints(hints: dict[str, Any] | None) -> dict[str, Any]:
    return {key: value for key, value in (hints or {}).items() if value is not None}


def _match_diagnostics(
    decision: MatchDecision,
    pool: CandidatePool,
    non_critical_failures: list[str],
) -> dict[str, Any]:
    return {
        "decision": decision.decision,
        "reason": decision.metadata.get("reason"),
        "rule": decision.metadata.get("rule"),
        "threshold": decision.metadata.get("threshold"),
        "selected_canonical_id": decision.canonical_id,
        "text_similarity": decision.text_similarity,
        "category_similarity": decision.category_similarity,
        "ranked_candidates": decision.metadata.get("ranked_candidates", []),
        "candidate_pool_size": len(pool.rows),
        "retrieval_field": pool.order_field,
        "non_critical_failures": non_critical_failures,
    }


def get_demand_service(
    repository: Any = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> DemandService:
    provider = SimilarityConfigProvider(repository, default_similarity_config(settings))
    return DemandService(
        repository,
        provider,
        candidate_pool_size=settings.candidate_pool_size,
        check_similar_max_limit=settings.check_similar_max_limit,
        exact_text_lock_enabled=settings.exact_text_lock_enabled,
    )
