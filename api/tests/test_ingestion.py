from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from app.services.dedupe import SimilarityConfig
from app.services.ingestion import DemandService, DemandValidationError
from app.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryWriteError,
)
from app.services.similarity_config import SimilarityConfigProvider
from app.services.store import InMemoryDemandRepository
from app.services.text import normalize_text, normalized_text_lock_key

POSTING_A = "Need FICO consultant, Shanghai, 3 years experience"
FICO_SHANGHAI_SHORT = "FICO consultant needed in Shanghai, 5 years"
POSTING_B = "Need FICO consultant, Shanghai, 5+ years experience"
SHANGHAI_FICO = {"module_codes": ["FICO"], "city": "Shanghai"}
BEIJING_FICO = {"module_codes": ["FICO"], "city": "Beijing"}


class SteppingClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _build_service(
    repository: InMemoryDemandRepository | None = None,
    *,
    config: dict[str, Any] | None = None,
    clock: SteppingClock | None = None,
    **kwargs: Any,
) -> tuple[DemandService, InMemoryDemandRepository]:
    repository = repository or InMemoryDemandRepository()
    if config is not None:
        repository.similarity_config = config
    provider = SimilarityConfigProvider(repository, SimilarityConfig())
    return DemandService(repository, provider, clock=clock, **kwargs), repository


def _hybrid(threshold: float = 0.8) -> dict[str, Any]:
    return {"enabled": True, "rule": "hybrid", "threshold": threshold}


def test_first_posting_creates_canonical_demand() -> None:
    service, repository = _build_service(config=_hybrid())

    result = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO, submitter_id="user-1"))

    assert result.created_canonical is True
    assert result.diagnostics["decision"] == "none"
    assert result.diagnostics["reason"] == "no_candidates"
    canonical = repository.canonical_demands[result.canonical["id"]]
    assert canonical["canonical_raw_id"] == result.raw_posting["id"]
    assert canonical["publisher_id"] == "user-1"
    assert canonical["demand_type"] == "valid"
    assert canonical["attributes_json"] == {"module_codes": ["FICO"], "city": "Shanghai"}
    assert repository.raw_postings[result.raw_posting["id"]]["unique_demand_id"] == result.canonical["id"]


def test_similar_posting_attaches_to_existing_canonical() -> None:
    clock = SteppingClock()
    service, repository = _build_service(config=_hybrid(), clock=clock)

    first = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))
    clock.advance(hours=2)
    second = asyncio.run(service.ingest(raw_text=POSTING_B, hints=SHANGHAI_FICO))

    assert second.created_canonical is False
    assert second.canonical["id"] == first.canonical["id"]
    assert second.diagnostics["decision"] == "matched"
    assert second.diagnostics["category_similarity"] == 1.0
    canonical = repository.canonical_demands[first.canonical["id"]]
    assert canonical["last_updated_at"] == clock.now
    assert canonical["created_at"] == clock.now - timedelta(hours=2)
    assert canonical["canonical_raw_id"] == first.raw_posting["id"]
    assert repository.raw_postings[second.raw_posting["id"]]["unique_demand_id"] == first.canonical["id"]
    assert len(repository.canonical_demands) == 1


def test_reworded_posting_matches_through_parsed_category() -> None:
    clock = SteppingClock()
    service, repository = _build_service(config=_hybrid(), clock=clock)

    first = asyncio.run(service.ingest(raw_text=FICO_SHANGHAI_SHORT, parse_missing_hints=True))
    clock.advance(minutes=30)
    second = asyncio.run(service.ingest(raw_text=POSTING_B, parse_missing_hints=True))

    assert first.created_canonical is True
    assert first.canonical["canonical_raw_id"] == first.raw_posting["id"]
    assert second.created_canonical is False
    assert second.canonical["id"] == first.canonical["id"]
    assert second.diagnostics["text_similarity"] < 0.8
    assert second.diagnostics["category_similarity"] >= 0.8
    canonical = repository.canonical_demands[first.canonical["id"]]
    assert canonical["canonical_raw_id"] == first.raw_posting["id"]
    assert canonical["last_updated_at"] == clock.now


def test_reworded_posting_matches_with_supplied_hints() -> None:
    service, repository = _build_service(config=_hybrid())

    first = asyncio.run(service.ingest(raw_text=FICO_SHANGHAI_SHORT, hints=SHANGHAI_FICO))
    second = asyncio.run(service.ingest(raw_text=POSTING_B, hints=SHANGHAI_FICO))

    assert second.canonical["id"] == first.canonical["id"]
    assert second.diagnostics["category_similarity"] == 1.0
    assert repository.canonical_demands[first.canonical["id"]]["canonical_raw_id"] == first.raw_posting["id"]


def test_reworded_posting_without_any_hints_stays_separate() -> None:
    service, repository = _build_service(config=_hybrid())

    first = asyncio.run(service.ingest(raw_text=FICO_SHANGHAI_SHORT))
    second = asyncio.run(service.ingest(raw_text=POSTING_B))

    assert second.canonical["id"] != first.canonical["id"]
    assert second.diagnostics["reason"] == "below_threshold"
    assert second.diagnostics["ranked_candidates"][0]["category_similarity"] == 0.0
    assert len(repository.canonical_demands) == 2


def test_city_conflict_with_identical_text_matches_through_text_under_hybrid() -> None:
    service, repository = _build_service(config=_hybrid())

    first = asyncio.run(service.ingest(raw_text=POSTING_B, hints=SHANGHAI_FICO))
    result = asyncio.run(service.ingest(raw_text=POSTING_B, hints=BEIJING_FICO))

    assert result.created_canonical is False
    assert result.canonical["id"] == first.canonical["id"]
    assert result.diagnostics["text_similarity"] == 1.0
    assert result.diagnostics["category_similarity"] == 0.0


def test_city_conflict_with_reworded_text_creates_new_canonical_under_hybrid() -> None:
    service, repository = _build_service(config=_hybrid())

    first = asyncio.run(service.ingest(raw_text=FICO_SHANGHAI_SHORT, parse_missing_hints=True))
    result = asyncio.run(service.ingest(raw_text=POSTING_B, hints={"city": "Beijing"}, parse_missing_hints=True))

    assert result.created_canonical is True
    assert result.canonical["id"] != first.canonical["id"]
    assert result.diagnostics["ranked_candidates"][0]["category_similarity"] == 0.0
    assert result.diagnostics["ranked_candidates"][0]["text_similarity"] < 0.8


def test_city_conflict_never_matches_under_category_rule() -> None:
    service, repository = _build_service(config={"enabled": True, "rule": "category", "threshold": 0.5})

    first = asyncio.run(service.ingest(raw_text=POSTING_B, hints=SHANGHAI_FICO))
    result = asyncio.run(service.ingest(raw_text=POSTING_B, hints=BEIJING_FICO))

    assert result.created_canonical is True
    assert result.canonical["id"] != first.canonical["id"]
    assert result.diagnostics["ranked_candidates"][0]["category_similarity"] == 0.0


def test_disabled_similarity_keeps_identical_postings_apart() -> None:
    service, repository = _build_service(config={"enabled": False, "rule": "hybrid", "threshold": 0.85})

    first = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))
    second = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))

    assert first.raw_posting["id"] != second.raw_posting["id"]
    assert first.canonical["id"] != second.canonical["id"]
    assert second.diagnostics["decision"] == "disabled"
    assert second.diagnostics["candidate_pool_size"] == 0
    assert len(repository.canonical_demands) == 2


def test_blank_text_is_rejected_before_storage() -> None:
    service, repository = _build_service()

    with pytest.raises(DemandValidationError):
        asyncio.run(service.ingest(raw_text="   \n", hints=SHANGHAI_FICO))

    assert repository.raw_postings == {}


def test_canonical_write_failure_is_surfaced(monkeypatch: pytest.MonkeyPatch) -> None:
    service, repository = _build_service()

    async def _fail(**_: Any) -> dict[str, Any]:
        raise RepositoryWriteError("canonical demand could not be created")

    monkeypatch.setattr(repository, "create_canonical_demand", _fail)

    with pytest.raises(RepositoryWriteError):
        asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))

    assert repository.canonical_demands == {}
    assert all(row["unique_demand_id"] is None for row in repository.raw_postings.values())


def test_refresh_failure_on_match_is_reported_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    service, repository = _build_service(config=_hybrid())
    first = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))

    async def _fail(**_: Any) -> dict[str, Any]:
        raise RepositoryWriteError("canonical demand could not be refreshed")

    monkeypatch.setattr(repository, "touch_canonical_demand", _fail)

    result = asyncio.run(service.ingest(raw_text=POSTING_B, hints=SHANGHAI_FICO))

    assert result.canonical["id"] == first.canonical["id"]
    assert result.diagnostics["non_critical_failures"] == ["touch_canonical:RepositoryWriteError"]
    assert repository.raw_postings[result.raw_posting["id"]]["unique_demand_id"] == first.canonical["id"]


def test_config_outage_uses_default_config(monkeypatch: pytest.MonkeyPatch) -> None:
    service, repository = _build_service()

    async def _unavailable() -> dict[str, Any] | None:
        raise RepositoryUnavailableError("database unavailable")

    monkeypatch.setattr(repository, "get_similarity_config", _unavailable)

    asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))
    result = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))

    assert result.diagnostics["rule"] == "hybrid"
    assert result.diagnostics["threshold"] == 0.85
    assert result.created_canonical is False


def test_missing_recency_indexes_degrade_to_unordered_pool() -> None:
    repository = InMemoryDemandRepository(indexed_order_fields=())
    service, _ = _build_service(repository, config=_hybrid())

    first = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))
    result = asyncio.run(service.ingest(raw_text=POSTING_B, hints=SHANGHAI_FICO))

    assert result.canonical["id"] == first.canonical["id"]
    assert result.diagnostics["retrieval_field"] is None
    assert len(result.diagnostics["non_critical_failures"]) == 4


def test_parse_missing_hints_fills_blank_fields() -> None:
    service, repository = _build_service()

    result = asyncio.run(
        service.ingest(
            raw_text="需要FICO顾问，上海，5年以上经验",
            hints={"city": "北京"},
            parse_missing_hints=True,
        )
    )

    stored = repository.raw_postings[result.raw_posting["id"]]["hints"]
    assert stored["city"] == "北京"
    assert "FICO" in stored["module_codes"]
    assert stored["years_text"] == "5年以上"


def test_short_posting_without_attributes_is_filtered() -> None:
    service, repository = _build_service()

    result = asyncio.run(service.ingest(raw_text="谢谢大家"))

    assert result.canonical["demand_type"] == "filtered"
    assert result.canonical["richness_score"] == 0


def test_exact_text_lock_serializes_identical_postings() -> None:
    service, repository = _build_service(config=_hybrid(), exact_text_lock_enabled=True)

    async def _ingest_twice() -> list[Any]:
        return await asyncio.gather(
            service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO),
            service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO),
        )

    results = asyncio.run(_ingest_twice())

    assert len(repository.canonical_demands) == 1
    assert {result.canonical["id"] for result in results} == set(repository.canonical_demands)
    assert normalized_text_lock_key(normalize_text(POSTING_A)) in repository._locks


def test_check_similar_flags_same_submitter_without_writing() -> None:
    service, repository = _build_service(config=_hybrid())
    asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO, submitter_id="user-1"))
    raw_count = len(repository.raw_postings)
    event_count = len(repository.events)

    result = asyncio.run(
        service.check_similar(raw_text=POSTING_B, hints=SHANGHAI_FICO, submitter_id="user-1")
    )

    assert result.has_similar is True
    assert result.candidates[0].is_same_submitter is True
    assert result.candidates[0].category_similarity == 1.0
    assert len(repository.raw_postings) == raw_count
    assert len(repository.events) == event_count


def test_check_similar_ignores_stale_canonicals() -> None:
    clock = SteppingClock()
    service, repository = _build_service(config=_hybrid(), clock=clock)
    asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))
    clock.advance(days=10)

    result = asyncio.run(service.check_similar(raw_text=POSTING_A, hints=SHANGHAI_FICO, since_days=7))

    assert result.has_similar is False
    assert result.candidate_pool_size == 0


def test_check_similar_applies_overrides_even_when_disabled() -> None:
    service, repository = _build_service(config={"enabled": True, "rule": "hybrid", "threshold": 0.85})
    asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))
    repository.similarity_config = {"enabled": False, "rule": "hybrid", "threshold": 0.85}

    result = asyncio.run(
        service.check_similar(raw_text=POSTING_B, hints=BEIJING_FICO, rule="category", threshold=0.5)
    )

    assert result.rule == "category"
    assert result.threshold == 0.5
    assert result.has_similar is False


def test_admin_link_requires_existing_canonical() -> None:
    service, repository = _build_service()
    result = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(
            service.admin_link_raw(
                raw_id=result.raw_posting["id"],
                canonical_id="missing",
                actor_user_id="admin-1",
            )
        )


def test_admin_overrides_record_actor_and_events() -> None:
    service, repository = _build_service(config={"enabled": False, "rule": "hybrid", "threshold": 0.85})
    first = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))
    second = asyncio.run(service.ingest(raw_text=POSTING_B, hints=SHANGHAI_FICO))

    linked = asyncio.run(
        service.admin_link_raw(
            raw_id=second.raw_posting["id"],
            canonical_id=first.canonical["id"],
            actor_user_id="admin-1",
            reason="same demand",
        )
    )
    canonical = asyncio.run(
        service.admin_set_canonical_raw(
            canonical_id=first.canonical["id"],
            raw_id=second.raw_posting["id"],
            actor_user_id="admin-1",
        )
    )
    unlinked = asyncio.run(service.admin_unlink_raw(raw_id=first.raw_posting["id"], actor_user_id="admin-2"))

    assert linked["unique_demand_id"] == first.canonical["id"]
    assert linked["link_overridden_by"] == "admin-1"
    assert canonical["canonical_raw_id"] == second.raw_posting["id"]
    assert canonical["canonical_raw_set_by"] == "admin-1"
    assert unlinked["unique_demand_id"] is None
    event_types = [event["event_type"] for event in repository.events]
    assert event_types[-3:] == ["link_overridden", "canonical_raw_overridden", "link_cleared"]


def test_admin_representative_survives_later_matches() -> None:
    service, repository = _build_service(config=_hybrid())
    first = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))
    second = asyncio.run(service.ingest(raw_text=POSTING_B, hints=SHANGHAI_FICO))
    asyncio.run(
        service.admin_set_canonical_raw(
            canonical_id=first.canonical["id"],
            raw_id=second.raw_posting["id"],
            actor_user_id="admin-1",
        )
    )

    third = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))

    assert third.canonical["id"] == first.canonical["id"]
    assert repository.canonical_demands[first.canonical["id"]]["canonical_raw_id"] == second.raw_posting["id"]
    canonical = repository.canonical_demands[first.canonical["id"]]
    assert canonical["raw_text"] == POSTING_B
    assert canonical["normalized_text"] == normalize_text(POSTING_B)


def test_admin_representative_text_drives_later_matching() -> None:
    service, repository = _build_service(config={"enabled": False, "rule": "text", "threshold": 0.9})
    spam = asyncio.run(service.ingest(raw_text="spam text short"))
    real = asyncio.run(service.ingest(raw_text=POSTING_B, hints=SHANGHAI_FICO))
    assert spam.canonical["demand_type"] == "valid"

    updated = asyncio.run(
        service.admin_set_canonical_raw(
            canonical_id=spam.canonical["id"],
            raw_id=real.raw_posting["id"],
            actor_user_id="admin-1",
        )
    )
    repository.similarity_config = {"enabled": True, "rule": "text", "threshold": 0.9}
    check = asyncio.run(service.check_similar(raw_text=POSTING_B))

    assert updated["raw_text"] == POSTING_B
    assert updated["normalized_text"] == normalize_text(POSTING_B)
    assert updated["attributes_json"] == {"module_codes": ["FICO"], "city": "Shanghai"}
    assert updated["richness_score"] == 2
    assert {row.canonical_id for row in check.candidates} == {spam.canonical["id"], real.canonical["id"]}
    assert all(row.raw_text == POSTING_B and row.text_similarity == 1.0 for row in check.candidates)


def test_admin_representative_without_hints_keeps_existing_attributes() -> None:
    service, repository = _build_service(config={"enabled": False, "rule": "hybrid", "threshold": 0.85})
    first = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))
    second = asyncio.run(service.ingest(raw_text=POSTING_B))

    updated = asyncio.run(
        service.admin_set_canonical_raw(
            canonical_id=first.canonical["id"],
            raw_id=second.raw_posting["id"],
            actor_user_id="admin-1",
        )
    )

    assert updated["raw_text"] == POSTING_B
    assert updated["attributes_json"] == {"module_codes": ["FICO"], "city": "Shanghai"}


def test_admin_representative_requires_existing_raw_posting() -> None:
    service, repository = _build_service()
    first = asyncio.run(service.ingest(raw_text=POSTING_A, hints=SHANGHAI_FICO))

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(
            service.admin_set_canonical_raw(
                canonical_id=first.canonical["id"],
                raw_id="missing",
                actor_user_id="admin-1",
            )
        )

    assert repository.canonical_demands[first.canonical["id"]]["raw_text"] == POSTING_A
