from __future__ import annotations

import logging
from typing import Any, Protocol

from app.core.config import Settings
from app.services.dedupe import MatchRule, SimilarityConfig, normalize_rule, normalize_threshold
from app.services.repository import RepositoryError

logger = logging.getLogger(__name__)


class SimilarityConfigStore(Protocol):
    async def get_similarity_config(self) -> dict[str, Any] | None: ...

    async def upsert_similarity_config(
        self,
        *,
        enabled: bool,
        rule: str,
        threshold: float,
        actor_user_id: str,
    ) -> dict[str, Any]: ...


def default_similarity_config(settings: Settings) -> SimilarityConfig:
    rule = normalize_rule(settings.similarity_default_rule, "hybrid")
    return SimilarityConfig(
        enabled=settings.similarity_default_enabled,
        rule=rule,
        threshold=normalize_threshold(settings.similarity_default_threshold, 0.85),
    )


class SimilarityConfigProvider:
    """Reads and writes the process-wide similarity config.

    Reads never fail: a missing row, an unreachable store or a malformed row
    all resolve to the default. Writes are last-writer-wins.
    """

    def __init__(self, store: SimilarityConfigStore, default: SimilarityConfig) -> None:
        self._store = store
        self._default = default

    @property
    def default(self) -> SimilarityConfig:
        return self._default

    async def get(self) -> SimilarityConfig:
        try:
            row = await self._store.get_similarity_config()
        except (RepositoryError, OSError) as exc:
            logger.warning("similarity config unavailable; using default error=%s", exc)
            return self._default
        if row is None:
            return self._default
        return self._coerce(row)

    async def update(
        self,
        *,
        actor_user_id: str,
        enabled: bool | None = None,
        rule: MatchRule | None = None,
        threshold: float | None = None,
    ) -> SimilarityConfig:
        current = await self.get()
        merged = SimilarityConfig(
            enabled=current.enabled if enabled is None else enabled,
            rule=normalize_rule(rule, current.rule) if rule is not None else current.rule,
            threshold=normalize_threshold(threshold, current.threshold) if threshold is not None else current.threshold,
        )
        stored = await self._store.upsert_similarity_config(
            enabled=merged.enabled,
            rule=merged.rule,
            threshold=merged.threshold,
            actor_user_id=actor_user_id,
        )
        logger.info(
            "similarity config updated actor=%s enabled=%s rule=%s threshold=%s",
            actor_user_id,
            merged.enabled,
            merged.rule,
            merged.threshold,
        )
        return self._coerce(stored)

    def _coerce(self, row: dict[str, Any]) -> SimilarityConfig:
        enabled = row.get("enabled")
        return SimilarityConfig(
            enabled=enabled if isinstance(enabled, bool) else self._default.enabled,
            rule=normalize_rule(row.get("rule"), self._default.rule),
            threshold=normalize_threshold(row.get("threshold"), self._default.threshold),
        )
