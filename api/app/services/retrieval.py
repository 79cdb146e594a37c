from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from app.services.repository import RECENCY_ORDER_FIELDS, RepositoryError, RepositoryUnsupportedOrderError

logger = logging.getLogger(__name__)


class CanonicalDemandSource(Protocol):
    async def list_canonical_demands(
        self,
        *,
        order_by: str | None,
        limit: int,
        since: datetime | None = None,
        only_valid: bool = False,
    ) -> list[dict[str, Any]]: ...


@dataclass(slots=True)
class CandidatePool:
    rows: list[dict[str, Any]]
    order_field: str | None
    failures: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.failures)


async def fetch_candidate_pool(
    source: CanonicalDemandSource,
    *,
    limit: int,
    since: datetime | None = None,
) -> CandidatePool:
    """Most recent canonical demands, trying each recency field in turn.

    Falls back to an unordered read when no recency field is usable and to
    an empty pool when even that fails. Never raises for storage errors.
    """
    failures: list[str] = []
    for order_field in (*RECENCY_ORDER_FIELDS, None):
        try:
            rows = await source.list_canonical_demands(order_by=order_field, limit=limit, since=since)
        except RepositoryUnsupportedOrderError as exc:
            failures.append(f"{order_field or 'unordered'}:unsupported")
            logger.info("candidate retrieval fallback field=%s error=%s", order_field, exc)
            continue
        except (RepositoryError, OSError) as exc:
            failures.append(f"{order_field or 'unordered'}:{type(exc).__name__}")
            logger.warning("candidate retrieval failed field=%s error=%s", order_field, exc)
            continue
        return CandidatePool(rows=rows, order_field=order_field, failures=failures)

    logger.warning("candidate retrieval exhausted; treating pool as empty attempts=%s", len(failures))
    return CandidatePool(rows=[], order_field=None, failures=failures)
