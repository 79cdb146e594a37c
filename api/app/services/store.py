import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from app.services.repository import (
    DEMAND_TYPES,
    RANGE_FIELDS,
    RECENCY_ORDER_FIELDS,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnsupportedOrderError,
    RepositoryValidationError,
)


class InMemoryDemandRepository:
    """Process-local demand store used by tests and local runs without Postgres.

    ``indexed_order_fields`` lists the recency fields the store will order by;
    any other field raises ``RepositoryUnsupportedOrderError`` the way a
    backend without the matching index would.
    """

    def __init__(self, indexed_order_fields: tuple[str, ...] | None = None) -> None:
        self.raw_postings: dict[str, dict[str, Any]] = {}
        self.canonical_demands: dict[str, dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []
        self.similarity_config: dict[str, Any] | None = None
        self.indexed_order_fields = (
            tuple(indexed_order_fields) if indexed_order_fields is not None else RECENCY_ORDER_FIELDS
        )
        self.order_attempts: list[str | None] = []
        self._next_local_id = 1
        self._next_event_id = 1
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    async def create_raw_posting(
        self,
        *,
        raw_text: str,
        hints: dict[str, Any],
        submitter_id: str | None,
        source: str | None,
    ) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        raw_id = str(uuid4())
        row = {
            "id": raw_id,
            "raw_text": raw_text,
            "hints": dict(hints),
            "submitter_id": submitter_id,
            "source": source,
            "unique_demand_id": None,
            "link_overridden_by": None,
            "link_overridden_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self.raw_postings[raw_id] = row
        return dict(row)

    async def get_raw_posting(self, *, raw_id: str) -> dict[str, Any]:
        row = self.raw_postings.get(raw_id)
        if row is None:
            raise RepositoryNotFoundError("raw posting not found")
        return dict(row)

    async def link_raw_posting(self, *, raw_id: str, unique_demand_id: str) -> dict[str, Any]:
        row = self.raw_postings.get(raw_id)
        if row is None:
            raise RepositoryNotFoundError("raw posting not found")
        row["unique_demand_id"] = unique_demand_id
        row["updated_at"] = datetime.now(timezone.utc)
        return dict(row)

    async def override_raw_posting_link(
        self,
        *,
        raw_id: str,
        unique_demand_id: str | None,
        actor_user_id: str,
        reason: str | None,
    ) -> dict[str, Any]:
        row = self.raw_postings.get(raw_id)
        if row is None:
            raise RepositoryNotFoundError("raw posting not found")
        if unique_demand_id is not None and unique_demand_id not in self.canonical_demands:
            raise RepositoryNotFoundError("canonical demand not found")

        previous = row["unique_demand_id"]
        now = datetime.now(timezone.utc)
        row.update(
            unique_demand_id=unique_demand_id,
            link_overridden_by=actor_user_id,
            link_overridden_at=now,
            updated_at=now,
        )
        self._record_event(
            entity_type="raw_posting",
            entity_id=raw_id,
            event_type="link_overridden" if unique_demand_id else "link_cleared",
            actor_type="human",
            actor_id=actor_user_id,
            payload={
                "from_unique_demand_id": previous,
                "to_unique_demand_id": unique_demand_id,
                "reason": reason,
            },
        )
        return dict(row)

    async def create_canonical_demand(
        self,
        *,
        canonical_id: str,
        raw_text: str,
        normalized_text: str,
        attributes_json: dict[str, Any],
        canonical_raw_id: str,
        publisher_id: str | None,
        richness_score: int,
        demand_type: str,
        now: datetime,
    ) -> dict[str, Any]:
        if demand_type not in DEMAND_TYPES:
            raise RepositoryValidationError("demand_type must be one of: valid, filtered")
        if canonical_id in self.canonical_demands:
            raise RepositoryConflictError("canonical demand already exists")

        now_ts = int(now.timestamp() * 1000)
        row = {
            "id": canonical_id,
            "local_id": self._next_local_id,
            "raw_text": raw_text,
            "normalized_text": normalized_text,
            "attributes_json": dict(attributes_json),
            "canonical_raw_id": canonical_raw_id,
            "canonical_raw_set_by": None,
            "canonical_raw_set_at": None,
            "publisher_id": publisher_id,
            "richness_score": richness_score,
            "demand_type": demand_type,
            "created_at": now,
            "message_time": now,
            "last_updated_at": now,
            "updated_at": now,
            "created_time_ts": now_ts,
            "message_time_ts": now_ts,
            "last_updated_ts": now_ts,
            "updated_at_ts": now_ts,
        }
        self._next_local_id += 1
        self.canonical_demands[canonical_id] = row
        self._record_event(
            entity_type="canonical_demand",
            entity_id=canonical_id,
            event_type="created",
            actor_type="system",
            actor_id=None,
            payload={"canonical_raw_id": canonical_raw_id},
        )
        return dict(row)

    async def get_canonical_demand(self, *, canonical_id: str) -> dict[str, Any]:
        row = self.canonical_demands.get(canonical_id)
        if row is None:
            raise RepositoryNotFoundError("canonical demand not found")
        return dict(row)

    async def touch_canonical_demand(
        self,
        *,
        canonical_id: str,
        raw_id: str,
        now: datetime,
    ) -> dict[str, Any]:
        row = self.canonical_demands.get(canonical_id)
        if row is None:
            raise RepositoryNotFoundError("canonical demand not found")

        now_ts = int(now.timestamp() * 1000)
        row["last_updated_at"] = max(row["last_updated_at"], now)
        row["updated_at"] = max(row["updated_at"], now)
        row["last_updated_ts"] = max(row["last_updated_ts"], now_ts)
        row["updated_at_ts"] = max(row["updated_at_ts"], now_ts)
        if row["canonical_raw_id"] is None:
            row["canonical_raw_id"] = raw_id
        self._record_event(
            entity_type="canonical_demand",
            entity_id=canonical_id,
            event_type="matched",
            actor_type="system",
            actor_id=None,
            payload={"raw_id": raw_id},
        )
        return dict(row)

    async def set_canonical_raw(
        self,
        *,
        canonical_id: str,
        raw_id: str,
        raw_text: str,
        normalized_text: str,
        attributes_json: dict[str, Any],
        richness_score: int,
        demand_type: str,
        actor_user_id: str,
        reason: str | None,
    ) -> dict[str, Any]:
        if demand_type not in DEMAND_TYPES:
            raise RepositoryValidationError("demand_type must be one of: valid, filtered")
        row = self.canonical_demands.get(canonical_id)
        if row is None:
            raise RepositoryNotFoundError("canonical demand not found")
        if raw_id not in self.raw_postings:
            raise RepositoryNotFoundError("raw posting not found")

        previous = row["canonical_raw_id"]
        row.update(
            canonical_raw_id=raw_id,
            canonical_raw_set_by=actor_user_id,
            canonical_raw_set_at=datetime.now(timezone.utc),
            raw_text=raw_text,
            normalized_text=normalized_text,
            attributes_json=dict(attributes_json),
            richness_score=richness_score,
            demand_type=demand_type,
        )
        self._record_event(
            entity_type="canonical_demand",
            entity_id=canonical_id,
            event_type="canonical_raw_overridden",
            actor_type="human",
            actor_id=actor_user_id,
            payload={
                "from_canonical_raw_id": previous,
                "to_canonical_raw_id": raw_id,
                "reason": reason,
            },
        )
        return dict(row)

    async def list_canonical_demands(
        self,
        *,
        order_by: str | None,
        limit: int,
        since: datetime | None = None,
        only_valid: bool = False,
    ) -> list[dict[str, Any]]:
        self.order_attempts.append(order_by)
        if order_by is not None and order_by not in self.indexed_order_fields:
            raise RepositoryUnsupportedOrderError(f"cannot order canonical demands by {order_by}")

        rows = list(self.canonical_demands.values())
        if since is not None:
            rows = [row for row in rows if row["last_updated_at"] >= since]
        if only_valid:
            rows = [row for row in rows if row["demand_type"] == "valid"]
        if order_by is not None:
            rows.sort(key=lambda row: row["id"])
            rows.sort(key=lambda row: row[order_by] is None)
            rows.sort(key=lambda row: row[order_by] or 0, reverse=True)
        return [dict(row) for row in rows[:limit]]

    async def list_canonical_demands_in_range(
        self,
        *,
        start_ts: int,
        end_ts: int,
        field: str = "created_time_ts",
        only_valid: bool = False,
        descending: bool = True,
        limit: int,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = self._rows_in_range(start_ts=start_ts, end_ts=end_ts, field=field, only_valid=only_valid)
        rows.sort(key=lambda row: row["id"])
        rows.sort(key=lambda row: row[field], reverse=descending)
        return [dict(row) for row in rows[offset : offset + limit]]

    async def count_canonical_demands_in_range(
        self,
        *,
        start_ts: int,
        end_ts: int,
        field: str = "created_time_ts",
        only_valid: bool = False,
    ) -> int:
        return len(self._rows_in_range(start_ts=start_ts, end_ts=end_ts, field=field, only_valid=only_valid))

    def _rows_in_range(self, *, start_ts: int, end_ts: int, field: str, only_valid: bool) -> list[dict[str, Any]]:
        if field not in RANGE_FIELDS:
            raise RepositoryValidationError(f"range field must be one of: {', '.join(RANGE_FIELDS)}")
        return [
            row
            for row in self.canonical_demands.values()
            if row[field] is not None
            and start_ts <= row[field] < end_ts
            and (not only_valid or row["demand_type"] == "valid")
        ]

    async def list_demand_events(self, *, entity_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        matching = [dict(event) for event in self.events if event["entity_id"] == entity_id]
        return matching[offset : offset + limit]

    async def get_similarity_config(self) -> dict[str, Any] | None:
        if self.similarity_config is None:
            return None
        return dict(self.similarity_config)

    async def upsert_similarity_config(
        self,
        *,
        enabled: bool,
        rule: str,
        threshold: float,
        actor_user_id: str,
    ) -> dict[str, Any]:
        self.similarity_config = {
            "enabled": enabled,
            "rule": rule,
            "threshold": threshold,
            "updated_by": actor_user_id,
            "updated_at": datetime.now(timezone.utc),
        }
        self._record_event(
            entity_type="similarity_config",
            entity_id="global",
            event_type="updated",
            actor_type="human",
            actor_id=actor_user_id,
            payload={"enabled": enabled, "rule": rule, "threshold": threshold},
        )
        return dict(self.similarity_config)

    @asynccontextmanager
    async def exact_text_lock(self, key: int) -> AsyncIterator[None]:
        async with self._locks[key]:
            yield

    def _record_event(
        self,
        *,
        entity_type: str,
        entity_id: str,
        event_type: str,
        actor_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        self.events.append(
            {
                "id": self._next_event_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "event_type": event_type,
                "actor_type": actor_type,
                "actor_id": actor_id,
                "payload": payload,
                "created_at": datetime.now(timezone.utc),
            }
        )
        self._next_event_id += 1
