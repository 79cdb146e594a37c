from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from app.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation conflicts with the stored state."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class RepositoryWriteError(RepositoryError):
    """Raised when a create or update could not be persisted."""


class RepositoryUnsupportedOrderError(RepositoryError):
    """Raised when the store cannot order by the requested recency field."""


SIMILARITY_CONFIG_KEY = "global"
# Highest priority first; local_id is insertion order.
RECENCY_ORDER_FIELDS = ("last_updated_ts", "message_time_ts", "created_time_ts", "local_id")
DEMAND_TYPES = {"valid", "filtered"}
RANGE_FIELDS = ("created_time_ts", "message_time_ts", "last_updated_ts", "updated_at_ts")

# TimeoutError is an OSError, which covers command and acquire timeouts.
_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

_CANONICAL_COLUMNS = """
  id,
  local_id,
  raw_text,
  normalized_text,
  attributes_json,
  canonical_raw_id::text as canonical_raw_id,
  canonical_raw_set_by,
  canonical_raw_set_at,
  publisher_id,
  richness_score,
  demand_type,
  created_at,
  message_time,
  last_updated_at,
  updated_at,
  created_time_ts,
  message_time_ts,
  last_updated_ts,
  updated_at_ts
"""

_RAW_COLUMNS = """
  id::text as id,
  raw_text,
  hints,
  submitter_id,
  source,
  unique_demand_id,
  link_overridden_by,
  link_overridden_at,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        acquire_timeout: float = 10.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max(2, max_pool_size)
        self.acquire_timeout = acquire_timeout
        self._pool: asyncpg.Pool | None = None
        # Advisory-lock holders pin a connection each; at least one stays free for the work inside the lock.
        self._lock_slots = asyncio.Semaphore(self.max_pool_size - 1)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> None:
        pool = await self._get_pool()
        try:
            await pool.fetchval("select 1")
        except _DRIVER_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def create_raw_posting(
        self,
        *,
        raw_text: str,
        hints: dict[str, Any],
        submitter_id: str | None,
        source: str | None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into raw_postings (raw_text, hints, submitter_id, source)
                values ($1, $2::jsonb, $3, $4)
                returning {_RAW_COLUMNS}
                """,
                raw_text,
                json.dumps(hints, ensure_ascii=False),
                submitter_id,
                source,
            )
        except _DRIVER_ERRORS as exc:
            raise RepositoryWriteError("raw posting could not be stored") from exc
        return self._raw_row_to_dict(row)

    async def get_raw_posting(self, *, raw_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_RAW_COLUMNS} from raw_postings where id = $1::uuid",
                raw_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("raw posting not found") from exc
        except _DRIVER_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        if not row:
            raise RepositoryNotFoundError("raw posting not found")
        return self._raw_row_to_dict(row)

    async def link_raw_posting(self, *, raw_id: str, unique_demand_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update raw_postings
                set unique_demand_id = $2, updated_at = now()
                where id = $1::uuid
                returning {_RAW_COLUMNS}
                """,
                raw_id,
                unique_demand_id,
            )
        except _DRIVER_ERRORS as exc:
            raise RepositoryWriteError("raw posting could not be linked") from exc
        if not row:
            raise RepositoryNotFoundError("raw posting not found")
        return self._raw_row_to_dict(row)

    async def override_raw_posting_link(
        self,
        *,
        raw_id: str,
        unique_demand_id: str | None,
        actor_user_id: str,
        reason: str | None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire(timeout=self.acquire_timeout) as conn:
                async with conn.transaction():
                    existing = await conn.fetchrow(
                        "select unique_demand_id from raw_postings where id = $1::uuid for update",
                        raw_id,
                    )
                    if not existing:
                        raise RepositoryNotFoundError("raw posting not found")

                    if unique_demand_id is not None:
                        has_canonical = await conn.fetchval(
                            "select 1 from canonical_demands where id = $1",
                            unique_demand_id,
                        )
                        if not has_canonical:
                            raise RepositoryNotFoundError("canonical demand not found")

                    row = await conn.fetchrow(
                        f"""
                        update raw_postings
                        set
                          unique_demand_id = $2,
                          link_overridden_by = $3,
                          link_overridden_at = now(),
                          updated_at = now()
                        where id = $1::uuid
                        returning {_RAW_COLUMNS}
                        """,
                        raw_id,
                        unique_demand_id,
                        actor_user_id,
                    )
                    await self._record_demand_event(
                        conn=conn,
                        entity_type="raw_posting",
                        entity_id=raw_id,
                        event_type="link_overridden" if unique_demand_id else "link_cleared",
                        actor_type="human",
                        actor_id=actor_user_id,
                        payload={
                            "from_unique_demand_id": existing["unique_demand_id"],
                            "to_unique_demand_id": unique_demand_id,
                            "reason": reason,
                        },
                    )
                    return self._raw_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("raw posting not found") from exc
        except _DRIVER_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

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

        now_ts = _epoch_millis(now)
        pool = await self._get_pool()
        try:
            async with pool.acquire(timeout=self.acquire_timeout) as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        insert into canonical_demands (
                          id,
                          raw_text,
                          normalized_text,
                          attributes_json,
                          canonical_raw_id,
                          publisher_id,
                          richness_score,
                          demand_type,
                          created_at,
                          message_time,
                          last_updated_at,
                          updated_at,
                          created_time_ts,
                          message_time_ts,
                          last_updated_ts,
                          updated_at_ts
                        )
                        values ($1, $2, $3, $4::jsonb, $5::uuid, $6, $7, $8, $9, $9, $9, $9, $10, $10, $10, $10)
                        returning {_CANONICAL_COLUMNS}
                        """,
                        canonical_id,
                        raw_text,
                        normalized_text,
                        json.dumps(attributes_json, ensure_ascii=False),
                        canonical_raw_id,
                        publisher_id,
                        richness_score,
                        demand_type,
                        now,
                        now_ts,
                    )
                    await self._record_demand_event(
                        conn=conn,
                        entity_type="canonical_demand",
                        entity_id=canonical_id,
                        event_type="created",
                        actor_type="system",
                        actor_id=None,
                        payload={"canonical_raw_id": canonical_raw_id},
                    )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("canonical demand already exists") from exc
        except _DRIVER_ERRORS as exc:
            raise RepositoryWriteError("canonical demand could not be created") from exc
        return self._canonical_row_to_dict(row)

    async def get_canonical_demand(self, *, canonical_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_CANONICAL_COLUMNS} from canonical_demands where id = $1",
                canonical_id,
            )
        except _DRIVER_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        if not row:
            raise RepositoryNotFoundError("canonical demand not found")
        return self._canonical_row_to_dict(row)

    async def touch_canonical_demand(
        self,
        *,
        canonical_id: str,
        raw_id: str,
        now: datetime,
    ) -> dict[str, Any]:
        now_ts = _epoch_millis(now)
        pool = await self._get_pool()
        try:
            async with pool.acquire(timeout=self.acquire_timeout) as conn:
                async with conn.transaction():
                    # greatest() keeps last_updated monotonic under out-of-order writers;
                    # coalesce() never replaces a representative that is already set.
                    row = await conn.fetchrow(
                        f"""
                        update canonical_demands
                        set
                          last_updated_at = greatest(last_updated_at, $3),
                          updated_at = greatest(updated_at, $3),
                          last_updated_ts = greatest(last_updated_ts, $4),
                          updated_at_ts = greatest(updated_at_ts, $4),
                          canonical_raw_id = coalesce(canonical_raw_id, $2::uuid)
                        where id = $1
                        returning {_CANONICAL_COLUMNS}
                        """,
                        canonical_id,
                        raw_id,
                        now,
                        now_ts,
                    )
                    if not row:
                        raise RepositoryNotFoundError("canonical demand not found")
                    await self._record_demand_event(
                        conn=conn,
                        entity_type="canonical_demand",
                        entity_id=canonical_id,
                        event_type="matched",
                        actor_type="system",
                        actor_id=None,
                        payload={"raw_id": raw_id},
                    )
        except RepositoryError:
            raise
        except _DRIVER_ERRORS as exc:
            raise RepositoryWriteError("canonical demand could not be refreshed") from exc
        return self._canonical_row_to_dict(row)

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

        pool = await self._get_pool()
        try:
            async with pool.acquire(timeout=self.acquire_timeout) as conn:
                async with conn.transaction():
                    existing = await conn.fetchrow(
                        "select canonical_raw_id::text as canonical_raw_id from canonical_demands where id = $1 for update",
                        canonical_id,
                    )
                    if not existing:
                        raise RepositoryNotFoundError("canonical demand not found")

                    has_raw = await conn.fetchval("select 1 from raw_postings where id = $1::uuid", raw_id)
                    if not has_raw:
                        raise RepositoryNotFoundError("raw posting not found")

                    row = await conn.fetchrow(
                        f"""
                        update canonical_demands
                        set
                          canonical_raw_id = $2::uuid,
                          canonical_raw_set_by = $3,
                          canonical_raw_set_at = now(),
                          raw_text = $4,
                          normalized_text = $5,
                          attributes_json = $6::jsonb,
                          richness_score = $7,
                          demand_type = $8
                        where id = $1
                        returning {_CANONICAL_COLUMNS}
                        """,
                        canonical_id,
                        raw_id,
                        actor_user_id,
                        raw_text,
                        normalized_text,
                        json.dumps(attributes_json, ensure_ascii=False),
                        richness_score,
                        demand_type,
                    )
                    await self._record_demand_event(
                        conn=conn,
                        entity_type="canonical_demand",
                        entity_id=canonical_id,
                        event_type="canonical_raw_overridden",
                        actor_type="human",
                        actor_id=actor_user_id,
                        payload={
                            "from_canonical_raw_id": existing["canonical_raw_id"],
                            "to_canonical_raw_id": raw_id,
                            "reason": reason,
                        },
                    )
                    return self._canonical_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("raw posting not found") from exc
        except _DRIVER_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def list_canonical_demands(
        self,
        *,
        order_by: str | None,
        limit: int,
        since: datetime | None = None,
        only_valid: bool = False,
    ) -> list[dict[str, Any]]:
        if order_by is not None and order_by not in RECENCY_ORDER_FIELDS:
            raise RepositoryUnsupportedOrderError(f"unsupported order field: {order_by}")

        clauses: list[str] = []
        params: list[Any] = []
        if since is not None:
            params.append(since)
            clauses.append(f"last_updated_at >= ${len(params)}")
        if only_valid:
            clauses.append("demand_type = 'valid'")
        where_sql = f"where {' and '.join(clauses)}" if clauses else ""
        order_sql = f"order by {order_by} desc nulls last, id asc" if order_by else ""
        params.append(limit)

        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_CANONICAL_COLUMNS}
                from canonical_demands
                {where_sql}
                {order_sql}
                limit ${len(params)}
                """,
                *params,
            )
        except (pg_exc.UndefinedColumnError, pg_exc.QueryCanceledError) as exc:
            raise RepositoryUnsupportedOrderError(f"cannot order canonical demands by {order_by}") from exc
        except _DRIVER_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        return [self._canonical_row_to_dict(row) for row in rows]

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
        where_sql = _range_where_sql(field, only_valid)
        direction = "desc" if descending else "asc"
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_CANONICAL_COLUMNS}
                from canonical_demands
                {where_sql}
                order by {field} {direction}, id asc
                limit $3
                offset $4
                """,
                start_ts,
                end_ts,
                limit,
                offset,
            )
        except _DRIVER_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        return [self._canonical_row_to_dict(row) for row in rows]

    async def count_canonical_demands_in_range(
        self,
        *,
        start_ts: int,
        end_ts: int,
        field: str = "created_time_ts",
        only_valid: bool = False,
    ) -> int:
        where_sql = _range_where_sql(field, only_valid)
        pool = await self._get_pool()
        try:
            count = await pool.fetchval(f"select count(*) from canonical_demands {where_sql}", start_ts, end_ts)
        except _DRIVER_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        return int(count or 0)

    async def list_demand_events(self, *, entity_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select
                  id,
                  entity_type,
                  entity_id,
                  event_type,
                  actor_type,
                  actor_id,
                  payload,
                  created_at
                from demand_events
                where entity_id = $1
                order by created_at asc, id asc
                limit $2
                offset $3
                """,
                entity_id,
                limit,
                offset,
            )
        except _DRIVER_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        return [
            {
                "id": row["id"],
                "entity_type": row["entity_type"],
                "entity_id": row["entity_id"],
                "event_type": row["event_type"],
                "actor_type": row["actor_type"],
                "actor_id": row["actor_id"],
                "payload": self._coerce_json_dict(row["payload"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def get_similarity_config(self) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select enabled, rule, threshold, updated_by, updated_at
                from similarity_config
                where config_key = $1
                """,
                SIMILARITY_CONFIG_KEY,
            )
        except _DRIVER_ERRORS as exc:
            raise RepositoryUnavailableError("similarity config unavailable") from exc
        if not row:
            return None
        return dict(row)

    async def upsert_similarity_config(
        self,
        *,
        enabled: bool,
        rule: str,
        threshold: float,
        actor_user_id: str,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire(timeout=self.acquire_timeout) as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        insert into similarity_config (config_key, enabled, rule, threshold, updated_by, updated_at)
                        values ($1, $2, $3, $4, $5, now())
                        on conflict (config_key)
                        do update set
                          enabled = excluded.enabled,
                          rule = excluded.rule,
                          threshold = excluded.threshold,
                          updated_by = excluded.updated_by,
                          updated_at = excluded.updated_at
                        returning enabled, rule, threshold, updated_by, updated_at
                        """,
                        SIMILARITY_CONFIG_KEY,
                        enabled,
                        rule,
                        threshold,
                        actor_user_id,
                    )
                    await self._record_demand_event(
                        conn=conn,
                        entity_type="similarity_config",
                        entity_id=SIMILARITY_CONFIG_KEY,
                        event_type="updated",
                        actor_type="human",
                        actor_id=actor_user_id,
                        payload={"enabled": enabled, "rule": rule, "threshold": threshold},
                    )
        except _DRIVER_ERRORS as exc:
            raise RepositoryWriteError("similarity config could not be saved") from exc
        return dict(row)

    @asynccontextmanager
    async def exact_text_lock(self, key: int) -> AsyncIterator[None]:
        pool = await self._get_pool()
        async with self._lock_slots:
            try:
                conn = await pool.acquire(timeout=self.acquire_timeout)
            except _DRIVER_ERRORS as exc:
                raise RepositoryUnavailableError("no connection free for the exact-text lock") from exc
            try:
                try:
                    await conn.execute("select pg_advisory_lock($1)", key)
                except _DRIVER_ERRORS as exc:
                    raise RepositoryUnavailableError("exact-text lock unavailable") from exc
                try:
                    yield
                finally:
                    await conn.execute("select pg_advisory_unlock($1)", key)
            finally:
                await pool.release(conn)

    async def _record_demand_event(
        self,
        *,
        conn: asyncpg.Connection,
        entity_type: str,
        entity_id: str,
        event_type: str,
        actor_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into demand_events (
              entity_type,
              entity_id,
              event_type,
              actor_type,
              actor_id,
              payload
            )
            values ($1, $2, $3, $4, $5, $6::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            actor_type,
            actor_id,
            json.dumps(payload, ensure_ascii=False),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("DD_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _raw_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "raw_text": row["raw_text"],
            "hints": cls._coerce_json_dict(row["hints"]),
            "submitter_id": row["submitter_id"],
            "source": row["source"],
            "unique_demand_id": row["unique_demand_id"],
            "link_overridden_by": row["link_overridden_by"],
            "link_overridden_at": row["link_overridden_at"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @classmethod
    def _canonical_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        payload = dict(row)
        payload["attributes_json"] = cls._coerce_json_dict(row["attributes_json"])
        return payload

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


def _epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _range_where_sql(field: str, only_valid: bool) -> str:
    if field not in RANGE_FIELDS:
        raise RepositoryValidationError(f"range field must be one of: {', '.join(RANGE_FIELDS)}")
    # Half-open window [$1, $2).
    where_sql = f"where {field} >= $1 and {field} < $2"
    if only_valid:
        where_sql += " and demand_type = 'valid'"
    return where_sql


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        acquire_timeout=settings.database_acquire_timeout_seconds,
    )
