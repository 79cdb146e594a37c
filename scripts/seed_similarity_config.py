#!/usr/bin/env python3
"""Emit deterministic SQL that seeds or resets the global similarity config."""

from __future__ import annotations

import argparse

THRESHOLD_MIN = 0.5
THRESHOLD_MAX = 0.99


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def clamp_threshold(value: float) -> float:
    return min(THRESHOLD_MAX, max(THRESHOLD_MIN, value))


def render_sql(*, enabled: bool, rule: str, threshold: float, actor: str, overwrite: bool) -> str:
    enabled_value = "true" if enabled else "false"
    rule_value = _quote_sql(rule)
    threshold_value = f"{clamp_threshold(threshold):.2f}"
    actor_value = _quote_sql(actor)

    if overwrite:
        conflict_sql = """on conflict (config_key) do update set
  enabled = excluded.enabled,
  rule = excluded.rule,
  threshold = excluded.threshold,
  updated_by = excluded.updated_by,
  updated_at = excluded.updated_at"""
    else:
        conflict_sql = "on conflict (config_key) do nothing"

    return f"""-- Similarity config seed SQL
-- Run against the demand dedupe database.

insert into similarity_config (config_key, enabled, rule, threshold, updated_by, updated_at)
values ('global', {enabled_value}, {rule_value}, {threshold_value}, {actor_value}, now())
{conflict_sql};

insert into demand_events (entity_type, entity_id, event_type, actor_type, actor_id, payload)
values ('similarity_config', 'global', 'seeded', 'system', {actor_value}, jsonb_build_object('enabled', {enabled_value}, 'rule', {rule_value}, 'threshold', {threshold_value}));
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to seed the global similarity config.")
    parser.add_argument("--rule", choices=["text", "category", "hybrid"], default="hybrid")
    parser.add_argument("--threshold", type=float, default=0.85, help="Clamped to [0.5, 0.99]")
    parser.add_argument("--disabled", action="store_true", help="Seed with similarity matching turned off")
    parser.add_argument("--overwrite", action="store_true", help="Replace an existing config row")
    parser.add_argument("--actor", default="system", help="Actor label recorded on the config row")
    args = parser.parse_args()

    print(
        render_sql(
            enabled=not args.disabled,
            rule=args.rule,
            threshold=args.threshold,
            actor=args.actor,
            overwrite=args.overwrite,
        )
    )


if __name__ == "__main__":
    main()
