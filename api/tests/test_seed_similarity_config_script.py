from __future__ import annotations

import subprocess
import sys
from pathlib import Path


SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "seed_similarity_config.py"


def _run_script(*args: str) -> str:
    completed = subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def test_seed_script_defaults_to_hybrid_without_overwrite() -> None:
    output = _run_script()

    assert "insert into similarity_config" in output
    assert "values ('global', true, 'hybrid', 0.85, 'system', now())" in output
    assert "on conflict (config_key) do nothing;" in output


def test_seed_script_clamps_threshold_and_overwrites() -> None:
    output = _run_script("--rule", "category", "--threshold", "1.5", "--disabled", "--overwrite", "--actor", "ops")

    assert "values ('global', false, 'category', 0.99, 'ops', now())" in output
    assert "do update set" in output
    assert "jsonb_build_object('enabled', false, 'rule', 'category', 'threshold', 0.99)" in output


def test_seed_script_rejects_unknown_rule() -> None:
    completed = subprocess.run(
        [sys.executable, str(SCRIPT_PATH), "--rule", "fuzzy"],
        capture_output=True,
        text=True,
    )

    assert completed.returncode != 0
