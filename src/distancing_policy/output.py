"""CSV output for recoded scores, cluster assignments, and combined outcomes."""

import csv
from dataclasses import asdict, fields
from pathlib import Path

from distancing_policy.models import (
    ClusterAssignment,
    CombinedRecord,
    StateOutcome,
    StateScoreVector,
)

# Per-thousand rates are presented to three decimals
RATE_DECIMALS = 3
_RATE_FIELDS = ("confirmed_per_thousand", "deaths_per_thousand")


def _write_rows(path: Path, record_type: type, records: list) -> None:
    with open(path, "w", newline="", encoding="utf-8") as f:
        fieldnames = [fld.name for fld in fields(record_type)]
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for rec in records:
            row = asdict(rec)
            for name in _RATE_FIELDS:
                if name in row:
                    row[name] = f"{row[name]:.{RATE_DECIMALS}f}"
            writer.writerow(row)
    print(f"  {path} ({len(records)} rows)")


def save_strictness_csvs(
    output_dir: Path,
    scores: list[StateScoreVector],
    assignments: list[ClusterAssignment],
) -> None:
    """Save recoded scores and cluster assignments."""
    _write_rows(output_dir / "policy_scores.csv", StateScoreVector, scores)
    _write_rows(output_dir / "cluster_assignments.csv", ClusterAssignment, assignments)


def save_outcome_csvs(
    output_dir: Path,
    outcomes: list[StateOutcome],
    combined: list[CombinedRecord],
) -> None:
    """Save per-state outcomes and the combined, ranked records."""
    _write_rows(output_dir / "state_outcomes.csv", StateOutcome, outcomes)
    _write_rows(output_dir / "combined_records.csv", CombinedRecord, combined)
