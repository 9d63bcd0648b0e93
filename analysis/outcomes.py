"""
State Distancing Policy — Outcome Comparison (Phase 2)

Joins the strictness clusters with COVID-19 confirmed cases and deaths from a
CSSE daily report and 2019 census population, computes per-thousand rates,
and compares deaths per thousand between "More Strict" and "Less Strict"
states with a Welch two-sample t-test.

Usage:
  uv run python analysis/outcomes.py [--report-date 2020-06-15]
      [--strictness-dir DIR] [--cache-dir data/.cache] [--skip-interactive]

Outputs (in results/<report_date>/outcomes/<date>/):
  - data/:   Parquet + CSV files (state outcomes, combined ranked records, group stats)
  - plots/:  PNG visualizations (regression, boxplot, histograms) + interactive HTML
  - manifest.json, run_info.json, run_log.txt
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import plotly.express as px
import polars as pl
from scipy import stats

from distancing_policy.config import DEFAULT_CACHE_DIR, DEFAULT_REPORT_DATE
from distancing_policy.errors import (
    DegenerateClusterError,
    DistancingPipelineError,
    InvalidPopulationError,
    JoinMismatchError,
)
from distancing_policy.models import (
    CLUSTER_LABELS,
    LESS_STRICT,
    MORE_STRICT,
    CombinedRecord,
    StateOutcome,
)
from distancing_policy.output import RATE_DECIMALS, save_outcome_csvs
from distancing_policy.sources import SourceFetcher, normalize_report_date
from distancing_policy.states import STATE_NAMES, check_state_coverage

try:
    from analysis.run_context import RunContext
except ModuleNotFoundError:
    from run_context import RunContext

# ── Primer ───────────────────────────────────────────────────────────────────

OUTCOMES_PRIMER = """\
# Outcome Comparison

## Purpose

Tests whether states classified as "More Strict" by the strictness phase
had different COVID-19 death rates than "Less Strict" states.

## Method

1. **Rate join.** Daily-report counts are summed per state (counties roll up)
   and joined to census 2019 population on the exact state name. Every
   clustered state must match both sources, or the run stops and lists the
   missing names. Rates are 1000 x count / population.
2. **Ranks.** Ascending ordinal ranks of cases and deaths per thousand
   (ties broken by table order).
3. **Trimming.** The top 4 case-rate states and top 5 death-rate states are
   dropped for the regression plot only.
4. **Regression.** Deaths per thousand on cases per thousand, fitted
   separately per cluster on the trimmed data.
5. **Welch t-test.** Deaths per thousand, Less Strict minus More Strict,
   unequal variances, on the full untrimmed data. Reports the two-sided
   p-value and a 95% confidence interval on the mean difference.

## Inputs

- `results/<report_date>/strictness/latest/data/cluster_assignments.parquet`
- CSSE daily report for `<report_date>` and census population (cached in `data/.cache/`)

## Caveats

- No correction for multiple comparisons and no check of normality. With
  roughly 50 states the t-test is indicative only.
- Policy strictness is a snapshot, while case and death counts are cumulative.
"""

# ── Constants ────────────────────────────────────────────────────────────────

PER_THOUSAND = 1000
CASES_TRIM_TOP = 4
DEATHS_TRIM_TOP = 5
CONFIDENCE_LEVEL = 0.95
MIN_GROUP_SIZE = 2
LABEL_COLORS = {MORE_STRICT: "#D55E00", LESS_STRICT: "#0072B2"}
HIST_BINS = 12
EXTRA_ROWS_SHOWN = 5


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="State distancing policy outcome comparison")
    parser.add_argument("--report-date", default=DEFAULT_REPORT_DATE)
    parser.add_argument(
        "--strictness-dir", default=None, help="Override strictness results directory"
    )
    parser.add_argument("--cache-dir", default=DEFAULT_CACHE_DIR, help="Download cache directory")
    parser.add_argument(
        "--skip-interactive",
        action="store_true",
        help="Skip the interactive HTML plots",
    )
    return parser.parse_args()


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def save_fig(fig: plt.Figure, path: Path, dpi: int = 150) -> None:
    fig.savefig(path, dpi=dpi, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    print(f"  Saved: {path.name}")


# ── Phase 1: Load Data ──────────────────────────────────────────────────────


def load_assignments(strictness_dir: Path) -> pl.DataFrame:
    """Load cluster assignments written by the strictness phase."""
    return pl.read_parquet(strictness_dir / "data" / "cluster_assignments.parquet")


# ── Phase 2: Rate Join ──────────────────────────────────────────────────────


def per_thousand(count: int, population: int | None, state: str = "<unknown>") -> float:
    if population is None or population <= 0:
        raise InvalidPopulationError(state, population)
    return PER_THOUSAND * count / population


def join_rates(
    assignments: pl.DataFrame,
    counts: pl.DataFrame,
    population: pl.DataFrame,
) -> pl.DataFrame:
    """Join cluster labels with case/death counts and population.

    State names must match exactly. Any clustered state absent from either
    source raises JoinMismatchError; extra rows in the sources (DC,
    territories, census regions) are reported and dropped.

    A source row for one of the 50 states that was never clustered means the
    policy table lost a state; it is reported under "cluster assignments"
    instead of being dropped.

    Returns DataFrame with: state, cluster_id, cluster_label, total_confirmed,
    total_deaths, population, confirmed_per_thousand, deaths_per_thousand.
    """
    for name, df in (("case/death counts", counts), ("population", population)):
        dupes = df.filter(pl.col("state").is_duplicated())["state"].unique().sort().to_list()
        if dupes:
            raise DistancingPipelineError(f"Duplicate states in {name}: {dupes}")

    clustered = set(assignments["state"].to_list())
    sources = {"case/death counts": counts, "population": population}
    missing: dict[str, list[str]] = {}
    unclustered: set[str] = set()
    for name, df in sources.items():
        have = set(df["state"].to_list())
        absent = sorted(clustered - have)
        if absent:
            missing[name] = absent
        extra = sorted(have - clustered)
        unclustered.update(s for s in extra if s in STATE_NAMES)
        if extra:
            shown = ", ".join(extra[:EXTRA_ROWS_SHOWN])
            more = "..." if len(extra) > EXTRA_ROWS_SHOWN else ""
            print(f"  {name}: {len(extra)} unmatched row(s) dropped ({shown}{more})")
    if unclustered:
        missing["cluster assignments"] = sorted(unclustered)
    if missing:
        raise JoinMismatchError(missing)

    joined = (
        assignments.select("state", "cluster_id", "cluster_label")
        .join(counts.select("state", "total_confirmed", "total_deaths"), on="state", how="inner")
        .join(population.select("state", "population"), on="state", how="inner")
    )

    rows = list(joined.iter_rows(named=True))
    return joined.with_columns(
        pl.Series(
            "confirmed_per_thousand",
            [per_thousand(r["total_confirmed"], r["population"], r["state"]) for r in rows],
            dtype=pl.Float64,
        ),
        pl.Series(
            "deaths_per_thousand",
            [per_thousand(r["total_deaths"], r["population"], r["state"]) for r in rows],
            dtype=pl.Float64,
        ),
    )


def to_outcome_records(joined: pl.DataFrame) -> list[StateOutcome]:
    return [
        StateOutcome(
            state=row["state"],
            total_confirmed=row["total_confirmed"],
            total_deaths=row["total_deaths"],
            population=row["population"],
            confirmed_per_thousand=row["confirmed_per_thousand"],
            deaths_per_thousand=row["deaths_per_thousand"],
        )
        for row in joined.iter_rows(named=True)
    ]


# ── Phase 3: Ranks + Trimming ───────────────────────────────────────────────


def add_ranks(combined: pl.DataFrame) -> pl.DataFrame:
    """Ascending 1-based ordinal ranks of both rates (ties by input order)."""
    return combined.with_columns(
        pl.col("confirmed_per_thousand").rank("ordinal").cast(pl.Int64).alias("cases_rank"),
        pl.col("deaths_per_thousand").rank("ordinal").cast(pl.Int64).alias("deaths_rank"),
    )


def trim_outliers(
    ranked: pl.DataFrame,
    cases_top: int = CASES_TRIM_TOP,
    deaths_top: int = DEATHS_TRIM_TOP,
) -> pl.DataFrame:
    """Drop the highest-rate states (regression plot only, never the t-test)."""
    n = ranked.height
    return ranked.filter(
        (pl.col("cases_rank") <= n - cases_top) & (pl.col("deaths_rank") <= n - deaths_top)
    )


def to_combined_records(ranked: pl.DataFrame) -> list[CombinedRecord]:
    return [
        CombinedRecord(
            state=row["state"],
            cluster_label=row["cluster_label"],
            confirmed_per_thousand=row["confirmed_per_thousand"],
            deaths_per_thousand=row["deaths_per_thousand"],
            cases_rank=row["cases_rank"],
            deaths_rank=row["deaths_rank"],
        )
        for row in ranked.iter_rows(named=True)
    ]


# ── Phase 4: Comparison ─────────────────────────────────────────────────────


def describe_groups(combined: pl.DataFrame) -> pl.DataFrame:
    """Count, mean, median, and std of both rates per cluster label."""
    aggs = [pl.len().alias("n_states")]
    for col in ("confirmed_per_thousand", "deaths_per_thousand"):
        aggs.extend(
            [
                pl.col(col).mean().alias(f"{col}_mean"),
                pl.col(col).median().alias(f"{col}_median"),
                pl.col(col).std().alias(f"{col}_std"),
            ]
        )
    summary = combined.group_by("cluster_label").agg(aggs).sort("cluster_label", descending=True)
    for row in summary.iter_rows(named=True):
        print(
            f"  {row['cluster_label']:12s} n={row['n_states']:2d}  "
            f"cases/1k mean={row['confirmed_per_thousand_mean']:.{RATE_DECIMALS}f}  "
            f"deaths/1k mean={row['deaths_per_thousand_mean']:.{RATE_DECIMALS}f} "
            f"median={row['deaths_per_thousand_median']:.{RATE_DECIMALS}f}"
        )
    return summary


def regression_by_group(trimmed: pl.DataFrame) -> dict[str, dict]:
    """Fit deaths per thousand on cases per thousand separately per label."""
    results: dict[str, dict] = {}
    for label in CLUSTER_LABELS:
        subset = trimmed.filter(pl.col("cluster_label") == label)
        x = subset["confirmed_per_thousand"].to_numpy()
        y = subset["deaths_per_thousand"].to_numpy()
        if subset.height < 3 or np.ptp(x) == 0:
            print(f"  {label}: too few distinct points for a regression (n={subset.height})")
            results[label] = {"n": subset.height, "skipped": True}
            continue
        fit = stats.linregress(x, y)
        results[label] = {
            "n": subset.height,
            "skipped": False,
            "slope": float(fit.slope),
            "intercept": float(fit.intercept),
            "r": float(fit.rvalue),
            "p_value": float(fit.pvalue),
        }
        print(
            f"  {label:12s} slope={fit.slope:.4f}  intercept={fit.intercept:.4f}  "
            f"r={fit.rvalue:.3f}  p={fit.pvalue:.4f}  (n={subset.height})"
        )
    return results


def welch_ttest(combined: pl.DataFrame, confidence_level: float = CONFIDENCE_LEVEL) -> dict:
    """Welch two-sample t-test of deaths per thousand, Less minus More Strict."""
    less = combined.filter(pl.col("cluster_label") == LESS_STRICT)["deaths_per_thousand"]
    more = combined.filter(pl.col("cluster_label") == MORE_STRICT)["deaths_per_thousand"]
    if less.len() < MIN_GROUP_SIZE or more.len() < MIN_GROUP_SIZE:
        raise DegenerateClusterError(
            f"Each cluster needs at least {MIN_GROUP_SIZE} states for a t-test "
            f"(Less Strict={less.len()}, More Strict={more.len()})"
        )

    result = stats.ttest_ind(less.to_numpy(), more.to_numpy(), equal_var=False)
    ci = result.confidence_interval(confidence_level=confidence_level)
    out = {
        "t_statistic": float(result.statistic),
        "df": float(result.df),
        "p_value": float(result.pvalue),
        "confidence_level": confidence_level,
        "ci_low": float(ci.low),
        "ci_high": float(ci.high),
        "mean_less_strict": float(less.mean()),
        "mean_more_strict": float(more.mean()),
        "mean_difference": float(less.mean() - more.mean()),
        "n_less_strict": less.len(),
        "n_more_strict": more.len(),
    }
    print(
        f"  t = {out['t_statistic']:.4f}, df = {out['df']:.2f}, "
        f"p (two-sided) = {out['p_value']:.4f}"
    )
    print(
        f"  Mean difference (Less - More) = {out['mean_difference']:.{RATE_DECIMALS}f} "
        f"[{confidence_level:.0%} CI {out['ci_low']:.{RATE_DECIMALS}f}, "
        f"{out['ci_high']:.{RATE_DECIMALS}f}]"
    )
    return out


# ── Phase 5: Plots ──────────────────────────────────────────────────────────


def plot_regression(trimmed: pl.DataFrame, fits: dict[str, dict], out_dir: Path) -> None:
    """Trimmed scatter of deaths vs cases per thousand with per-group fit lines."""
    fig, ax = plt.subplots(figsize=(10, 7))
    for label, color in LABEL_COLORS.items():
        subset = trimmed.filter(pl.col("cluster_label") == label)
        if subset.height == 0:
            continue
        x = subset["confirmed_per_thousand"].to_numpy()
        y = subset["deaths_per_thousand"].to_numpy()
        ax.scatter(x, y, c=color, s=50, alpha=0.7, edgecolors="black", linewidth=0.5, label=label)
        fit = fits.get(label, {})
        if not fit.get("skipped", True):
            xs = np.linspace(x.min(), x.max(), 50)
            ax.plot(
                xs,
                fit["intercept"] + fit["slope"] * xs,
                color=color,
                linewidth=2,
                label=f"{label} fit (slope={fit['slope']:.3f})",
            )
        for state, xi, yi in zip(subset["state"].to_list(), x, y):
            ax.annotate(
                state,
                (xi, yi),
                fontsize=6,
                alpha=0.6,
                xytext=(4, 4),
                textcoords="offset points",
            )

    ax.set_xlabel("Confirmed Cases per 1,000")
    ax.set_ylabel("Deaths per 1,000")
    ax.set_title(
        f"Deaths vs Cases per 1,000 (top {CASES_TRIM_TOP} case / "
        f"top {DEATHS_TRIM_TOP} death states removed)"
    )
    ax.legend(loc="upper left", fontsize=8)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    save_fig(fig, out_dir / "regression_trimmed.png")


def plot_boxplot(combined: pl.DataFrame, out_dir: Path) -> None:
    labels = list(CLUSTER_LABELS)
    data = [
        combined.filter(pl.col("cluster_label") == lbl)["deaths_per_thousand"].to_numpy()
        for lbl in labels
    ]
    fig, ax = plt.subplots(figsize=(8, 6))
    bp = ax.boxplot(data, patch_artist=True, widths=0.5)
    ax.set_xticks(range(1, len(labels) + 1), labels)
    for patch, lbl in zip(bp["boxes"], labels):
        patch.set_facecolor(LABEL_COLORS[lbl])
        patch.set_alpha(0.6)

    rng = np.random.default_rng(42)
    for i, values in enumerate(data, start=1):
        ax.scatter(
            i + rng.uniform(-0.08, 0.08, len(values)),
            values,
            c="black",
            s=12,
            alpha=0.6,
            zorder=3,
        )

    ax.set_ylabel("Deaths per 1,000")
    ax.set_title("Deaths per 1,000 by Strictness Cluster")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    save_fig(fig, out_dir / "deaths_boxplot.png")


def plot_histograms(combined: pl.DataFrame, out_dir: Path) -> None:
    fig, axes = plt.subplots(1, 2, figsize=(14, 5), sharey=True)
    all_vals = combined["deaths_per_thousand"].to_numpy()
    bins = np.linspace(all_vals.min(), all_vals.max(), HIST_BINS + 1)
    for ax, label in zip(axes, CLUSTER_LABELS):
        values = combined.filter(pl.col("cluster_label") == label)["deaths_per_thousand"]
        ax.hist(
            values.to_numpy(),
            bins=bins,
            color=LABEL_COLORS[label],
            alpha=0.75,
            edgecolor="black",
        )
        if values.len() > 0:
            ax.axvline(values.mean(), color="black", linestyle="--", linewidth=1)
        ax.set_title(f"{label} (n={values.len()})")
        ax.set_xlabel("Deaths per 1,000")
        ax.spines["top"].set_visible(False)
        ax.spines["right"].set_visible(False)
    axes[0].set_ylabel("Number of States")
    fig.suptitle("Distribution of Deaths per 1,000")
    fig.tight_layout()
    save_fig(fig, out_dir / "deaths_histograms.png")


def write_interactive_scatter(combined: pl.DataFrame, out_dir: Path) -> None:
    data = combined.select(
        "state",
        "cluster_label",
        pl.col("confirmed_per_thousand").round(RATE_DECIMALS),
        pl.col("deaths_per_thousand").round(RATE_DECIMALS),
    )
    fig = px.scatter(
        data,
        x="confirmed_per_thousand",
        y="deaths_per_thousand",
        color="cluster_label",
        color_discrete_map=LABEL_COLORS,
        hover_name="state",
        labels={
            "confirmed_per_thousand": "Confirmed Cases per 1,000",
            "deaths_per_thousand": "Deaths per 1,000",
            "cluster_label": "Strictness",
        },
        title="Deaths vs Cases per 1,000 by Strictness Cluster",
    )
    fig.update_layout(template="plotly_white", height=650)
    path = out_dir / "scatter_interactive.html"
    fig.write_html(path, include_plotlyjs="cdn")
    print(f"  Saved: {path.name}")


def write_interactive_boxplot(combined: pl.DataFrame, out_dir: Path) -> None:
    data = combined.select(
        "state", "cluster_label", pl.col("deaths_per_thousand").round(RATE_DECIMALS)
    )
    fig = px.box(
        data,
        x="cluster_label",
        y="deaths_per_thousand",
        color="cluster_label",
        color_discrete_map=LABEL_COLORS,
        points="all",
        hover_name="state",
        category_orders={"cluster_label": list(CLUSTER_LABELS)},
        labels={"deaths_per_thousand": "Deaths per 1,000", "cluster_label": "Strictness"},
        title="Deaths per 1,000 by Strictness Cluster",
    )
    fig.update_layout(template="plotly_white", height=600, showlegend=False)
    path = out_dir / "boxplot_interactive.html"
    fig.write_html(path, include_plotlyjs="cdn")
    print(f"  Saved: {path.name}")


def save_manifest(manifest: dict, out_dir: Path) -> None:
    path = out_dir / "manifest.json"
    with open(path, "w") as f:
        json.dump(manifest, f, indent=2, default=str)
    print(f"  Saved: {path.name}")


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    report_date = normalize_report_date(args.report_date)

    if args.strictness_dir:
        strictness_dir = Path(args.strictness_dir)
    else:
        strictness_dir = Path(f"results/{report_date}/strictness/latest")

    with RunContext(
        report_date=report_date,
        analysis_name="outcomes",
        params=vars(args),
        primer=OUTCOMES_PRIMER,
    ) as ctx:
        print(f"State Distancing Outcome Comparison — Report {report_date}")
        print(f"Strictness: {strictness_dir}")
        print(f"Output:     {ctx.run_dir}")

        # ── Phase 1: Load data ──
        print_header("PHASE 1: LOADING DATA")
        assignments = load_assignments(strictness_dir)
        check_state_coverage(assignments["state"].to_list(), source="cluster assignments")
        fetcher = SourceFetcher(cache_dir=Path(args.cache_dir))
        counts = fetcher.load_case_counts(report_date)
        population = fetcher.load_population()
        print(f"  Cluster assignments: {assignments.height} states")
        print(f"  Case/death counts:   {counts.height} US regions")
        print(f"  Population:          {population.height} rows")

        # ── Phase 2: Rate join ──
        print_header("PHASE 2: PER-THOUSAND RATES")
        joined = join_rates(assignments, counts, population)
        print(f"  Joined: {joined.height} states")
        joined.write_parquet(ctx.data_dir / "state_outcomes.parquet")
        print("  Saved: state_outcomes.parquet")

        # ── Phase 3: Ranks + trimming ──
        print_header("PHASE 3: RANKS AND OUTLIER TRIMMING")
        ranked = add_ranks(joined)
        trimmed = trim_outliers(ranked)
        removed = ranked.join(trimmed.select("state"), on="state", how="anti")
        print(f"  Trimmed {removed.height} state(s): {', '.join(removed['state'].sort().to_list())}")
        ranked.write_parquet(ctx.data_dir / "combined_records.parquet")
        save_outcome_csvs(ctx.data_dir, to_outcome_records(joined), to_combined_records(ranked))

        # ── Phase 4: Comparison ──
        print_header("PHASE 4: GROUP COMPARISON")
        group_stats = describe_groups(ranked)
        group_stats.write_parquet(ctx.data_dir / "group_stats.parquet")
        print("\n  Regression (trimmed data):")
        fits = regression_by_group(trimmed)
        print("\n  Welch t-test (full data):")
        ttest = welch_ttest(ranked)

        # ── Phase 5: Plots ──
        print_header("PHASE 5: PLOTS")
        plot_regression(trimmed, fits, ctx.plots_dir)
        plot_boxplot(ranked, ctx.plots_dir)
        plot_histograms(ranked, ctx.plots_dir)
        if not args.skip_interactive:
            write_interactive_scatter(ranked, ctx.plots_dir)
            write_interactive_boxplot(ranked, ctx.plots_dir)

        # ── Phase 6: Manifest ──
        print_header("PHASE 6: MANIFEST")
        manifest = {
            "analysis": "outcomes",
            "constants": {
                "PER_THOUSAND": PER_THOUSAND,
                "CASES_TRIM_TOP": CASES_TRIM_TOP,
                "DEATHS_TRIM_TOP": DEATHS_TRIM_TOP,
                "CONFIDENCE_LEVEL": CONFIDENCE_LEVEL,
            },
            "n_states": joined.height,
            "trimmed_states": removed["state"].sort().to_list(),
            "regression": fits,
            "welch_ttest": ttest,
        }
        save_manifest(manifest, ctx.run_dir)

        print_header("DONE")
        print(f"  All outputs in: {ctx.run_dir}")


if __name__ == "__main__":
    main()
