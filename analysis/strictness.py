"""
State Distancing Policy — Strictness Clustering (Phase 1)

Recodes each state's stay-at-home, large-gathering and restaurant policy
categories into 0-10 ordinal scores, then splits the 50 states into two
k-means clusters labelled "More Strict" and "Less Strict".

Usage:
  uv run python analysis/strictness.py [--report-date 2020-06-15]
      [--policy-csv data/policy_categories.csv] [--n-init 25] [--k-max 15]

Outputs (in results/<report_date>/strictness/<date>/):
  - data/:   Parquet + CSV files (policy scores, cluster assignments, centers, elbow sweep)
  - plots/:  PNG visualizations (elbow, pairwise score scatter, choropleth) + choropleth HTML
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
from matplotlib.patches import Patch
from sklearn.cluster import KMeans

from distancing_policy.categories import GATHERINGS_OVERRIDES, recode_all
from distancing_policy.config import DEFAULT_POLICY_CSV, DEFAULT_REPORT_DATE
from distancing_policy.errors import DegenerateClusterError
from distancing_policy.models import (
    LESS_STRICT,
    MORE_STRICT,
    SCORE_FIELDS,
    ClusterAssignment,
    StateScoreVector,
)
from distancing_policy.output import save_strictness_csvs
from distancing_policy.sources import load_policy_records
from distancing_policy.states import STATE_CODES, check_state_coverage

try:
    from analysis.run_context import RunContext
except ModuleNotFoundError:
    from run_context import RunContext

# ── Primer ───────────────────────────────────────────────────────────────────

STRICTNESS_PRIMER = """\
# Strictness Clustering

## Purpose

Classifies the 50 US states into two groups by how strict their
social-distancing policies were, so later phases can compare COVID-19
outcomes between the groups.

## Method

1. **Ordinal recoding.** Each of three policy columns maps to a 0-10 score
   through a fixed table (see `distancing_policy/categories.py`). Five states
   with ambiguous gathering-ban entries ("-" / "Other") get hand overrides
   first. Unknown labels abort the run.
2. **Elbow sweep.** Total within-cluster sum of squares for k = 1..15. This is
   diagnostic only. The analysis always uses k = 2.
3. **K-Means (k = 2).** Euclidean distance on the raw 0-10 scores with no
   standardization, 25 restarts, and the lowest-inertia restart kept.
4. **Labelling.** The center with the higher stay-at-home score is "More
   Strict". Ties fall through to large gatherings, then restaurants.

## Outputs

| File | Description |
|------|-------------|
| `data/policy_scores.parquet` | Per-state score vectors |
| `data/cluster_assignments.parquet` | state, cluster_id, cluster_label, distance |
| `data/cluster_centers.parquet` | Center coordinates and sizes |
| `data/elbow.parquet` | Inertia per k |
| `plots/elbow.png` | Elbow curve |
| `plots/score_pairs.png` | Pairwise score scatter coloured by cluster |
| `plots/strictness_map.html` | Interactive choropleth |
| `plots/strictness_map.png` | Static choropleth (needs kaleido) |

## Caveats

- Scores are hand-assigned. The clustering is only as meaningful as the scale.
- Many states share identical score vectors, so the scatter plots jitter points.
"""

# ── Constants ────────────────────────────────────────────────────────────────

RANDOM_SEED = 42
N_CLUSTERS = 2
N_INIT = 25
ELBOW_K_MAX = 15
ELBOW_N_INIT = 10
CLUSTER_IDS = {MORE_STRICT: 1, LESS_STRICT: 2}
LABEL_COLORS = {MORE_STRICT: "#D55E00", LESS_STRICT: "#0072B2"}
FIELD_TITLES = {
    "stay_home": "Stay at Home Order",
    "large_gatherings": "Large Gatherings Ban",
    "restaurants": "Restaurant Limits",
}
JITTER = 0.25


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="State distancing policy strictness clustering")
    parser.add_argument("--report-date", default=DEFAULT_REPORT_DATE)
    parser.add_argument("--policy-csv", default=DEFAULT_POLICY_CSV, help="Curated policy table")
    parser.add_argument("--n-init", type=int, default=N_INIT, help="K-means restarts")
    parser.add_argument("--k-max", type=int, default=ELBOW_K_MAX, help="Largest k in elbow sweep")
    parser.add_argument(
        "--skip-map",
        action="store_true",
        help="Skip the choropleth map",
    )
    args = parser.parse_args()
    if args.n_init < N_INIT:
        parser.error(f"--n-init must be at least {N_INIT}")
    return args


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def save_fig(fig: plt.Figure, path: Path, dpi: int = 150) -> None:
    fig.savefig(path, dpi=dpi, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    print(f"  Saved: {path.name}")


# ── Phase 1-2: Load + Recode ────────────────────────────────────────────────


def scores_frame(scores: list[StateScoreVector]) -> pl.DataFrame:
    return pl.DataFrame(
        {
            "state": [s.state for s in scores],
            **{field: [getattr(s, field) for s in scores] for field in SCORE_FIELDS},
        },
        schema={"state": pl.Utf8, **{field: pl.Int64 for field in SCORE_FIELDS}},
    )


def build_feature_matrix(scores: pl.DataFrame) -> np.ndarray:
    """Stack score columns into an (n_states, 3) float matrix, unscaled."""
    return scores.select(SCORE_FIELDS).to_numpy().astype(float)


# ── Phase 3: Elbow Sweep ────────────────────────────────────────────────────


def elbow_sweep(X: np.ndarray, k_max: int = ELBOW_K_MAX) -> dict[int, float]:
    """Total within-cluster sum of squares for k = 1..k_max.

    k is capped at the number of distinct rows; beyond that k-means cannot
    place every center on its own point.
    """
    n_distinct = len(np.unique(X, axis=0))
    inertias: dict[int, float] = {}
    for k in range(1, min(k_max, n_distinct) + 1):
        km = KMeans(n_clusters=k, random_state=RANDOM_SEED, n_init=ELBOW_N_INIT)
        km.fit(X)
        inertias[k] = float(km.inertia_)
        print(f"    k={k:2d}: inertia={inertias[k]:.2f}")
    return inertias


def plot_elbow(inertias: dict[int, float], out_dir: Path) -> None:
    ks = sorted(inertias)
    fig, ax = plt.subplots(figsize=(10, 5))
    ax.plot(ks, [inertias[k] for k in ks], "o-", color="#4C72B0")
    if N_CLUSTERS in inertias:
        ax.plot(N_CLUSTERS, inertias[N_CLUSTERS], marker="*", markersize=14, color="#E81B23")
        ax.annotate(
            f"k={N_CLUSTERS} used",
            (N_CLUSTERS, inertias[N_CLUSTERS]),
            textcoords="offset points",
            xytext=(12, 8),
            fontsize=8,
            color="#E81B23",
            fontweight="bold",
        )
    ax.set_xlabel("Number of Clusters (k)")
    ax.set_ylabel("Within-Cluster Sum of Squares")
    ax.set_title("Elbow Method — Policy Score K-Means")
    ax.set_xticks(ks)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    save_fig(fig, out_dir / "elbow.png")


# ── Phase 4: K-Means (k=2) ──────────────────────────────────────────────────


def run_kmeans(X: np.ndarray, k: int = N_CLUSTERS, n_init: int = N_INIT) -> KMeans:
    """Fit k-means with n_init restarts, keeping the lowest-inertia one."""
    km = KMeans(n_clusters=k, random_state=RANDOM_SEED, n_init=n_init)
    km.fit(X)
    return km


def label_clusters(centers: np.ndarray) -> dict[int, str]:
    """Map k-means cluster indices to strictness labels.

    The center with the larger stay_home coordinate is "More Strict". Equal
    stay_home coordinates fall through to large_gatherings, then restaurants.
    """
    if centers.shape != (N_CLUSTERS, len(SCORE_FIELDS)):
        raise DegenerateClusterError(f"Expected 2 centers in 3 dimensions, got {centers.shape}")
    for dim in range(centers.shape[1]):
        a, b = float(centers[0, dim]), float(centers[1, dim])
        if np.isclose(a, b):
            continue
        stricter = 0 if a > b else 1
        return {stricter: MORE_STRICT, 1 - stricter: LESS_STRICT}
    raise DegenerateClusterError(f"Cluster centers are identical: {centers[0].tolist()}")


def assign_clusters(
    scores: pl.DataFrame,
    n_init: int = N_INIT,
) -> tuple[pl.DataFrame, pl.DataFrame, float]:
    """Cluster states by policy score and label the two clusters.

    Returns (assignments, centers, inertia). assignments has: state,
    cluster_id, cluster_label, distance_to_centroid. centers has:
    cluster_id, cluster_label, n_states, and one column per score field.
    """
    X = build_feature_matrix(scores)
    if len(np.unique(X, axis=0)) < N_CLUSTERS:
        raise DegenerateClusterError(
            f"Need at least {N_CLUSTERS} distinct score vectors to form {N_CLUSTERS} clusters"
        )

    km = run_kmeans(X, N_CLUSTERS, n_init)
    raw_labels = km.labels_
    sizes = np.bincount(raw_labels, minlength=N_CLUSTERS)
    if (sizes == 0).any():
        raise DegenerateClusterError(f"K-means produced an empty cluster (sizes={sizes.tolist()})")

    label_map = label_clusters(km.cluster_centers_)
    names = [label_map[int(lab)] for lab in raw_labels]
    distances = np.linalg.norm(X - km.cluster_centers_[raw_labels], axis=1)

    assignments = pl.DataFrame(
        {
            "state": scores["state"].to_list(),
            "cluster_id": [CLUSTER_IDS[n] for n in names],
            "cluster_label": names,
            "distance_to_centroid": distances.tolist(),
        }
    )

    center_rows = []
    for raw, name in sorted(label_map.items(), key=lambda item: CLUSTER_IDS[item[1]]):
        row = {"cluster_id": CLUSTER_IDS[name], "cluster_label": name, "n_states": int(sizes[raw])}
        for i, field in enumerate(SCORE_FIELDS):
            row[field] = float(km.cluster_centers_[raw, i])
        center_rows.append(row)
    centers = pl.DataFrame(center_rows)

    return assignments, centers, float(km.inertia_)


def to_assignment_records(assignments: pl.DataFrame) -> list[ClusterAssignment]:
    return [
        ClusterAssignment(
            state=row["state"], cluster_id=row["cluster_id"], cluster_label=row["cluster_label"]
        )
        for row in assignments.iter_rows(named=True)
    ]


# ── Phase 5: Characterization ───────────────────────────────────────────────


def summarize_clusters(assignments: pl.DataFrame, scores: pl.DataFrame) -> pl.DataFrame:
    """Size and mean score per cluster label."""
    summary = (
        assignments.join(scores, on="state", how="inner")
        .group_by("cluster_id", "cluster_label")
        .agg(
            pl.len().alias("n_states"),
            *[pl.col(f).mean().alias(f"mean_{f}") for f in SCORE_FIELDS],
            pl.col("state").sort().alias("states"),
        )
        .sort("cluster_id")
    )
    for row in summary.iter_rows(named=True):
        means = ", ".join(f"{f}={row[f'mean_{f}']:.2f}" for f in SCORE_FIELDS)
        print(f"  {row['cluster_label']:12s} n={row['n_states']:2d}  {means}")
    return summary


def plot_score_pairs(
    scores: pl.DataFrame,
    assignments: pl.DataFrame,
    centers: pl.DataFrame,
    out_dir: Path,
) -> None:
    """Three pairwise scatter panels, coloured by cluster, centers marked."""
    merged = scores.join(assignments.select("state", "cluster_label"), on="state", how="inner")
    pairs = [
        ("stay_home", "large_gatherings"),
        ("stay_home", "restaurants"),
        ("large_gatherings", "restaurants"),
    ]
    rng = np.random.default_rng(RANDOM_SEED)
    jitter = rng.uniform(-JITTER, JITTER, size=(merged.height, 2))

    fig, axes = plt.subplots(1, 3, figsize=(18, 6))
    for ax, (fx, fy) in zip(axes, pairs):
        for label, color in LABEL_COLORS.items():
            mask = (merged["cluster_label"] == label).to_numpy()
            if not mask.any():
                continue
            ax.scatter(
                merged[fx].to_numpy()[mask] + jitter[mask, 0],
                merged[fy].to_numpy()[mask] + jitter[mask, 1],
                c=color,
                s=50,
                alpha=0.7,
                edgecolors="black",
                linewidth=0.5,
            )
        for row in centers.iter_rows(named=True):
            ax.scatter(
                row[fx],
                row[fy],
                marker="X",
                s=200,
                c=LABEL_COLORS[row["cluster_label"]],
                edgecolors="black",
                linewidth=1.0,
                zorder=5,
            )
        ax.set_xlabel(FIELD_TITLES[fx])
        ax.set_ylabel(FIELD_TITLES[fy])
        ax.set_xlim(-1, 11)
        ax.set_ylim(-1, 11)
        ax.spines["top"].set_visible(False)
        ax.spines["right"].set_visible(False)

    handles = [Patch(facecolor=c, label=lbl) for lbl, c in LABEL_COLORS.items()]
    handles.append(
        plt.Line2D([], [], marker="X", color="gray", linestyle="None", label="Cluster center")
    )
    axes[0].legend(handles=handles, loc="best", fontsize=8)
    fig.suptitle("Policy Scores by Strictness Cluster (jittered)")
    fig.tight_layout()
    save_fig(fig, out_dir / "score_pairs.png")


def plot_choropleth(assignments: pl.DataFrame, out_dir: Path) -> None:
    """US map coloured by strictness label (HTML, plus PNG when kaleido is present)."""
    data = assignments.select("state", "cluster_label").with_columns(
        pl.col("state").replace_strict(STATE_CODES, default=None).alias("code")
    )
    unmapped = data.filter(pl.col("code").is_null())["state"].to_list()
    if unmapped:
        print(f"  WARNING: no postal code for {unmapped}; omitted from map")
    data = data.filter(pl.col("code").is_not_null())

    fig = px.choropleth(
        data,
        locations="code",
        locationmode="USA-states",
        color="cluster_label",
        color_discrete_map=LABEL_COLORS,
        scope="usa",
        hover_name="state",
        hover_data={"code": False},
        labels={"cluster_label": "Strictness"},
    )
    fig.update_layout(
        title="Social Distancing Strictness by State",
        margin=dict(l=10, r=10, t=60, b=10),
    )

    html_path = out_dir / "strictness_map.html"
    fig.write_html(html_path, include_plotlyjs="cdn")
    print(f"  Saved: {html_path.name}")

    png_path = out_dir / "strictness_map.png"
    try:
        fig.write_image(png_path, scale=2, width=1200, height=800)
        print(f"  Saved: {png_path.name}")
    except (ValueError, RuntimeError) as e:
        print(f"  Skipped {png_path.name} (install the 'static' extra for PNG maps): {e}")


def save_manifest(manifest: dict, out_dir: Path) -> None:
    path = out_dir / "manifest.json"
    with open(path, "w") as f:
        json.dump(manifest, f, indent=2, default=str)
    print(f"  Saved: {path.name}")


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    policy_csv = Path(args.policy_csv)

    with RunContext(
        report_date=args.report_date,
        analysis_name="strictness",
        params=vars(args),
        primer=STRICTNESS_PRIMER,
    ) as ctx:
        print(f"State Distancing Strictness Clustering — Report {ctx.report_date}")
        print(f"Policy table: {policy_csv}")
        print(f"Output:       {ctx.run_dir}")

        # ── Phase 1: Load policy table ──
        print_header("PHASE 1: LOADING POLICY TABLE")
        records = load_policy_records(policy_csv)
        check_state_coverage(r.state for r in records)
        print(f"  {len(records)} states loaded")
        overridden = sorted(s for s in GATHERINGS_OVERRIDES if s in {r.state for r in records})
        for state in overridden:
            print(f"  Override: {state} large gatherings -> {GATHERINGS_OVERRIDES[state].value!r}")

        # ── Phase 2: Recode ──
        print_header("PHASE 2: ORDINAL RECODING")
        score_vectors = recode_all(records)
        scores = scores_frame(score_vectors)
        for field in SCORE_FIELDS:
            counts = scores[field].value_counts().sort(field)
            dist = ", ".join(f"{v}:{n}" for v, n in counts.iter_rows())
            print(f"  {field:17s} {dist}")
        scores.write_parquet(ctx.data_dir / "policy_scores.parquet")
        print("  Saved: policy_scores.parquet")

        # ── Phase 3: Elbow sweep ──
        print_header("PHASE 3: ELBOW SWEEP (DIAGNOSTIC)")
        X = build_feature_matrix(scores)
        inertias = elbow_sweep(X, args.k_max)
        pl.DataFrame({"k": list(inertias), "inertia": list(inertias.values())}).write_parquet(
            ctx.data_dir / "elbow.parquet"
        )
        plot_elbow(inertias, ctx.plots_dir)

        # ── Phase 4: K-Means ──
        print_header(f"PHASE 4: K-MEANS (k={N_CLUSTERS}, n_init={args.n_init})")
        assignments, centers, inertia = assign_clusters(scores, n_init=args.n_init)
        print(f"  Inertia: {inertia:.2f}")
        for row in centers.iter_rows(named=True):
            coords = ", ".join(f"{f}={row[f]:.2f}" for f in SCORE_FIELDS)
            print(f"  Center {row['cluster_id']} ({row['cluster_label']}): {coords}")
        assignments.write_parquet(ctx.data_dir / "cluster_assignments.parquet")
        centers.write_parquet(ctx.data_dir / "cluster_centers.parquet")
        print("  Saved: cluster_assignments.parquet, cluster_centers.parquet")
        save_strictness_csvs(ctx.data_dir, score_vectors, to_assignment_records(assignments))

        # ── Phase 5: Characterization ──
        print_header("PHASE 5: CLUSTER CHARACTERIZATION")
        summary = summarize_clusters(assignments, scores)

        # ── Phase 6: Plots ──
        print_header("PHASE 6: PLOTS")
        plot_score_pairs(scores, assignments, centers, ctx.plots_dir)
        if not args.skip_map:
            plot_choropleth(assignments, ctx.plots_dir)

        # ── Phase 7: Manifest ──
        print_header("PHASE 7: MANIFEST")
        manifest = {
            "analysis": "strictness",
            "constants": {
                "RANDOM_SEED": RANDOM_SEED,
                "N_CLUSTERS": N_CLUSTERS,
                "N_INIT": args.n_init,
                "ELBOW_K_MAX": args.k_max,
            },
            "n_states": scores.height,
            "overrides": {s: GATHERINGS_OVERRIDES[s].value for s in overridden},
            "inertia": inertia,
            "elbow": inertias,
            "centers": centers.to_dicts(),
            "cluster_sizes": {
                row["cluster_label"]: row["n_states"] for row in summary.iter_rows(named=True)
            },
        }
        save_manifest(manifest, ctx.run_dir)

        print_header("DONE")
        print(f"  All outputs in: {ctx.run_dir}")


if __name__ == "__main__":
    main()
