"""
Tests for the outcome comparison in analysis/outcomes.py.

Covers per-thousand rates, the strict state-name join, ordinal ranks, outlier
trimming, per-group regression, the Welch t-test, and smoke runs of the
static and interactive plot writers. Data loading is not tested here.

Run: uv run pytest tests/test_outcomes.py -v
"""

import sys
from pathlib import Path

import numpy as np
import polars as pl
import pytest
from scipy import stats

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.outcomes import (
    add_ranks,
    describe_groups,
    join_rates,
    per_thousand,
    plot_boxplot,
    plot_histograms,
    plot_regression,
    regression_by_group,
    to_combined_records,
    to_outcome_records,
    trim_outliers,
    welch_ttest,
    write_interactive_boxplot,
    write_interactive_scatter,
)
from distancing_policy.errors import (
    DegenerateClusterError,
    DistancingPipelineError,
    InvalidPopulationError,
    JoinMismatchError,
)
from distancing_policy.models import LESS_STRICT, MORE_STRICT

# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def assignments() -> pl.DataFrame:
    return pl.DataFrame(
        {
            "state": ["Ohio", "Iowa", "Utah"],
            "cluster_id": [1, 2, 2],
            "cluster_label": [MORE_STRICT, LESS_STRICT, LESS_STRICT],
        }
    )


@pytest.fixture
def counts() -> pl.DataFrame:
    return pl.DataFrame(
        {
            "state": ["Iowa", "Ohio", "Utah", "District of Columbia"],
            "total_confirmed": [1000, 2000, 300, 9000],
            "total_deaths": [50, 100, 1, 500],
        }
    )


@pytest.fixture
def population() -> pl.DataFrame:
    return pl.DataFrame(
        {
            "state": ["Ohio", "Iowa", "Utah", "Puerto Rico"],
            "population": [1_000_000, 500_000, 300_000, 3_000_000],
        }
    )


def _combined(
    less: list[float], more: list[float], cases: list[float] | None = None
) -> pl.DataFrame:
    deaths = less + more
    return pl.DataFrame(
        {
            "state": [f"S{i}" for i in range(len(deaths))],
            "cluster_label": [LESS_STRICT] * len(less) + [MORE_STRICT] * len(more),
            "confirmed_per_thousand": cases if cases is not None else [d * 20 for d in deaths],
            "deaths_per_thousand": deaths,
        }
    )


# ── per_thousand() ───────────────────────────────────────────────────────────


class TestPerThousand:
    def test_basic(self):
        assert per_thousand(1000, 500_000) == pytest.approx(2.0)
        assert per_thousand(50, 500_000) == pytest.approx(0.1)

    def test_zero_count(self):
        assert per_thousand(0, 100) == 0.0

    def test_zero_population_raises(self):
        with pytest.raises(InvalidPopulationError) as exc:
            per_thousand(10, 0, "Nowhere")
        assert exc.value.state == "Nowhere"

    def test_missing_population_raises(self):
        with pytest.raises(InvalidPopulationError):
            per_thousand(10, None)


# ── join_rates() ─────────────────────────────────────────────────────────────


class TestJoinRates:
    def test_rates(self, assignments, counts, population):
        joined = join_rates(assignments, counts, population)
        iowa = joined.filter(pl.col("state") == "Iowa").row(0, named=True)
        assert iowa["confirmed_per_thousand"] == pytest.approx(2.0)
        assert iowa["deaths_per_thousand"] == pytest.approx(0.1)
        assert iowa["cluster_label"] == LESS_STRICT

    def test_rates_not_rounded(self, assignments, counts, population):
        joined = join_rates(assignments, counts, population)
        utah = joined.filter(pl.col("state") == "Utah").row(0, named=True)
        assert utah["deaths_per_thousand"] == pytest.approx(1 / 300, rel=1e-12)

    def test_extra_source_rows_dropped(self, assignments, counts, population):
        joined = join_rates(assignments, counts, population)
        assert sorted(joined["state"].to_list()) == ["Iowa", "Ohio", "Utah"]

    def test_one_row_per_clustered_state(self, assignments, counts, population):
        joined = join_rates(assignments, counts, population)
        assert joined.height == assignments.height

    def test_missing_counts_raise(self, assignments, counts, population):
        counts = counts.filter(pl.col("state") != "Utah")
        with pytest.raises(JoinMismatchError) as exc:
            join_rates(assignments, counts, population)
        assert exc.value.missing == {"case/death counts": ["Utah"]}

    def test_missing_in_both_sources_listed(self, assignments, counts, population):
        counts = counts.filter(pl.col("state") != "Ohio")
        population = population.filter(pl.col("state") != "Iowa")
        with pytest.raises(JoinMismatchError) as exc:
            join_rates(assignments, counts, population)
        assert exc.value.missing == {"case/death counts": ["Ohio"], "population": ["Iowa"]}

    def test_name_match_is_exact(self, assignments, counts, population):
        counts = counts.with_columns(pl.col("state").str.to_uppercase())
        with pytest.raises(JoinMismatchError):
            join_rates(assignments, counts, population)

    def test_unclustered_state_raises(self, assignments, counts, population):
        """A real state in the sources but not in the clusters was lost upstream."""
        counts = pl.concat(
            [
                counts,
                pl.DataFrame(
                    {"state": ["Texas"], "total_confirmed": [5000], "total_deaths": [90]}
                ),
            ]
        )
        population = pl.concat(
            [population, pl.DataFrame({"state": ["Texas"], "population": [29_000_000]})]
        )
        with pytest.raises(JoinMismatchError) as exc:
            join_rates(assignments, counts, population)
        assert exc.value.missing == {"cluster assignments": ["Texas"]}

    def test_unclustered_state_not_hidden_among_extras(self, assignments, counts, population):
        territories = ["American Samoa", "Diamond Princess", "Grand Princess", "Guam", "Texas"]
        counts = pl.concat(
            [
                counts,
                pl.DataFrame(
                    {
                        "state": territories,
                        "total_confirmed": [1] * len(territories),
                        "total_deaths": [0] * len(territories),
                    }
                ),
            ]
        )
        with pytest.raises(JoinMismatchError) as exc:
            join_rates(assignments, counts, population)
        assert exc.value.missing["cluster assignments"] == ["Texas"]
        assert "Texas" in str(exc.value)

    def test_short_extra_list_has_no_ellipsis(self, assignments, counts, population, capsys):
        join_rates(assignments, counts, population)
        out = capsys.readouterr().out
        assert "1 unmatched row(s) dropped (District of Columbia)" in out
        assert "..." not in out

    def test_zero_population_raises(self, assignments, counts, population):
        population = population.with_columns(
            pl.when(pl.col("state") == "Ohio")
            .then(0)
            .otherwise(pl.col("population"))
            .alias("population")
        )
        with pytest.raises(InvalidPopulationError):
            join_rates(assignments, counts, population)

    def test_duplicate_source_rows_raise(self, assignments, counts, population):
        counts = pl.concat([counts, counts.head(1)])
        with pytest.raises(DistancingPipelineError, match="Duplicate"):
            join_rates(assignments, counts, population)

    def test_outcome_records(self, assignments, counts, population):
        records = to_outcome_records(join_rates(assignments, counts, population))
        ohio = next(r for r in records if r.state == "Ohio")
        assert ohio.total_confirmed == 2000
        assert ohio.population == 1_000_000
        assert ohio.confirmed_per_thousand == pytest.approx(2.0)


# ── add_ranks() / trim_outliers() ────────────────────────────────────────────


class TestRanks:
    def test_ascending(self):
        ranked = add_ranks(_combined([0.3, 0.1], [0.2]))
        assert ranked["deaths_rank"].to_list() == [3, 1, 2]

    def test_ties_broken_by_order(self):
        ranked = add_ranks(_combined([0.5, 0.5, 0.5], [0.1]))
        assert ranked["deaths_rank"].to_list() == [2, 3, 4, 1]

    def test_ranks_are_permutation(self):
        rng = np.random.default_rng(7)
        values = rng.integers(0, 5, size=30).astype(float).tolist()
        ranked = add_ranks(_combined(values[:15], values[15:]))
        for col in ("cases_rank", "deaths_rank"):
            assert sorted(ranked[col].to_list()) == list(range(1, 31))

    def test_integer_dtype(self):
        ranked = add_ranks(_combined([0.3], [0.2]))
        assert ranked["cases_rank"].dtype == pl.Int64

    def test_combined_records(self):
        records = to_combined_records(add_ranks(_combined([0.3], [0.2])))
        assert [(r.state, r.deaths_rank) for r in records] == [("S0", 2), ("S1", 1)]


class TestTrimOutliers:
    def test_fifty_states_same_order(self):
        """With identical rank orders the union of removals is 5 states."""
        deaths = [i / 100 for i in range(50)]
        ranked = add_ranks(_combined(deaths[:25], deaths[25:]))
        trimmed = trim_outliers(ranked)
        assert trimmed.height == 45
        assert trimmed["deaths_rank"].max() == 45

    def test_disjoint_tops_remove_nine(self):
        deaths = [i / 100 for i in range(50)]
        # Case rates in reverse order put the top case states at the bottom of deaths
        cases = [float(50 - i) for i in range(50)]
        ranked = add_ranks(_combined(deaths[:25], deaths[25:], cases=cases))
        assert trim_outliers(ranked).height == 41

    def test_custom_counts(self):
        ranked = add_ranks(_combined([0.1, 0.2, 0.3], [0.4, 0.5]))
        assert trim_outliers(ranked, cases_top=0, deaths_top=0).height == 5
        assert trim_outliers(ranked, cases_top=1, deaths_top=2).height == 3

    def test_ranks_not_recomputed(self):
        ranked = add_ranks(_combined([0.1, 0.2, 0.3], [0.4, 0.5]))
        trimmed = trim_outliers(ranked, cases_top=1, deaths_top=1)
        assert trimmed["deaths_rank"].to_list() == [1, 2, 3, 4]


# ── describe_groups() / regression_by_group() ────────────────────────────────


class TestDescribeGroups:
    def test_counts_and_means(self):
        summary = describe_groups(_combined([0.2, 0.4, 0.6], [0.1, 0.3]))
        rows = {r["cluster_label"]: r for r in summary.iter_rows(named=True)}
        assert rows[LESS_STRICT]["n_states"] == 3
        assert rows[MORE_STRICT]["n_states"] == 2
        assert rows[LESS_STRICT]["deaths_per_thousand_mean"] == pytest.approx(0.4)
        assert rows[MORE_STRICT]["deaths_per_thousand_median"] == pytest.approx(0.2)


class TestRegressionByGroup:
    def test_exact_line(self):
        cases = [1.0, 2.0, 3.0, 4.0, 1.0, 2.0, 3.0]
        deaths = [2 * c + 1 for c in cases[:4]] + [0.5 * c for c in cases[4:]]
        fits = regression_by_group(_combined(deaths[:4], deaths[4:], cases=cases))
        assert fits[LESS_STRICT]["slope"] == pytest.approx(2.0)
        assert fits[LESS_STRICT]["intercept"] == pytest.approx(1.0)
        assert fits[MORE_STRICT]["slope"] == pytest.approx(0.5)
        assert fits[LESS_STRICT]["n"] == 4

    def test_small_group_skipped(self):
        fits = regression_by_group(_combined([0.1, 0.2, 0.3], [0.4, 0.5]))
        assert fits[MORE_STRICT] == {"n": 2, "skipped": True}
        assert fits[LESS_STRICT]["skipped"] is False

    def test_constant_x_skipped(self):
        combined = _combined([0.1, 0.2, 0.3], [0.4, 0.5, 0.6], cases=[5.0] * 3 + [1.0, 2.0, 3.0])
        fits = regression_by_group(combined)
        assert fits[LESS_STRICT]["skipped"] is True


# ── welch_ttest() ────────────────────────────────────────────────────────────


class TestWelchTTest:
    LESS = [0.9, 1.2, 0.7, 1.5, 1.1, 0.8]
    MORE = [0.3, 0.5, 0.2, 0.6, 0.4]

    def test_matches_scipy(self):
        result = welch_ttest(_combined(self.LESS, self.MORE))
        expected = stats.ttest_ind(self.LESS, self.MORE, equal_var=False)
        assert result["t_statistic"] == pytest.approx(expected.statistic)
        assert result["p_value"] == pytest.approx(expected.pvalue)

    def test_direction_is_less_minus_more(self):
        result = welch_ttest(_combined(self.LESS, self.MORE))
        assert result["t_statistic"] > 0
        assert result["mean_difference"] == pytest.approx(np.mean(self.LESS) - np.mean(self.MORE))

    def test_welch_df_not_pooled(self):
        result = welch_ttest(_combined(self.LESS, self.MORE))
        assert result["df"] < len(self.LESS) + len(self.MORE) - 2

    def test_confidence_interval(self):
        result = welch_ttest(_combined(self.LESS, self.MORE))
        assert result["confidence_level"] == 0.95
        assert result["ci_low"] < result["mean_difference"] < result["ci_high"]
        assert result["ci_low"] > 0

    def test_wider_interval_at_higher_confidence(self):
        r95 = welch_ttest(_combined(self.LESS, self.MORE))
        r99 = welch_ttest(_combined(self.LESS, self.MORE), confidence_level=0.99)
        assert r99["ci_high"] - r99["ci_low"] > r95["ci_high"] - r95["ci_low"]

    def test_p_value_range(self):
        result = welch_ttest(_combined([0.5, 0.6, 0.4], [0.5, 0.55, 0.45]))
        assert 0.0 <= result["p_value"] <= 1.0

    def test_group_sizes(self):
        result = welch_ttest(_combined(self.LESS, self.MORE))
        assert result["n_less_strict"] == 6
        assert result["n_more_strict"] == 5

    def test_single_state_group_raises(self):
        with pytest.raises(DegenerateClusterError):
            welch_ttest(_combined(self.LESS, [0.4]))

    def test_empty_group_raises(self):
        with pytest.raises(DegenerateClusterError):
            welch_ttest(_combined(self.LESS, []))


# ── Plots ────────────────────────────────────────────────────────────────────


class TestPlots:
    """Each writer produces its file from a small polars frame."""

    @pytest.fixture
    def combined(self) -> pl.DataFrame:
        return add_ranks(
            _combined(
                [0.9, 1.2, 0.7, 1.5],
                [0.3, 0.5, 0.2, 0.6],
                cases=[30.0, 41.0, 22.0, 55.0, 12.0, 19.0, 9.0, 25.0],
            )
        )

    def test_regression(self, combined, tmp_path):
        plot_regression(combined, regression_by_group(combined), tmp_path)
        assert (tmp_path / "regression_trimmed.png").exists()

    def test_regression_with_skipped_group(self, combined, tmp_path):
        small = combined.filter(
            (pl.col("cluster_label") == LESS_STRICT) | (pl.col("deaths_rank") <= 2)
        )
        fits = regression_by_group(small)
        assert fits[MORE_STRICT]["skipped"] is True
        plot_regression(small, fits, tmp_path)
        assert (tmp_path / "regression_trimmed.png").exists()

    def test_boxplot(self, combined, tmp_path):
        plot_boxplot(combined, tmp_path)
        assert (tmp_path / "deaths_boxplot.png").exists()

    def test_histograms(self, combined, tmp_path):
        plot_histograms(combined, tmp_path)
        assert (tmp_path / "deaths_histograms.png").exists()

    def test_interactive_scatter(self, combined, tmp_path):
        write_interactive_scatter(combined, tmp_path)
        html = (tmp_path / "scatter_interactive.html").read_text(encoding="utf-8")
        assert "More Strict" in html

    def test_interactive_boxplot(self, combined, tmp_path):
        write_interactive_boxplot(combined, tmp_path)
        html = (tmp_path / "boxplot_interactive.html").read_text(encoding="utf-8")
        assert "Less Strict" in html
