"""
Tests for scaling constituency estimates to the declared results
(analysis/scaling.py).

Run: uv run pytest tests/test_scaling.py -v
"""

import sys
from pathlib import Path

import polars as pl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.scaling import (
    apply_scale_factors,
    build_comparison,
    compute_scale_factors,
    prepare_true_results,
    scaling_summary,
)
from ukmrp.models import PARTIES


@pytest.fixture
def estimates() -> pl.DataFrame:
    return pl.DataFrame(
        {
            "constituency_code": ["E1", "E2", "E3"],
            "constituency_name": ["One", "Two", "Three"],
            "est_con": [40.0, 0.0, 20.0],
            "est_lab": [30.0, 25.0, None],
            "est_ld": [10.0, 5.0, 8.0],
            "est_oth": [8.0, 10.0, 12.0],
            "est_turnout": [70.0, 60.0, 65.0],
        }
    )


@pytest.fixture
def truth() -> pl.DataFrame:
    """True shares for E1 and E2 only."""
    return pl.DataFrame(
        {
            "constituency_code": ["E1", "E2"],
            "true_con": [44.0, 30.0],
            "true_lab": [30.0, 50.0],
            "true_ld": [12.0, 6.0],
            "true_oth": [14.0, 14.0],
        }
    )


@pytest.fixture
def cells() -> pl.DataFrame:
    """Two cells per constituency; weighted values sum to the estimates above."""
    return pl.DataFrame(
        {
            "constituency_code": ["E1", "E1", "E2", "E2", "E3", "E3"],
            "weighted_con": [15.0, 25.0, 0.0, 0.0, 5.0, 15.0],
            "weighted_lab": [10.0, 20.0, 5.0, 20.0, 1.0, 2.0],
            "weighted_ld": [4.0, 6.0, 2.0, 3.0, 3.0, 5.0],
            "weighted_oth": [3.0, 5.0, 4.0, 6.0, 6.0, 6.0],
        }
    )


# ── prepare_true_results() ───────────────────────────────────────────────────


class TestPrepareTrueResults:
    """True shares from the declared results table."""

    def test_fixture_results(self, results):
        truth = prepare_true_results(results)
        assert truth.columns == ["constituency_code", *(p.true_share for p in PARTIES)]
        assert truth["true_con"].to_list() == [45.0, 30.0]

    def test_other_is_sum_of_minor_parties(self, results):
        truth = prepare_true_results(results)
        # brexit + green + other, null brexit counts as zero
        assert truth["true_oth"].to_list() == [10.0, 8.0]

    def test_missing_minor_columns_skipped(self, results):
        truth = prepare_true_results(results.drop("brexit", "green"))
        assert truth["true_oth"].to_list() == [3.0, 3.0]

    def test_no_minor_columns_gives_null_other(self, results):
        truth = prepare_true_results(results, other_columns=[])
        assert truth["true_oth"].null_count() == 2

    def test_missing_party_column_raises(self, results):
        with pytest.raises(ValueError, match="lab"):
            prepare_true_results(results.drop("lab"))

    def test_duplicate_constituency_raises(self, results):
        doubled = pl.concat([results, results.head(1)])
        with pytest.raises(ValueError, match=r"more than one row .*\['E14000001'\]"):
            prepare_true_results(doubled)

    def test_duplicate_after_strip_raises(self):
        raw = pl.DataFrame(
            {
                "constituency_code": ["E1", " E1"],
                "con": [1.0, 1.0],
                "lab": [2.0, 2.0],
                "ld": [3.0, 3.0],
            }
        )
        with pytest.raises(ValueError, match="more than one row"):
            prepare_true_results(raw)

    def test_codes_stripped(self):
        raw = pl.DataFrame({"constituency_code": [" E1 "], "con": [1.0], "lab": [2.0], "ld": [3.0]})
        assert prepare_true_results(raw)["constituency_code"].to_list() == ["E1"]


# ── compute_scale_factors() ──────────────────────────────────────────────────


class TestComputeScaleFactors:
    """scale = true / estimated, null where undefined."""

    def test_ratio(self, estimates, truth):
        factors = compute_scale_factors(estimates, truth)
        assert factors["scale_con"][0] == pytest.approx(44.0 / 40.0)
        assert factors["scale_oth"][1] == pytest.approx(14.0 / 10.0)

    def test_zero_estimate_gives_null(self, estimates, truth):
        factors = compute_scale_factors(estimates, truth)
        assert factors["scale_con"][1] is None

    def test_null_estimate_gives_null(self, estimates, truth):
        factors = compute_scale_factors(estimates, truth)
        assert factors["scale_lab"][2] is None

    def test_missing_truth_gives_null(self, estimates, truth):
        factors = compute_scale_factors(estimates, truth)
        e3 = factors.filter(pl.col("constituency_code") == "E3").row(0, named=True)
        for party in PARTIES:
            assert e3[party.true_share] is None
            assert e3[party.scale_factor] is None

    def test_keeps_every_estimate_row(self, estimates, truth):
        factors = compute_scale_factors(estimates, truth)
        assert factors["constituency_code"].to_list() == ["E1", "E2", "E3"]

    def test_exact_estimate_gives_unit_factor(self, estimates, cells):
        """When the estimate equals the truth, scaling leaves the cells unchanged."""
        exact = estimates.select(
            "constituency_code",
            *[pl.col(p.estimate).alias(p.true_share) for p in PARTIES],
        )
        factors = compute_scale_factors(estimates, exact)
        e1_factors = factors.filter(pl.col("constituency_code") == "E1")
        for party in PARTIES:
            assert e1_factors[party.scale_factor][0] == pytest.approx(1.0)

        e1_cells = apply_scale_factors(cells, factors).filter(pl.col("constituency_code") == "E1")
        for party in PARTIES:
            assert e1_cells[party.scaled].to_list() == pytest.approx(
                e1_cells[party.weighted].to_list()
            )

    def test_no_infinite_factors(self, estimates, truth):
        factors = compute_scale_factors(estimates, truth)
        for party in PARTIES:
            assert not factors[party.scale_factor].is_infinite().any()


# ── apply_scale_factors() ────────────────────────────────────────────────────


class TestApplyScaleFactors:
    """scaled = weighted × the constituency's factor."""

    @pytest.fixture
    def scaled(self, cells, estimates, truth) -> pl.DataFrame:
        return apply_scale_factors(cells, compute_scale_factors(estimates, truth))

    def test_scaled_over_weighted_is_factor(self, scaled):
        e1 = scaled.filter(pl.col("constituency_code") == "E1")
        ratios = (e1["scaled_ld"] / e1["weighted_ld"]).to_list()
        assert ratios == pytest.approx([12.0 / 10.0, 12.0 / 10.0])

    def test_scaled_sums_to_true_share(self, scaled, truth):
        sums = scaled.group_by("constituency_code").agg(pl.col("scaled_lab").sum())
        e2 = sums.filter(pl.col("constituency_code") == "E2")["scaled_lab"][0]
        assert e2 == pytest.approx(truth["true_lab"][1])

    def test_null_factor_gives_null_scaled(self, scaled):
        e3 = scaled.filter(pl.col("constituency_code") == "E3")
        for party in PARTIES:
            assert e3[party.scaled].null_count() == 2

    def test_factor_columns_not_left_behind(self, scaled):
        assert not any(c.startswith("scale_") for c in scaled.columns)
        assert all(p.scaled in scaled.columns for p in PARTIES)

    def test_row_count_unchanged(self, scaled, cells):
        assert scaled.height == cells.height


# ── Comparison and summary ───────────────────────────────────────────────────


class TestComparison:
    def test_long_table(self, estimates, truth):
        comparison = build_comparison(compute_scale_factors(estimates, truth))
        assert comparison.height == 3 * len(PARTIES)
        assert comparison.columns == [
            "constituency_code",
            "constituency_name",
            "party",
            "true_share",
            "estimated_share",
            "scale_factor",
            "difference",
        ]

    def test_difference(self, estimates, truth):
        comparison = build_comparison(compute_scale_factors(estimates, truth))
        row = comparison.filter(
            (pl.col("constituency_code") == "E1") & (pl.col("party") == "Conservative")
        ).row(0, named=True)
        assert row["difference"] == pytest.approx(-4.0)

    def test_summary(self, estimates, truth):
        summary = scaling_summary(compute_scale_factors(estimates, truth))
        assert set(summary) == {p.key for p in PARTIES}
        assert summary["con"]["missing_scale_factors"] == 2
        assert summary["con"]["mean_abs_error"] == pytest.approx((4.0 + 30.0) / 2)
