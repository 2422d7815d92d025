"""
Tests for the post-stratification frame builder.

Covers census recoding (age labels, education codes, sex), the under-16
filter, duplicate-cell summing, perc normalization and vanished
constituency reporting.

Run: uv run pytest tests/test_frame.py -v
"""

import sys
from pathlib import Path

import polars as pl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.frame import (
    CELL_KEYS,
    build_frame,
    check_perc_totals,
    constituencies_table,
    find_vanished_constituencies,
    list_constituencies,
    recode_census,
)
from ukmrp.config import OTHER_EDUCATION
from ukmrp.models import Constituency

_SCHEMA = {
    "constituency_code": pl.Utf8,
    "constituency_name": pl.Utf8,
    "age": pl.Utf8,
    "education_code": pl.Int64,
    "sex": pl.Utf8,
    "count": pl.Float64,
}


def _census(rows: list[tuple]) -> pl.DataFrame:
    return pl.DataFrame(rows, schema=_SCHEMA, orient="row")


# ── recode_census() ──────────────────────────────────────────────────────────


class TestRecodeCensus:
    """Raw census labels and codes map onto the cell schema."""

    def test_age_labels_mapped(self):
        df = _census(
            [
                ("E1", "A", "Age 16 to 24", 0, "Male", 1.0),
                ("E1", "A", "Aged 65 years and over", 0, "Male", 1.0),
                ("E1", "A", "35-49", 0, "Male", 1.0),
                ("E1", "A", "age 15 and under", 0, "Male", 1.0),
            ]
        )
        assert recode_census(df)["age"].to_list() == ["16-24", "65+", "35-49", "0-15"]

    def test_unknown_age_label_is_null(self):
        df = _census([("E1", "A", "Age not stated", 0, "Male", 1.0)])
        assert recode_census(df)["age"].to_list() == [None]

    def test_education_codes(self):
        df = _census(
            [
                ("E1", "A", "16-24", 0, "Male", 1.0),
                ("E1", "A", "16-24", 4, "Male", 1.0),
                ("E1", "A", "16-24", 7, "Male", 1.0),
                ("E1", "A", "16-24", None, "Male", 1.0),
            ]
        )
        assert recode_census(df)["education"].to_list() == [
            "No qualifications",
            "Level 4+",
            OTHER_EDUCATION,
            OTHER_EDUCATION,
        ]

    def test_female_indicator(self):
        df = _census(
            [
                ("E1", "A", "16-24", 0, "Female", 1.0),
                ("E1", "A", "16-24", 0, "Male", 1.0),
                ("E1", "A", "16-24", 0, " FEMALE ", 1.0),
            ]
        )
        assert recode_census(df)["female"].to_list() == [1, 0, 1]

    def test_null_count_is_zero(self):
        df = _census([("E1", "A", "16-24", 0, "Male", None)])
        assert recode_census(df)["count"].to_list() == [0.0]

    def test_missing_column_raises(self):
        df = _census([("E1", "A", "16-24", 0, "Male", 1.0)]).drop("sex")
        with pytest.raises(ValueError, match="sex"):
            recode_census(df)


# ── build_frame() ────────────────────────────────────────────────────────────


class TestBuildFrame:
    """Frame construction from the shared census fixture."""

    def test_eight_cells(self, census):
        frame, _ = build_frame(census)
        assert frame.height == 8

    def test_columns(self, census):
        frame, _ = build_frame(census)
        assert frame.columns == [*CELL_KEYS, "count", "perc"]

    def test_under_voting_age_dropped(self, census):
        frame, manifest = build_frame(census)
        assert "0-15" not in frame["age"].to_list()
        assert manifest["dropped_under_voting_age"] == 4

    def test_perc_sums_to_100(self, census):
        frame, _ = build_frame(census)
        totals = frame.group_by("constituency_code").agg(pl.col("perc").sum())
        for total in totals["perc"].to_list():
            assert total == pytest.approx(100.0)
        assert check_perc_totals(frame).height == 0

    def test_perc_is_share_of_adult_total(self, census):
        frame, _ = build_frame(census)
        cell = frame.filter(
            (pl.col("constituency_code") == "E14000001")
            & (pl.col("age") == "16-24")
            & (pl.col("female") == 0)
        )
        # Alpha adult total: 300 + 280 + 350 + 370
        assert cell["perc"][0] == pytest.approx(300 / 1300 * 100)

    def test_sorted_by_cell_order(self, census):
        frame, _ = build_frame(census)
        first = frame.row(0, named=True)
        assert first["constituency_code"] == "E14000001"
        assert first["age"] == "16-24"
        assert first["female"] == 0

    def test_duplicate_rows_summed(self):
        df = _census(
            [
                ("E1", "A", "16-24", 0, "Male", 10.0),
                ("E1", "A", "Age 16 to 24", 0, "Male", 30.0),
                ("E1", "A", "16-24", 0, "Female", 60.0),
            ]
        )
        frame, _ = build_frame(df)
        assert frame.height == 2
        male = frame.filter(pl.col("female") == 0)
        assert male["count"][0] == 40.0
        assert male["perc"][0] == pytest.approx(40.0)

    def test_unknown_education_codes_share_other_cell(self):
        df = _census(
            [
                ("E1", "A", "16-24", 7, "Male", 10.0),
                ("E1", "A", "16-24", 9, "Male", 10.0),
            ]
        )
        frame, _ = build_frame(df)
        assert frame["education"].to_list() == [OTHER_EDUCATION]
        assert frame["count"][0] == 20.0

    def test_unknown_age_dropped_and_reported(self):
        df = _census(
            [
                ("E1", "A", "16-24", 0, "Male", 10.0),
                ("E1", "A", "Age not stated", 0, "Male", 5.0),
            ]
        )
        frame, manifest = build_frame(df)
        assert frame.height == 1
        assert manifest["dropped_unknown_age"] == 1
        assert manifest["unknown_age_labels"] == ["Age not stated"]

    def test_zero_total_gives_null_perc(self):
        df = _census(
            [
                ("E1", "A", "16-24", 0, "Male", 0.0),
                ("E1", "A", "16-24", 0, "Female", 0.0),
            ]
        )
        frame, _ = build_frame(df)
        assert frame["perc"].null_count() == 2

    def test_input_not_mutated(self, census):
        before = census.clone()
        build_frame(census)
        assert census.equals(before)


# ── Vanished constituencies ──────────────────────────────────────────────────


class TestVanishedConstituencies:
    """Constituencies with no adult cells are reported, not fatal."""

    @pytest.fixture
    def census_with_children_only(self) -> pl.DataFrame:
        return _census(
            [
                ("E1", "A", "16-24", 0, "Male", 10.0),
                ("E2", "B", "Age 15 and under", 0, "Male", 10.0),
            ]
        )

    def test_reported_in_manifest(self, census_with_children_only):
        frame, manifest = build_frame(census_with_children_only)
        assert manifest["vanished_constituencies"] == ["E2"]
        assert manifest["n_constituencies"] == 1

    def test_find_vanished(self, census_with_children_only):
        frame, _ = build_frame(census_with_children_only)
        assert find_vanished_constituencies(census_with_children_only, frame) == ["E2"]

    def test_none_vanished(self, census):
        _, manifest = build_frame(census)
        assert manifest["vanished_constituencies"] == []


# ── list_constituencies() ────────────────────────────────────────────────────


class TestListConstituencies:
    """Constituency enumeration from the frame."""

    def test_unique_and_sorted(self, census):
        frame, _ = build_frame(census)
        assert list_constituencies(frame) == [
            Constituency("E14000001", "Alpha North"),
            Constituency("E14000002", "Beta South"),
        ]

    def test_table(self, census):
        frame, _ = build_frame(census)
        table = constituencies_table(list_constituencies(frame))
        assert table.columns == ["constituency_code", "constituency_name"]
        assert table.height == 2

    def test_empty_table_keeps_schema(self):
        table = constituencies_table([])
        assert table.height == 0
        assert table.schema["constituency_code"] == pl.Utf8
