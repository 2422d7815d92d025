"""
Tests for the party and constituency models in ukmrp.models.

Run: uv run pytest tests/test_models.py -v
"""

import dataclasses

import pytest

from ukmrp.models import (
    CONSERVATIVE,
    OTHER,
    PARTIES,
    Constituency,
)

# ── Party ────────────────────────────────────────────────────────────────────


class TestParty:
    """Derived column names come from the party key."""

    def test_column_names(self):
        assert CONSERVATIVE.prediction == "pred_con"
        assert CONSERVATIVE.weighted == "weighted_con"
        assert CONSERVATIVE.scaled == "scaled_con"
        assert CONSERVATIVE.estimate == "est_con"
        assert CONSERVATIVE.true_share == "true_con"
        assert CONSERVATIVE.scale_factor == "scale_con"

    def test_four_parties_in_order(self):
        assert [p.key for p in PARTIES] == ["con", "lab", "ld", "oth"]

    def test_vote_codes_disjoint(self):
        codes = [c for p in PARTIES for c in p.vote_codes]
        assert len(codes) == len(set(codes))

    def test_vote_codes_cover_one_to_thirteen(self):
        codes = sorted(c for p in PARTIES for c in p.vote_codes)
        assert codes == list(range(1, 14))

    def test_other_has_no_single_result_column(self):
        assert OTHER.result_column is None
        assert all(p.result_column for p in PARTIES if p is not OTHER)

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            CONSERVATIVE.key = "tory"


# ── Constituency ─────────────────────────────────────────────────────────────


class TestConstituency:
    def test_equality_and_hash(self):
        a = Constituency("E14000001", "Alpha")
        assert a == Constituency("E14000001", "Alpha")
        assert len({a, Constituency("E14000001", "Alpha")}) == 1
