"""Shared fixtures for Westminster MRP tests.

Provides a small two-constituency scenario that runs end to end:
census counts (8 adult cells plus under-16 rows), a 20-row vote-intention
panel covering both constituencies, a 20-row turnout survey covering only
the first (plus a variant covering both), and declared results for both.
"""

import polars as pl
import pytest

ALPHA = "E14000001"
BETA = "E14000002"

# ── Census ───────────────────────────────────────────────────────────────────


@pytest.fixture
def census() -> pl.DataFrame:
    """2 constituencies × 3 age labels × 1 education code × 2 sexes.

    The "Age 15 and under" rows are dropped by the frame; the rest form
    2 × 2 × 1 × 2 = 8 cells.
    """
    rows = []
    counts = {
        ALPHA: [120, 110, 300, 280, 350, 370],
        BETA: [90, 95, 410, 400, 220, 260],
    }
    names = {ALPHA: "Alpha North", BETA: "Beta South"}
    labels = ["Age 15 and under", "Age 16 to 24", "Age 25 to 34"]
    for code, values in counts.items():
        i = 0
        for label in labels:
            for sex in ("Male", "Female"):
                rows.append((code, names[code], label, 0, sex, values[i]))
                i += 1
    return pl.DataFrame(
        rows,
        schema={
            "constituency_code": pl.Utf8,
            "constituency_name": pl.Utf8,
            "age": pl.Utf8,
            "education_code": pl.Int64,
            "sex": pl.Utf8,
            "count": pl.Int64,
        },
        orient="row",
    )


# ── Surveys ──────────────────────────────────────────────────────────────────


@pytest.fixture
def vote_survey() -> pl.DataFrame:
    """20 valid respondents. Every party appears in every age × sex combination."""
    rows = []
    combos = [(20, 1), (20, 2), (30, 1), (30, 2)]
    i = 0
    for age, sex in combos:
        for vote in (1, 2, 3, 4):
            code = ALPHA if i % 2 == 0 else BETA
            rows.append((code, vote, 0, age, sex))
            i += 1
    rows += [
        (ALPHA, 2, 0, 22, 2),
        (BETA, 1, 0, 31, 1),
        (ALPHA, 12, 0, 19, 1),
        (BETA, 3, 0, 28, 2),
    ]
    return pl.DataFrame(
        rows,
        schema={
            "constituency_code": pl.Utf8,
            "vote": pl.Int64,
            "education": pl.Int64,
            "age": pl.Int64,
            "sex": pl.Int64,
        },
        orient="row",
    )


@pytest.fixture
def turnout_survey() -> pl.DataFrame:
    """20 respondents, all in ALPHA. Both turnout outcomes in every age × sex combination."""
    rows = []
    combos = [(18, 1), (23, 2), (27, 1), (33, 2)]
    voted = [1, 1, 2, 1, 2]
    for age, sex in combos:
        for v in voted:
            rows.append((ALPHA, v, 8, age, sex))
    return pl.DataFrame(
        rows,
        schema={
            "constituency_code": pl.Utf8,
            "voted": pl.Int64,
            "education": pl.Int64,
            "age": pl.Int64,
            "sex": pl.Int64,
        },
        orient="row",
    )


@pytest.fixture
def turnout_survey_both() -> pl.DataFrame:
    """20 respondents alternating between ALPHA and BETA.

    Each constituency has voters and non-voters, so neither needs the
    fixed-effects fallback.
    """
    rows = []
    combos = [(18, 1), (23, 2), (27, 1), (33, 2)]
    voted = [1, 1, 2, 1, 2]
    i = 0
    for age, sex in combos:
        for v in voted:
            code = ALPHA if i % 2 == 0 else BETA
            rows.append((code, v, 8, age, sex))
            i += 1
    return pl.DataFrame(
        rows,
        schema={
            "constituency_code": pl.Utf8,
            "voted": pl.Int64,
            "education": pl.Int64,
            "age": pl.Int64,
            "sex": pl.Int64,
        },
        orient="row",
    )


# ── Results ──────────────────────────────────────────────────────────────────


@pytest.fixture
def results() -> pl.DataFrame:
    """Declared vote shares (%). Other = brexit + green + other."""
    return pl.DataFrame(
        {
            "constituency_code": [ALPHA, BETA],
            "con": [45.0, 30.0],
            "lab": [35.0, 50.0],
            "ld": [10.0, 12.0],
            "brexit": [3.0, None],
            "green": [4.0, 5.0],
            "other": [3.0, 3.0],
        }
    )
