"""Configuration constants for the Westminster MRP pipeline."""

from pathlib import Path

try:
    from importlib.metadata import version as _pkg_version

    _VERSION = _pkg_version("westminster-mrp")
except Exception:
    _VERSION = "dev"

RESULTS_ROOT = Path("results")
DEFAULT_ELECTION = "ge2019"

# ── Age ──────────────────────────────────────────────────────────────────────

UNDER_VOTING_AGE = "0-15"
AGE_BUCKETS = [UNDER_VOTING_AGE, "16-24", "25-34", "35-49", "50-64", "65+"]
AGE_REFERENCE = "16-24"

# Lower bound (inclusive) of every bucket after the first, in AGE_BUCKETS order.
AGE_BREAKS = [16, 25, 35, 50, 65]

# Census age labels → bucket. Canonical bucket names are accepted as-is.
CENSUS_AGE_LABELS: dict[str, str] = {
    "age 15 and under": "0-15",
    "aged 15 years and under": "0-15",
    "age 0 to 15": "0-15",
    "age 16 to 24": "16-24",
    "aged 16 to 24 years": "16-24",
    "age 25 to 34": "25-34",
    "aged 25 to 34 years": "25-34",
    "age 35 to 49": "35-49",
    "aged 35 to 49 years": "35-49",
    "age 50 to 64": "50-64",
    "aged 50 to 64 years": "50-64",
    "age 65 and over": "65+",
    "aged 65 years and over": "65+",
}

# ── Education ────────────────────────────────────────────────────────────────

OTHER_EDUCATION = "Other"
EDUCATION_LEVELS = [
    "No qualifications",
    "Level 1",
    "Level 2",
    "Level 3",
    "Level 4+",
    OTHER_EDUCATION,
]
EDUCATION_REFERENCE = "No qualifications"

# Census highest-qualification codes; any other code is OTHER_EDUCATION.
CENSUS_EDUCATION: dict[int, str] = {
    0: "No qualifications",
    1: "Level 1",
    2: "Level 2",
    3: "Level 3",
    4: "Level 4+",
}

# Vote-intention panel education codes (highest qualification, 0-5 scale).
VOTE_SURVEY_EDUCATION: dict[int, str] = {
    0: "No qualifications",
    1: "Level 1",
    2: "Level 2",
    3: "Level 3",
    4: "Level 4+",
    5: "Level 4+",
}

# Turnout survey education codes (face-to-face questionnaire coding).
TURNOUT_SURVEY_EDUCATION: dict[int, str] = {
    1: "Level 4+",  # postgraduate
    2: "Level 4+",  # first degree
    3: "Level 4+",  # other higher education
    4: "Level 3",  # A level or equivalent
    5: "Level 2",  # GCSE A*-C or equivalent
    6: "Level 1",  # GCSE D-G or equivalent
    7: OTHER_EDUCATION,  # foreign or other qualification
    8: "No qualifications",
}

# ── Sex ──────────────────────────────────────────────────────────────────────

# Survey sex code → female indicator. Other codes are excluded.
SURVEY_SEX_CODES: dict[int, int] = {1: 0, 2: 1}
CENSUS_FEMALE_LABELS = {"female", "females", "f"}

# ── Turnout ──────────────────────────────────────────────────────────────────

TURNOUT_VOTED_CODE = 1

# ── Results ──────────────────────────────────────────────────────────────────

# Minor-party share columns summed into the "Other" true share.
RESULT_OTHER_COLUMNS = ["brexit", "green", "snp", "pc", "ukip", "other"]

# ── Column aliases (raw source name → canonical name) ───────────────────────

CENSUS_ALIASES: dict[str, str] = {
    "geography code": "constituency_code",
    "pcon_code": "constituency_code",
    "geography": "constituency_name",
    "pcon_name": "constituency_name",
    "age_label": "age",
    "qualification_code": "education_code",
    "education": "education_code",
    "sex_label": "sex",
    "observation": "count",
    "value": "count",
}

VOTE_SURVEY_ALIASES: dict[str, str] = {
    "pcon": "constituency_code",
    "pcon_code": "constituency_code",
    "generalelectionvote": "vote",
    "vote_intention": "vote",
    "p_edlevel": "education",
    "gender": "sex",
}

TURNOUT_SURVEY_ALIASES: dict[str, str] = {
    "pcon": "constituency_code",
    "pcon_code": "constituency_code",
    "pcon_name": "constituency_name",
    "b01": "voted",
    "turnout": "voted",
    "edlevel": "education",
    "y01": "age",
    "gender": "sex",
}

RESULTS_ALIASES: dict[str, str] = {
    "ons_id": "constituency_code",
    "pcon_code": "constituency_code",
    "libdem": "ld",
    "lib_dem": "ld",
}
