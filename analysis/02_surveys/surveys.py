"""
Westminster MRP — Survey Recoding (Phase 2)

Recodes the pre-election vote-intention panel and the post-election turnout
survey into the frame's categorical schema (age bucket, education level,
female indicator, constituency code) and derives the model outcomes.

Usage:
  uv run python analysis/surveys.py --vote-survey data/bes_panel.sav \
      --turnout-survey data/bes_f2f.sav [--election ge2019]

Outputs (in results/<election>/02_surveys/<date>/):
  - data/vote_panel.parquet, data/turnout_panel.parquet
  - filtering_manifest.json, run_info.json, run_log.txt
"""

import argparse
import sys
from collections.abc import Iterable
from pathlib import Path

import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.run_context import RunContext, resolve_upstream_dir, save_manifest
except ModuleNotFoundError:
    from run_context import (  # type: ignore[no-redef]
        RunContext,
        resolve_upstream_dir,
        save_manifest,
    )

from ukmrp.config import (
    AGE_BREAKS,
    AGE_BUCKETS,
    DEFAULT_ELECTION,
    RESULTS_ROOT,
    SURVEY_SEX_CODES,
    TURNOUT_SURVEY_ALIASES,
    TURNOUT_SURVEY_EDUCATION,
    TURNOUT_VOTED_CODE,
    VOTE_SURVEY_ALIASES,
    VOTE_SURVEY_EDUCATION,
)
from ukmrp.loaders import read_table, require_columns
from ukmrp.models import PARTIES

# ── Primer ───────────────────────────────────────────────────────────────────

SURVEYS_PRIMER = """\
# Survey Recoding

## Purpose

Puts both surveys on the same footing as the post-stratification frame so the
models fitted on them can be evaluated on every frame cell.

## Method

Both surveys:
- Keep respondents whose constituency code appears in the frame.
- Bucket numeric age into 0-15, 16-24, 25-34, 35-49, 50-64, 65+.
- Map survey-specific education codes onto the frame's levels.
- Sex code 1 = male, 2 = female; other codes are excluded.

Vote-intention panel: code 1 = Conservative, 2 = Labour, 3 = Liberal Democrat,
4-13 = Other; one 0/1 dummy per party. Other codes (don't know, won't vote,
missing) are dropped.

Turnout survey: 1 = voted, other non-negative codes = did not vote, negative
codes (missing) are dropped.

Filtering is terminal: nothing is imputed.

## Outputs

| File | Description |
|------|-------------|
| `data/vote_panel.parquet` | constituency_code, age, education, female, con, lab, ld, oth |
| `data/turnout_panel.parquet` | constituency_code, age, education, female, voted |
| `filtering_manifest.json` | Rows dropped at each step, per survey |
"""

# ── Constants ────────────────────────────────────────────────────────────────

VOTE_SURVEY_COLUMNS = ["constituency_code", "vote", "education", "age", "sex"]
TURNOUT_SURVEY_COLUMNS = ["constituency_code", "voted", "education", "age", "sex"]
RESPONDENT_COLUMNS = ["constituency_code", "age", "education", "female"]

_VOTE_CODE_TO_PARTY = {code: party.key for party in PARTIES for code in party.vote_codes}


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Westminster MRP survey recoding")
    parser.add_argument("--vote-survey", required=True, help="Vote-intention panel file")
    parser.add_argument("--turnout-survey", required=True, help="Turnout survey file")
    parser.add_argument("--election", default=DEFAULT_ELECTION)
    parser.add_argument("--run-id", default=None, help="Group outputs under a pipeline run id")
    parser.add_argument("--frame-dir", default=None, help="Override frame results directory")
    parser.add_argument("--results-root", default=None, help="Override results root")
    return parser.parse_args()


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def bucket_age(age: pl.Expr) -> pl.Expr:
    """Bucket a numeric age expression into AGE_BUCKETS labels.

    Null, NaN and negative (sentinel) ages map to null.
    """
    a = age.cast(pl.Float64, strict=False)
    expr = pl.when(a.is_null() | a.is_nan() | (a < 0)).then(pl.lit(None, dtype=pl.Utf8))
    for bound, bucket in zip(AGE_BREAKS, AGE_BUCKETS[:-1], strict=True):
        expr = expr.when(a < bound).then(pl.lit(bucket))
    return expr.otherwise(pl.lit(AGE_BUCKETS[-1]))


def _drop_nulls_counted(
    df: pl.DataFrame,
    column: str,
    reason: str,
    manifest: dict[str, int],
) -> pl.DataFrame:
    """Drop rows where *column* is null, recording how many went under *reason*."""
    kept = df.filter(pl.col(column).is_not_null())
    manifest[reason] = df.height - kept.height
    return kept


def _recode_respondents(
    raw: pl.DataFrame,
    known_codes: Iterable[str],
    education_map: dict[int, str],
    manifest: dict[str, int],
) -> pl.DataFrame:
    """Constituency, education, sex and age recodes shared by both surveys."""
    df = raw.with_columns(
        pl.col("constituency_code").cast(pl.Utf8).str.strip_chars(),
        pl.col("education")
        .cast(pl.Int64, strict=False)
        .replace_strict(education_map, default=None, return_dtype=pl.Utf8)
        .alias("education"),
        pl.col("sex")
        .cast(pl.Int64, strict=False)
        .replace_strict(SURVEY_SEX_CODES, default=None, return_dtype=pl.Int8)
        .alias("female"),
        bucket_age(pl.col("age")).alias("age"),
    )

    before = df.height
    df = df.filter(pl.col("constituency_code").is_in(sorted(set(known_codes))))
    manifest["dropped_unknown_constituency"] = before - df.height

    df = _drop_nulls_counted(df, "education", "dropped_unmapped_education", manifest)
    df = _drop_nulls_counted(df, "female", "dropped_invalid_sex", manifest)
    df = _drop_nulls_counted(df, "age", "dropped_missing_age", manifest)
    return df


# ── Core ─────────────────────────────────────────────────────────────────────


def recode_vote_survey(
    raw: pl.DataFrame,
    known_codes: Iterable[str],
) -> tuple[pl.DataFrame, dict[str, int]]:
    """Recode the vote-intention panel.

    Returns (panel, manifest). The panel has RESPONDENT_COLUMNS plus one Int8
    dummy per party (exactly one is 1 on every row).
    """
    require_columns(raw, VOTE_SURVEY_COLUMNS, "vote survey")
    manifest: dict[str, int] = {"raw_rows": raw.height}

    df = raw.with_columns(
        pl.col("vote")
        .cast(pl.Int64, strict=False)
        .replace_strict(_VOTE_CODE_TO_PARTY, default=None, return_dtype=pl.Utf8)
        .alias("_party")
    )
    df = _drop_nulls_counted(df, "_party", "dropped_unmapped_vote", manifest)
    df = _recode_respondents(df, known_codes, VOTE_SURVEY_EDUCATION, manifest)

    panel = df.select(
        *RESPONDENT_COLUMNS,
        *[(pl.col("_party") == party.key).cast(pl.Int8).alias(party.key) for party in PARTIES],
    )
    manifest["kept_rows"] = panel.height
    return panel, manifest


def recode_turnout_survey(
    raw: pl.DataFrame,
    known_codes: Iterable[str],
) -> tuple[pl.DataFrame, dict[str, int]]:
    """Recode the turnout survey into RESPONDENT_COLUMNS plus a 0/1 ``voted``.

    Negative turnout codes are missing and dropped; 1 is voted; any other
    non-negative code is did-not-vote.
    """
    require_columns(raw, TURNOUT_SURVEY_COLUMNS, "turnout survey")
    manifest: dict[str, int] = {"raw_rows": raw.height}

    v = pl.col("voted").cast(pl.Int64, strict=False)
    df = raw.with_columns(
        pl.when(v.is_null() | (v < 0))
        .then(pl.lit(None, dtype=pl.Int8))
        .otherwise((v == TURNOUT_VOTED_CODE).cast(pl.Int8))
        .alias("voted")
    )
    df = _drop_nulls_counted(df, "voted", "dropped_missing_turnout", manifest)
    df = _recode_respondents(df, known_codes, TURNOUT_SURVEY_EDUCATION, manifest)

    panel = df.select(*RESPONDENT_COLUMNS, "voted")
    manifest["kept_rows"] = panel.height
    return panel, manifest


def survey_coverage(panel: pl.DataFrame, known_codes: Iterable[str]) -> dict[str, int]:
    """How many frame constituencies have at least one respondent."""
    known = set(known_codes)
    present = set(panel["constituency_code"].unique().to_list()) & known
    return {"n_constituencies": len(known), "n_covered": len(present)}


# ── Main ─────────────────────────────────────────────────────────────────────


def run_surveys_phase(
    vote_raw: pl.DataFrame,
    turnout_raw: pl.DataFrame,
    known_codes: list[str],
    ctx: RunContext,
) -> tuple[pl.DataFrame, pl.DataFrame]:
    """Recode both surveys and save them inside an active RunContext."""
    print_header("VOTE-INTENTION PANEL")
    vote_panel, vote_manifest = recode_vote_survey(vote_raw, known_codes)
    for key, value in vote_manifest.items():
        print(f"  {key}: {value:,}")
    vote_cov = survey_coverage(vote_panel, known_codes)
    print(f"  Constituencies covered: {vote_cov['n_covered']} of {vote_cov['n_constituencies']}")

    print_header("TURNOUT SURVEY")
    turnout_panel, turnout_manifest = recode_turnout_survey(turnout_raw, known_codes)
    for key, value in turnout_manifest.items():
        print(f"  {key}: {value:,}")
    turnout_cov = survey_coverage(turnout_panel, known_codes)
    print(
        f"  Constituencies covered: {turnout_cov['n_covered']} of "
        f"{turnout_cov['n_constituencies']} (the rest use fixed effects only)"
    )

    vote_panel.write_parquet(ctx.data_dir / "vote_panel.parquet")
    turnout_panel.write_parquet(ctx.data_dir / "turnout_panel.parquet")
    print(f"  Saved: vote_panel.parquet ({vote_panel.height:,} rows)")
    print(f"  Saved: turnout_panel.parquet ({turnout_panel.height:,} rows)")

    save_manifest(
        {
            "analysis": "02_surveys",
            "vote_survey": {**vote_manifest, **vote_cov},
            "turnout_survey": {**turnout_manifest, **turnout_cov},
        },
        ctx.run_dir,
    )
    return vote_panel, turnout_panel


def main() -> None:
    args = parse_args()
    results_root = Path(args.results_root) if args.results_root else RESULTS_ROOT

    with RunContext(
        election=args.election,
        analysis_name="02_surveys",
        params=vars(args),
        results_root=results_root,
        primer=SURVEYS_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        frame_dir = resolve_upstream_dir(
            "01_frame",
            ctx.election_root,
            args.run_id,
            Path(args.frame_dir) if args.frame_dir else None,
        )
        constituencies_path = frame_dir / "data" / "constituencies.parquet"
        if not constituencies_path.exists():
            msg = f"No constituencies parquet at {constituencies_path} (run the frame phase first)"
            raise FileNotFoundError(msg)
        known_codes = pl.read_parquet(constituencies_path)["constituency_code"].to_list()

        print(f"Westminster MRP Surveys — Election {args.election}")
        print(f"Frame:    {frame_dir} ({len(known_codes)} constituencies)")
        print(f"Output:   {ctx.run_dir}")

        vote_raw = read_table(Path(args.vote_survey), VOTE_SURVEY_ALIASES, VOTE_SURVEY_COLUMNS)
        turnout_raw = read_table(
            Path(args.turnout_survey), TURNOUT_SURVEY_ALIASES, TURNOUT_SURVEY_COLUMNS
        )
        run_surveys_phase(vote_raw, turnout_raw, known_codes, ctx)


if __name__ == "__main__":
    main()
