"""
Westminster MRP — Post-stratification Frame (Phase 1)

Turns census counts into the post-stratification frame: one row per
constituency × age bucket × education level × sex cell, with the cell's
population count and its percentage share of the constituency's adult
population.

Usage:
  uv run python analysis/frame.py --census data/census_2011.csv [--election ge2019]

Outputs (in results/<election>/01_frame/<date>/):
  - data/frame.parquet, data/constituencies.parquet
  - filtering_manifest.json, run_info.json, run_log.txt
"""

import argparse
import sys
from pathlib import Path

import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.run_context import RunContext, save_manifest
except ModuleNotFoundError:
    from run_context import RunContext, save_manifest  # type: ignore[no-redef]

from ukmrp.config import (
    AGE_BUCKETS,
    CENSUS_AGE_LABELS,
    CENSUS_ALIASES,
    CENSUS_EDUCATION,
    CENSUS_FEMALE_LABELS,
    DEFAULT_ELECTION,
    EDUCATION_LEVELS,
    OTHER_EDUCATION,
    UNDER_VOTING_AGE,
)
from ukmrp.loaders import read_table, require_columns
from ukmrp.models import Constituency

# ── Primer ───────────────────────────────────────────────────────────────────

FRAME_PRIMER = """\
# Post-stratification Frame

## Purpose

MRP predicts outcomes for demographic cells and then reweights those
predictions by how many people actually live in each cell. This phase builds
the table of cells and their population shares.

## Method

1. Map census age labels to six buckets (0-15, 16-24, 25-34, 35-49, 50-64, 65+)
   and drop the 0-15 bucket (below voting age).
2. Recode census qualification codes 0-4 to five named levels; every other
   code becomes "Other".
3. Derive a female indicator (female = 1).
4. Sum counts for rows that land on the same cell.
5. `perc` = cell count / constituency total × 100.

## Outputs

| File | Description |
|------|-------------|
| `data/frame.parquet` | One row per cell: code, name, age, education, female, count, perc |
| `data/constituencies.parquet` | Constituency codes and names |
| `filtering_manifest.json` | Rows dropped per reason, vanished constituencies |

## Caveats

- Constituencies whose rows are all dropped vanish from the frame. They are
  reported, not fatal.
"""

# ── Constants ────────────────────────────────────────────────────────────────

CENSUS_COLUMNS = ["constituency_code", "constituency_name", "age", "education_code", "sex", "count"]
CELL_KEYS = ["constituency_code", "constituency_name", "age", "education", "female"]
PERC_TOLERANCE = 1e-6

_AGE_LOOKUP = {**CENSUS_AGE_LABELS, **{b.lower(): b for b in AGE_BUCKETS}}
_AGE_ORDER = {b: i for i, b in enumerate(AGE_BUCKETS)}
_EDUCATION_ORDER = {e: i for i, e in enumerate(EDUCATION_LEVELS)}


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Westminster MRP post-stratification frame")
    parser.add_argument("--census", required=True, help="Census counts (csv/parquet/sav/dta)")
    parser.add_argument("--election", default=DEFAULT_ELECTION)
    parser.add_argument("--run-id", default=None, help="Group outputs under a pipeline run id")
    parser.add_argument("--results-root", default=None, help="Override results root")
    return parser.parse_args()


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def cell_sort_keys() -> list[pl.Expr]:
    """Sort expressions putting cells in constituency, age, education, sex order."""
    return [
        pl.col("constituency_code"),
        pl.col("age").replace_strict(_AGE_ORDER, default=len(_AGE_ORDER)),
        pl.col("education").replace_strict(_EDUCATION_ORDER, default=len(_EDUCATION_ORDER)),
        pl.col("female"),
    ]


# ── Core ─────────────────────────────────────────────────────────────────────


def recode_census(census: pl.DataFrame) -> pl.DataFrame:
    """Map raw census labels/codes onto the cell schema, keeping every row.

    Unknown age labels come back as a null ``age``.
    """
    require_columns(census, CENSUS_COLUMNS, "census")
    return census.select(
        pl.col("constituency_code").cast(pl.Utf8).str.strip_chars(),
        pl.col("constituency_name").cast(pl.Utf8).str.strip_chars(),
        pl.col("age")
        .cast(pl.Utf8)
        .str.strip_chars()
        .str.to_lowercase()
        .replace_strict(_AGE_LOOKUP, default=None, return_dtype=pl.Utf8)
        .alias("age"),
        pl.col("age").cast(pl.Utf8).alias("age_label"),
        pl.col("education_code")
        .cast(pl.Int64, strict=False)
        .replace_strict(CENSUS_EDUCATION, default=OTHER_EDUCATION, return_dtype=pl.Utf8)
        .fill_null(OTHER_EDUCATION)
        .alias("education"),
        pl.col("sex")
        .cast(pl.Utf8)
        .str.strip_chars()
        .str.to_lowercase()
        .is_in(sorted(CENSUS_FEMALE_LABELS))
        .cast(pl.Int8)
        .alias("female"),
        pl.col("count").cast(pl.Float64).fill_null(0.0),
    )


def build_frame(census: pl.DataFrame) -> tuple[pl.DataFrame, dict]:
    """Build the post-stratification frame from census counts.

    Returns (frame, manifest). The frame has columns constituency_code,
    constituency_name, age, education, female, count, perc. ``perc`` sums to
    100 within every constituency (null for a constituency with zero total).
    """
    recoded = recode_census(census)

    unknown_age = recoded.filter(pl.col("age").is_null())
    under_age = recoded.filter(pl.col("age") == UNDER_VOTING_AGE)
    kept = recoded.filter(pl.col("age").is_not_null() & (pl.col("age") != UNDER_VOTING_AGE))

    frame = (
        kept.group_by(CELL_KEYS)
        .agg(pl.col("count").sum())
        .with_columns(pl.col("count").sum().over("constituency_code").alias("_total"))
        .with_columns(
            pl.when(pl.col("_total") > 0)
            .then(pl.col("count") / pl.col("_total") * 100)
            .otherwise(None)
            .alias("perc")
        )
        .drop("_total")
        .sort(cell_sort_keys())
    )

    vanished = find_vanished_constituencies(census, frame)
    if vanished:
        print(f"  WARNING: {len(vanished)} constituencies have no cells after filtering:")
        for code in vanished[:10]:
            print(f"    {code}")

    manifest = {
        "raw_rows": census.height,
        "dropped_under_voting_age": under_age.height,
        "dropped_unknown_age": unknown_age.height,
        "unknown_age_labels": sorted(set(unknown_age["age_label"].drop_nulls().to_list())),
        "n_cells": frame.height,
        "n_constituencies": frame["constituency_code"].n_unique(),
        "vanished_constituencies": vanished,
    }
    print(
        f"  Frame: {frame.height:,} cells across {manifest['n_constituencies']} constituencies "
        f"({under_age.height:,} under-16 rows, {unknown_age.height:,} unknown-age rows dropped)"
    )
    return frame, manifest


def find_vanished_constituencies(census: pl.DataFrame, frame: pl.DataFrame) -> list[str]:
    """Constituency codes present in the raw census but absent from the frame."""
    raw_codes = set(census["constituency_code"].cast(pl.Utf8).str.strip_chars().to_list())
    frame_codes = set(frame["constituency_code"].to_list())
    return sorted(c for c in raw_codes - frame_codes if c is not None)


def list_constituencies(frame: pl.DataFrame) -> list[Constituency]:
    """Enumerate the frame's constituencies once, ordered by code."""
    pairs = (
        frame.select("constituency_code", "constituency_name")
        .unique(subset="constituency_code", keep="first")
        .sort("constituency_code")
    )
    return [Constituency(code=c, name=n) for c, n in pairs.iter_rows()]


def constituencies_table(constituencies: list[Constituency]) -> pl.DataFrame:
    return pl.DataFrame(
        {
            "constituency_code": [c.code for c in constituencies],
            "constituency_name": [c.name for c in constituencies],
        },
        schema={"constituency_code": pl.Utf8, "constituency_name": pl.Utf8},
    )


def check_perc_totals(frame: pl.DataFrame, tol: float = PERC_TOLERANCE) -> pl.DataFrame:
    """Return constituencies whose cell shares do not sum to 100 within *tol*."""
    totals = frame.group_by("constituency_code").agg(pl.col("perc").sum().alias("perc_total"))
    return totals.filter((pl.col("perc_total") - 100).abs() > tol).sort("constituency_code")


# ── Main ─────────────────────────────────────────────────────────────────────


def run_frame_phase(census: pl.DataFrame, ctx: RunContext) -> pl.DataFrame:
    """Build, check and save the frame inside an active RunContext."""
    print_header("POST-STRATIFICATION FRAME")
    frame, manifest = build_frame(census)

    bad = check_perc_totals(frame)
    if bad.height:
        print(f"  WARNING: {bad.height} constituencies with perc totals away from 100")
    manifest["perc_total_mismatches"] = bad.height

    constituencies = list_constituencies(frame)
    frame.write_parquet(ctx.data_dir / "frame.parquet")
    constituencies_table(constituencies).write_parquet(ctx.data_dir / "constituencies.parquet")
    print(f"  Saved: frame.parquet ({frame.height:,} rows)")
    print(f"  Saved: constituencies.parquet ({len(constituencies)} rows)")

    save_manifest({"analysis": "01_frame", **manifest}, ctx.run_dir)
    return frame


def main() -> None:
    args = parse_args()
    results_root = Path(args.results_root) if args.results_root else None

    census = read_table(Path(args.census), CENSUS_ALIASES, CENSUS_COLUMNS)

    with RunContext(
        election=args.election,
        analysis_name="01_frame",
        params=vars(args),
        results_root=results_root,
        primer=FRAME_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print(f"Westminster MRP Frame — Election {args.election}")
        print(f"Census:   {args.census} ({census.height:,} rows)")
        print(f"Output:   {ctx.run_dir}")
        run_frame_phase(census, ctx)


if __name__ == "__main__":
    main()
