"""
Westminster MRP — Scaling to Declared Results (Phase 5)

Compares the post-stratified constituency estimates with the declared
results, computes a per-party, per-constituency scale factor
(true share / estimated share), and applies it to every cell's weighted
prediction. The scaled cells are the published artifact.

Usage:
  uv run python analysis/scaling.py --results data/ge2019_results.csv [--election ge2019]

Outputs (in results/<election>/05_scaling/<date>/):
  - data/scale_factors.parquet   Estimates, true shares and scale factors per constituency
  - data/scaled_cells.parquet    Cell predictions + scaled_* (also written as CSV)
  - data/comparison.parquet      Long constituency × party true-vs-estimated table
  - filtering_manifest.json, run_info.json, run_log.txt
"""

import argparse
import sys
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

from ukmrp.config import DEFAULT_ELECTION, RESULT_OTHER_COLUMNS, RESULTS_ALIASES, RESULTS_ROOT
from ukmrp.loaders import read_table, require_columns
from ukmrp.models import PARTIES

# ── Primer ───────────────────────────────────────────────────────────────────

SCALING_PRIMER = """\
# Scaling to Declared Results

## Purpose

Post-stratified estimates carry model bias. Scaling each constituency's
estimate to the declared result gives cell-level predictions that add up to
the real outcome, so the demographic breakdown is anchored to ground truth.

## Method

1. True shares per party (percentages). "Other" is the sum of the minor-party
   columns.
2. Left-join true shares onto the constituency estimates by code.
3. `scale = true / estimated`. Missing when the estimate is zero or either
   side is missing.
4. `scaled = weighted × scale` for every cell of the constituency.

Missing scale factors stay missing in the scaled cells: they flag
constituencies that could not be scaled.

## Outputs

| File | Description |
|------|-------------|
| `data/scale_factors.parquet` | est_*, true_*, scale_* per constituency |
| `data/scaled_cells.parquet` | Final per-cell table with scaled_* per party |
| `data/scaled_cells.csv` | Same, as CSV |
| `data/comparison.parquet` | constituency × party: true, estimated, scale factor, difference |
"""

# ── Constants ────────────────────────────────────────────────────────────────

RESULTS_COLUMNS = ["constituency_code"]
DEFAULT_PARTY_COLUMNS: dict[str, str] = {
    party.key: party.result_column for party in PARTIES if party.result_column is not None
}


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Westminster MRP scaling to declared results")
    parser.add_argument("--results", required=True, help="Declared results (vote shares, %%)")
    parser.add_argument("--election", default=DEFAULT_ELECTION)
    parser.add_argument("--run-id", default=None, help="Group outputs under a pipeline run id")
    parser.add_argument(
        "--poststrat-dir", default=None, help="Override post-stratification results directory"
    )
    parser.add_argument("--results-root", default=None, help="Override results root")
    return parser.parse_args()


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


# ── Core ─────────────────────────────────────────────────────────────────────


def prepare_true_results(
    results: pl.DataFrame,
    party_columns: dict[str, str] | None = None,
    other_columns: list[str] | None = None,
) -> pl.DataFrame:
    """Select true vote shares per party from the declared results.

    *party_columns* maps party key → results column for the named parties;
    the Other party's share is the horizontal sum of *other_columns* (missing
    columns are skipped, null cells count as zero).
    """
    party_columns = DEFAULT_PARTY_COLUMNS if party_columns is None else party_columns
    other_columns = RESULT_OTHER_COLUMNS if other_columns is None else other_columns

    require_columns(results, RESULTS_COLUMNS + list(party_columns.values()), "results")
    present_others = [c for c in other_columns if c in results.columns]

    exprs: list[pl.Expr] = [pl.col("constituency_code").cast(pl.Utf8).str.strip_chars()]
    for party in PARTIES:
        if party.key in party_columns:
            exprs.append(pl.col(party_columns[party.key]).cast(pl.Float64).alias(party.true_share))
        elif party.result_column is None and present_others:
            exprs.append(
                pl.sum_horizontal(pl.col(c).cast(pl.Float64) for c in present_others).alias(
                    party.true_share
                )
            )
        else:
            exprs.append(pl.lit(None, dtype=pl.Float64).alias(party.true_share))
    truth = results.select(exprs)

    duplicated = truth.filter(pl.col("constituency_code").is_duplicated())
    if duplicated.height > 0:
        codes = sorted(duplicated["constituency_code"].unique().to_list())
        msg = f"results has more than one row for constituencies {codes}"
        raise ValueError(msg)
    return truth


def compute_scale_factors(estimates: pl.DataFrame, truth: pl.DataFrame) -> pl.DataFrame:
    """Join true shares onto estimates and compute scale_<party>.

    Constituencies without a declared result keep null true shares and null
    scale factors. A zero or null estimate also gives a null factor.
    """
    joined = estimates.join(truth, on="constituency_code", how="left")
    return joined.with_columns(
        pl.when(
            pl.col(party.estimate).is_null()
            | pl.col(party.true_share).is_null()
            | (pl.col(party.estimate) == 0)
        )
        .then(pl.lit(None, dtype=pl.Float64))
        .otherwise(pl.col(party.true_share) / pl.col(party.estimate))
        .alias(party.scale_factor)
        for party in PARTIES
    )


def apply_scale_factors(cells: pl.DataFrame, factors: pl.DataFrame) -> pl.DataFrame:
    """scaled_<party> = weighted_<party> × the constituency's scale_<party>.

    Cells in constituencies with a null factor get a null scaled value.
    """
    lookup = factors.select("constituency_code", *[party.scale_factor for party in PARTIES])
    return (
        cells.join(lookup, on="constituency_code", how="left")
        .with_columns(
            (pl.col(party.weighted) * pl.col(party.scale_factor)).alias(party.scaled)
            for party in PARTIES
        )
        .drop([party.scale_factor for party in PARTIES])
    )


def build_comparison(factors: pl.DataFrame) -> pl.DataFrame:
    """Long true-vs-estimated table: one row per constituency × party."""
    frames = [
        factors.select(
            "constituency_code",
            "constituency_name",
            pl.lit(party.label).alias("party"),
            pl.col(party.true_share).alias("true_share"),
            pl.col(party.estimate).alias("estimated_share"),
            pl.col(party.scale_factor).alias("scale_factor"),
        )
        for party in PARTIES
    ]
    return (
        pl.concat(frames)
        .with_columns((pl.col("estimated_share") - pl.col("true_share")).alias("difference"))
        .sort("constituency_code", "party")
    )


def scaling_summary(factors: pl.DataFrame) -> dict:
    """Mean absolute error and missing-factor counts per party."""
    summary: dict[str, dict] = {}
    for party in PARTIES:
        diff = (factors[party.estimate] - factors[party.true_share]).abs()
        summary[party.key] = {
            "mean_abs_error": diff.mean(),
            "missing_scale_factors": factors[party.scale_factor].null_count(),
        }
    return summary


# ── Main ─────────────────────────────────────────────────────────────────────


def run_scaling_phase(
    cells: pl.DataFrame,
    estimates: pl.DataFrame,
    results: pl.DataFrame,
    ctx: RunContext,
) -> tuple[pl.DataFrame, pl.DataFrame]:
    """Scale estimates to the declared results inside an active RunContext."""
    print_header("SCALE FACTORS")
    truth = prepare_true_results(results)
    factors = compute_scale_factors(estimates, truth)
    unmatched = factors.filter(pl.col(PARTIES[0].true_share).is_null()).height
    print(f"  {factors.height} constituencies, {unmatched} without a declared result")

    summary = scaling_summary(factors)
    for party in PARTIES:
        s = summary[party.key]
        mae = "n/a" if s["mean_abs_error"] is None else f"{s['mean_abs_error']:.2f}"
        print(
            f"  {party.label:<18} mean |est - true| = {mae} pts, "
            f"missing factors = {s['missing_scale_factors']}"
        )

    print_header("SCALED CELLS")
    scaled = apply_scale_factors(cells, factors)
    comparison = build_comparison(factors)

    factors.write_parquet(ctx.data_dir / "scale_factors.parquet")
    scaled.write_parquet(ctx.data_dir / "scaled_cells.parquet")
    scaled.write_csv(ctx.data_dir / "scaled_cells.csv")
    comparison.write_parquet(ctx.data_dir / "comparison.parquet")
    print(f"  Saved: scaled_cells.parquet/.csv ({scaled.height:,} rows)")
    print(f"  Saved: scale_factors.parquet, comparison.parquet ({comparison.height:,} rows)")

    save_manifest(
        {
            "analysis": "05_scaling",
            "n_constituencies": factors.height,
            "unmatched_constituencies": unmatched,
            "parties": summary,
        },
        ctx.run_dir,
    )
    return scaled, factors


def main() -> None:
    args = parse_args()
    results_root = Path(args.results_root) if args.results_root else RESULTS_ROOT

    results = read_table(Path(args.results), RESULTS_ALIASES, RESULTS_COLUMNS)

    with RunContext(
        election=args.election,
        analysis_name="05_scaling",
        params=vars(args),
        results_root=results_root,
        primer=SCALING_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        poststrat_dir = resolve_upstream_dir(
            "04_poststrat",
            ctx.election_root,
            args.run_id,
            Path(args.poststrat_dir) if args.poststrat_dir else None,
        )
        cells_path = poststrat_dir / "data" / "cell_predictions.parquet"
        estimates_path = poststrat_dir / "data" / "constituency_estimates.parquet"
        for path in (cells_path, estimates_path):
            if not path.exists():
                msg = f"Missing upstream output {path} (run the poststrat phase first)"
                raise FileNotFoundError(msg)

        print(f"Westminster MRP Scaling — Election {args.election}")
        print(f"Results:  {args.results} ({results.height} rows)")
        print(f"Poststrat: {poststrat_dir}")
        print(f"Output:   {ctx.run_dir}")

        run_scaling_phase(
            pl.read_parquet(cells_path),
            pl.read_parquet(estimates_path),
            results,
            ctx,
        )


if __name__ == "__main__":
    main()
