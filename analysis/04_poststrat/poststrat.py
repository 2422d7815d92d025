"""
Westminster MRP — Post-stratification (Phase 4)

Predicts every frame cell with every fitted model, weights each party
prediction by the cell's population share and turnout probability, and sums
the weighted cells into constituency vote-share estimates.

Usage:
  uv run python analysis/poststrat.py [--election ge2019] [--strict-levels]

Outputs (in results/<election>/04_poststrat/<date>/):
  - data/cell_predictions.parquet        Frame + pred_*, pred_turnout, weighted_*
  - data/constituency_estimates.parquet  One row per constituency, est_* per party
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

try:
    from analysis.glmm import FittedModel
    from analysis.mrp_models import load_models
except ModuleNotFoundError:
    from glmm import FittedModel  # type: ignore[no-redef]
    from mrp_models import load_models  # type: ignore[no-redef]

from ukmrp.config import DEFAULT_ELECTION, RESULTS_ROOT
from ukmrp.models import PARTIES, TURNOUT_OUTCOME, TURNOUT_PREDICTION

# ── Primer ───────────────────────────────────────────────────────────────────

POSTSTRAT_PRIMER = """\
# Post-stratification

## Purpose

Turns model predictions for demographic cells into constituency-level vote
share estimates.

## Method

1. **Predict.** Every frame cell gets a probability from each party model and
   from the turnout model. Constituencies a model never saw in training are
   predicted from fixed effects alone (random intercept 0).
2. **Weight.** `weighted = party probability × perc × turnout probability`.
   `perc` is a percentage (0-100), probabilities are fractions, so the result
   is the cell's contribution in percentage points.
3. **Aggregate.** Sum weighted cells within each constituency.

## Missing values

A cell with a missing weighted value makes its constituency's estimate for
that party missing. It is never counted as zero.

## Outputs

| File | Description |
|------|-------------|
| `data/cell_predictions.parquet` | Frame columns + pred_*, pred_turnout, weighted_* |
| `data/constituency_estimates.parquet` | est_<party> and est_turnout per constituency |
"""

# ── Constants ────────────────────────────────────────────────────────────────

MODEL_NAMES = [*(party.key for party in PARTIES), TURNOUT_OUTCOME]


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Westminster MRP post-stratification")
    parser.add_argument("--election", default=DEFAULT_ELECTION)
    parser.add_argument(
        "--strict-levels",
        action="store_true",
        help="Fail on constituencies missing from a model's training data",
    )
    parser.add_argument("--run-id", default=None, help="Group outputs under a pipeline run id")
    parser.add_argument("--frame-dir", default=None, help="Override frame results directory")
    parser.add_argument("--models-dir", default=None, help="Override models results directory")
    parser.add_argument("--results-root", default=None, help="Override results root")
    return parser.parse_args()


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def _fmt(value: float | None) -> str:
    return "   n/a" if value is None else f"{value:6.2f}"


# ── Core: Prediction ─────────────────────────────────────────────────────────


def predict_cells(
    frame: pl.DataFrame,
    models: dict[str, FittedModel],
    *,
    allow_new_levels: bool = True,
) -> pl.DataFrame:
    """Add pred_<party> and pred_turnout columns to a copy of *frame*."""
    missing = [name for name in MODEL_NAMES if name not in models]
    if missing:
        msg = f"Missing fitted models for {missing}"
        raise ValueError(msg)

    codes = frame["constituency_code"].unique().to_list()
    columns = []
    for party in PARTIES:
        model = models[party.key]
        preds = model.predict(frame, allow_new_levels=allow_new_levels)
        columns.append(pl.Series(party.prediction, preds, dtype=pl.Float64))
        _report_fallback(model, codes)

    turnout = models[TURNOUT_OUTCOME]
    preds = turnout.predict(frame, allow_new_levels=allow_new_levels)
    columns.append(pl.Series(TURNOUT_PREDICTION, preds, dtype=pl.Float64))
    _report_fallback(turnout, codes)

    return frame.with_columns(columns)


def _report_fallback(model: FittedModel, codes: list[str]) -> None:
    unseen = model.unseen_groups(codes)
    print(
        f"  {model.outcome}: {len(codes) - len(unseen)} of {len(codes)} constituencies "
        f"in training data, {len(unseen)} predicted from fixed effects only"
    )


def fallback_counts(frame: pl.DataFrame, models: dict[str, FittedModel]) -> dict[str, int]:
    """Number of frame constituencies each model predicts without an intercept."""
    codes = frame["constituency_code"].unique().to_list()
    return {name: len(model.unseen_groups(codes)) for name, model in models.items()}


# ── Core: Aggregation ────────────────────────────────────────────────────────


def weight_cells(frame: pl.DataFrame) -> pl.DataFrame:
    """weighted_<party> = pred_<party> × perc × pred_turnout."""
    return frame.with_columns(
        (pl.col(party.prediction) * pl.col("perc") * pl.col(TURNOUT_PREDICTION)).alias(
            party.weighted
        )
        for party in PARTIES
    )


def aggregate_constituencies(frame: pl.DataFrame) -> pl.DataFrame:
    """Sum weighted cells per constituency into est_<party> columns.

    A null (or NaN) weighted cell makes that constituency's estimate null.
    ``est_turnout`` is the population-weighted turnout percentage and follows
    the same rule.
    """
    # (weighted source, estimate column) pairs
    sums = [(party.weighted, party.estimate) for party in PARTIES]
    sums.append(("_weighted_turnout", "est_turnout"))

    cleaned = frame.with_columns(
        *[pl.col(party.weighted).fill_nan(None) for party in PARTIES],
        (pl.col("perc") * pl.col(TURNOUT_PREDICTION)).fill_nan(None).alias("_weighted_turnout"),
    )
    grouped = cleaned.group_by("constituency_code").agg(
        pl.col("constituency_name").first(),
        pl.len().alias("n_cells"),
        *[pl.col(source).sum().alias(target) for source, target in sums],
        *[pl.col(source).null_count().alias(f"_nulls_{target}") for source, target in sums],
    )
    return (
        grouped.with_columns(
            pl.when(pl.col(f"_nulls_{target}") > 0)
            .then(pl.lit(None, dtype=pl.Float64))
            .otherwise(pl.col(target))
            .alias(target)
            for _, target in sums
        )
        .drop([f"_nulls_{target}" for _, target in sums])
        .sort("constituency_code")
    )


# ── Main ─────────────────────────────────────────────────────────────────────


def run_poststrat_phase(
    frame: pl.DataFrame,
    models: dict[str, FittedModel],
    ctx: RunContext,
    *,
    allow_new_levels: bool = True,
) -> tuple[pl.DataFrame, pl.DataFrame]:
    """Predict, weight and aggregate inside an active RunContext."""
    print_header("CELL PREDICTIONS")
    cells = predict_cells(frame, models, allow_new_levels=allow_new_levels)
    cells = weight_cells(cells)

    print_header("CONSTITUENCY AGGREGATION")
    estimates = aggregate_constituencies(cells)
    for party in PARTIES:
        col = estimates[party.estimate]
        print(
            f"  {party.label:<18} mean={_fmt(col.mean())}  min={_fmt(col.min())}  "
            f"max={_fmt(col.max())}  missing={col.null_count()}"
        )

    cells.write_parquet(ctx.data_dir / "cell_predictions.parquet")
    estimates.write_parquet(ctx.data_dir / "constituency_estimates.parquet")
    print(f"  Saved: cell_predictions.parquet ({cells.height:,} rows)")
    print(f"  Saved: constituency_estimates.parquet ({estimates.height} rows)")

    save_manifest(
        {
            "analysis": "04_poststrat",
            "allow_new_levels": allow_new_levels,
            "fixed_effects_only_constituencies": fallback_counts(frame, models),
            "n_cells": cells.height,
            "n_constituencies": estimates.height,
        },
        ctx.run_dir,
    )
    return cells, estimates


def main() -> None:
    args = parse_args()
    results_root = Path(args.results_root) if args.results_root else RESULTS_ROOT

    with RunContext(
        election=args.election,
        analysis_name="04_poststrat",
        params=vars(args),
        results_root=results_root,
        primer=POSTSTRAT_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        frame_dir = resolve_upstream_dir(
            "01_frame",
            ctx.election_root,
            args.run_id,
            Path(args.frame_dir) if args.frame_dir else None,
        )
        models_dir = resolve_upstream_dir(
            "03_models",
            ctx.election_root,
            args.run_id,
            Path(args.models_dir) if args.models_dir else None,
        )
        frame_path = frame_dir / "data" / "frame.parquet"
        models_path = models_dir / "data" / "models.json"
        for path in (frame_path, models_path):
            if not path.exists():
                msg = f"Missing upstream output {path}"
                raise FileNotFoundError(msg)

        print(f"Westminster MRP Post-stratification — Election {args.election}")
        print(f"Frame:    {frame_dir}")
        print(f"Models:   {models_dir}")
        print(f"Output:   {ctx.run_dir}")

        run_poststrat_phase(
            pl.read_parquet(frame_path),
            load_models(models_path),
            ctx,
            allow_new_levels=not args.strict_levels,
        )


if __name__ == "__main__":
    main()
