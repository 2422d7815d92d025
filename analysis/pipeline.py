"""
Westminster MRP — full pipeline driver.

Chains the five phases explicitly: every stage takes tables and returns new
tables; nothing is shared or mutated between stages.

    census ──► build_frame ──► frame ─────────────────────────┐
    vote survey ───► recode_vote_survey ───► vote panel ──┐    │
    turnout survey ─► recode_turnout_survey ─► turnout ───┤    │
                                                fit_outcome_models
                                                          │    │
                                     predict_cells ◄──────┴────┘
                                           │
                       weight_cells ─► aggregate_constituencies
                                           │
    results ─► prepare_true_results ─► compute_scale_factors ─► apply_scale_factors

Usage:
  uv run python analysis/pipeline.py --census data/census.csv \
      --vote-survey data/bes_panel.sav --turnout-survey data/bes_f2f.sav \
      --results data/results.csv [--election ge2019] [--method laplace] [--workers 5]

Outputs: results/<election>/<run_id>/{01_frame,...,05_scaling}/ with a
`latest` symlink at results/<election>/latest.
"""

import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path

import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from analysis.frame import (
    CENSUS_COLUMNS,
    FRAME_PRIMER,
    build_frame,
    list_constituencies,
    run_frame_phase,
)
from analysis.glmm import FittedModel
from analysis.mrp_models import MODELS_PRIMER, fit_outcome_models, run_models_phase
from analysis.poststrat import (
    POSTSTRAT_PRIMER,
    aggregate_constituencies,
    predict_cells,
    run_poststrat_phase,
    weight_cells,
)
from analysis.run_context import RunContext, generate_run_id
from analysis.scaling import (
    RESULTS_COLUMNS,
    SCALING_PRIMER,
    apply_scale_factors,
    build_comparison,
    compute_scale_factors,
    prepare_true_results,
    run_scaling_phase,
)
from analysis.surveys import (
    SURVEYS_PRIMER,
    TURNOUT_SURVEY_COLUMNS,
    VOTE_SURVEY_COLUMNS,
    recode_turnout_survey,
    recode_vote_survey,
    run_surveys_phase,
)
from ukmrp.config import (
    CENSUS_ALIASES,
    DEFAULT_ELECTION,
    RESULTS_ALIASES,
    RESULTS_ROOT,
    TURNOUT_SURVEY_ALIASES,
    VOTE_SURVEY_ALIASES,
)
from ukmrp.loaders import read_table


@dataclass
class MRPResult:
    """Every intermediate and final table of one pipeline run."""

    frame: pl.DataFrame
    vote_panel: pl.DataFrame
    turnout_panel: pl.DataFrame
    models: dict[str, FittedModel]
    cells: pl.DataFrame
    estimates: pl.DataFrame
    scale_factors: pl.DataFrame
    scaled_cells: pl.DataFrame
    comparison: pl.DataFrame
    manifests: dict[str, dict] = field(default_factory=dict)


def run_mrp(
    census: pl.DataFrame,
    vote_survey: pl.DataFrame,
    turnout_survey: pl.DataFrame,
    results: pl.DataFrame,
    *,
    method: str = "laplace",
    workers: int = 1,
    allow_new_levels: bool = True,
) -> MRPResult:
    """Run the whole MRP pipeline in memory, without writing anything."""
    frame, frame_manifest = build_frame(census)
    known_codes = [c.code for c in list_constituencies(frame)]

    vote_panel, vote_manifest = recode_vote_survey(vote_survey, known_codes)
    turnout_panel, turnout_manifest = recode_turnout_survey(turnout_survey, known_codes)

    models = fit_outcome_models(vote_panel, turnout_panel, method=method, workers=workers)

    cells = weight_cells(predict_cells(frame, models, allow_new_levels=allow_new_levels))
    estimates = aggregate_constituencies(cells)

    factors = compute_scale_factors(estimates, prepare_true_results(results))
    scaled = apply_scale_factors(cells, factors)

    return MRPResult(
        frame=frame,
        vote_panel=vote_panel,
        turnout_panel=turnout_panel,
        models=models,
        cells=cells,
        estimates=estimates,
        scale_factors=factors,
        scaled_cells=scaled,
        comparison=build_comparison(factors),
        manifests={
            "frame": frame_manifest,
            "vote_survey": vote_manifest,
            "turnout_survey": turnout_manifest,
        },
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Westminster MRP full pipeline")
    parser.add_argument("--census", required=True)
    parser.add_argument("--vote-survey", required=True)
    parser.add_argument("--turnout-survey", required=True)
    parser.add_argument("--results", required=True, help="Declared results (vote shares, %%)")
    parser.add_argument("--election", default=DEFAULT_ELECTION)
    parser.add_argument("--method", choices=("laplace", "bayes"), default="laplace")
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("--strict-levels", action="store_true")
    parser.add_argument("--run-id", default=None, help="Reuse a run id instead of generating one")
    parser.add_argument("--results-root", default=None, help="Override results root")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    results_root = Path(args.results_root) if args.results_root else RESULTS_ROOT

    # All inputs are read before the first phase starts
    census = read_table(Path(args.census), CENSUS_ALIASES, CENSUS_COLUMNS)
    vote_raw = read_table(Path(args.vote_survey), VOTE_SURVEY_ALIASES, VOTE_SURVEY_COLUMNS)
    turnout_raw = read_table(
        Path(args.turnout_survey), TURNOUT_SURVEY_ALIASES, TURNOUT_SURVEY_COLUMNS
    )
    results = read_table(Path(args.results), RESULTS_ALIASES, RESULTS_COLUMNS)

    run_id = args.run_id or generate_run_id(args.election, results_root)
    print(f"Westminster MRP pipeline — Election {args.election}, run {run_id}")
    params = vars(args)

    def phase(name: str, primer: str) -> RunContext:
        return RunContext(
            election=args.election,
            analysis_name=name,
            params=params,
            results_root=results_root,
            primer=primer,
            run_id=run_id,
        )

    with phase("01_frame", FRAME_PRIMER) as ctx:
        frame = run_frame_phase(census, ctx)
    known_codes = [c.code for c in list_constituencies(frame)]

    with phase("02_surveys", SURVEYS_PRIMER) as ctx:
        vote_panel, turnout_panel = run_surveys_phase(vote_raw, turnout_raw, known_codes, ctx)

    with phase("03_models", MODELS_PRIMER) as ctx:
        models = run_models_phase(
            vote_panel, turnout_panel, ctx, method=args.method, workers=args.workers
        )

    with phase("04_poststrat", POSTSTRAT_PRIMER) as ctx:
        cells, estimates = run_poststrat_phase(
            frame, models, ctx, allow_new_levels=not args.strict_levels
        )

    with phase("05_scaling", SCALING_PRIMER) as ctx:
        run_scaling_phase(cells, estimates, results, ctx)


if __name__ == "__main__":
    main()
