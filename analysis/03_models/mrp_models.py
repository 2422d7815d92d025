"""
Westminster MRP — Multilevel Models (Phase 3)

Fits five independent random-intercept logistic regressions: one per party
(Conservative, Labour, Liberal Democrat, Other) on the vote-intention panel,
and one for turnout on the turnout survey. Each has fixed effects for sex,
age bucket and education level and a random intercept per constituency.

Usage:
  uv run python analysis/mrp_models.py [--election ge2019] [--method laplace|bayes] [--workers 5]

Outputs (in results/<election>/03_models/<date>/):
  - data/models.json            Serialized FittedModels (coefficients + intercepts)
  - data/fixed_effects.parquet  One row per outcome × term
  - data/random_effects.parquet One row per outcome × constituency
  - data/model_summary.parquet  One row per outcome (n, groups, sigma, convergence)
  - run_info.json, run_log.txt
"""

import argparse
import json
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.run_context import RunContext, resolve_upstream_dir
except ModuleNotFoundError:
    from run_context import RunContext, resolve_upstream_dir  # type: ignore[no-redef]

try:
    from analysis.glmm import FittedModel, fit_binomial_glmm, fit_binomial_glmm_bayes
except ModuleNotFoundError:
    from glmm import (  # type: ignore[no-redef]
        FittedModel,
        fit_binomial_glmm,
        fit_binomial_glmm_bayes,
    )

from ukmrp.config import DEFAULT_ELECTION, RESULTS_ROOT
from ukmrp.models import PARTIES, TURNOUT_OUTCOME

# ── Primer ───────────────────────────────────────────────────────────────────

MODELS_PRIMER = """\
# Multilevel Models

## Purpose

Estimates how vote choice and turnout vary with sex, age and education, while
letting each constituency have its own baseline. Constituencies with few
respondents are pulled toward the national baseline (partial pooling).

## Method

For each outcome:

    logit P(y = 1) = b0 + b1 female + b_age[age] + b_edu[education] + u[constituency]
    u[constituency] ~ Normal(0, sigma^2)

Reference levels: age 16-24, education "No qualifications".

Default estimator (`--method laplace`): approximate maximum likelihood with a
single-point Laplace approximation, fixed and random effects estimated jointly
by penalized IRLS. Alternative (`--method bayes`): PyMC model sampled with
nutpie, summarized by posterior means.

The five fits share no state and can run concurrently (`--workers`).

## Outputs

| File | Description |
|------|-------------|
| `data/models.json` | All fitted models, reloadable for prediction |
| `data/fixed_effects.parquet` | Coefficients per outcome and term |
| `data/random_effects.parquet` | Constituency intercepts per outcome |
| `data/model_summary.parquet` | n, groups, sigma, objective, convergence |

## Caveats

- Constituencies absent from a survey get no intercept; prediction falls back
  to fixed effects for them.
- A category level with no respondents keeps a zero coefficient (it predicts
  like the reference level).
"""

# ── Constants ────────────────────────────────────────────────────────────────

METHODS = ("laplace", "bayes")
DEFAULT_WORKERS = 1


@dataclass(frozen=True)
class OutcomeSpec:
    """One model to fit: its name, which survey it uses, and the 0/1 column."""

    name: str
    survey: str
    column: str


OUTCOMES: tuple[OutcomeSpec, ...] = (
    *(OutcomeSpec(party.key, "vote", party.key) for party in PARTIES),
    OutcomeSpec(TURNOUT_OUTCOME, "turnout", "voted"),
)


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Westminster MRP multilevel models")
    parser.add_argument("--election", default=DEFAULT_ELECTION)
    parser.add_argument("--method", choices=METHODS, default="laplace")
    parser.add_argument("--workers", type=int, default=DEFAULT_WORKERS)
    parser.add_argument("--run-id", default=None, help="Group outputs under a pipeline run id")
    parser.add_argument("--surveys-dir", default=None, help="Override surveys results directory")
    parser.add_argument("--results-root", default=None, help="Override results root")
    return parser.parse_args()


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


# ── Core ─────────────────────────────────────────────────────────────────────


def fit_outcome(panel: pl.DataFrame, spec: OutcomeSpec, method: str = "laplace") -> FittedModel:
    """Fit one outcome model on its survey panel."""
    if method == "laplace":
        return fit_binomial_glmm(panel, spec.column, name=spec.name)
    if method == "bayes":
        return fit_binomial_glmm_bayes(panel, spec.column, name=spec.name)
    msg = f"Unknown fitting method {method!r} (expected one of {METHODS})"
    raise ValueError(msg)


def fit_outcome_models(
    vote_panel: pl.DataFrame,
    turnout_panel: pl.DataFrame,
    method: str = "laplace",
    workers: int = DEFAULT_WORKERS,
) -> dict[str, FittedModel]:
    """Fit all five outcome models.

    The fits are independent. With workers > 1 they run in a thread pool;
    the returned dict is keyed by outcome name in OUTCOMES order either way.
    """
    panels = {"vote": vote_panel, "turnout": turnout_panel}

    if workers <= 1:
        fitted = {spec.name: fit_outcome(panels[spec.survey], spec, method) for spec in OUTCOMES}
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                spec.name: pool.submit(fit_outcome, panels[spec.survey], spec, method)
                for spec in OUTCOMES
            }
            fitted = {name: future.result() for name, future in futures.items()}

    return {spec.name: fitted[spec.name] for spec in OUTCOMES}


def save_models(models: dict[str, FittedModel], path: Path) -> None:
    with open(path, "w") as f:
        json.dump({name: m.to_dict() for name, m in models.items()}, f, indent=2)


def load_models(path: Path) -> dict[str, FittedModel]:
    with open(path) as f:
        raw = json.load(f)
    return {name: FittedModel.from_dict(data) for name, data in raw.items()}


def fixed_effects_table(models: dict[str, FittedModel]) -> pl.DataFrame:
    rows = [
        {"outcome": name, "term": term, "estimate": value}
        for name, model in models.items()
        for term, value in model.fixed_effects.items()
    ]
    return pl.DataFrame(rows, schema={"outcome": pl.Utf8, "term": pl.Utf8, "estimate": pl.Float64})


def random_effects_table(models: dict[str, FittedModel]) -> pl.DataFrame:
    rows = [
        {"outcome": name, "constituency_code": code, "intercept": value}
        for name, model in models.items()
        for code, value in model.random_intercepts.items()
    ]
    return pl.DataFrame(
        rows,
        schema={"outcome": pl.Utf8, "constituency_code": pl.Utf8, "intercept": pl.Float64},
    )


def model_summary_table(models: dict[str, FittedModel]) -> pl.DataFrame:
    return pl.DataFrame(
        [
            {
                "outcome": name,
                "method": m.method,
                "n_obs": m.n_obs,
                "n_groups": m.n_groups,
                "sigma": m.sigma,
                "objective": m.deviance,
                "converged": m.converged,
            }
            for name, m in models.items()
        ]
    )


# ── Main ─────────────────────────────────────────────────────────────────────


def run_models_phase(
    vote_panel: pl.DataFrame,
    turnout_panel: pl.DataFrame,
    ctx: RunContext,
    method: str = "laplace",
    workers: int = DEFAULT_WORKERS,
) -> dict[str, FittedModel]:
    """Fit and save all outcome models inside an active RunContext."""
    print_header(f"MULTILEVEL MODELS ({method})")
    models = fit_outcome_models(vote_panel, turnout_panel, method=method, workers=workers)

    not_converged = [name for name, m in models.items() if not m.converged]
    if not_converged:
        print(f"  WARNING: not converged: {', '.join(not_converged)}")

    print_header("FIXED EFFECTS")
    fixed = fixed_effects_table(models)
    for name in models:
        print(f"  {name}:")
        for row in fixed.filter(pl.col("outcome") == name).iter_rows(named=True):
            print(f"    {row['term']:<28} {row['estimate']:+.3f}")

    save_models(models, ctx.data_dir / "models.json")
    fixed.write_parquet(ctx.data_dir / "fixed_effects.parquet")
    random_effects_table(models).write_parquet(ctx.data_dir / "random_effects.parquet")
    model_summary_table(models).write_parquet(ctx.data_dir / "model_summary.parquet")
    print(
        "  Saved: models.json, fixed_effects.parquet, random_effects.parquet, "
        "model_summary.parquet"
    )
    return models


def main() -> None:
    args = parse_args()
    results_root = Path(args.results_root) if args.results_root else RESULTS_ROOT

    with RunContext(
        election=args.election,
        analysis_name="03_models",
        params=vars(args),
        results_root=results_root,
        primer=MODELS_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        surveys_dir = resolve_upstream_dir(
            "02_surveys",
            ctx.election_root,
            args.run_id,
            Path(args.surveys_dir) if args.surveys_dir else None,
        )
        vote_path = surveys_dir / "data" / "vote_panel.parquet"
        turnout_path = surveys_dir / "data" / "turnout_panel.parquet"
        for path in (vote_path, turnout_path):
            if not path.exists():
                msg = f"No survey panel at {path} (run the surveys phase first)"
                raise FileNotFoundError(msg)

        print(f"Westminster MRP Models — Election {args.election}")
        print(f"Surveys:  {surveys_dir}")
        print(f"Output:   {ctx.run_dir}")

        run_models_phase(
            pl.read_parquet(vote_path),
            pl.read_parquet(turnout_path),
            ctx,
            method=args.method,
            workers=args.workers,
        )


if __name__ == "__main__":
    main()
