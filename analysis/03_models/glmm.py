"""Binomial logistic regression with a random intercept per constituency.

Model, for respondent i in constituency j:

    logit P(y_i = 1) = x_i' beta + u_j,     u_j ~ Normal(0, sigma^2)

x_i holds an intercept, the female indicator and treatment-coded age and
education dummies. Two estimators produce the same FittedModel:

- ``fit_binomial_glmm`` (default): approximate maximum likelihood. The random
  effects are written as u = sigma * b with b ~ N(0, I). For a given sigma the
  fixed effects and b are found jointly as the mode of the penalized deviance

      PDev(beta, b) = -2 log p(y | beta, b) + b'b

  by damped Newton (penalized IRLS). The Laplace approximation with a single
  integration point then gives the objective

      PDev(beta_hat, b_hat) + sum_j log(1 + sigma^2 * sum_{i in j} w_i)

  where w_i = mu_i (1 - mu_i) at the mode, and sigma is chosen by bounded
  scalar minimization. This is the ``nAGQ = 0`` approximation, which stays fast
  at survey scale (tens of thousands of rows, hundreds of groups).

- ``fit_binomial_glmm_bayes``: the same model as a PyMC graph sampled with
  nutpie; posterior means become the point estimates.

Prediction on a constituency the model never saw uses the fixed effects only
(u = 0), the population-level prediction.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

import numpy as np
import polars as pl
import pymc as pm
import pytensor.tensor as pt
from scipy import optimize, sparse
from scipy.special import expit

from ukmrp.config import AGE_BUCKETS, AGE_REFERENCE, EDUCATION_LEVELS, EDUCATION_REFERENCE

# ── Constants ────────────────────────────────────────────────────────────────

SIGMA_MAX = 5.0  # upper bound for the random-intercept SD search (logit scale)
SIGMA_XATOL = 1e-4
NEWTON_MAX_ITER = 100
NEWTON_TOL = 1e-10
MIN_STEP = 1e-10
RIDGE = 1e-8  # keeps X'WX invertible when a dummy is all-zero in training

BAYES_N_SAMPLES = 1000
BAYES_N_TUNE = 1000
BAYES_N_CHAINS = 4
BAYES_BETA_SD = 5.0
BAYES_SIGMA_SD = 1.0
BAYES_RHAT_THRESHOLD = 1.01
RANDOM_SEED = 42

INTERCEPT = "(Intercept)"
GROUP_COLUMN = "constituency_code"


# ── Design ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DesignSpec:
    """Treatment coding of the fixed-effect predictors.

    Levels are declared up front so every model, and the frame it predicts,
    share one column layout regardless of which levels a survey happens to
    contain.
    """

    age_levels: tuple[str, ...] = tuple(AGE_BUCKETS)
    age_reference: str = AGE_REFERENCE
    education_levels: tuple[str, ...] = tuple(EDUCATION_LEVELS)
    education_reference: str = EDUCATION_REFERENCE

    @property
    def age_dummies(self) -> list[str]:
        return [lvl for lvl in self.age_levels if lvl != self.age_reference]

    @property
    def education_dummies(self) -> list[str]:
        return [lvl for lvl in self.education_levels if lvl != self.education_reference]

    def column_names(self) -> list[str]:
        return (
            [INTERCEPT, "female"]
            + [f"age[{lvl}]" for lvl in self.age_dummies]
            + [f"education[{lvl}]" for lvl in self.education_dummies]
        )

    def to_dict(self) -> dict:
        return {
            "age_levels": list(self.age_levels),
            "age_reference": self.age_reference,
            "education_levels": list(self.education_levels),
            "education_reference": self.education_reference,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DesignSpec:
        return cls(
            age_levels=tuple(data["age_levels"]),
            age_reference=data["age_reference"],
            education_levels=tuple(data["education_levels"]),
            education_reference=data["education_reference"],
        )


DEFAULT_DESIGN = DesignSpec()


def _check_levels(df: pl.DataFrame, column: str, levels: tuple[str, ...]) -> None:
    values = set(df[column].unique().to_list())
    unknown = values - set(levels)
    if unknown:
        found = sorted(map(str, unknown))
        msg = f"Unknown {column} values {found} (expected one of {list(levels)})"
        raise ValueError(msg)


def build_design(df: pl.DataFrame, spec: DesignSpec = DEFAULT_DESIGN) -> np.ndarray:
    """Build the n x p fixed-effect design matrix for *df*.

    Requires ``female``, ``age`` and ``education`` columns. Category values
    outside the design's levels (including nulls) raise ValueError.
    """
    missing = [c for c in ("female", "age", "education") if c not in df.columns]
    if missing:
        msg = f"Design data is missing columns {missing}"
        raise ValueError(msg)
    _check_levels(df, "age", spec.age_levels)
    _check_levels(df, "education", spec.education_levels)
    if df["female"].null_count():
        msg = "Design data has null values in 'female'"
        raise ValueError(msg)

    exprs = [
        pl.lit(1.0).alias(INTERCEPT),
        pl.col("female").cast(pl.Float64).alias("female"),
        *[(pl.col("age") == lvl).cast(pl.Float64).alias(f"age[{lvl}]") for lvl in spec.age_dummies],
        *[
            (pl.col("education") == lvl).cast(pl.Float64).alias(f"education[{lvl}]")
            for lvl in spec.education_dummies
        ],
    ]
    return df.select(exprs).to_numpy().astype(np.float64)


def encode_groups(codes: list[str]) -> tuple[np.ndarray, list[str]]:
    """Map group codes to 0-based indices. Returns (index, sorted levels)."""
    levels, idx = np.unique(np.asarray(codes, dtype=object).astype(str), return_inverse=True)
    return idx.astype(np.int64), [str(lvl) for lvl in levels]


# ── Fitted model ─────────────────────────────────────────────────────────────


@dataclass
class FittedModel:
    """Point estimates of one binomial GLMM, ready to predict frame cells."""

    outcome: str
    coef_names: list[str]
    coefficients: list[float]
    random_intercepts: dict[str, float]
    sigma: float
    n_obs: int
    method: str = "laplace"
    deviance: float = float("nan")
    converged: bool = True
    design: DesignSpec = field(default_factory=DesignSpec)

    @property
    def fixed_effects(self) -> dict[str, float]:
        return dict(zip(self.coef_names, self.coefficients, strict=True))

    @property
    def n_groups(self) -> int:
        return len(self.random_intercepts)

    def unseen_groups(self, codes: list[str]) -> list[str]:
        """Group codes in *codes* that have no estimated random intercept."""
        return sorted({c for c in codes if c not in self.random_intercepts})

    def linear_predictor(
        self,
        df: pl.DataFrame,
        *,
        allow_new_levels: bool = True,
        group_column: str = GROUP_COLUMN,
    ) -> np.ndarray:
        """Logit-scale prediction for every row of *df*.

        Rows whose group was not in the training data get u = 0 when
        *allow_new_levels* is True; otherwise they raise ValueError.
        """
        X = build_design(df, self.design)
        codes = df[group_column].cast(pl.Utf8).to_list()
        if not allow_new_levels:
            unseen = self.unseen_groups(codes)
            if unseen:
                msg = (
                    f"{self.outcome}: {len(unseen)} groups not in training data "
                    f"(e.g. {unseen[:3]}) and allow_new_levels=False"
                )
                raise ValueError(msg)
        u = np.array([self.random_intercepts.get(c, 0.0) for c in codes], dtype=np.float64)
        return X @ np.asarray(self.coefficients, dtype=np.float64) + u

    def predict(
        self,
        df: pl.DataFrame,
        *,
        allow_new_levels: bool = True,
        group_column: str = GROUP_COLUMN,
    ) -> np.ndarray:
        """Predicted probabilities in [0, 1] for every row of *df*."""
        return expit(
            self.linear_predictor(df, allow_new_levels=allow_new_levels, group_column=group_column)
        )

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "method": self.method,
            "coef_names": list(self.coef_names),
            "coefficients": [float(c) for c in self.coefficients],
            "random_intercepts": {k: float(v) for k, v in self.random_intercepts.items()},
            "sigma": float(self.sigma),
            "n_obs": int(self.n_obs),
            "deviance": float(self.deviance),
            "converged": bool(self.converged),
            "design": self.design.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> FittedModel:
        return cls(
            outcome=data["outcome"],
            coef_names=list(data["coef_names"]),
            coefficients=[float(c) for c in data["coefficients"]],
            random_intercepts={k: float(v) for k, v in data["random_intercepts"].items()},
            sigma=float(data["sigma"]),
            n_obs=int(data["n_obs"]),
            method=data.get("method", "laplace"),
            deviance=float(data.get("deviance", float("nan"))),
            converged=bool(data.get("converged", True)),
            design=DesignSpec.from_dict(data["design"]) if "design" in data else DesignSpec(),
        )


# ── Laplace (nAGQ = 0) estimator ─────────────────────────────────────────────


@dataclass
class LaplaceFit:
    """Raw output of the Laplace estimator."""

    beta: np.ndarray
    u: np.ndarray
    sigma: float
    objective: float
    converged: bool


def _penalized_deviance(y: np.ndarray, eta: np.ndarray, b: np.ndarray) -> float:
    loglik = y @ eta - np.logaddexp(0.0, eta).sum()
    return float(-2.0 * loglik + b @ b)


def joint_mode(
    y: np.ndarray,
    X: np.ndarray,
    Z: sparse.csr_array,
    sigma: float,
    beta0: np.ndarray | None = None,
    b0: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray, float, np.ndarray, bool, int]:
    """Penalized IRLS for (beta, b) at fixed sigma.

    Returns (beta, b, penalized deviance, IRLS weights at the mode,
    converged, iterations).
    """
    n, p = X.shape
    q = Z.shape[1]
    beta = np.zeros(p) if beta0 is None else beta0.copy()
    b = np.zeros(q) if b0 is None else b0.copy()

    eta = X @ beta + sigma * (Z @ b)
    dev = _penalized_deviance(y, eta, b)
    converged = False
    it = 0

    for it in range(1, NEWTON_MAX_ITER + 1):
        mu = expit(eta)
        w = mu * (1.0 - mu)
        resid = y - mu

        score = np.concatenate([X.T @ resid, sigma * (Z.T @ resid) - b])

        WX = X * w[:, None]
        zwx = sigma * (Z.T @ WX)
        hess = np.empty((p + q, p + q))
        hess[:p, :p] = X.T @ WX + RIDGE * np.eye(p)
        hess[:p, p:] = zwx.T
        hess[p:, :p] = zwx
        hess[p:, p:] = np.diag(sigma**2 * (Z.T @ w) + 1.0)

        step = np.linalg.solve(hess, score)

        # Step halving until the penalized deviance does not increase
        t = 1.0
        while True:
            beta_new = beta + t * step[:p]
            b_new = b + t * step[p:]
            eta_new = X @ beta_new + sigma * (Z @ b_new)
            dev_new = _penalized_deviance(y, eta_new, b_new)
            if dev_new <= dev or t < MIN_STEP:
                break
            t /= 2.0

        if dev_new > dev:
            # Stalled: no step length lowers the deviance
            break
        improvement = dev - dev_new
        beta, b, eta, dev = beta_new, b_new, eta_new, dev_new
        if improvement < NEWTON_TOL * (abs(dev) + NEWTON_TOL):
            converged = True
            break

    mu = expit(eta)
    return beta, b, dev, mu * (1.0 - mu), converged, it


def fit_laplace(
    y: np.ndarray,
    X: np.ndarray,
    group_idx: np.ndarray,
    n_groups: int,
    sigma_max: float = SIGMA_MAX,
) -> LaplaceFit:
    """Approximate ML fit of the random-intercept logistic model.

    sigma is chosen on [0, sigma_max]; the boundary sigma = 0 (no between-group
    variation) is evaluated explicitly because the bounded search never
    visits its endpoints.
    """
    y = np.asarray(y, dtype=np.float64)
    n = len(y)
    Z = sparse.csr_array(
        (np.ones(n), (np.arange(n), group_idx)),
        shape=(n, n_groups),
    )

    warm: dict[str, np.ndarray] = {}

    def objective(sigma: float) -> float:
        beta, b, pdev, w, _, _ = joint_mode(y, X, Z, sigma, warm.get("beta"), warm.get("b"))
        warm["beta"], warm["b"] = beta, b
        return pdev + float(np.log1p(sigma**2 * (Z.T @ w)).sum())

    boundary = objective(0.0)
    result = optimize.minimize_scalar(
        objective,
        bounds=(0.0, sigma_max),
        method="bounded",
        options={"xatol": SIGMA_XATOL},
    )
    sigma = float(result.x) if result.fun < boundary else 0.0

    beta, b, _, w, converged, _ = joint_mode(y, X, Z, sigma, warm.get("beta"), warm.get("b"))
    final = objective(sigma)
    return LaplaceFit(
        beta=beta,
        u=sigma * b,
        sigma=sigma,
        objective=final,
        converged=converged and bool(result.success),
    )


def fit_binomial_glmm(
    data: pl.DataFrame,
    outcome: str,
    *,
    name: str | None = None,
    design: DesignSpec = DEFAULT_DESIGN,
    group_column: str = GROUP_COLUMN,
) -> FittedModel:
    """Fit ``outcome ~ female + age + education + (1 | constituency)`` by Laplace ML.

    *outcome* is a 0/1 column of *data*. Returns a FittedModel named *name*
    (defaults to the outcome column).
    """
    if data.height == 0:
        msg = f"No rows to fit {name or outcome}"
        raise ValueError(msg)
    y = data[outcome].cast(pl.Float64).to_numpy()
    # An all-0 or all-1 outcome has no finite maximum likelihood estimate
    if np.all(y == y[0]):
        msg = (
            f"Outcome {name or outcome} is {int(y[0])} for all {len(y):,} rows; "
            "the model cannot be estimated"
        )
        raise ValueError(msg)
    X = build_design(data, design)
    group_idx, levels = encode_groups(data[group_column].cast(pl.Utf8).to_list())

    t0 = time.time()
    fit = fit_laplace(y, X, group_idx, len(levels))
    elapsed = time.time() - t0

    coef_names = design.column_names()
    print(
        f"  {name or outcome}: n={len(y):,}, groups={len(levels)}, "
        f"sigma={fit.sigma:.3f}, objective={fit.objective:.1f}, "
        f"{'converged' if fit.converged else 'NOT converged'} ({elapsed:.1f}s)"
    )
    return FittedModel(
        outcome=name or outcome,
        coef_names=coef_names,
        coefficients=[float(v) for v in fit.beta],
        random_intercepts=dict(zip(levels, (float(v) for v in fit.u), strict=True)),
        sigma=fit.sigma,
        n_obs=len(y),
        method="laplace",
        deviance=fit.objective,
        converged=fit.converged,
        design=design,
    )


# ── Bayesian estimator (PyMC + nutpie) ───────────────────────────────────────


def build_glmm_graph(
    y: np.ndarray,
    X: np.ndarray,
    group_idx: np.ndarray,
    coef_names: list[str],
    group_levels: list[str],
) -> pm.Model:
    """Build the random-intercept logistic model as a PyMC graph.

    Constituency intercepts are non-centered (u = sigma * z) to avoid the
    funnel when sigma is small.
    """
    coords = {
        "coef": coef_names,
        "constituency": group_levels,
        "obs_id": np.arange(len(y)),
    }
    with pm.Model(coords=coords) as model:
        beta = pm.Normal("beta", mu=0, sigma=BAYES_BETA_SD, dims="coef")
        sigma = pm.HalfNormal("sigma", sigma=BAYES_SIGMA_SD)
        z = pm.Normal("z", mu=0, sigma=1, dims="constituency")
        u = pm.Deterministic("u", sigma * z, dims="constituency")

        eta = pt.dot(X, beta) + u[group_idx]
        pm.Bernoulli("obs", logit_p=eta, observed=y, dims="obs_id")

    return model


def fit_binomial_glmm_bayes(
    data: pl.DataFrame,
    outcome: str,
    *,
    name: str | None = None,
    design: DesignSpec = DEFAULT_DESIGN,
    group_column: str = GROUP_COLUMN,
    n_samples: int = BAYES_N_SAMPLES,
    n_tune: int = BAYES_N_TUNE,
    n_chains: int = BAYES_N_CHAINS,
    seed: int = RANDOM_SEED,
) -> FittedModel:
    """Fit the same model by NUTS and summarize it by posterior means."""
    import arviz as az
    import nutpie

    y = data[outcome].cast(pl.Int64).to_numpy()
    X = build_design(data, design)
    group_idx, levels = encode_groups(data[group_column].cast(pl.Utf8).to_list())
    coef_names = design.column_names()

    model = build_glmm_graph(y, X, group_idx, coef_names, levels)
    print(f"  {name or outcome}: compiling model with nutpie...")
    compiled = nutpie.compile_pymc_model(model)

    print(f"  Sampling: {n_samples} draws, {n_tune} tune, {n_chains} chains, seed={seed}")
    t0 = time.time()
    idata = nutpie.sample(
        compiled,
        draws=n_samples,
        tune=n_tune,
        chains=n_chains,
        seed=seed,
        progress_bar=False,
    )
    elapsed = time.time() - t0

    post = idata.posterior
    beta = post["beta"].mean(dim=("chain", "draw")).values
    u = post["u"].mean(dim=("chain", "draw")).values
    sigma = float(post["sigma"].mean())
    rhat = az.rhat(idata, var_names=["beta", "sigma"])
    max_rhat = float(max(float(rhat[v].max()) for v in rhat.data_vars))
    converged = max_rhat < BAYES_RHAT_THRESHOLD

    print(
        f"  {name or outcome}: sigma={sigma:.3f}, max R-hat={max_rhat:.3f} "
        f"({'OK' if converged else 'CHECK'}), {elapsed:.1f}s"
    )
    return FittedModel(
        outcome=name or outcome,
        coef_names=coef_names,
        coefficients=[float(v) for v in beta],
        random_intercepts=dict(zip(levels, (float(v) for v in u), strict=True)),
        sigma=sigma,
        n_obs=len(y),
        method="bayes",
        converged=converged,
        design=design,
    )
