"""
Hierarchical Bayesian fitter for binomial / Poisson log-link mixed models.
=========================================================================
Translates a ``ModelSpec`` into a PyMC model, samples it with NUTS and
returns the pooled post-warmup draws as a named ``PosteriorSamples``
matrix together with convergence diagnostics.

Column order of the draw matrix is fixed:
    Intercept, fixed effects in declaration order,
    then (include_group_effects=True) for each grouping factor
    sd_<factor>__<effect> and r_<factor>[<level>,<effect>].

Fits whose largest R-hat exceeds ``SamplingConfig.rhat_threshold`` are
returned with ``converged=False`` and a printed warning. Engine errors
raise ``SamplerFailure``; a cancelled or timed-out fit raises
``Cancelled`` and never returns partial draws.

Usage:
    from hierarchical_fit import fit, fit_many, SamplingConfig, FitJob
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Any, Sequence

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
import pytensor.tensor as pt

from definitions_source_of_truth import (
    ADAPT_DELTA,
    N_CHAINS,
    RANDOM_SEED,
    RHAT_THRESHOLD,
    SAMPLER_TIMEOUT_SECONDS,
    TOTAL_ITERATIONS,
    WARMUP_DRAWS,
)
from model_spec import INTERCEPT, ModelSpec, design_matrix, group_index
from priors import to_pymc


class SamplerFailure(RuntimeError):
    """The sampling engine terminated abnormally or returned incomplete chains."""

    def __init__(self, message: str, chains_completed: int = 0, engine_message: str | None = None):
        super().__init__(message)
        self.chains_completed = chains_completed
        self.engine_message = engine_message


class Cancelled(RuntimeError):
    """A fit was aborted by its cancellation token or timeout."""


# ============================================================
# CONFIGURATION AND RESULT TYPES
# ============================================================

@dataclass(frozen=True)
class SamplingConfig:
    chains: int = N_CHAINS
    warmup_draws: int = WARMUP_DRAWS
    total_iterations: int = TOTAL_ITERATIONS
    random_seed: int | None = RANDOM_SEED
    adapt_delta: float = ADAPT_DELTA
    cores: int | None = None
    timeout_seconds: float | None = SAMPLER_TIMEOUT_SECONDS
    rhat_threshold: float = RHAT_THRESHOLD
    progressbar: bool = False

    def __post_init__(self):
        if self.chains < 1:
            raise ValueError("chains must be >= 1")
        if self.warmup_draws < 0:
            raise ValueError("warmup_draws must be >= 0")
        if self.total_iterations <= self.warmup_draws:
            raise ValueError("total_iterations must exceed warmup_draws")
        if not 0 < self.adapt_delta < 1:
            raise ValueError("adapt_delta must be in (0, 1)")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

    @property
    def draws(self) -> int:
        """Post-warmup draws per chain."""
        return self.total_iterations - self.warmup_draws

    def with_seed(self, seed: int) -> "SamplingConfig":
        return replace(self, random_seed=seed)


class PosteriorSamples:
    """Read-only draw matrix (n_draws x n_columns) with named columns.

    Rows are exchangeable posterior draws pooled across chains.
    """

    def __init__(self, column_names: Sequence[str], draws):
        names = tuple(str(c) for c in column_names)
        arr = np.array(draws, dtype=float)
        if arr.ndim == 1 and len(names) == 1:
            arr = arr.reshape(-1, 1)
        if arr.ndim != 2:
            raise ValueError(f"draws must be 2-dimensional, got shape {arr.shape}")
        if arr.shape[1] != len(names):
            raise ValueError(f"{len(names)} column names for {arr.shape[1]} draw columns")
        if arr.shape[0] < 1:
            raise ValueError("PosteriorSamples needs at least one draw")
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate column names: {dupes}")
        arr.setflags(write=False)
        self._names = names
        self._draws = arr
        self._index = {name: i for i, name in enumerate(names)}

    @property
    def column_names(self) -> tuple[str, ...]:
        return self._names

    @property
    def draws(self) -> np.ndarray:
        return self._draws

    @property
    def n_draws(self) -> int:
        return self._draws.shape[0]

    def __contains__(self, name: str) -> bool:
        return name in self._index

    def __len__(self) -> int:
        return self.n_draws

    def __repr__(self) -> str:
        return f"PosteriorSamples(n_draws={self.n_draws}, columns={list(self._names)})"

    def index_of(self, name: str) -> int:
        return self._index[name]

    def column(self, name: str) -> np.ndarray:
        return self._draws[:, self._index[name]]

    @classmethod
    def concat(cls, samples: Sequence["PosteriorSamples"]) -> "PosteriorSamples":
        """Stack draws from fits with identical columns (e.g. imputed datasets)."""
        if not samples:
            raise ValueError("Nothing to concatenate")
        names = samples[0].column_names
        for s in samples[1:]:
            if s.column_names != names:
                raise ValueError("Cannot concatenate PosteriorSamples with different columns")
        return cls(names, np.vstack([s.draws for s in samples]))


@dataclass(frozen=True)
class FitResult:
    samples: PosteriorSamples
    converged: bool
    rhat_max: float
    rhat: pd.Series
    ess_bulk_min: float
    n_divergences: int
    n_obs: int
    spec: ModelSpec
    config: SamplingConfig
    idata: Any = field(default=None, repr=False, compare=False)

    def diagnostics_row(self) -> dict[str, Any]:
        return {
            "converged": self.converged,
            "rhat_max": self.rhat_max,
            "ess_bulk_min": self.ess_bulk_min,
            "n_divergences": self.n_divergences,
            "n_draws": self.samples.n_draws,
            "n_obs": self.n_obs,
            "chains": self.config.chains,
            "seed": self.config.random_seed,
        }


class CancellationToken:
    """Thread-safe flag that aborts in-flight fits."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class _SamplingMonitor:
    """Sampler callback: stops sampling on cancellation or timeout."""

    def __init__(self, cancel_token: CancellationToken | None = None, timeout_seconds: float | None = None):
        self.cancel_token = cancel_token
        self.deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        self.reason: str | None = None

    @property
    def stopped(self) -> bool:
        return self.reason is not None

    def check(self) -> None:
        if self.cancel_token is not None and self.cancel_token.cancelled:
            self.reason = "cancelled by caller"
        elif self.deadline is not None and time.monotonic() > self.deadline:
            self.reason = "sampling timeout exceeded"

    def __call__(self, trace=None, draw=None):
        self.check()
        if self.stopped:
            # pm.sample treats KeyboardInterrupt as a request to stop
            raise KeyboardInterrupt(self.reason)


# ============================================================
# MODEL CONSTRUCTION
# ============================================================

@dataclass
class _ModelLayout:
    fixed_columns: list[str]
    group_effects: list[tuple[str, list[str], list[str]]]  # (label, levels, effect columns)


def build_model(spec: ModelSpec, data: pd.DataFrame) -> tuple[pm.Model, _ModelLayout]:
    """Translate ``spec`` into a PyMC model over ``data`` (assumed validated)."""
    X, term_columns = design_matrix(spec, data)
    fixed_columns = list(X.columns)
    column_term = {INTERCEPT: None}
    for term, cols in term_columns.items():
        for col in cols:
            column_term[col] = term

    coords: dict[str, Any] = {"coef": fixed_columns}
    groups = []
    for g in spec.grouping:
        codes, levels = group_index(data, g.factor)
        effect_cols = [INTERCEPT]
        for slope in g.slopes:
            effect_cols.extend(term_columns[slope])
        coords[f"{g.label}_level"] = levels
        coords[f"{g.label}_effect"] = effect_cols
        groups.append((g, codes, levels, effect_cols))

    y = data[spec.outcome].to_numpy(dtype=float)
    X_arr = X.to_numpy(dtype=float)

    with pm.Model(coords=coords) as model:
        coefs = [
            to_pymc(spec.prior_for(col, column_term[col]), f"b_{i}")
            for i, col in enumerate(fixed_columns)
        ]
        beta = pm.Deterministic("beta", pt.stack(coefs), dims="coef")
        eta = pt.dot(X_arr, beta)

        for g, codes, levels, effect_cols in groups:
            level_dim, effect_dim = f"{g.label}_level", f"{g.label}_effect"
            sd = to_pymc(spec.group_sd_prior(), f"sd_{g.label}", dims=effect_dim)
            z = pm.Normal(f"z_{g.label}", mu=0.0, sigma=1.0, dims=(level_dim, effect_dim))
            r = pm.Deterministic(f"r_{g.label}", z * sd, dims=(level_dim, effect_dim))
            Z = X[effect_cols].to_numpy(dtype=float)
            eta = eta + pt.sum(r[codes] * Z, axis=1)

        if spec.offset:
            eta = eta + data[spec.offset].to_numpy(dtype=float)

        if spec.family == "poisson":
            if spec.trials:
                eta = eta + np.log(data[spec.trials].to_numpy(dtype=float))
            pm.Poisson("y", mu=pt.exp(eta), observed=y)
        else:
            p = pt.clip(pt.exp(eta), 1e-12, 1 - 1e-9)
            if spec.trials:
                pm.Binomial("y", n=data[spec.trials].to_numpy(dtype=int), p=p, observed=y)
            else:
                pm.Bernoulli("y", p=p, observed=y)

    layout = _ModelLayout(
        fixed_columns=fixed_columns,
        group_effects=[(g.label, levels, effect_cols) for g, _, levels, effect_cols in groups],
    )
    return model, layout


def _stack(da, *dims: str) -> np.ndarray:
    return da.stack(sample=("chain", "draw")).transpose("sample", *dims).to_numpy()


def _extract_samples(idata, layout: _ModelLayout, include_group_effects: bool) -> PosteriorSamples:
    post = idata.posterior
    names = list(layout.fixed_columns)
    blocks = [_stack(post["beta"], "coef")]
    if include_group_effects:
        for label, levels, effect_cols in layout.group_effects:
            blocks.append(_stack(post[f"sd_{label}"], f"{label}_effect"))
            names.extend(f"sd_{label}__{e}" for e in effect_cols)
            r = _stack(post[f"r_{label}"], f"{label}_level", f"{label}_effect")
            blocks.append(r.reshape(r.shape[0], -1))
            names.extend(f"r_{label}[{lvl},{e}]" for lvl in levels for e in effect_cols)
    return PosteriorSamples(names, np.hstack(blocks))


def _diagnostics(idata, layout: _ModelLayout) -> tuple[pd.Series, float, int]:
    var_names = ["beta"] + [f"sd_{label}" for label, _, _ in layout.group_effects]
    rhat_ds = az.rhat(idata, var_names=var_names)
    ess_ds = az.ess(idata, var_names=var_names, method="bulk")

    rhat = pd.Series(rhat_ds["beta"].to_numpy(), index=layout.fixed_columns, dtype=float)
    for label, _, effect_cols in layout.group_effects:
        rhat = pd.concat([
            rhat,
            pd.Series(rhat_ds[f"sd_{label}"].to_numpy(),
                      index=[f"sd_{label}__{e}" for e in effect_cols], dtype=float),
        ])
    ess_min = float(min(np.nanmin(ess_ds[v].to_numpy()) for v in var_names))
    n_div = int(idata.sample_stats["diverging"].sum()) if "diverging" in idata.sample_stats else 0
    return rhat, ess_min, n_div


# ============================================================
# FIT
# ============================================================

def fit(
    spec: ModelSpec,
    data: pd.DataFrame,
    config: SamplingConfig | None = None,
    include_group_effects: bool = False,
    cancel_token: CancellationToken | None = None,
) -> FitResult:
    """Fit ``spec`` to ``data`` and return pooled posterior draws.

    Parameters
    ----------
    spec : ModelSpec
    data : DataFrame
        Complete-case analysis dataset; not modified.
    config : SamplingConfig
        Chains, warmup, total iterations, seed, adapt_delta, timeout.
    include_group_effects : bool
        Append group-level SDs and realized random effects to the draws.
    cancel_token : CancellationToken, optional
        Checked before sampling and after every draw.

    Raises
    ------
    ModelSpecificationError
        Before any sampling, if ``spec`` does not fit ``data``.
    SamplerFailure
        Engine error or incomplete chains.
    Cancelled
        Token cancelled or timeout reached.
    """
    config = config or SamplingConfig()
    spec.validate_against(data)

    monitor = _SamplingMonitor(cancel_token, config.timeout_seconds)
    monitor.check()
    if monitor.stopped:
        raise Cancelled(f"Fit not started: {monitor.reason}")

    model, layout = build_model(spec, data)

    interrupted = False
    try:
        with model:
            idata = pm.sample(
                draws=config.draws,
                tune=config.warmup_draws,
                chains=config.chains,
                cores=config.cores,
                target_accept=config.adapt_delta,
                random_seed=config.random_seed,
                init="adapt_diag",
                progressbar=config.progressbar,
                return_inferencedata=True,
                compute_convergence_checks=False,
                callback=monitor,
            )
    except KeyboardInterrupt:
        if not monitor.stopped:
            raise
        interrupted = True
    except Exception as exc:
        if monitor.stopped:
            raise Cancelled(f"Fit aborted: {monitor.reason}") from exc
        raise SamplerFailure(
            f"Sampler failed for outcome '{spec.outcome}': {exc}",
            chains_completed=0,
            engine_message=str(exc),
        ) from exc

    if interrupted or monitor.stopped:
        raise Cancelled(f"Fit aborted: {monitor.reason}")

    n_chains = int(idata.posterior.sizes.get("chain", 0))
    n_draws = int(idata.posterior.sizes.get("draw", 0))
    if n_chains < config.chains or n_draws < config.draws:
        raise SamplerFailure(
            f"Sampler returned {n_chains}/{config.chains} chains with "
            f"{n_draws}/{config.draws} draws",
            chains_completed=n_chains if n_draws >= config.draws else 0,
        )

    samples = _extract_samples(idata, layout, include_group_effects)
    rhat, ess_min, n_div = _diagnostics(idata, layout)

    finite = rhat[np.isfinite(rhat)]
    rhat_max = float(finite.max()) if len(finite) else float("nan")
    converged = bool(len(finite) == len(rhat) and rhat_max <= config.rhat_threshold)
    if not converged:
        if config.chains < 2:
            print("  WARNING: R-hat needs >= 2 chains; fit tagged as not converged")
        else:
            worst = rhat.idxmax() if len(finite) else "n/a"
            print(f"  WARNING: R-hat {rhat_max:.3f} > {config.rhat_threshold} "
                  f"(worst: {worst}); fit tagged as not converged")
    if n_div:
        print(f"  WARNING: {n_div} divergent transitions after warmup")

    return FitResult(
        samples=samples,
        converged=converged,
        rhat_max=rhat_max,
        rhat=rhat,
        ess_bulk_min=ess_min,
        n_divergences=n_div,
        n_obs=len(data),
        spec=spec,
        config=config,
        idata=idata,
    )


@dataclass
class FitJob:
    label: str
    spec: ModelSpec
    data: pd.DataFrame
    config: SamplingConfig = field(default_factory=SamplingConfig)
    include_group_effects: bool = False


def fit_many(
    jobs: Sequence[FitJob],
    max_workers: int | None = None,
    cancel_token: CancellationToken | None = None,
) -> dict[str, FitResult | Exception]:
    """Run independent fits concurrently.

    Each job keeps its own spec, data and seed; results are keyed by job
    label. A failing job is reported and its exception stored under its
    label so the remaining fits still complete.
    """
    labels = [job.label for job in jobs]
    if len(set(labels)) != len(labels):
        raise ValueError(f"Duplicate job labels: {labels}")
    seeds = [job.config.random_seed for job in jobs]
    if len(set(seeds)) != len(seeds):
        print("  WARNING: fit_many jobs share random seeds; draws will be correlated")

    results: dict[str, FitResult | Exception] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {
            pool.submit(
                fit, job.spec, job.data, job.config,
                include_group_effects=job.include_group_effects,
                cancel_token=cancel_token,
            ): job.label
            for job in jobs
        }
        for future in as_completed(futures):
            label = futures[future]
            try:
                results[label] = future.result()
            except Exception as exc:
                print(f"  {label} failed: {exc}")
                results[label] = exc
    return {label: results[label] for label in labels}
