"""
Fit-then-summarize helpers shared by the analysis scripts.

Every primary, subgroup and sensitivity estimate is one call to
``run_effect_model`` (a single exposure effect) or
``run_modifier_model`` (exposure x modifier interaction). Result rows
carry the convergence flags of the fit they came from.
"""

from __future__ import annotations

from typing import Sequence

import pandas as pd

from definitions_source_of_truth import (
    BASELINE_RISK,
    CATEGORICAL_COVARIATES,
    CONTINUOUS_COVARIATES,
    CREDIBLE_LEVEL,
    EXPOSURE_COL,
    OUTCOME_COL,
    STANDARDIZED_SUFFIX,
    STUDY_COL,
)
from hierarchical_fit import CancellationToken, Cancelled, FitResult, SamplingConfig, fit
from ipd_schema import complete_case
from model_spec import GroupingTerm, ModelSpec
from posterior_summary import summary_row
from priors import Prior, default_priors
from subgroup_effects import modifier_summary


def adjustment_terms(covariates: Sequence[str] | None = None) -> list[str]:
    """Model terms for the adjusted models (continuous covariates standardized)."""
    covariates = list(CONTINUOUS_COVARIATES + CATEGORICAL_COVARIATES) if covariates is None else list(covariates)
    return [c + STANDARDIZED_SUFFIX if c in CONTINUOUS_COVARIATES else c for c in covariates]


def effect_spec(
    adjusted: bool = False,
    exposure_prior: Prior | None = None,
    grouping: Sequence[GroupingTerm] | None = None,
    extra_terms: Sequence[str] = (),
    family: str = "binomial",
    covariates: Sequence[str] | None = None,
) -> ModelSpec:
    """Patient-level model for the exposure effect on 90-day death.

    Default grouping is a random intercept per trial.
    """
    terms = [EXPOSURE_COL] + list(extra_terms)
    if adjusted:
        terms += [t for t in adjustment_terms(covariates) if t not in terms]
    spec = ModelSpec(
        outcome=OUTCOME_COL,
        fixed_terms=tuple(terms),
        grouping=tuple(grouping) if grouping is not None else (GroupingTerm(STUDY_COL),),
        family=family,
        link="log",
        priors=default_priors(exposure=EXPOSURE_COL),
    )
    if exposure_prior is not None:
        spec = spec.with_priors(**{EXPOSURE_COL: exposure_prior})
    return spec


def modifier_spec(modifier: str, adjusted: bool = True, exposure_prior: Prior | None = None,
                  covariates: Sequence[str] | None = None) -> ModelSpec:
    """Effect model with an exposure x modifier interaction."""
    spec = effect_spec(adjusted=adjusted, exposure_prior=exposure_prior, covariates=covariates)
    terms = [t for t in spec.fixed_terms if t not in (modifier, modifier + STANDARDIZED_SUFFIX)]
    terms = [terms[0], modifier] + terms[1:] + [f"{EXPOSURE_COL}:{modifier}"]
    return spec.with_terms(*terms)


def _fit_complete_case(spec: ModelSpec, data: pd.DataFrame, config: SamplingConfig | None,
                       label: str, cancel_token: CancellationToken | None) -> tuple[FitResult, int]:
    analysis_df, n_dropped = complete_case(data, spec.required_columns)
    if n_dropped:
        print(f"  {label}: dropped {n_dropped:,} rows with missing model variables "
              f"({len(analysis_df):,} remain)")
    print(f"  Fitting {label} (n={len(analysis_df):,}, terms={list(spec.fixed_terms)})")
    return fit(spec, analysis_df, config, cancel_token=cancel_token), n_dropped


def _error_row(label: str, exc: Exception) -> dict:
    return {"label": label, "error": f"{type(exc).__name__}: {exc}", "converged": False}


def run_effect_model(
    label: str,
    spec: ModelSpec,
    data: pd.DataFrame,
    config: SamplingConfig | None = None,
    exposure: str = EXPOSURE_COL,
    baseline_risk: float | None = BASELINE_RISK,
    credible_level: float = CREDIBLE_LEVEL,
    cancel_token: CancellationToken | None = None,
) -> tuple[dict, FitResult]:
    """Fit ``spec`` and summarize the ``exposure`` coefficient."""
    result, n_dropped = _fit_complete_case(spec, data, config, label, cancel_token)
    return effect_row(label, result, exposure, baseline_risk, credible_level, n_dropped), result


def effect_row(
    label: str,
    result: FitResult,
    exposure: str = EXPOSURE_COL,
    baseline_risk: float | None = BASELINE_RISK,
    credible_level: float = CREDIBLE_LEVEL,
    n_dropped: int = 0,
) -> dict:
    row = summary_row(label, result.samples.column(exposure),
                      baseline_risk=baseline_risk, credible_level=credible_level)
    row.update(result.diagnostics_row())
    row["family"] = result.spec.family
    row["grouping"] = ", ".join(g.factor for g in result.spec.grouping) or "none"
    row["n_dropped"] = n_dropped
    if not result.converged:
        row["note"] = "not converged; interpret with caution"
    return row


def run_modifier_model(
    label: str,
    modifier: str,
    data: pd.DataFrame,
    config: SamplingConfig | None = None,
    spec: ModelSpec | None = None,
    baseline_risk: float | None = BASELINE_RISK,
    credible_level: float = CREDIBLE_LEVEL,
    cancel_token: CancellationToken | None = None,
) -> tuple[pd.DataFrame, pd.DataFrame, FitResult]:
    """Fit an interaction model and summarize every stratum of ``modifier``.

    Returns (stratum effects, interaction probabilities, fit result).
    """
    spec = spec or modifier_spec(modifier)
    result, n_dropped = _fit_complete_case(spec, data, config, label, cancel_token)
    effects, interactions = modifier_summary(
        result.samples, EXPOSURE_COL, modifier,
        credible_level=credible_level, baseline_risk=baseline_risk,
    )
    for frame in (effects, interactions):
        frame.insert(0, "analysis", label)
        frame["converged"] = result.converged
        frame["rhat_max"] = result.rhat_max
        frame["n_obs"] = result.n_obs
    effects["n_dropped"] = n_dropped
    return effects, interactions, result


def run_safely(label: str, fn, *args, **kwargs):
    """Call ``fn``; on failure print it and return an error row instead.

    ``Cancelled`` is never absorbed.
    """
    try:
        return fn(*args, **kwargs)
    except Cancelled:
        raise
    except Exception as e:
        print(f"  {label} failed: {e}")
        return _error_row(label, e)


def add_sampling_arguments(parser):
    """Sampler CLI options shared by the analysis scripts."""
    defaults = SamplingConfig()
    parser.add_argument("--chains", type=int, default=defaults.chains)
    parser.add_argument("--warmup", type=int, default=defaults.warmup_draws)
    parser.add_argument("--iterations", type=int, default=defaults.total_iterations,
                        help="Iterations per chain including warmup")
    parser.add_argument("--seed", type=int, default=defaults.random_seed)
    parser.add_argument("--adapt-delta", type=float, default=defaults.adapt_delta)
    parser.add_argument("--cores", type=int, default=None)
    parser.add_argument("--timeout", type=float, default=None,
                        help="Abort a fit after this many seconds")
    parser.add_argument("--baseline-risk", type=float, default=BASELINE_RISK,
                        help="Assumed control-arm 90-day mortality for absolute effects")


def sampling_config_from_args(args) -> SamplingConfig:
    return SamplingConfig(
        chains=args.chains,
        warmup_draws=args.warmup,
        total_iterations=args.iterations,
        random_seed=args.seed,
        adapt_delta=args.adapt_delta,
        cores=args.cores,
        timeout_seconds=args.timeout,
    )


def diagnostics_frame(results: dict[str, FitResult]) -> pd.DataFrame:
    rows = []
    for label, result in results.items():
        if isinstance(result, FitResult):
            rows.append({"label": label, **result.diagnostics_row()})
        else:
            rows.append(_error_row(label, result))
    return pd.DataFrame(rows)
