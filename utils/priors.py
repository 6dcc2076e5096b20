"""
Prior distributions for the hierarchical treatment-effect models.

A ``Prior`` is an immutable (family, params, applies_to) record. It is
translated into a PyMC distribution only inside the fitter, so the same
object can be summarized on the risk-ratio scale before any sampling.

Usage:
    from priors import make_prior, prior_archetype, prior_predictive_summary
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
import pandas as pd
from scipy import stats

from definitions_source_of_truth import (
    COVARIATE_PRIOR,
    FIXED_EFFECT_PRIOR,
    GROUP_SD_PRIOR,
    INTERCEPT_PRIOR,
    PRIOR_ARCHETYPES,
    PRIOR_PREDICTIVE_SAMPLES,
)


class InvalidPriorError(ValueError):
    """Raised for an unknown family, wrong parameter count or bad scale."""


APPLIES_TO = ("fixed_effect", "intercept", "group_sd")

# family -> (parameter names, indices that must be strictly positive)
PRIOR_FAMILIES = {
    "normal": (("mu", "sigma"), (1,)),
    "student_t": (("nu", "mu", "sigma"), (0, 2)),
    "cauchy": (("alpha", "beta"), (1,)),
    "half_normal": (("sigma",), (0,)),
    "half_cauchy": (("beta",), (0,)),
    "half_student_t": (("nu", "sigma"), (0, 1)),
    "exponential": (("lam",), (0,)),
}

POSITIVE_FAMILIES = {"half_normal", "half_cauchy", "half_student_t", "exponential"}


@dataclass(frozen=True)
class Prior:
    family: str
    params: tuple[float, ...]
    applies_to: str = "fixed_effect"

    @property
    def param_dict(self) -> dict[str, float]:
        names, _ = PRIOR_FAMILIES[self.family]
        return dict(zip(names, self.params))

    def label(self) -> str:
        args = ", ".join(f"{p:.3g}" for p in self.params)
        return f"{self.family}({args})"


def make_prior(family: str, *params: float, applies_to: str = "fixed_effect") -> Prior:
    """Validate and build a Prior.

    Parameters
    ----------
    family : str
        One of ``PRIOR_FAMILIES``.
    *params : float
        Hyperparameters in the order listed in ``PRIOR_FAMILIES``.
    applies_to : str
        ``fixed_effect``, ``intercept`` or ``group_sd``.

    Raises
    ------
    InvalidPriorError
        Unknown family, parameter count mismatch, non-finite or
        non-positive scale parameters, or a group SD prior with support
        on negative values.
    """
    family = str(family).lower()
    if family not in PRIOR_FAMILIES:
        raise InvalidPriorError(
            f"Unknown prior family '{family}'. Expected one of {sorted(PRIOR_FAMILIES)}"
        )
    if applies_to not in APPLIES_TO:
        raise InvalidPriorError(f"applies_to must be one of {APPLIES_TO}, got '{applies_to}'")

    names, positive_idx = PRIOR_FAMILIES[family]
    if len(params) != len(names):
        raise InvalidPriorError(
            f"{family} prior takes {len(names)} parameter(s) {names}, got {len(params)}"
        )
    values = tuple(float(p) for p in params)
    if not all(np.isfinite(values)):
        raise InvalidPriorError(f"{family} prior parameters must be finite, got {values}")
    for i in positive_idx:
        if values[i] <= 0:
            raise InvalidPriorError(
                f"{family} prior parameter '{names[i]}' must be > 0, got {values[i]}"
            )
    if applies_to == "group_sd" and family not in POSITIVE_FAMILIES:
        raise InvalidPriorError(
            f"Group standard deviation prior must be one of {sorted(POSITIVE_FAMILIES)}"
        )
    return Prior(family=family, params=values, applies_to=applies_to)


def _scipy_distribution(prior: Prior):
    p = prior.param_dict
    if prior.family == "normal":
        return stats.norm(loc=p["mu"], scale=p["sigma"])
    if prior.family == "student_t":
        return stats.t(df=p["nu"], loc=p["mu"], scale=p["sigma"])
    if prior.family == "cauchy":
        return stats.cauchy(loc=p["alpha"], scale=p["beta"])
    if prior.family == "half_normal":
        return stats.halfnorm(scale=p["sigma"])
    if prior.family == "half_cauchy":
        return stats.halfcauchy(scale=p["beta"])
    if prior.family == "half_student_t":
        # |T| with nu degrees of freedom
        return _HalfStudentT(p["nu"], p["sigma"])
    return stats.expon(scale=1.0 / p["lam"])


class _HalfStudentT:
    def __init__(self, nu: float, sigma: float):
        self._t = stats.t(df=nu, scale=sigma)

    def rvs(self, size, random_state=None):
        return np.abs(self._t.rvs(size=size, random_state=random_state))


def prior_predictive_summary(
    prior: Prior,
    n_samples: int = PRIOR_PREDICTIVE_SAMPLES,
    transform: Callable[[np.ndarray], np.ndarray] | None = np.exp,
    seed: int | None = None,
) -> dict[str, float]:
    """Simulate from a prior and summarize it on the transformed scale.

    With the default ``np.exp`` a log-RR prior is reported on the RR
    scale, and ``prob_above_one`` is the prior probability of harm.
    Quantiles use linear interpolation between order statistics, the
    same rule as the posterior summaries.
    """
    if n_samples < 1:
        raise ValueError("n_samples must be >= 1")
    rng = np.random.default_rng(seed)
    draws = np.asarray(_scipy_distribution(prior).rvs(size=n_samples, random_state=rng), dtype=float)
    if transform is not None:
        draws = transform(draws)
    q025, q50, q975 = np.quantile(draws, [0.025, 0.5, 0.975], method="linear")
    return {
        "mean": float(np.mean(draws)),
        "q025": float(q025),
        "q50": float(q50),
        "q975": float(q975),
        "prob_above_one": float(np.mean(draws > 1.0)),
    }


# ============================================================
# ARCHETYPES AND DEFAULTS
# ============================================================

def prior_archetype(name: str, scale: float | None = None) -> Prior:
    """Return one of the sensitivity-analysis priors on the exposure log RR.

    ``scale`` overrides the tabulated standard deviation (location is kept).
    """
    if name not in PRIOR_ARCHETYPES:
        raise InvalidPriorError(
            f"Unknown prior archetype '{name}'. Expected one of {sorted(PRIOR_ARCHETYPES)}"
        )
    loc, sd = PRIOR_ARCHETYPES[name]
    return make_prior("normal", loc, sd if scale is None else scale)


def prior_archetype_table(
    n_samples: int = PRIOR_PREDICTIVE_SAMPLES,
    seed: int | None = None,
) -> pd.DataFrame:
    """Prior-predictive summary on the RR scale for every archetype."""
    rows = []
    for name in PRIOR_ARCHETYPES:
        prior = prior_archetype(name)
        summary = prior_predictive_summary(prior, n_samples=n_samples, seed=seed)
        rows.append({"prior": name, "distribution": prior.label(), **summary})
    return pd.DataFrame(rows)


def default_priors(exposure_prior: Prior | None = None, exposure: str | None = None) -> dict[str, Prior]:
    """Default prior mapping for a ModelSpec.

    Keys ``Intercept``, ``group_sd`` and ``default`` are resolved by the
    fitter; passing ``exposure`` attaches ``exposure_prior`` to that term.
    """
    priors = {
        "Intercept": make_prior(INTERCEPT_PRIOR[0], *INTERCEPT_PRIOR[1], applies_to="intercept"),
        "group_sd": make_prior(GROUP_SD_PRIOR[0], *GROUP_SD_PRIOR[1], applies_to="group_sd"),
        "default": make_prior(COVARIATE_PRIOR[0], *COVARIATE_PRIOR[1]),
    }
    if exposure is not None:
        priors[exposure] = exposure_prior or make_prior(FIXED_EFFECT_PRIOR[0], *FIXED_EFFECT_PRIOR[1])
    return priors


def to_pymc(prior: Prior, name: str, **kwargs):
    """Create the matching PyMC random variable inside an active model."""
    import pymc as pm

    p = prior.param_dict
    if prior.family == "normal":
        return pm.Normal(name, mu=p["mu"], sigma=p["sigma"], **kwargs)
    if prior.family == "student_t":
        return pm.StudentT(name, nu=p["nu"], mu=p["mu"], sigma=p["sigma"], **kwargs)
    if prior.family == "cauchy":
        return pm.Cauchy(name, alpha=p["alpha"], beta=p["beta"], **kwargs)
    if prior.family == "half_normal":
        return pm.HalfNormal(name, sigma=p["sigma"], **kwargs)
    if prior.family == "half_cauchy":
        return pm.HalfCauchy(name, beta=p["beta"], **kwargs)
    if prior.family == "half_student_t":
        return pm.HalfStudentT(name, nu=p["nu"], sigma=p["sigma"], **kwargs)
    return pm.Exponential(name, lam=p["lam"], **kwargs)
