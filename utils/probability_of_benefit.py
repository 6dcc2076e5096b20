"""
Probability of benefit from a published point estimate and interval.

When only a summary (RR and confidence bound) is available, the log RR
is assumed normally distributed with

    mu    = log(point)
    sigma = (log(upper) - mu) / z,   z = Phi^-1(1 - (1 - level) / 2)

and Pr(RR < threshold) = Phi((log(threshold) - mu) / sigma). With both bounds
reported, sigma is the log width divided by 2z.
"""

from __future__ import annotations

import numpy as np
import pandas as pd
from scipy.stats import norm


class InvalidBoundsError(ValueError):
    """Point estimate / interval inputs cannot define a sampling distribution."""


def _z(confidence_level: float) -> float:
    if not 0 < confidence_level < 1:
        raise InvalidBoundsError(f"confidence_level must be in (0, 1), got {confidence_level}")
    return float(norm.ppf(1 - (1 - confidence_level) / 2))


def _check_positive(**values: float) -> None:
    for name, v in values.items():
        if v is None or not np.isfinite(v) or v <= 0:
            raise InvalidBoundsError(f"{name} must be a positive finite ratio, got {v}")


def implied_log_normal(point_rr: float, upper_rr: float, confidence_level: float = 0.95) -> tuple[float, float]:
    """(mu, sigma) of the log RR implied by a point estimate and upper bound."""
    _check_positive(point_rr=point_rr, upper_rr=upper_rr)
    if upper_rr <= point_rr:
        raise InvalidBoundsError(
            f"upper bound ({upper_rr}) must exceed the point estimate ({point_rr})"
        )
    mu = float(np.log(point_rr))
    sigma = (float(np.log(upper_rr)) - mu) / _z(confidence_level)
    return mu, sigma


def probability_of_benefit(
    point_rr: float,
    upper_rr: float,
    confidence_level: float = 0.95,
    threshold_rr: float = 1.0,
) -> float:
    """Pr(RR < threshold_rr) under the implied normal distribution of log RR.

    Examples
    --------
    >>> round(probability_of_benefit(0.93, 1.02), 3)
    0.938
    """
    _check_positive(threshold_rr=threshold_rr)
    mu, sigma = implied_log_normal(point_rr, upper_rr, confidence_level)
    return float(norm.cdf((np.log(threshold_rr) - mu) / sigma))


def probability_of_benefit_from_interval(
    point_rr: float,
    lower_rr: float,
    upper_rr: float,
    confidence_level: float = 0.95,
    threshold_rr: float = 1.0,
) -> float:
    """Same as ``probability_of_benefit`` using both bounds.

    sigma is the average of the two log half-widths, which absorbs
    rounding in published intervals.
    """
    _check_positive(point_rr=point_rr, lower_rr=lower_rr, upper_rr=upper_rr, threshold_rr=threshold_rr)
    if not lower_rr < point_rr < upper_rr:
        raise InvalidBoundsError(
            f"expected lower < point < upper, got {lower_rr}, {point_rr}, {upper_rr}"
        )
    mu = float(np.log(point_rr))
    sigma = (np.log(upper_rr) - np.log(lower_rr)) / (2 * _z(confidence_level))
    return float(norm.cdf((np.log(threshold_rr) - mu) / sigma))


def published_trial_table(
    trials_df: pd.DataFrame,
    point_col: str = "point_rr",
    upper_col: str = "upper_rr",
    lower_col: str = "lower_rr",
    confidence_level: float = 0.95,
    thresholds=(1.0,),
) -> pd.DataFrame:
    """Add Pr(RR < t) columns to a table of published trial estimates.

    Rows with a reported lower bound in ``lower_col`` use both bounds;
    the rest use the point estimate and upper bound only.
    """
    df = trials_df.copy()
    lowers = df[lower_col] if lower_col in df.columns else pd.Series(np.nan, index=df.index)
    for t in thresholds:
        col = "prob_benefit" if t == 1.0 else f"prob_rr_below_{t:g}"
        df[col] = [
            probability_of_benefit(p, u, confidence_level, threshold_rr=t) if pd.isna(lo)
            else probability_of_benefit_from_interval(p, lo, u, confidence_level, threshold_rr=t)
            for p, lo, u in zip(df[point_col], lowers, df[upper_col])
        ]
    return df
