"""
Posterior effect summaries on the risk-ratio and absolute-risk scales.

Conventions used throughout:
- Quantiles: ``np.quantile(..., method="linear")`` (linear interpolation
  between order statistics, Hyndman-Fan type 7).
- Direction: evaluated on the log scale before any transform.
  ``prob_direction_negative`` = Pr(log RR < 0) = probability of benefit.
- Absolute risk difference: baseline risk is a caller-supplied
  assumption, never estimated here.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Callable

import numpy as np

from definitions_source_of_truth import CREDIBLE_LEVEL, RR_THRESHOLDS

QUANTILE_METHOD = "linear"


@dataclass(frozen=True)
class EffectSummary:
    point_estimate: float
    lower_ci: float
    upper_ci: float
    credible_level: float
    prob_direction_negative: float
    prob_direction_positive: float
    n_draws: int

    def as_dict(self, prefix: str = "") -> dict[str, float]:
        return {f"{prefix}{k}": v for k, v in asdict(self).items()}


def _as_draws(samples) -> np.ndarray:
    x = np.asarray(samples, dtype=float).ravel()
    if x.size == 0:
        raise ValueError("Cannot summarize an empty sample vector")
    if not np.isfinite(x).all():
        raise ValueError("Sample vector contains non-finite values")
    return x


def _check_level(credible_level: float) -> None:
    if not 0 < credible_level < 1:
        raise ValueError(f"credible_level must be in (0, 1), got {credible_level}")


def direction_probabilities(samples) -> tuple[float, float]:
    """(Pr(x < 0), Pr(x > 0)); draws exactly 0 count towards neither."""
    x = _as_draws(samples)
    return float(np.mean(x < 0)), float(np.mean(x > 0))


def summarize(
    samples,
    credible_level: float = CREDIBLE_LEVEL,
    transform: Callable[[np.ndarray], np.ndarray] | None = np.exp,
) -> EffectSummary:
    """Median and equal-tailed credible interval of a log-scale effect.

    ``transform`` must be monotone increasing; it is applied to each
    quantile. Directional probabilities use the untransformed draws.
    """
    _check_level(credible_level)
    x = _as_draws(samples)
    tail = (1 - credible_level) / 2
    lo, mid, hi = np.quantile(x, [tail, 0.5, 1 - tail], method=QUANTILE_METHOD)
    if transform is not None:
        lo, mid, hi = (float(transform(np.asarray(v))) for v in (lo, mid, hi))
    p_neg, p_pos = direction_probabilities(x)
    return EffectSummary(
        point_estimate=float(mid),
        lower_ci=float(lo),
        upper_ci=float(hi),
        credible_level=credible_level,
        prob_direction_negative=p_neg,
        prob_direction_positive=p_pos,
        n_draws=int(x.size),
    )


def absolute_risk_draws(samples, baseline_risk: float) -> np.ndarray:
    """Per-draw risk difference exp(log RR) * baseline - baseline."""
    if not 0 < baseline_risk < 1:
        raise ValueError(f"baseline_risk must be in (0, 1), got {baseline_risk}")
    x = _as_draws(samples)
    return np.exp(x) * baseline_risk - baseline_risk


def absolute_risk_summary(
    samples,
    baseline_risk: float,
    credible_level: float = CREDIBLE_LEVEL,
) -> EffectSummary:
    """Summarize the absolute risk difference implied by log-RR draws.

    Negative values are fewer deaths per patient under the exposure.
    """
    arr = absolute_risk_draws(samples, baseline_risk)
    return summarize(arr, credible_level=credible_level, transform=None)


def probability_below(samples, rr_threshold: float = 1.0) -> float:
    """Pr(RR < rr_threshold), evaluated as Pr(log RR < log threshold)."""
    if rr_threshold <= 0:
        raise ValueError("rr_threshold must be > 0")
    x = _as_draws(samples)
    return float(np.mean(x < np.log(rr_threshold)))


def summary_row(
    label: str,
    samples,
    baseline_risk: float | None = None,
    credible_level: float = CREDIBLE_LEVEL,
    rr_thresholds=RR_THRESHOLDS,
) -> dict:
    """One result-table row: RR summary, optional ARD and Pr(RR < t)."""
    rr = summarize(samples, credible_level=credible_level)
    row = {
        "label": label,
        "rr": rr.point_estimate,
        "rr_lower": rr.lower_ci,
        "rr_upper": rr.upper_ci,
        "credible_level": credible_level,
        "prob_benefit": rr.prob_direction_negative,
        "prob_harm": rr.prob_direction_positive,
        "n_draws": rr.n_draws,
    }
    for t in rr_thresholds:
        if t != 1.0:
            row[f"prob_rr_below_{t:g}"] = probability_below(samples, t)
    if baseline_risk is not None:
        ard = absolute_risk_summary(samples, baseline_risk, credible_level)
        row.update({
            "baseline_risk": baseline_risk,
            "ard": ard.point_estimate,
            "ard_lower": ard.lower_ci,
            "ard_upper": ard.upper_ci,
        })
    return row
