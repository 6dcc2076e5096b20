"""
Stratum-specific treatment effects from interaction models.

Every "effect within stratum k" is a weighted sum of posterior columns:

    reference stratum      {exposure: 1}
    stratum with level L   {exposure: 1, exposure:modifier[L]: 1}

and is summarized with ``posterior_summary.summarize``. Risk quartiles
and latent classes are handled the same way, with the quartile / class
factor as the modifier.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from definitions_source_of_truth import CREDIBLE_LEVEL
from hierarchical_fit import PosteriorSamples
from posterior_summary import direction_probabilities, summary_row


class UnknownColumnError(KeyError):
    """A stratum weight names a coefficient that is not in the draws."""


@dataclass(frozen=True)
class StratumCombination:
    name: str
    weights: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "weights", dict(self.weights))
        if not self.weights:
            raise ValueError(f"Stratum '{self.name}' has no weights")


def combine(samples: PosteriorSamples, weights: Mapping[str, float]) -> np.ndarray:
    """Per-draw linear combination sum_c w_c * draws[:, c]."""
    unknown = [c for c in weights if c not in samples]
    if unknown:
        raise UnknownColumnError(
            f"Unknown coefficient(s) {unknown}; available: {list(samples.column_names)}"
        )
    cols = [samples.index_of(c) for c in weights]
    w = np.array([float(v) for v in weights.values()])
    return samples.draws[:, cols] @ w


def probability_of_interaction(samples: PosteriorSamples, column: str) -> dict[str, float]:
    p_neg, p_pos = direction_probabilities(combine(samples, {column: 1.0}))
    return {"prob_negative": p_neg, "prob_positive": p_pos}


def interaction_columns(samples: PosteriorSamples, exposure: str, modifier: str) -> list[str]:
    """Posterior columns for ``exposure:modifier`` in declaration order."""
    prefix = f"{exposure}:{modifier}"
    return [c for c in samples.column_names if c == prefix or c.startswith(prefix + "[")]


def strata_for_modifier(
    samples: PosteriorSamples,
    exposure: str,
    modifier: str,
    reference_label: str | None = None,
) -> list[StratumCombination]:
    """Reference stratum plus one stratum per interaction column."""
    if exposure not in samples:
        raise UnknownColumnError(f"Exposure column '{exposure}' not in posterior draws")
    cols = interaction_columns(samples, exposure, modifier)
    if not cols:
        raise UnknownColumnError(
            f"No interaction columns for '{exposure}:{modifier}' in posterior draws"
        )
    strata = [StratumCombination(reference_label or f"{modifier}=reference", {exposure: 1.0})]
    for col in cols:
        level = col.split("[", 1)[1].rstrip("]") if "[" in col else "1"
        strata.append(StratumCombination(f"{modifier}={level}", {exposure: 1.0, col: 1.0}))
    return strata


def summarize_strata(
    samples: PosteriorSamples,
    strata: Sequence[StratumCombination],
    credible_level: float = CREDIBLE_LEVEL,
    baseline_risk: float | None = None,
) -> pd.DataFrame:
    rows = []
    for stratum in strata:
        row = summary_row(
            stratum.name,
            combine(samples, stratum.weights),
            baseline_risk=baseline_risk,
            credible_level=credible_level,
        )
        row["weights"] = ", ".join(f"{w:g}*{c}" for c, w in stratum.weights.items())
        rows.append(row)
    return pd.DataFrame(rows)


def modifier_summary(
    samples: PosteriorSamples,
    exposure: str,
    modifier: str,
    credible_level: float = CREDIBLE_LEVEL,
    baseline_risk: float | None = None,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Stratum effects and interaction probabilities for one modifier."""
    strata = strata_for_modifier(samples, exposure, modifier)
    effects = summarize_strata(samples, strata, credible_level, baseline_risk)
    effects.insert(0, "modifier", modifier)

    rows = []
    for col in interaction_columns(samples, exposure, modifier):
        rows.append({"modifier": modifier, "interaction": col,
                     **probability_of_interaction(samples, col)})
    return effects, pd.DataFrame(rows)
