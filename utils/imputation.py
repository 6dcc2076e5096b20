"""
Multiple imputation of baseline covariates for sensitivity analyses.

Each completed dataset is fit independently; the posterior draws are
then stacked, which mixes the m posteriors with equal weight.
"""

from __future__ import annotations

import numpy as np
import pandas as pd
from sklearn.experimental import enable_iterative_imputer  # noqa: F401
from sklearn.impute import IterativeImputer
from tqdm import tqdm

from definitions_source_of_truth import IMPUTATION_MAX_ITER, N_IMPUTATIONS, RANDOM_SEED
from hierarchical_fit import FitResult, PosteriorSamples, SamplingConfig, fit
from model_spec import ModelSpec


def impute_datasets(
    df: pd.DataFrame,
    columns: list[str],
    m: int = N_IMPUTATIONS,
    seed: int = RANDOM_SEED,
    predictors: list[str] | None = None,
    binary_columns: list[str] | None = None,
) -> list[pd.DataFrame]:
    """Return ``m`` completed copies of ``df``.

    Parameters
    ----------
    columns : numeric columns to impute
    predictors : additional fully observed numeric columns used as predictors
    binary_columns : subset of ``columns`` rounded and clipped to 0/1
    """
    if m < 1:
        raise ValueError("m must be >= 1")
    predictors = [c for c in (predictors or []) if c not in columns]
    model_cols = list(columns) + predictors
    numeric = df[model_cols].apply(pd.to_numeric, errors="coerce")
    binary_columns = binary_columns or []

    completed = []
    for i in range(m):
        imputer = IterativeImputer(
            sample_posterior=True,
            max_iter=IMPUTATION_MAX_ITER,
            random_state=seed + i,
        )
        filled = pd.DataFrame(imputer.fit_transform(numeric), columns=model_cols, index=df.index)
        out = df.copy()
        for col in columns:
            values = filled[col]
            if col in binary_columns:
                values = values.round().clip(0, 1)
            out[col] = values
        completed.append(out)
    return completed


def fit_imputed(
    spec: ModelSpec,
    datasets: list[pd.DataFrame],
    config: SamplingConfig | None = None,
) -> tuple[PosteriorSamples, list[FitResult]]:
    """Fit ``spec`` on every completed dataset and stack the draws.

    Each dataset gets its own seed (base seed + index).
    """
    config = config or SamplingConfig()
    base_seed = config.random_seed if config.random_seed is not None else RANDOM_SEED
    results = []
    for i, data in enumerate(tqdm(datasets, desc="Imputed datasets")):
        results.append(fit(spec, data, config.with_seed(base_seed + i)))
    n_bad = sum(not r.converged for r in results)
    if n_bad:
        print(f"  WARNING: {n_bad}/{len(results)} imputed-data fits did not converge")
    return PosteriorSamples.concat([r.samples for r in results]), results


def missingness_report(df: pd.DataFrame, columns: list[str]) -> pd.DataFrame:
    present = [c for c in columns if c in df.columns]
    n_missing = df[present].isna().sum()
    return pd.DataFrame({
        "variable": present,
        "n_missing": n_missing.to_numpy(),
        "pct_missing": np.round(100 * n_missing.to_numpy() / max(len(df), 1), 1),
    })
