"""
Data-driven patient phenotypes for heterogeneity-of-treatment-effect analyses.

Gaussian mixture on standardized baseline features; the number of
classes is chosen by BIC. Classes are relabelled by size so that
class "1" (the reference) is the largest.
"""

from __future__ import annotations

import numpy as np
import pandas as pd
from sklearn.mixture import GaussianMixture
from sklearn.preprocessing import StandardScaler

from definitions_source_of_truth import LATENT_CLASS_COL, LATENT_CLASS_K_RANGE, RANDOM_SEED


def select_latent_classes(
    df: pd.DataFrame,
    features: list[str],
    k_range: tuple[int, int] = LATENT_CLASS_K_RANGE,
    seed: int = RANDOM_SEED,
) -> tuple[GaussianMixture, pd.DataFrame]:
    """Fit mixtures for k in k_range (inclusive) and keep the lowest BIC.

    Returns (best model, BIC table).
    """
    X = StandardScaler().fit_transform(df[features].astype(float))
    rows, best, best_bic = [], None, np.inf
    for k in range(k_range[0], k_range[1] + 1):
        if k > len(X):
            break
        gm = GaussianMixture(n_components=k, covariance_type="full", n_init=5, random_state=seed)
        gm.fit(X)
        bic = gm.bic(X)
        rows.append({"k": k, "bic": bic, "converged": gm.converged_})
        if bic < best_bic:
            best, best_bic = gm, bic
    if best is None:
        raise ValueError("Not enough rows to fit any latent-class model")
    return best, pd.DataFrame(rows)


def assign_latent_classes(
    df: pd.DataFrame,
    features: list[str],
    k_range: tuple[int, int] = LATENT_CLASS_K_RANGE,
    seed: int = RANDOM_SEED,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Add a categorical ``latent_class`` column (complete rows of ``features`` only)."""
    complete = df.dropna(subset=features)
    model, bic_table = select_latent_classes(complete, features, k_range, seed)
    X = StandardScaler().fit_transform(complete[features].astype(float))
    raw = model.predict(X)

    order = pd.Series(raw).value_counts().index.tolist()
    relabel = {old: str(new + 1) for new, old in enumerate(order)}
    labels = [relabel[c] for c in raw]

    out = df.copy()
    out[LATENT_CLASS_COL] = pd.Series(pd.NA, index=df.index, dtype="object")
    out.loc[complete.index, LATENT_CLASS_COL] = labels
    out[LATENT_CLASS_COL] = pd.Categorical(
        out[LATENT_CLASS_COL], categories=[str(i + 1) for i in range(len(order))]
    )
    print(f"  Latent classes: k = {len(order)} selected by BIC "
          f"(sizes {pd.Series(labels).value_counts().sort_index().to_dict()})")
    return out, bic_table
