"""
Baseline-risk strata for risk-based heterogeneity of treatment effect.

A logistic model for 90-day death is fit in the control arm only and
applied to every patient, so the predicted risk does not depend on the
randomized intervention. Patients are then split into quantile strata
(Q1 = lowest risk = reference).
"""

from __future__ import annotations

import numpy as np
import pandas as pd
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import roc_auc_score
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler

from definitions_source_of_truth import (
    EXPOSURE_COL,
    N_RISK_QUANTILES,
    OUTCOME_COL,
    RISK_QUARTILE_COL,
)


def _features(df: pd.DataFrame, covariates: list[str]) -> pd.DataFrame:
    X = pd.get_dummies(df[covariates], drop_first=True, dtype=float)
    return X.apply(pd.to_numeric, errors="coerce")


def fit_baseline_risk_model(df: pd.DataFrame, covariates: list[str]):
    """Fit the control-arm risk model. Returns (pipeline, feature columns)."""
    control = df[df[EXPOSURE_COL] == 0]
    if control[OUTCOME_COL].nunique() < 2:
        raise ValueError("Control arm needs both outcomes to fit a risk model")
    X = _features(control, covariates)
    model = make_pipeline(StandardScaler(), LogisticRegression(max_iter=1000))
    model.fit(X, control[OUTCOME_COL].astype(int))
    return model, list(X.columns)


def predict_baseline_risk(model, feature_columns: list[str], df: pd.DataFrame, covariates: list[str]) -> np.ndarray:
    X = _features(df, covariates).reindex(columns=feature_columns, fill_value=0.0)
    return model.predict_proba(X)[:, 1]


def assign_risk_quartiles(risk: np.ndarray | pd.Series, q: int = N_RISK_QUANTILES) -> pd.Categorical:
    """Quantile strata labelled Q1..Qq (ordered, Q1 first)."""
    labels = [f"Q{i}" for i in range(1, q + 1)]
    return pd.qcut(np.asarray(risk, dtype=float), q=q, labels=labels)


def add_risk_strata(df: pd.DataFrame, covariates: list[str], q: int = N_RISK_QUANTILES) -> tuple[pd.DataFrame, dict]:
    """Add ``baseline_risk`` and ``risk_quartile`` columns.

    Returns the augmented copy and a report with the control-arm AUC and
    observed control-arm mortality per stratum.
    """
    model, feature_columns = fit_baseline_risk_model(df, covariates)
    out = df.copy()
    out["baseline_risk"] = predict_baseline_risk(model, feature_columns, out, covariates)
    out[RISK_QUARTILE_COL] = assign_risk_quartiles(out["baseline_risk"], q=q)

    control = out[out[EXPOSURE_COL] == 0]
    auc = roc_auc_score(control[OUTCOME_COL].astype(int), control["baseline_risk"])
    observed = control.groupby(RISK_QUARTILE_COL, observed=False)[OUTCOME_COL].mean()
    print(f"  Baseline-risk model (control arm): AUC = {auc:.3f}")
    report = {
        "auc_control": float(auc),
        "control_mortality_by_stratum": observed.to_dict(),
        "mean_predicted_risk_by_stratum": out.groupby(RISK_QUARTILE_COL, observed=False)["baseline_risk"]
        .mean().to_dict(),
    }
    return out, report
