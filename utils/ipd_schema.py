"""
Individual-Patient-Data Schema for the Combined Trial Dataset
=============================================================
The pooled IPD file has one row per randomized patient. These helpers
check it, derive the analysis columns and collapse it to the
two-row-per-study summary used by the study-level meta-analyses.

Usage:
    from ipd_schema import validate_ipd, prepare_analysis_dataset, two_row_per_study
"""

import os

import numpy as np
import pandas as pd

from definitions_source_of_truth import (
    AGE_SUBGROUP_THRESHOLD,
    CONTINUOUS_COVARIATES,
    EXPOSURE_COL,
    IPD_REQUIRED_COLUMNS,
    LACTATE_SUBGROUP_THRESHOLD,
    NOREPINEPHRINE_SUBGROUP_THRESHOLD,
    OUTCOME_COL,
    SITE_COL,
    STANDARDIZED_SUFFIX,
    STUDY_COL,
)

# ============================================================
# IPD SCHEMA (one row per patient)
# ============================================================

IPD_COLUMNS = {
    "patient_id": str,
    "trial_id": str,
    "site_id": str,
    "lower_target": int,
    "death_90d": int,
    "age": float,
    "sex": str,
    "chronic_hypertension": int,
    "sepsis": int,
    "baseline_sofa": float,
    "baseline_lactate": float,
    "baseline_norepinephrine": float,
}

BINARY_COLUMNS = [EXPOSURE_COL, OUTCOME_COL, "chronic_hypertension", "sepsis"]

# ============================================================
# VALIDATION
# ============================================================

def validate_ipd(df: pd.DataFrame) -> list[str]:
    """Validate the combined IPD DataFrame.
    Returns list of error messages (empty = valid)."""
    errors = []
    for col in IPD_REQUIRED_COLUMNS:
        if col not in df.columns:
            errors.append(f"Missing required column: {col}")
    for col, dtype in IPD_COLUMNS.items():
        if col not in df.columns or col in IPD_REQUIRED_COLUMNS:
            continue
        if dtype in (float, int):
            coerced = pd.to_numeric(df[col], errors="coerce")
            if (coerced.isna() & df[col].notna()).any():
                errors.append(f"Column {col} cannot be cast to numeric")
    for col in BINARY_COLUMNS:
        if col in df.columns:
            values = set(pd.to_numeric(df[col], errors="coerce").dropna().unique())
            if not values.issubset({0, 1}):
                errors.append(f"Column {col} must be coded 0/1, found {sorted(values)}")
    for col in (EXPOSURE_COL, OUTCOME_COL, STUDY_COL):
        if col in df.columns and df[col].isna().any():
            errors.append(f"Column {col} has {int(df[col].isna().sum())} missing values")
    if "patient_id" in df.columns and df["patient_id"].duplicated().any():
        errors.append("Duplicate patient_id values")
    return errors


def complete_case(df: pd.DataFrame, columns: list[str]) -> tuple[pd.DataFrame, int]:
    """Drop rows with any missing value in ``columns``.
    Returns (complete-case DataFrame, number of rows dropped)."""
    present = [c for c in columns if c in df.columns]
    out = df.dropna(subset=present)
    return out, len(df) - len(out)


# ============================================================
# DERIVED ANALYSIS COLUMNS
# ============================================================

def prepare_analysis_dataset(df: pd.DataFrame) -> pd.DataFrame:
    """Add subgroup flags and standardized continuous covariates.

    Subgroup flags are NaN where the source value is missing so that
    complete-case filtering applies to them too.
    """
    out = df.copy()
    for col in (EXPOSURE_COL, OUTCOME_COL):
        out[col] = out[col].astype(int)
    out[STUDY_COL] = out[STUDY_COL].astype(str)

    def _flag(source, predicate):
        if source not in out.columns:
            return None
        values = pd.to_numeric(out[source], errors="coerce")
        return predicate(values).astype(float).where(values.notna())

    flags = {
        "age_75_plus": _flag("age", lambda v: v >= AGE_SUBGROUP_THRESHOLD),
        "high_norepinephrine": _flag(
            "baseline_norepinephrine", lambda v: v >= NOREPINEPHRINE_SUBGROUP_THRESHOLD),
        "lactate_above_4": _flag("baseline_lactate", lambda v: v > LACTATE_SUBGROUP_THRESHOLD),
    }
    for name, values in flags.items():
        if values is not None:
            out[name] = values

    for col in CONTINUOUS_COVARIATES:
        if col in out.columns:
            values = pd.to_numeric(out[col], errors="coerce")
            sd = values.std()
            out[col + STANDARDIZED_SUFFIX] = (values - values.mean()) / (sd if sd > 0 else 1.0)
    return out


# ============================================================
# STUDY-LEVEL SUMMARIES
# ============================================================

def two_row_per_study(df: pd.DataFrame) -> pd.DataFrame:
    """Events and patients per trial and arm (two rows per trial)."""
    grouped = (
        df.groupby([STUDY_COL, EXPOSURE_COL])[OUTCOME_COL]
        .agg(events="sum", n="count")
        .reset_index()
    )
    grouped["risk"] = grouped["events"] / grouped["n"]
    return grouped


def log_risk_ratio_table(two_row_df: pd.DataFrame) -> pd.DataFrame:
    """Per-trial log RR (exposed vs control) and its standard error.

    A 0.5 continuity correction is added to all four cells of a trial
    with a zero event or zero non-event cell.
    """
    wide = two_row_df.pivot(index=STUDY_COL, columns=EXPOSURE_COL, values=["events", "n"])
    missing_arms = wide[wide.isna().any(axis=1)].index.tolist()
    if missing_arms:
        raise ValueError(f"Trials without both arms: {missing_arms}")

    e1, n1 = wide[("events", 1)].astype(float), wide[("n", 1)].astype(float)
    e0, n0 = wide[("events", 0)].astype(float), wide[("n", 0)].astype(float)
    zero_cell = (e1 == 0) | (e0 == 0) | (e1 == n1) | (e0 == n0)
    cc = np.where(zero_cell, 0.5, 0.0)
    e1c, e0c = e1 + cc, e0 + cc
    n1c, n0c = n1 + 2 * cc, n0 + 2 * cc

    log_rr = np.log((e1c / n1c) / (e0c / n0c))
    se = np.sqrt(1 / e1c - 1 / n1c + 1 / e0c - 1 / n0c)
    return pd.DataFrame({
        STUDY_COL: wide.index.astype(str),
        "events_exposed": e1.to_numpy().astype(int),
        "n_exposed": n1.to_numpy().astype(int),
        "events_control": e0.to_numpy().astype(int),
        "n_control": n0.to_numpy().astype(int),
        "log_rr": log_rr.to_numpy(),
        "se_log_rr": se.to_numpy(),
        "continuity_corrected": zero_cell.to_numpy(),
    })


def load_analysis_dataset(data_dir: str, filename: str = "analysis_dataset.csv") -> pd.DataFrame:
    """Read the analysis dataset written by 01_descriptive_statistics.py.

    Trial and site ids are kept as strings so they are treated as
    categorical factors.
    """
    return pd.read_csv(os.path.join(data_dir, filename), low_memory=False, dtype={STUDY_COL: str, SITE_COL: str})
