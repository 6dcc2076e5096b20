"""
Descriptive tables: baseline characteristics by arm and outcomes by trial.

Usage:
    from descriptive_tables import table_one_by_arm, outcome_by_trial
"""

from __future__ import annotations

import pandas as pd
from tableone import TableOne

from definitions_source_of_truth import (
    CATEGORICAL_COVARIATES,
    CONTINUOUS_COVARIATES,
    EXPOSURE_COL,
    OUTCOME_COL,
    STUDY_COL,
)

ARM_LABELS = {0: "Usual target", 1: "Lower target"}


def table_one_by_arm(df: pd.DataFrame, extra_categorical: list[str] | None = None) -> TableOne:
    """Table 1 stratified by randomized arm (overall column, no p-values).

    Columns named more than once (e.g. a subgroup flag that is also a
    covariate) appear once.
    """
    wanted = CATEGORICAL_COVARIATES + (extra_categorical or []) + [OUTCOME_COL, STUDY_COL]
    categorical = [c for c in dict.fromkeys(wanted) if c in df.columns and c != EXPOSURE_COL]
    nonnormal = [c for c in dict.fromkeys(CONTINUOUS_COVARIATES)
                 if c in df.columns and c not in categorical]
    columns = list(dict.fromkeys(nonnormal + categorical))

    t1 = df[columns + [EXPOSURE_COL]].copy()
    t1["arm"] = t1[EXPOSURE_COL].map(ARM_LABELS)
    return TableOne(
        t1,
        columns=columns,
        categorical=categorical,
        nonnormal=nonnormal,
        groupby="arm",
        pval=False,
        missing=True,
    )


def outcome_by_trial(df: pd.DataFrame) -> pd.DataFrame:
    """90-day deaths / patients and risk per trial and arm, plus crude RR."""
    rows = []
    for trial, grp in df.groupby(STUDY_COL):
        row = {STUDY_COL: trial, "n_total": len(grp)}
        for arm, code in (("exposed", 1), ("control", 0)):
            arm_df = grp[grp[EXPOSURE_COL] == code]
            row[f"n_{arm}"] = len(arm_df)
            row[f"deaths_{arm}"] = int(arm_df[OUTCOME_COL].sum())
            row[f"risk_{arm}"] = arm_df[OUTCOME_COL].mean() if len(arm_df) else float("nan")
        row["crude_rr"] = (row["risk_exposed"] / row["risk_control"]
                           if row["risk_control"] else float("nan"))
        rows.append(row)
    return pd.DataFrame(rows)
