"""
01_descriptive_statistics.py
============================
Validate the combined IPD file and produce descriptive outputs:

1. Schema validation and missingness report
2. Table 1 by randomized arm (TableOne)
3. 90-day mortality by trial and arm
4. Two-row-per-study table and per-trial log RR (input to study-level
   meta-analyses)
5. Analysis dataset with derived subgroup flags and standardized covariates

Usage:
    python 01_descriptive_statistics.py --ipd-file ../data/combined_ipd.csv \
                                        --output-dir ../output/intermediate
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), os.pardir, "utils"))


import argparse
import warnings

import pandas as pd
from definitions_source_of_truth import (
    ADJUSTMENT_COVARIATES,
    EXPOSURE_COL,
    OUTCOME_COL,
    STUDY_COL,
    SUBGROUPS,
)
from descriptive_tables import outcome_by_trial, table_one_by_arm
from imputation import missingness_report
from ipd_schema import log_risk_ratio_table, prepare_analysis_dataset, two_row_per_study, validate_ipd

warnings.filterwarnings("ignore")


def load_ipd(filepath):
    """Load the combined IPD file (CSV or parquet)."""
    if str(filepath).endswith(".parquet"):
        return pd.read_parquet(filepath)
    return pd.read_csv(filepath, low_memory=False)


def run_descriptive_statistics(ipd_file, output_dir):
    os.makedirs(output_dir, exist_ok=True)
    df = load_ipd(ipd_file)
    print(f"Loaded {len(df):,} patients from {ipd_file}")

    errors = validate_ipd(df)
    if errors:
        for e in errors:
            print(f"  SCHEMA ERROR: {e}")
        raise ValueError(f"{len(errors)} schema error(s) in {ipd_file}")

    analysis_df = prepare_analysis_dataset(df)
    print(f"Trials: {analysis_df[STUDY_COL].nunique()}, "
          f"lower target: {int(analysis_df[EXPOSURE_COL].sum()):,}, "
          f"deaths at 90 days: {int(analysis_df[OUTCOME_COL].sum()):,}")

    missing = missingness_report(analysis_df, ADJUSTMENT_COVARIATES)
    missing.to_csv(os.path.join(output_dir, "missingness.csv"), index=False)

    subgroup_cols = [col for col, _ in SUBGROUPS.values() if col in analysis_df.columns]
    t1 = table_one_by_arm(analysis_df, extra_categorical=subgroup_cols)
    t1.tableone.to_csv(os.path.join(output_dir, "table1_by_arm.csv"))
    print(t1)

    outcome_by_trial(analysis_df).to_csv(
        os.path.join(output_dir, "outcome_by_trial.csv"), index=False)

    two_row = two_row_per_study(analysis_df)
    two_row.to_csv(os.path.join(output_dir, "two_row_per_study.csv"), index=False)
    lrr = log_risk_ratio_table(two_row)
    lrr.to_csv(os.path.join(output_dir, "study_log_rr.csv"), index=False)
    if lrr["continuity_corrected"].any():
        print(f"  Continuity correction applied to: "
              f"{lrr.loc[lrr['continuity_corrected'], STUDY_COL].tolist()}")

    outpath = os.path.join(output_dir, "analysis_dataset.csv")
    analysis_df.to_csv(outpath, index=False)
    print(f"\nDescriptive outputs saved to {output_dir}")
    return analysis_df


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Descriptive statistics for the BP-target IPDMA",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--ipd-file", default="../data/combined_ipd.csv")
    parser.add_argument("--output-dir", default="../output/intermediate")
    args = parser.parse_args()
    run_descriptive_statistics(args.ipd_file, args.output_dir)
