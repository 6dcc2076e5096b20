"""
02_primary_analysis.py
======================
Primary analysis: effect of the lower MAP target on 90-day mortality.

Models (log-binomial, random intercept per trial, neutral N(0, 1) prior on
the exposure log RR):
1. Unadjusted patient-level model
2. Adjusted patient-level model (age, SOFA, lactate, norepinephrine dose,
   sex, chronic hypertension, sepsis)
3. Study-level Bayesian random-effects meta-analysis (two-row-per-study)
4. Study-level frequentist random-effects meta-analysis (Paule-Mandel tau2) with HKSJ interval

Each Bayesian row reports RR (median, 95% CrI), absolute risk difference at
the assumed control-arm risk, Pr(RR < 1), Pr(RR < 0.95), Pr(RR < 0.90) and
convergence diagnostics.

Usage:
    python 02_primary_analysis.py --data-dir ../output/intermediate \
                                  --output-dir ../output/final
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), os.pardir, "utils"))


import argparse
import warnings

import pandas as pd
from analysis_runner import (
    add_sampling_arguments,
    effect_row,
    effect_spec,
    run_effect_model,
    run_safely,
    sampling_config_from_args,
)
from definitions_source_of_truth import BASELINE_RISK, EXPOSURE_COL, STUDY_COL
from ipd_schema import load_analysis_dataset, log_risk_ratio_table, two_row_per_study
from meta_analysis import bayesian_meta_analysis, run_meta_analysis

warnings.filterwarnings("ignore")


def frequentist_rows(studies_df):
    """Trial + pooled rows from the Paule-Mandel random-effects meta-analysis (RR scale)."""
    _, summary = run_meta_analysis(studies_df)
    out = summary[["label", "rr", "rr_lower", "rr_upper", "tau2", "i2"]].copy()
    out["method"] = "frequentist Paule-Mandel + HKSJ"
    return out


def run_primary_analysis(data_dir, output_dir, config, baseline_risk=BASELINE_RISK):
    os.makedirs(output_dir, exist_ok=True)
    df = load_analysis_dataset(data_dir)
    print(f"Loaded analysis dataset: {len(df):,} patients")

    rows = []
    print(f"\n{'='*60}\nPatient-level models\n{'='*60}")
    for label, adjusted in [("Unadjusted", False), ("Adjusted", True)]:
        out = run_safely(label, run_effect_model, label, effect_spec(adjusted=adjusted),
                         df, config, baseline_risk=baseline_risk)
        rows.append(out if isinstance(out, dict) else out[0])

    print(f"\n{'='*60}\nStudy-level meta-analyses\n{'='*60}")
    two_row = two_row_per_study(df)
    for label, random_effects in [("Bayesian RE meta-analysis", True),
                                  ("Bayesian FE meta-analysis", False)]:
        print(f"  Fitting {label} ({two_row[STUDY_COL].nunique()} trials)")
        out = run_safely(label, bayesian_meta_analysis, two_row, config, random_effects=random_effects)
        if isinstance(out, dict):
            rows.append(out)
        else:
            rows.append(effect_row(label, out, EXPOSURE_COL, baseline_risk))

    results_df = pd.DataFrame(rows)
    outpath = os.path.join(output_dir, "primary_analysis.csv")
    results_df.to_csv(outpath, index=False)
    print(results_df[[c for c in ["label", "rr", "rr_lower", "rr_upper", "prob_benefit", "converged"]
                      if c in results_df.columns]].to_string(index=False))

    studies = log_risk_ratio_table(two_row)
    if len(studies) >= 2:
        frequentist_rows(studies).to_csv(
            os.path.join(output_dir, "primary_frequentist_meta_analysis.csv"), index=False)
    else:
        print("  Fewer than 2 trials; skipping frequentist meta-analysis")

    print(f"\nResults saved to {outpath}")
    return results_df


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Primary Bayesian analysis of 90-day mortality",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--data-dir", default="../output/intermediate")
    parser.add_argument("--output-dir", default="../output/final")
    add_sampling_arguments(parser)
    args = parser.parse_args()
    run_primary_analysis(args.data_dir, args.output_dir, sampling_config_from_args(args),
                         baseline_risk=args.baseline_risk)
