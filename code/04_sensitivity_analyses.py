"""
04_sensitivity_analyses.py
==========================
Sensitivity analyses for the primary adjusted model.

1. Prior archetypes on the exposure log RR (neutral, skeptical,
   optimistic, pessimistic), fit concurrently, plus the prior-predictive
   table on the RR scale
2. Multiple imputation of baseline covariates (IterativeImputer, m datasets,
   draws stacked across imputations)
3. Poisson likelihood (log link) instead of log-binomial
4. Fixed trial effects (trial as a covariate, no random effect)
5. Nested random intercepts: trial and site within trial
6. Leave-one-trial-out (patient-level model and Paule-Mandel meta-analysis)
7. Probability of benefit reconstructed from published trial estimates
   (optional --published-file with point_rr / upper_rr columns, lower_rr
   used when reported)

Usage:
    python 04_sensitivity_analyses.py --data-dir ../output/intermediate \
                                      --output-dir ../output/final/sensitivity
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), os.pardir, "utils"))


import argparse
import warnings

import pandas as pd
from tqdm import tqdm
from analysis_runner import (
    add_sampling_arguments,
    adjustment_terms,
    diagnostics_frame,
    effect_row,
    effect_spec,
    run_effect_model,
    run_safely,
    sampling_config_from_args,
)
from definitions_source_of_truth import (
    ADJUSTMENT_COVARIATES,
    BASELINE_RISK,
    CONTINUOUS_COVARIATES,
    EXPOSURE_COL,
    N_IMPUTATIONS,
    OUTCOME_COL,
    PRIOR_ARCHETYPES,
    SITE_COL,
    STUDY_COL,
)
from hierarchical_fit import FitJob, FitResult, fit_many
from imputation import fit_imputed, impute_datasets
from ipd_schema import (
    complete_case,
    load_analysis_dataset,
    log_risk_ratio_table,
    prepare_analysis_dataset,
    two_row_per_study,
)
from meta_analysis import sensitivity_leave_one_out
from model_spec import GroupingTerm
from posterior_summary import summary_row
from priors import prior_archetype, prior_archetype_table
from probability_of_benefit import published_trial_table

warnings.filterwarnings("ignore")


# ============================================================
# 1. PRIOR ARCHETYPES
# ============================================================

def sensitivity_priors(df, config, baseline_risk, output_dir):
    """Adjusted model under each prior archetype, fit concurrently."""
    prior_archetype_table(seed=config.random_seed).to_csv(
        os.path.join(output_dir, "prior_predictive_summary.csv"), index=False)

    jobs = []
    for i, name in enumerate(PRIOR_ARCHETYPES):
        spec = effect_spec(adjusted=True, exposure_prior=prior_archetype(name))
        data, _ = complete_case(df, spec.required_columns)
        seed = None if config.random_seed is None else config.random_seed + i
        jobs.append(FitJob(f"prior_{name}", spec, data, config.with_seed(seed)))

    results = fit_many(jobs, max_workers=len(jobs))
    rows, draws = [], {}
    for label, result in results.items():
        if isinstance(result, FitResult):
            rows.append(effect_row(label, result, EXPOSURE_COL, baseline_risk))
            draws[label] = result.samples.column(EXPOSURE_COL)
        else:
            rows.append({"label": label, "error": str(result), "converged": False})
    if draws:
        # long format: one row per draw and prior (draw counts may differ)
        pd.concat(
            [pd.DataFrame({"prior": label, "log_rr": d}) for label, d in draws.items()],
            ignore_index=True,
        ).to_csv(os.path.join(output_dir, "sensitivity_priors_draws.csv"), index=False)
    diagnostics_frame(results).to_csv(
        os.path.join(output_dir, "sensitivity_priors_diagnostics.csv"), index=False)
    return rows


# ============================================================
# 2. MULTIPLE IMPUTATION
# ============================================================

def imputation_covariates(df, impute_cols):
    """Adjustment covariates available after imputation (imputed or fully observed)."""
    return [c for c in ADJUSTMENT_COVARIATES
            if c in impute_cols or (c in df.columns and not df[c].isna().any())]


def sensitivity_imputation(df, config, baseline_risk, m=N_IMPUTATIONS):
    """Adjusted model on m imputed datasets; draws stacked across imputations."""
    impute_cols = [c for c in CONTINUOUS_COVARIATES + ["chronic_hypertension", "sepsis"]
                   if c in df.columns]
    if not df[impute_cols].isna().any().any():
        print("  No missing covariates; imputation analysis skipped")
        return []
    predictors = [EXPOSURE_COL, OUTCOME_COL]
    datasets = impute_datasets(df, impute_cols, m=m, seed=config.random_seed or 0,
                               predictors=predictors,
                               binary_columns=["chronic_hypertension", "sepsis"])
    # re-derive standardized covariates and subgroup flags on completed data
    datasets = [prepare_analysis_dataset(d) for d in datasets]
    covariates = imputation_covariates(df, impute_cols)
    spec = effect_spec(adjusted=True, covariates=covariates)
    samples, results = fit_imputed(spec, datasets, config)
    row = summary_row(f"Multiple imputation (m={m})", samples.column(EXPOSURE_COL),
                      baseline_risk=baseline_risk)
    row["converged"] = all(r.converged for r in results)
    row["rhat_max"] = max(r.rhat_max for r in results)
    row["n_obs"] = results[0].n_obs
    return [row]


# ============================================================
# 3-5. ALTERNATIVE MODEL STRUCTURES
# ============================================================

def alternative_model_specs(df):
    """(label, spec) pairs for likelihood / random-effect structure variants."""
    specs = [("Poisson likelihood", effect_spec(adjusted=True, family="poisson"))]

    covariates = adjustment_terms()
    fixed_trials = effect_spec(adjusted=False, grouping=()).with_terms(
        EXPOSURE_COL, *covariates, STUDY_COL, grouping=())
    specs.append(("Fixed trial effects", fixed_trials))

    if SITE_COL in df.columns and df[SITE_COL].notna().any():
        nested = effect_spec(adjusted=True, grouping=(
            GroupingTerm(STUDY_COL), GroupingTerm(f"{STUDY_COL}:{SITE_COL}")))
        specs.append(("Trial + site-within-trial random intercepts", nested))
    else:
        print("  No site identifiers; nested random-effects model skipped")
    return specs


# ============================================================
# 6. LEAVE-ONE-TRIAL-OUT
# ============================================================

def sensitivity_leave_one_trial_out(df, config, baseline_risk):
    rows = []
    trials = sorted(df[STUDY_COL].astype(str).unique())
    if len(trials) < 3:
        print("  Fewer than 3 trials; leave-one-trial-out skipped")
        return rows
    for trial in tqdm(trials, desc="Leave-one-trial-out"):
        subset = df[df[STUDY_COL].astype(str) != trial]
        label = f"Excluding {trial}"
        out = run_safely(label, run_effect_model, label, effect_spec(adjusted=True),
                         subset, config, baseline_risk=baseline_risk)
        rows.append(out if isinstance(out, dict) else out[0])
    return rows


def run_all_sensitivity(data_dir, output_dir, config, baseline_risk=BASELINE_RISK,
                        published_file=None, run_imputation=True, run_leave_one_out=True):
    os.makedirs(output_dir, exist_ok=True)
    df = load_analysis_dataset(data_dir)
    print(f"Loaded analysis dataset: {len(df):,} patients")
    rows = []

    print("\n1. Prior archetypes...")
    rows.extend(sensitivity_priors(df, config, baseline_risk, output_dir))

    print("\n2. Multiple imputation...")
    if run_imputation:
        rows.extend(sensitivity_imputation(df, config, baseline_risk))
    else:
        print("  Skipped multiple imputation by CLI option.")

    print("\n3-5. Alternative likelihood and random-effect structures...")
    for label, spec in alternative_model_specs(df):
        out = run_safely(label, run_effect_model, label, spec, df, config,
                         baseline_risk=baseline_risk)
        rows.append(out if isinstance(out, dict) else out[0])

    print("\n6. Leave-one-trial-out...")
    if run_leave_one_out:
        loo_rows = sensitivity_leave_one_trial_out(df, config, baseline_risk)
        pd.DataFrame(loo_rows).to_csv(
            os.path.join(output_dir, "sensitivity_leave_one_trial_out.csv"), index=False)
        studies = log_risk_ratio_table(two_row_per_study(df))
        if len(studies) >= 4:
            sensitivity_leave_one_out(studies).to_csv(
                os.path.join(output_dir, "sensitivity_leave_one_out_meta_analysis.csv"), index=False)
    else:
        print("  Skipped leave-one-trial-out by CLI option.")

    print("\n7. Published-trial probability of benefit...")
    if published_file is not None and os.path.exists(published_file):
        published = pd.read_csv(published_file)
        published_trial_table(published, thresholds=(1.0, 0.95)).to_csv(
            os.path.join(output_dir, "published_probability_of_benefit.csv"), index=False)
    else:
        print("  No --published-file; skipping.")

    results_df = pd.DataFrame(rows)
    outpath = os.path.join(output_dir, "sensitivity_analyses.csv")
    results_df.to_csv(outpath, index=False)
    print(f"\nAll sensitivity analyses saved to {output_dir}")
    return results_df


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Sensitivity analyses for the BP-target IPDMA",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--data-dir", default="../output/intermediate")
    parser.add_argument("--output-dir", default="../output/final/sensitivity")
    parser.add_argument(
        "--published-file",
        default=None,
        help="CSV of published trial estimates with point_rr and upper_rr (optional lower_rr) columns",
    )
    parser.add_argument(
        "--skip-imputation",
        action="store_false",
        dest="run_imputation",
        help="Skip the multiple-imputation analysis.",
    )
    parser.add_argument(
        "--skip-leave-one-out",
        action="store_false",
        dest="run_leave_one_out",
        help="Skip leave-one-trial-out reruns.",
    )
    add_sampling_arguments(parser)
    args = parser.parse_args()
    run_all_sensitivity(
        args.data_dir,
        args.output_dir,
        sampling_config_from_args(args),
        baseline_risk=args.baseline_risk,
        published_file=args.published_file,
        run_imputation=args.run_imputation,
        run_leave_one_out=args.run_leave_one_out,
    )
