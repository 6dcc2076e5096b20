"""
03_heterogeneity_of_treatment_effect.py
=======================================
Heterogeneity of treatment effect (HTE) of the lower MAP target.

1. Predefined clinical subgroups: one adjusted model per subgroup with an
   exposure x subgroup interaction; effect within each stratum and
   Pr(interaction < 0) / Pr(interaction > 0)
2. Baseline-risk quartiles: control-arm logistic risk model, quartiles of
   predicted risk as the modifier (Q1 reference, unadjusted model)
3. Latent-class phenotypes: Gaussian mixture on baseline physiology,
   class as the modifier (class 1 = largest = reference)

Stratum effects are linear combinations of posterior columns, e.g.
{lower_target: 1, lower_target:sepsis: 1} for patients with sepsis.

Usage:
    python 03_heterogeneity_of_treatment_effect.py --data-dir ../output/intermediate \
                                                   --output-dir ../output/final/hte
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), os.pardir, "utils"))


import argparse
import warnings

import pandas as pd
from tqdm import tqdm
from analysis_runner import (
    add_sampling_arguments,
    effect_spec,
    modifier_spec,
    run_modifier_model,
    run_safely,
    sampling_config_from_args,
)
from definitions_source_of_truth import (
    BASELINE_RISK,
    EXPOSURE_COL,
    LATENT_CLASS_COL,
    LATENT_CLASS_FEATURES,
    RISK_MODEL_COVARIATES,
    RISK_QUARTILE_COL,
    SUBGROUPS,
)
from ipd_schema import load_analysis_dataset
from latent_classes import assign_latent_classes
from risk_strata import add_risk_strata

warnings.filterwarnings("ignore")


def _collect(out, label, effects_frames, interaction_frames, errors):
    if isinstance(out, dict):
        errors.append(out)
        return
    effects, interactions, _ = out
    effects_frames.append(effects)
    interaction_frames.append(interactions)


def run_hte(data_dir, output_dir, config, baseline_risk=BASELINE_RISK,
            run_risk_strata=True, run_latent_classes=True):
    os.makedirs(output_dir, exist_ok=True)
    df = load_analysis_dataset(data_dir)
    print(f"Loaded analysis dataset: {len(df):,} patients")

    effects_frames, interaction_frames, errors = [], [], []

    # 1. Predefined subgroups
    print(f"\n{'='*60}\nPredefined subgroups\n{'='*60}")
    for name, (column, description) in tqdm(SUBGROUPS.items(), desc="Subgroups"):
        if column not in df.columns:
            print(f"  Skipping {name}: column '{column}' not found")
            continue
        print(f"\n--- {description} ---")
        out = run_safely(name, run_modifier_model, name, column, df, config,
                         spec=modifier_spec(column), baseline_risk=baseline_risk)
        _collect(out, name, effects_frames, interaction_frames, errors)

    # 2. Baseline-risk quartiles
    if run_risk_strata:
        print(f"\n{'='*60}\nBaseline-risk quartiles\n{'='*60}")
        covariates = [c for c in RISK_MODEL_COVARIATES if c in df.columns]
        risk_df, report = add_risk_strata(df.dropna(subset=covariates), covariates)
        pd.DataFrame([{"auc_control": report["auc_control"]}]).to_csv(
            os.path.join(output_dir, "risk_model_performance.csv"), index=False)
        spec = effect_spec(adjusted=False).with_terms(
            EXPOSURE_COL, RISK_QUARTILE_COL, f"{EXPOSURE_COL}:{RISK_QUARTILE_COL}")
        out = run_safely("risk_quartile", run_modifier_model, "risk_quartile",
                         RISK_QUARTILE_COL, risk_df, config, spec=spec,
                         baseline_risk=baseline_risk)
        _collect(out, "risk_quartile", effects_frames, interaction_frames, errors)

    # 3. Latent classes
    if run_latent_classes:
        print(f"\n{'='*60}\nLatent-class phenotypes\n{'='*60}")
        features = [c for c in LATENT_CLASS_FEATURES if c in df.columns]
        lc_df, bic_table = assign_latent_classes(df, features)
        bic_table.to_csv(os.path.join(output_dir, "latent_class_bic.csv"), index=False)
        spec = effect_spec(adjusted=False).with_terms(
            EXPOSURE_COL, LATENT_CLASS_COL, f"{EXPOSURE_COL}:{LATENT_CLASS_COL}")
        out = run_safely("latent_class", run_modifier_model, "latent_class",
                         LATENT_CLASS_COL, lc_df, config, spec=spec,
                         baseline_risk=baseline_risk)
        _collect(out, "latent_class", effects_frames, interaction_frames, errors)

    effects_df = pd.concat(effects_frames, ignore_index=True) if effects_frames else pd.DataFrame()
    interactions_df = (pd.concat(interaction_frames, ignore_index=True)
                       if interaction_frames else pd.DataFrame())
    effects_df.to_csv(os.path.join(output_dir, "hte_stratum_effects.csv"), index=False)
    interactions_df.to_csv(os.path.join(output_dir, "hte_interactions.csv"), index=False)
    if errors:
        pd.DataFrame(errors).to_csv(os.path.join(output_dir, "hte_errors.csv"), index=False)
        print(f"  {len(errors)} HTE model(s) failed; see hte_errors.csv")

    print(f"\nHTE results saved to {output_dir}")
    return effects_df, interactions_df


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Heterogeneity of treatment effect analyses",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--data-dir", default="../output/intermediate")
    parser.add_argument("--output-dir", default="../output/final/hte")
    parser.add_argument(
        "--skip-risk-strata",
        action="store_false",
        dest="run_risk_strata",
        help="Skip baseline-risk quartile analysis.",
    )
    parser.add_argument(
        "--skip-latent-classes",
        action="store_false",
        dest="run_latent_classes",
        help="Skip latent-class phenotype analysis.",
    )
    add_sampling_arguments(parser)
    args = parser.parse_args()
    run_hte(
        args.data_dir,
        args.output_dir,
        sampling_config_from_args(args),
        baseline_risk=args.baseline_risk,
        run_risk_strata=args.run_risk_strata,
        run_latent_classes=args.run_latent_classes,
    )
