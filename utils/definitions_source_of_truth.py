"""
Single Source of Truth: IPDMA Definitions and Analysis Parameters
=================================================================
All variable names, subgroup definitions, prior settings and sampler
defaults for the blood-pressure-target individual-patient-data
meta-analysis are defined here. All analysis scripts must import from
this module.

Design notes:
- One row per randomized patient in the combined dataset
- Exposure = allocation to the lower MAP target (1) vs usual/higher target (0)
- Primary outcome = death from any cause by day 90
- Effects are estimated on the log risk-ratio scale; log RR < 0 means benefit
"""

import numpy as np

# ============================================================
# DATASET COLUMNS
# ============================================================

PATIENT_COL = "patient_id"
STUDY_COL = "trial_id"        # grouping factor for random effects
SITE_COL = "site_id"          # nested within trial
EXPOSURE_COL = "lower_target"  # 1 = lower MAP target arm
OUTCOME_COL = "death_90d"      # 1 = died by day 90

# Baseline covariates used by the adjusted models
CONTINUOUS_COVARIATES = [
    "age",
    "baseline_sofa",
    "baseline_lactate",
    "baseline_norepinephrine",
]
CATEGORICAL_COVARIATES = [
    "sex",
    "chronic_hypertension",
    "sepsis",
]
ADJUSTMENT_COVARIATES = CONTINUOUS_COVARIATES + CATEGORICAL_COVARIATES

# Standardized versions are appended with this suffix before modelling
STANDARDIZED_SUFFIX = "_z"

# Required columns for the combined IPD file
IPD_REQUIRED_COLUMNS = [PATIENT_COL, STUDY_COL, EXPOSURE_COL, OUTCOME_COL]

# ============================================================
# SUBGROUPS (heterogeneity of treatment effect)
# ============================================================

# name -> (column in the analysis dataset, description)
# Columns are binary 0/1 or categorical; derived in descriptive step.
SUBGROUPS = {
    "age_75_plus": ("age_75_plus", "Age >= 75 years"),
    "chronic_hypertension": ("chronic_hypertension", "History of chronic hypertension"),
    "sepsis": ("sepsis", "Shock attributed to sepsis"),
    "high_norepinephrine": ("high_norepinephrine",
                            "Norepinephrine >= 0.25 mcg/kg/min at randomization"),
    "lactate_above_4": ("lactate_above_4", "Baseline lactate > 4 mmol/L"),
}

AGE_SUBGROUP_THRESHOLD = 75
NOREPINEPHRINE_SUBGROUP_THRESHOLD = 0.25  # mcg/kg/min
LACTATE_SUBGROUP_THRESHOLD = 4.0          # mmol/L

# Baseline-risk strata
N_RISK_QUANTILES = 4
RISK_QUARTILE_COL = "risk_quartile"
RISK_MODEL_COVARIATES = ADJUSTMENT_COVARIATES

# Latent-class phenotypes
LATENT_CLASS_COL = "latent_class"
LATENT_CLASS_FEATURES = CONTINUOUS_COVARIATES
LATENT_CLASS_K_RANGE = (2, 5)  # inclusive candidate number of classes

# ============================================================
# BAYESIAN MODEL SETTINGS
# ============================================================

# Sampler defaults
N_CHAINS = 4
WARMUP_DRAWS = 1000
TOTAL_ITERATIONS = 2000       # per chain, warmup included
RANDOM_SEED = 20231012
ADAPT_DELTA = 0.95            # NUTS target acceptance
RHAT_THRESHOLD = 1.01         # fits above this are tagged converged=False
SAMPLER_TIMEOUT_SECONDS = None

# Summaries
CREDIBLE_LEVEL = 0.95
BASELINE_RISK = 0.40          # assumed control-arm 90-day mortality for ARD
RR_THRESHOLDS = [1.0, 0.95, 0.90]  # Pr(RR < t) reported for each

# Prior defaults: (family, params)
INTERCEPT_PRIOR = ("normal", (np.log(BASELINE_RISK), 1.0))
FIXED_EFFECT_PRIOR = ("normal", (0.0, 1.0))
COVARIATE_PRIOR = ("normal", (0.0, 2.5))
GROUP_SD_PRIOR = ("half_normal", (0.5,))

# Sensitivity-analysis prior archetypes on the exposure log RR.
# Each is a Normal(location, scale) pair; optimistic centres on a 10%
# relative reduction, pessimistic on the mirror-image 10% increase.
PRIOR_ARCHETYPES = {
    "neutral": (0.0, 1.0),
    "skeptical": (0.0, 0.15),
    "optimistic": (np.log(0.90), 0.10),
    "pessimistic": (np.log(1 / 0.90), 0.10),
}
PRIMARY_PRIOR = "neutral"

PRIOR_PREDICTIVE_SAMPLES = 100_000

# ============================================================
# SENSITIVITY ANALYSIS PARAMETERS
# ============================================================

N_IMPUTATIONS = 10
IMPUTATION_MAX_ITER = 10

# ============================================================
# FIGURES
# ============================================================

FOREST_PLOT_XLIM = (0.4, 2.5)
FIGURE_DPI = 300
