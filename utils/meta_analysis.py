"""
Study-Level Meta-Analysis of the Blood-Pressure-Target Trials
=============================================================
Two-stage analyses on the two-row-per-study table: per-trial log RR ->
pooled estimate. The frequentist version uses statsmodels
``combine_effects`` (Paule-Mandel tau2 + HKSJ); the Bayesian version runs the
hierarchical fitter on aggregated binomial counts.

Usage:
    from meta_analysis import (
        run_meta_analysis, sensitivity_leave_one_out,
        bayesian_meta_analysis, jama_forest_plot, funnel_plot,
    )
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import matplotlib
import matplotlib.pyplot as plt
from statsmodels.stats.meta_analysis import combine_effects

from definitions_source_of_truth import EXPOSURE_COL, FOREST_PLOT_XLIM, FIGURE_DPI, STUDY_COL
from hierarchical_fit import FitResult, SamplingConfig, fit
from model_spec import GroupingTerm, ModelSpec
from priors import Prior, default_priors

matplotlib.rcParams.update({
    "font.family": "Arial",
    "font.size": 9,
})

# tau-squared estimators accepted by statsmodels combine_effects
TAU2_ESTIMATORS = {
    "iterated": "Paule-Mandel",
    "pm": "Paule-Mandel",
    "chi2": "DerSimonian-Laird",
    "dl": "DerSimonian-Laird",
}


def _hksj_adjustment(
    eff: np.ndarray,
    var_eff: np.ndarray,
    pooled_eff: float,
    tau2: float,
    k: int,
) -> tuple[float, float]:
    """Hartung-Knapp-Sidik-Jonkman CI adjustment for random-effects meta-analysis.

    Replaces the standard normal z-based CI with a t-distribution CI using
    a corrected variance estimate. Recommended when k < 20 studies.

    References:
        IntHout J, et al. BMC Med Res Methodol. 2014;14:25. PMID: 24548571
        Hartung J, Knapp G. Stat Med. 2001;20(24):3875-3889.

    Returns (se_hksj, t_crit) for use in CI: pooled ± t_crit * se_hksj
    """
    from scipy import stats as sp_stats
    w = 1.0 / (var_eff + tau2)
    q_hksj = np.sum(w * (eff - pooled_eff) ** 2) / (k - 1)
    # floor at 1 so the HKSJ interval is never narrower than the RE interval
    q_hksj = max(q_hksj, 1.0)
    se_re = np.sqrt(1.0 / np.sum(w))
    se_hksj = se_re * np.sqrt(q_hksj)
    t_crit = sp_stats.t.ppf(0.975, df=k - 1)
    return se_hksj, t_crit


# ============================================================
# FREQUENTIST RANDOM-EFFECTS META-ANALYSIS
# ============================================================

def run_meta_analysis(
    studies_df: pd.DataFrame,
    estimate_col: str = "log_rr",
    se_col: str = "se_log_rr",
    label_col: str = STUDY_COL,
    method: str = "iterated",
    use_hksj: bool = True,
):
    """Run fixed + random-effects meta-analysis on per-trial log RR.

    Parameters
    ----------
    studies_df : DataFrame with one row per trial
    estimate_col : column name for log risk ratios
    se_col : column name for standard errors
    label_col : column name for trial labels
    method : tau-squared estimator, one of TAU2_ESTIMATORS ('iterated' is
        Paule-Mandel, 'dl' DerSimonian-Laird for sensitivity)
    use_hksj : bool
        Apply HKSJ CI adjustment (k >= 3; IntHout et al. 2014)

    Returns
    -------
    res : CombineResults from statsmodels
    summary : DataFrame with trial + pooled rows, log scale and RR scale
    """
    eff = studies_df[estimate_col].to_numpy(dtype=float)
    se = studies_df[se_col].to_numpy(dtype=float)
    if len(eff) < 2:
        raise ValueError("Meta-analysis needs at least 2 studies")
    if method not in TAU2_ESTIMATORS:
        raise ValueError(f"method must be one of {sorted(TAU2_ESTIMATORS)}, got {method!r}")
    if (se <= 0).any():
        raise ValueError(f"All '{se_col}' values must be > 0 for meta-analysis")
    var = se ** 2

    res = combine_effects(
        eff, var,
        method_re=method,
        row_names=studies_df[label_col].astype(str).tolist(),
    )

    summary = res.summary_frame().reset_index()
    _expected_cols = ["label", "eff", "sd_eff", "ci_low", "ci_upp", "w_fe", "w_re"]
    if len(summary.columns) == len(_expected_cols):
        summary.columns = _expected_cols
    else:
        summary = summary.rename(columns={summary.columns[0]: "label", summary.columns[1]: "eff",
                                          summary.columns[2]: "sd_eff", summary.columns[3]: "ci_low",
                                          summary.columns[4]: "ci_upp"})
    # statsmodels appends its own pooled rows; keep the trials only
    summary = summary.iloc[:len(eff)].copy()

    pooled_eff = float(res.mean_effect_re)
    pooled_ci = res.conf_int(use_t=False)[1]
    k = len(eff)
    ci_method = f"RE ({TAU2_ESTIMATORS[method]})"

    if use_hksj and k >= 3:
        tau2 = float(getattr(res, "tau2", 0.0))
        se_hksj, t_crit = _hksj_adjustment(eff, var, pooled_eff, tau2, k)
        pooled_ci = (pooled_eff - t_crit * se_hksj, pooled_eff + t_crit * se_hksj)
        ci_method = f"RE ({TAU2_ESTIMATORS[method]}) + HKSJ"

    pooled = {
        "label": f"Pooled ({ci_method})",
        "eff": pooled_eff,
        "sd_eff": float(res.sd_eff_w_re) if hasattr(res, "sd_eff_w_re") else np.nan,
        "ci_low": pooled_ci[0],
        "ci_upp": pooled_ci[1],
    }
    summary = pd.concat([summary, pd.DataFrame([pooled])], ignore_index=True)
    for col, src in (("rr", "eff"), ("rr_lower", "ci_low"), ("rr_upper", "ci_upp")):
        summary[col] = np.exp(summary[src])
    summary["tau2"] = float(getattr(res, "tau2", np.nan))
    summary["i2"] = float(getattr(res, "i2", np.nan))
    return res, summary


def sensitivity_leave_one_out(
    studies_df: pd.DataFrame,
    estimate_col: str = "log_rr",
    se_col: str = "se_log_rr",
    label_col: str = STUDY_COL,
    method: str = "iterated",
) -> pd.DataFrame:
    """Leave-one-trial-out sensitivity analysis (needs >= 3 trials)."""
    results = []
    for i, row in studies_df.iterrows():
        subset = studies_df.drop(i)
        res, summary = run_meta_analysis(subset, estimate_col, se_col, label_col, method=method)
        pooled = summary.iloc[-1]
        results.append({
            "excluded_study": row[label_col],
            "pooled_log_rr": pooled["eff"],
            "ci_low": pooled["ci_low"],
            "ci_upp": pooled["ci_upp"],
            "rr": pooled["rr"],
            "rr_lower": pooled["rr_lower"],
            "rr_upper": pooled["rr_upper"],
            "i2": getattr(res, "i2", np.nan),
        })
    return pd.DataFrame(results)


# ============================================================
# BAYESIAN STUDY-LEVEL META-ANALYSIS
# ============================================================

def study_level_spec(random_effects: bool = True, exposure_prior: Prior | None = None) -> ModelSpec:
    """Aggregated binomial model on the two-row-per-study table.

    Random effects: trial-specific baseline risk and treatment effect.
    Fixed effect: trial-specific baseline risk, one common treatment effect.
    """
    slopes = (EXPOSURE_COL,) if random_effects else ()
    return ModelSpec(
        outcome="events",
        fixed_terms=(EXPOSURE_COL,),
        grouping=(GroupingTerm(STUDY_COL, slopes=slopes),),
        family="binomial",
        link="log",
        trials="n",
        priors=default_priors(exposure_prior, exposure=EXPOSURE_COL),
    )


def bayesian_meta_analysis(
    two_row_df: pd.DataFrame,
    config: SamplingConfig | None = None,
    random_effects: bool = True,
    exposure_prior: Prior | None = None,
) -> FitResult:
    """Fit the Bayesian fixed- or random-effects meta-analysis."""
    spec = study_level_spec(random_effects=random_effects, exposure_prior=exposure_prior)
    data = two_row_df.copy()
    data[STUDY_COL] = data[STUDY_COL].astype(str)
    return fit(spec, data, config, include_group_effects=random_effects)


# ============================================================
# FIGURES (JAMA-STYLE)
# ============================================================

def jama_forest_plot(
    summary_df: pd.DataFrame,
    outcome_label: str = "Risk ratio (95% CrI)",
    heterogeneity_text: str = "",
    title: str = "Forest plot",
    figsize: tuple = (10, None),
    xlim: tuple = FOREST_PLOT_XLIM,
    pooled_last: bool = False,
    save_path: str | None = None,
):
    """JAMA-style forest plot on a log risk-ratio axis.

    summary_df must have columns: label, rr, rr_lower, rr_upper.
    With ``pooled_last`` the last row is drawn as a diamond.
    """
    df = summary_df.reset_index(drop=True)
    n = len(df)
    if figsize[1] is None:
        figsize = (figsize[0], max(3, n * 0.4 + 1.5))

    fig, ax = plt.subplots(figsize=figsize)
    y_positions = list(range(n - 1, -1, -1))
    n_points = n - 1 if pooled_last else n

    for i in range(n_points):
        row = df.iloc[i]
        ax.plot(row["rr"], y_positions[i], "s", color="navy", markersize=6, zorder=3)
        ax.plot([row["rr_lower"], row["rr_upper"]], [y_positions[i]] * 2,
                "-", color="navy", linewidth=1.5, zorder=2)

    if pooled_last:
        pooled = df.iloc[-1]
        diamond_x = [pooled["rr_lower"], pooled["rr"], pooled["rr_upper"], pooled["rr"]]
        diamond_y = [y_positions[-1], y_positions[-1] + 0.2,
                     y_positions[-1], y_positions[-1] - 0.2]
        ax.fill(diamond_x, diamond_y, color="firebrick", zorder=3)

    ax.axvline(1.0, color="gray", linestyle=":", linewidth=0.8, zorder=1)
    ax.set_xscale("log")
    ax.set_xlim(*xlim)
    ticks = [t for t in (0.5, 0.75, 1.0, 1.5, 2.0) if xlim[0] <= t <= xlim[1]]
    ax.set_xticks(ticks)
    ax.set_xticklabels([f"{t:g}" for t in ticks])

    ax.set_yticks(y_positions)
    ax.set_yticklabels(df["label"].tolist(), fontsize=9)
    ax.set_xlabel(outcome_label, fontsize=10)
    ax.set_title(title, fontsize=11, fontweight="bold")

    for idx, (_, row) in enumerate(df.iterrows()):
        text = f"{row['rr']:.2f} [{row['rr_lower']:.2f}, {row['rr_upper']:.2f}]"
        if "prob_benefit" in row and pd.notna(row["prob_benefit"]):
            text += f"  Pr(benefit) {row['prob_benefit']:.2f}"
        ax.annotate(text, xy=(xlim[1], y_positions[idx]), fontsize=8, va="center",
                    xytext=(5, 0), textcoords="offset points", annotation_clip=False)

    if heterogeneity_text:
        ax.text(0.02, -0.12, heterogeneity_text, transform=ax.transAxes,
                fontsize=8, style="italic")

    ax.tick_params(axis="x", labelsize=8)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=FIGURE_DPI, bbox_inches="tight")
    return fig, ax


def funnel_plot(
    studies_df: pd.DataFrame,
    pooled_est: float,
    estimate_col: str = "log_rr",
    se_col: str = "se_log_rr",
    save_path: str | None = None,
):
    """Standard funnel plot: log RR vs precision (1/SE)."""
    fig, ax = plt.subplots(figsize=(5.5, 4.5))

    se = studies_df[se_col].to_numpy(dtype=float)
    eff = studies_df[estimate_col].to_numpy(dtype=float)
    precision = 1.0 / se

    ax.scatter(eff, precision, s=35, color="navy",
               edgecolor="white", linewidth=0.5, zorder=3)
    ax.axvline(pooled_est, color="firebrick", linestyle="--", linewidth=1)

    se_range = np.linspace(se.min() * 0.3, se.max() * 1.5, 100)
    ax.plot(pooled_est + 1.96 * se_range, 1 / se_range,
            color="gray", linestyle=":", linewidth=0.8)
    ax.plot(pooled_est - 1.96 * se_range, 1 / se_range,
            color="gray", linestyle=":", linewidth=0.8)

    ax.set_xlabel("Log risk ratio", fontsize=9)
    ax.set_ylabel("Precision (1/SE)", fontsize=9)
    ax.set_title("Funnel plot", fontsize=11, fontweight="bold")
    ax.tick_params(labelsize=8)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=FIGURE_DPI, bbox_inches="tight")
    return fig, ax
