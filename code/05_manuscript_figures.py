"""
05_manuscript_figures.py
========================
Generate manuscript-ready figures from the analysis outputs.

Figure 1: Trial flow (patients and 90-day deaths per trial and arm)
Figure 2: Forest plot of trial RRs + pooled Bayesian estimate
Figure 3: HTE forest plot (subgroups, risk quartiles, latent classes)
Figure 4: Posterior RR density under each prior archetype
eFigure 1: Sensitivity-analysis forest plot
eFigure 2: Funnel plot of trial log RR

All figures follow JAMA style:
- Arial font
- Min 8pt text everywhere
- Log-scale risk-ratio axes with a reference line at 1

Usage:
    python 05_manuscript_figures.py --data-dir ../output/intermediate \
                                    --results-dir ../output/final \
                                    --output-dir ../output/final/figures
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), os.pardir, "utils"))


import argparse
import warnings

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib.patches import FancyBboxPatch
import numpy as np
import pandas as pd
import seaborn as sns
from definitions_source_of_truth import FIGURE_DPI, FOREST_PLOT_XLIM, STUDY_COL
from meta_analysis import funnel_plot, jama_forest_plot

warnings.filterwarnings("ignore")

# JAMA Style
plt.rcParams.update({
    "font.family": "Arial",
    "font.size": 9,
    "axes.titlesize": 11,
    "axes.titleweight": "bold",
    "axes.labelsize": 9,
    "xtick.labelsize": 8,
    "ytick.labelsize": 8,
    "legend.fontsize": 8,
    "figure.dpi": 300,
})

PRIOR_COLORS = {
    "prior_neutral": "#4D4D4D",
    "prior_skeptical": "#2166AC",
    "prior_optimistic": "#1B7837",
    "prior_pessimistic": "#B2182B",
}


def _read(path):
    if not os.path.exists(path):
        print(f"  Missing input: {path}")
        return None
    return pd.read_csv(path, low_memory=False)


def _save_multi_format(fig, base_path, dpi=600):
    """Save as PDF plus a TIFF at ``dpi`` for journal submission."""
    fig.savefig(base_path, bbox_inches="tight", dpi=FIGURE_DPI)
    tiff_path = base_path.replace(".pdf", ".tiff")
    fig.savefig(tiff_path, bbox_inches="tight", dpi=dpi, format="tiff")
    plt.close(fig)
    print(f"  Saved: {base_path} (+TIFF)")


# ============================================================
# FIGURE 1: TRIAL FLOW
# ============================================================

def figure1_trial_flow(data_dir, output_path):
    by_trial = _read(os.path.join(data_dir, "outcome_by_trial.csv"))
    if by_trial is None or by_trial.empty:
        return

    n_trials = len(by_trial)
    height = 3 + 1.2 * n_trials
    fig, ax = plt.subplots(figsize=(10, height))
    ax.set_xlim(0, 10)
    ax.set_ylim(0, height)
    ax.axis("off")

    def draw_box(x, y, w, h, text, color="#E8EEF4"):
        box = FancyBboxPatch(
            (x - w/2, y - h/2), w, h,
            boxstyle="round,pad=0.1",
            facecolor=color, edgecolor="#2166AC", linewidth=1.2
        )
        ax.add_patch(box)
        ax.text(x, y, text, ha="center", va="center", fontsize=8)

    top = height - 1
    draw_box(5, top, 6, 0.8,
             f"{n_trials} trials, {int(by_trial['n_total'].sum()):,} patients randomized\n"
             f"Lower target n = {int(by_trial['n_exposed'].sum()):,}; "
             f"usual target n = {int(by_trial['n_control'].sum()):,}")

    for i, row in by_trial.reset_index(drop=True).iterrows():
        y = top - 1.2 * (i + 1)
        ax.annotate("", xy=(5, y + 0.4), xytext=(5, y + 0.8),
                    arrowprops=dict(arrowstyle="->", color="#2166AC", lw=0.8))
        draw_box(5, y, 7.5, 0.7,
                 f"{row[STUDY_COL]}: lower target {int(row['deaths_exposed'])}/{int(row['n_exposed'])} "
                 f"deaths, usual target {int(row['deaths_control'])}/{int(row['n_control'])} deaths",
                 color="#D4E6F1")

    _save_multi_format(fig, output_path)


# ============================================================
# FIGURE 2: PRIMARY FOREST PLOT
# ============================================================

def figure2_primary_forest(results_dir, output_path):
    """Trial RRs (frequentist CI) + pooled Bayesian adjusted estimate."""
    freq = _read(os.path.join(results_dir, "primary_frequentist_meta_analysis.csv"))
    primary = _read(os.path.join(results_dir, "primary_analysis.csv"))
    if freq is None or primary is None or "rr" not in primary.columns:
        return

    trials = freq[~freq["label"].astype(str).str.startswith("Pooled")]
    pooled = primary[(primary["label"] == "Adjusted") & primary["rr"].notna()]
    if pooled.empty:
        pooled = primary.dropna(subset=["rr"]).head(1)
    if pooled.empty:
        print("  No pooled Bayesian estimate available")
        return
    pooled = pooled.assign(label="Pooled, Bayesian " + pooled["label"].str.lower())

    cols = ["label", "rr", "rr_lower", "rr_upper"]
    plot_df = pd.concat([trials[cols], pooled[cols + ["prob_benefit"]]], ignore_index=True)
    fig, _ = jama_forest_plot(
        plot_df,
        title="90-day mortality, lower vs usual MAP target",
        heterogeneity_text=f"I² = {freq['i2'].iloc[-1]:.0%}, tau² = {freq['tau2'].iloc[-1]:.3f}",
        pooled_last=True,
    )
    _save_multi_format(fig, output_path)


# ============================================================
# FIGURE 3: HTE FOREST PLOT
# ============================================================

def figure3_hte_forest(results_dir, output_path):
    effects = _read(os.path.join(results_dir, "hte", "hte_stratum_effects.csv"))
    if effects is None or effects.empty:
        return
    df = effects.dropna(subset=["rr"]).copy()
    df["label"] = df["analysis"] + ": " + df["label"].str.split("=", n=1).str[-1]
    fig, _ = jama_forest_plot(
        df[["label", "rr", "rr_lower", "rr_upper", "prob_benefit"]],
        title="Treatment effect by subgroup and baseline-risk stratum",
    )
    _save_multi_format(fig, output_path)


# ============================================================
# FIGURE 4: POSTERIOR DENSITY BY PRIOR
# ============================================================

def figure4_prior_densities(results_dir, output_path):
    draws = _read(os.path.join(results_dir, "sensitivity", "sensitivity_priors_draws.csv"))
    if draws is None or draws.empty:
        return
    draws["rr"] = np.exp(draws["log_rr"])

    fig, ax = plt.subplots(figsize=(6.5, 4))
    for label, grp in draws.groupby("prior"):
        p_benefit = float((grp["log_rr"] < 0).mean())
        sns.kdeplot(
            x=grp["rr"], ax=ax, fill=True, alpha=0.15, linewidth=1.2,
            color=PRIOR_COLORS.get(label),
            label=f"{label.replace('prior_', '').title()} (Pr[RR<1] = {p_benefit:.2f})",
        )
    ax.axvline(1.0, color="gray", linestyle=":", linewidth=0.8)
    ax.set_xscale("log")
    ax.set_xlim(*FOREST_PLOT_XLIM)
    ax.set_xlabel("Risk ratio for 90-day mortality")
    ax.set_ylabel("Posterior density")
    ax.set_title("Posterior distribution under alternative priors")
    ax.legend(frameon=False, loc="upper right")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    _save_multi_format(fig, output_path)


# ============================================================
# ESM FIGURES
# ============================================================

def efigure1_sensitivity_forest(results_dir, output_path):
    sens = _read(os.path.join(results_dir, "sensitivity", "sensitivity_analyses.csv"))
    if sens is None or "rr" not in sens.columns:
        return
    frames = [sens]
    primary = _read(os.path.join(results_dir, "primary_analysis.csv"))
    if primary is not None and "rr" in primary.columns:
        frames.insert(0, primary[primary["label"] == "Adjusted"].assign(label="Primary (adjusted)"))
    df = pd.concat(frames, ignore_index=True).dropna(subset=["rr"])
    fig, _ = jama_forest_plot(
        df[["label", "rr", "rr_lower", "rr_upper", "prob_benefit"]],
        title="Sensitivity analyses",
    )
    _save_multi_format(fig, output_path)


def efigure2_funnel(data_dir, results_dir, output_path):
    studies = _read(os.path.join(data_dir, "study_log_rr.csv"))
    freq = _read(os.path.join(results_dir, "primary_frequentist_meta_analysis.csv"))
    if studies is None or freq is None:
        return
    fig, _ = funnel_plot(studies, float(np.log(freq["rr"].iloc[-1])))
    _save_multi_format(fig, output_path)


# ============================================================
# MAIN
# ============================================================

def generate_all_figures(data_dir, results_dir, output_dir):
    os.makedirs(output_dir, exist_ok=True)

    print("=" * 60)
    print("MAIN MANUSCRIPT FIGURES")
    print("=" * 60)

    print("\nFigure 1: Trial flow...")
    figure1_trial_flow(data_dir, os.path.join(output_dir, "fig1_trial_flow.pdf"))

    print("\nFigure 2: Primary forest plot...")
    figure2_primary_forest(results_dir, os.path.join(output_dir, "fig2_primary_forest.pdf"))

    print("\nFigure 3: HTE forest plot...")
    figure3_hte_forest(results_dir, os.path.join(output_dir, "fig3_hte_forest.pdf"))

    print("\nFigure 4: Posterior densities by prior...")
    figure4_prior_densities(results_dir, os.path.join(output_dir, "fig4_prior_densities.pdf"))

    print("\n" + "=" * 60)
    print("ELECTRONIC SUPPLEMENTARY MATERIAL (ESM)")
    print("=" * 60)
    efigure1_sensitivity_forest(results_dir, os.path.join(output_dir, "efig1_sensitivity_forest.pdf"))
    efigure2_funnel(data_dir, results_dir, os.path.join(output_dir, "efig2_funnel.pdf"))

    print(f"\nFigures saved to {output_dir}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Manuscript figures for the BP-target IPDMA",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--data-dir", default="../output/intermediate")
    parser.add_argument("--results-dir", default="../output/final")
    parser.add_argument("--output-dir", default="../output/final/figures")
    args = parser.parse_args()
    generate_all_figures(args.data_dir, args.results_dir, args.output_dir)
