import importlib.util
import py_compile
import tempfile
import unittest
from pathlib import Path

import numpy as np
import pandas as pd


REPO_ROOT = Path(__file__).resolve().parents[1]
CODE_DIR = REPO_ROOT / "code"
PIPELINE_SCRIPTS = [
    "01_descriptive_statistics.py",
    "02_primary_analysis.py",
    "03_heterogeneity_of_treatment_effect.py",
    "04_sensitivity_analyses.py",
    "05_manuscript_figures.py",
]


def _load_script(filename, module_name):
    spec = importlib.util.spec_from_file_location(module_name, CODE_DIR / filename)
    module = importlib.util.module_from_spec(spec)
    assert spec and spec.loader
    spec.loader.exec_module(module)
    return module


class PipelineScriptTests(unittest.TestCase):
    def test_numbered_scripts_present(self) -> None:
        py_files = sorted(p.name for p in CODE_DIR.glob("0[0-9]_*.py"))
        self.assertEqual(py_files, PIPELINE_SCRIPTS)

    def test_scripts_compile(self) -> None:
        for name in PIPELINE_SCRIPTS:
            py_compile.compile(str(CODE_DIR / name), doraise=True)

    def test_descriptive_statistics_writes_intermediate_files(self) -> None:
        descriptive = _load_script("01_descriptive_statistics.py", "descriptive_statistics")
        rng = np.random.default_rng(0)
        n = 120
        ipd = pd.DataFrame({
            "patient_id": [f"p{i}" for i in range(n)],
            "trial_id": np.repeat(["T1", "T2", "T3"], n // 3),
            "site_id": rng.choice(["1", "2"], n),
            "lower_target": np.tile([0, 1], n // 2),
            "death_90d": rng.integers(0, 2, n),
            "age": rng.normal(65, 12, n),
            "sex": rng.choice(["F", "M"], n),
            "chronic_hypertension": rng.integers(0, 2, n),
            "sepsis": rng.integers(0, 2, n),
            "baseline_sofa": rng.integers(2, 16, n).astype(float),
            "baseline_lactate": rng.gamma(2.0, 1.5, n),
            "baseline_norepinephrine": rng.gamma(2.0, 0.1, n),
        })
        with tempfile.TemporaryDirectory() as tmp:
            ipd_file = Path(tmp) / "combined_ipd.csv"
            ipd.to_csv(ipd_file, index=False)
            out_dir = Path(tmp) / "intermediate"
            descriptive.run_descriptive_statistics(str(ipd_file), str(out_dir))
            for name in ("missingness.csv", "table1_by_arm.csv", "outcome_by_trial.csv",
                         "two_row_per_study.csv", "study_log_rr.csv", "analysis_dataset.csv"):
                self.assertTrue((out_dir / name).exists(), msg=name)
            studies = pd.read_csv(out_dir / "study_log_rr.csv")
            self.assertEqual(len(studies), 3)

    def test_frequentist_rows_pool_four_trials(self) -> None:
        primary = _load_script("02_primary_analysis.py", "primary_analysis")
        studies = pd.DataFrame({
            "trial_id": ["A", "B", "C", "D"],
            "log_rr": [-0.16, -0.05, -0.09, -0.02],
            "se_log_rr": [0.18, 0.12, 0.25, 0.09],
        })
        rows = primary.frequentist_rows(studies)
        self.assertEqual(len(rows), 5)
        self.assertEqual(rows["label"].iloc[-1], "Pooled (RE (Paule-Mandel) + HKSJ)")
        self.assertTrue((rows["rr_lower"] < rows["rr_upper"]).all())

    def test_leave_one_out_with_four_trials(self) -> None:
        sensitivity = _load_script("04_sensitivity_analyses.py", "sensitivity_analyses")
        studies = pd.DataFrame({
            "trial_id": ["A", "B", "C", "D"],
            "log_rr": [-0.16, -0.05, -0.09, -0.02],
            "se_log_rr": [0.18, 0.12, 0.25, 0.09],
        })
        loo = sensitivity.sensitivity_leave_one_out(studies)
        self.assertEqual(len(loo), 4)

    def test_imputation_covariates_skip_absent_columns(self) -> None:
        sensitivity = _load_script("04_sensitivity_analyses.py", "sensitivity_analyses")
        df = pd.DataFrame({
            "age": [60.0, np.nan, 70.0],
            "baseline_sofa": [5.0, 7.0, 9.0],
            "sepsis": [1, 0, np.nan],
        })
        covariates = sensitivity.imputation_covariates(df, ["age", "sepsis"])
        self.assertEqual(covariates, ["age", "baseline_sofa", "sepsis"])

    def test_figures_skip_missing_inputs(self) -> None:
        figures = _load_script("05_manuscript_figures.py", "manuscript_figures")
        with tempfile.TemporaryDirectory() as tmp:
            out_dir = Path(tmp) / "figures"
            figures.generate_all_figures(tmp, tmp, str(out_dir))
            self.assertEqual(list(out_dir.glob("*.pdf")), [])


if __name__ == "__main__":
    unittest.main()
