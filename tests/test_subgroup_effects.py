import importlib.util
import sys
import unittest
from pathlib import Path

import numpy as np


REPO_ROOT = Path(__file__).resolve().parents[1]
UTILS_DIR = REPO_ROOT / "utils"
sys.path.insert(0, str(UTILS_DIR))


def _load(name):
    if name in sys.modules:
        return sys.modules[name]
    spec = importlib.util.spec_from_file_location(name, UTILS_DIR / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    assert spec and spec.loader
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module


hierarchical_fit = _load("hierarchical_fit")
subgroup_effects = _load("subgroup_effects")

PosteriorSamples = hierarchical_fit.PosteriorSamples


def _samples() -> PosteriorSamples:
    names = ["Intercept", "lower_target", "sepsis", "lower_target:sepsis"]
    draws = np.array([
        [-0.9, -0.10, 0.20, 0.05],
        [-0.9, -0.05, 0.20, -0.15],
        [-0.9, 0.02, 0.20, 0.10],
        [-0.9, -0.20, 0.20, 0.30],
    ])
    return PosteriorSamples(names, draws)


class CombineTests(unittest.TestCase):
    def test_single_column_is_the_column(self) -> None:
        samples = _samples()
        np.testing.assert_allclose(
            subgroup_effects.combine(samples, {"lower_target": 1.0}),
            samples.column("lower_target"),
        )

    def test_weighted_sum(self) -> None:
        samples = _samples()
        combined = subgroup_effects.combine(
            samples, {"lower_target": 1.0, "lower_target:sepsis": 1.0}
        )
        np.testing.assert_allclose(combined, [-0.05, -0.20, 0.12, 0.10])

    def test_unknown_column_raises(self) -> None:
        with self.assertRaises(subgroup_effects.UnknownColumnError):
            subgroup_effects.combine(_samples(), {"lower_target:age_75_plus": 1.0})

    def test_empty_stratum_rejected(self) -> None:
        with self.assertRaises(ValueError):
            subgroup_effects.StratumCombination("empty", {})


class ModifierSummaryTests(unittest.TestCase):
    def test_numeric_modifier_strata(self) -> None:
        strata = subgroup_effects.strata_for_modifier(_samples(), "lower_target", "sepsis")
        self.assertEqual([s.name for s in strata], ["sepsis=reference", "sepsis=1"])
        self.assertEqual(strata[1].weights, {"lower_target": 1.0, "lower_target:sepsis": 1.0})

    def test_categorical_modifier_strata(self) -> None:
        names = ["Intercept", "lower_target", "risk_quartile[Q2]", "risk_quartile[Q3]",
                 "lower_target:risk_quartile[Q2]", "lower_target:risk_quartile[Q3]"]
        draws = np.random.default_rng(0).normal(size=(50, len(names)))
        samples = PosteriorSamples(names, draws)
        strata = subgroup_effects.strata_for_modifier(samples, "lower_target", "risk_quartile")
        self.assertEqual(
            [s.name for s in strata],
            ["risk_quartile=reference", "risk_quartile=Q2", "risk_quartile=Q3"],
        )

    def test_missing_interaction_raises(self) -> None:
        with self.assertRaises(subgroup_effects.UnknownColumnError):
            subgroup_effects.strata_for_modifier(_samples(), "lower_target", "age_75_plus")

    def test_modifier_summary_tables(self) -> None:
        effects, interactions = subgroup_effects.modifier_summary(
            _samples(), "lower_target", "sepsis", baseline_risk=0.4
        )
        self.assertEqual(effects["label"].tolist(), ["sepsis=reference", "sepsis=1"])
        self.assertEqual(effects["prob_benefit"].tolist(), [0.75, 0.5])
        self.assertIn("ard", effects.columns)
        self.assertEqual(interactions["interaction"].tolist(), ["lower_target:sepsis"])
        self.assertEqual(interactions["prob_negative"].iloc[0], 0.25)
        self.assertEqual(interactions["prob_positive"].iloc[0], 0.75)


if __name__ == "__main__":
    unittest.main()
