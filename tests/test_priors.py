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


priors = _load("priors")


class MakePriorTests(unittest.TestCase):
    def test_normal_prior_keeps_parameters(self) -> None:
        prior = priors.make_prior("normal", 0, 1)
        self.assertEqual(prior.family, "normal")
        self.assertEqual(prior.params, (0.0, 1.0))
        self.assertEqual(prior.param_dict, {"mu": 0.0, "sigma": 1.0})
        self.assertEqual(prior.label(), "normal(0, 1)")

    def test_family_name_is_case_insensitive(self) -> None:
        self.assertEqual(priors.make_prior("Normal", 0, 1).family, "normal")

    def test_unknown_family_raises(self) -> None:
        with self.assertRaises(priors.InvalidPriorError):
            priors.make_prior("gamma", 2, 1)

    def test_wrong_parameter_count_raises(self) -> None:
        with self.assertRaises(priors.InvalidPriorError):
            priors.make_prior("normal", 0)
        with self.assertRaises(priors.InvalidPriorError):
            priors.make_prior("student_t", 0, 1)

    def test_non_positive_scale_raises(self) -> None:
        for bad in (0.0, -1.0):
            with self.assertRaises(priors.InvalidPriorError):
                priors.make_prior("normal", 0, bad)
        with self.assertRaises(priors.InvalidPriorError):
            priors.make_prior("half_normal", 0)

    def test_non_finite_parameter_raises(self) -> None:
        with self.assertRaises(priors.InvalidPriorError):
            priors.make_prior("normal", np.nan, 1)
        with self.assertRaises(priors.InvalidPriorError):
            priors.make_prior("normal", 0, np.inf)

    def test_group_sd_needs_positive_support(self) -> None:
        with self.assertRaises(priors.InvalidPriorError):
            priors.make_prior("normal", 0, 1, applies_to="group_sd")
        prior = priors.make_prior("half_student_t", 3, 0.5, applies_to="group_sd")
        self.assertEqual(prior.applies_to, "group_sd")

    def test_invalid_error_is_value_error(self) -> None:
        self.assertTrue(issubclass(priors.InvalidPriorError, ValueError))


class PriorPredictiveTests(unittest.TestCase):
    def test_neutral_prior_is_centered_on_rr_one(self) -> None:
        summary = priors.prior_predictive_summary(
            priors.make_prior("normal", 0, 1), n_samples=50_000, seed=1
        )
        self.assertAlmostEqual(summary["q50"], 1.0, delta=0.03)
        self.assertAlmostEqual(summary["prob_above_one"], 0.5, delta=0.01)
        self.assertLess(summary["q025"], summary["q50"])
        self.assertLess(summary["q50"], summary["q975"])

    def test_seeded_summary_is_reproducible(self) -> None:
        prior = priors.prior_archetype("skeptical")
        a = priors.prior_predictive_summary(prior, n_samples=1_000, seed=7)
        b = priors.prior_predictive_summary(prior, n_samples=1_000, seed=7)
        self.assertEqual(a, b)

    def test_identity_transform_reports_log_scale(self) -> None:
        summary = priors.prior_predictive_summary(
            priors.make_prior("normal", 0, 1), n_samples=50_000, transform=None, seed=3
        )
        self.assertAlmostEqual(summary["q975"], 1.96, delta=0.05)

    def test_positive_families_sample_non_negative(self) -> None:
        for prior in (
            priors.make_prior("half_normal", 0.5, applies_to="group_sd"),
            priors.make_prior("half_student_t", 3, 0.5, applies_to="group_sd"),
            priors.make_prior("exponential", 2, applies_to="group_sd"),
        ):
            summary = priors.prior_predictive_summary(prior, n_samples=2_000, transform=None, seed=0)
            self.assertGreaterEqual(summary["q025"], 0.0)

    def test_zero_samples_raises(self) -> None:
        with self.assertRaises(ValueError):
            priors.prior_predictive_summary(priors.make_prior("normal", 0, 1), n_samples=0)


class ArchetypeTests(unittest.TestCase):
    def test_optimistic_and_pessimistic_are_mirrored(self) -> None:
        optimistic = priors.prior_archetype("optimistic")
        pessimistic = priors.prior_archetype("pessimistic")
        self.assertAlmostEqual(optimistic.param_dict["mu"], np.log(0.9))
        self.assertAlmostEqual(pessimistic.param_dict["mu"], -np.log(0.9))
        self.assertEqual(optimistic.param_dict["sigma"], pessimistic.param_dict["sigma"])

    def test_scale_override(self) -> None:
        prior = priors.prior_archetype("neutral", scale=0.5)
        self.assertEqual(prior.params, (0.0, 0.5))

    def test_unknown_archetype_raises(self) -> None:
        with self.assertRaises(priors.InvalidPriorError):
            priors.prior_archetype("enthusiastic")

    def test_archetype_table_has_one_row_per_prior(self) -> None:
        table = priors.prior_archetype_table(n_samples=2_000, seed=0)
        self.assertEqual(
            table["prior"].tolist(), ["neutral", "skeptical", "optimistic", "pessimistic"]
        )
        by_name = table.set_index("prior")
        self.assertLess(by_name.loc["optimistic", "prob_above_one"], 0.5)
        self.assertGreater(by_name.loc["pessimistic", "prob_above_one"], 0.5)

    def test_default_priors_attach_exposure(self) -> None:
        mapping = priors.default_priors(exposure="lower_target")
        self.assertEqual(set(mapping), {"Intercept", "group_sd", "default", "lower_target"})
        self.assertEqual(mapping["lower_target"].params, (0.0, 1.0))
        self.assertEqual(mapping["group_sd"].applies_to, "group_sd")

        skeptical = priors.prior_archetype("skeptical")
        mapping = priors.default_priors(skeptical, exposure="lower_target")
        self.assertIs(mapping["lower_target"], skeptical)


if __name__ == "__main__":
    unittest.main()
