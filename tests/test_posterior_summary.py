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


posterior_summary = _load("posterior_summary")


class SummarizeTests(unittest.TestCase):
    def test_symmetric_draws_around_zero(self) -> None:
        draws = [-0.1, -0.05, 0.0, 0.05, 0.1]
        summary = posterior_summary.summarize(draws)

        self.assertAlmostEqual(summary.point_estimate, 1.0)
        self.assertAlmostEqual(summary.prob_direction_negative, 0.4)
        self.assertAlmostEqual(summary.prob_direction_positive, 0.4)
        self.assertAlmostEqual(summary.lower_ci, np.exp(-0.095))
        self.assertAlmostEqual(summary.upper_ci, np.exp(0.095))
        self.assertEqual(summary.n_draws, 5)

    def test_identity_transform_stays_on_log_scale(self) -> None:
        summary = posterior_summary.summarize([-0.2, -0.1, 0.3], transform=None)
        self.assertAlmostEqual(summary.point_estimate, -0.1)

    def test_interval_narrows_with_level(self) -> None:
        draws = np.random.default_rng(0).normal(-0.1, 0.1, size=4_000)
        wide = posterior_summary.summarize(draws, credible_level=0.95)
        narrow = posterior_summary.summarize(draws, credible_level=0.5)
        self.assertLess(wide.lower_ci, narrow.lower_ci)
        self.assertGreater(wide.upper_ci, narrow.upper_ci)
        self.assertLessEqual(narrow.lower_ci, narrow.point_estimate)
        self.assertLessEqual(narrow.point_estimate, narrow.upper_ci)

    def test_repeated_summary_is_identical(self) -> None:
        draws = np.random.default_rng(5).normal(size=1_000)
        self.assertEqual(posterior_summary.summarize(draws), posterior_summary.summarize(draws))

    def test_point_estimate_lies_within_draws(self) -> None:
        draws = np.random.default_rng(8).normal(0.2, 0.5, size=1_000)
        summary = posterior_summary.summarize(draws)
        self.assertGreaterEqual(np.log(summary.point_estimate), draws.min())
        self.assertLessEqual(np.log(summary.point_estimate), draws.max())

    def test_direction_probabilities_sum(self) -> None:
        draws = np.random.default_rng(9).normal(size=1_000)
        summary = posterior_summary.summarize(draws)
        self.assertAlmostEqual(summary.prob_direction_negative + summary.prob_direction_positive, 1.0)
        with_zeros = posterior_summary.summarize(np.r_[draws, np.zeros(10)])
        self.assertLess(with_zeros.prob_direction_negative + with_zeros.prob_direction_positive, 1.0)

    def test_single_draw(self) -> None:
        summary = posterior_summary.summarize([-0.3])
        self.assertAlmostEqual(summary.lower_ci, summary.upper_ci)
        self.assertEqual(summary.prob_direction_negative, 1.0)

    def test_invalid_inputs(self) -> None:
        with self.assertRaises(ValueError):
            posterior_summary.summarize([])
        with self.assertRaises(ValueError):
            posterior_summary.summarize([0.1, np.nan])
        with self.assertRaises(ValueError):
            posterior_summary.summarize([0.1, 0.2], credible_level=1.0)

    def test_as_dict_prefix(self) -> None:
        out = posterior_summary.summarize([0.0, 0.1]).as_dict("rr_")
        self.assertIn("rr_point_estimate", out)
        self.assertIn("rr_prob_direction_negative", out)


class AbsoluteRiskTests(unittest.TestCase):
    def test_null_effect_gives_zero_difference(self) -> None:
        summary = posterior_summary.absolute_risk_summary(np.zeros(10), baseline_risk=0.4)
        self.assertEqual(summary.point_estimate, 0.0)
        self.assertEqual(summary.lower_ci, 0.0)
        self.assertEqual(summary.upper_ci, 0.0)

    def test_difference_scales_with_baseline(self) -> None:
        draws = posterior_summary.absolute_risk_draws([np.log(0.9)], baseline_risk=0.4)
        self.assertAlmostEqual(float(draws[0]), -0.04)

    def test_baseline_must_be_a_probability(self) -> None:
        for bad in (0.0, 1.0, -0.1, 1.5):
            with self.assertRaises(ValueError):
                posterior_summary.absolute_risk_draws([0.0], baseline_risk=bad)


class SummaryRowTests(unittest.TestCase):
    def test_probability_below_threshold(self) -> None:
        draws = np.log([0.85, 0.92, 0.97, 1.05])
        self.assertEqual(posterior_summary.probability_below(draws, 1.0), 0.75)
        self.assertEqual(posterior_summary.probability_below(draws, 0.95), 0.5)
        self.assertEqual(posterior_summary.probability_below(draws, 0.90), 0.25)
        with self.assertRaises(ValueError):
            posterior_summary.probability_below(draws, 0.0)

    def test_summary_row_columns(self) -> None:
        draws = np.log([0.85, 0.92, 0.97, 1.05])
        row = posterior_summary.summary_row("Adjusted", draws, baseline_risk=0.4)
        for key in ("label", "rr", "rr_lower", "rr_upper", "prob_benefit", "prob_harm",
                    "prob_rr_below_0.95", "prob_rr_below_0.9", "ard", "ard_lower", "ard_upper"):
            self.assertIn(key, row)
        self.assertEqual(row["prob_benefit"], 0.75)
        self.assertNotIn("prob_rr_below_1", row)
        self.assertLess(row["ard"], 0)

    def test_summary_row_without_baseline(self) -> None:
        row = posterior_summary.summary_row("Unadjusted", [0.0, 0.1])
        self.assertNotIn("ard", row)


if __name__ == "__main__":
    unittest.main()
