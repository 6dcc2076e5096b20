import doctest
import importlib.util
import sys
import unittest
from pathlib import Path

import numpy as np
import pandas as pd


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


pob = _load("probability_of_benefit")


class ProbabilityOfBenefitTests(unittest.TestCase):
    def test_published_estimate(self) -> None:
        self.assertAlmostEqual(pob.probability_of_benefit(0.93, 1.02), 0.938, places=3)

    def test_point_estimate_at_one_gives_half(self) -> None:
        self.assertAlmostEqual(pob.probability_of_benefit(1.0, 1.2), 0.5)

    def test_stricter_threshold_lowers_probability(self) -> None:
        p1 = pob.probability_of_benefit(0.93, 1.02)
        p95 = pob.probability_of_benefit(0.93, 1.02, threshold_rr=0.95)
        self.assertLess(p95, p1)

    def test_wider_confidence_level_means_more_uncertainty(self) -> None:
        # same upper bound read as a 99% limit implies a smaller sigma
        p95 = pob.probability_of_benefit(0.93, 1.02, confidence_level=0.95)
        p99 = pob.probability_of_benefit(0.93, 1.02, confidence_level=0.99)
        self.assertGreater(p99, p95)

    def test_degenerate_interval_raises(self) -> None:
        with self.assertRaises(pob.InvalidBoundsError):
            pob.probability_of_benefit(1.0, 1.0)
        with self.assertRaises(pob.InvalidBoundsError):
            pob.probability_of_benefit(0.9, 0.8)

    def test_non_positive_ratios_raise(self) -> None:
        with self.assertRaises(pob.InvalidBoundsError):
            pob.probability_of_benefit(0.0, 1.1)
        with self.assertRaises(pob.InvalidBoundsError):
            pob.probability_of_benefit(0.9, 1.1, threshold_rr=-1.0)
        with self.assertRaises(pob.InvalidBoundsError):
            pob.probability_of_benefit(0.9, 1.1, confidence_level=1.5)

    def test_symmetric_interval_matches_upper_bound_version(self) -> None:
        lower, upper = np.exp(np.log(0.9) - 0.2), np.exp(np.log(0.9) + 0.2)
        self.assertAlmostEqual(
            pob.probability_of_benefit_from_interval(0.9, lower, upper),
            pob.probability_of_benefit(0.9, upper),
        )

    def test_interval_must_bracket_point(self) -> None:
        with self.assertRaises(pob.InvalidBoundsError):
            pob.probability_of_benefit_from_interval(0.9, 0.95, 1.1)

    def test_published_trial_table(self) -> None:
        df = pd.DataFrame({"trial": ["65 trial", "SEPSISPAM"],
                           "point_rr": [0.93, 1.05], "upper_rr": [1.02, 1.25]})
        out = pob.published_trial_table(df, thresholds=(1.0, 0.95))
        self.assertEqual(list(out.columns[-2:]), ["prob_benefit", "prob_rr_below_0.95"])
        self.assertGreater(out["prob_benefit"].iloc[0], 0.9)
        self.assertLess(out["prob_benefit"].iloc[1], 0.5)
        self.assertNotIn("prob_benefit", df.columns)

    def test_published_table_uses_lower_bound_when_reported(self) -> None:
        df = pd.DataFrame({"trial": ["65 trial", "OVATION"],
                           "point_rr": [0.93, 0.90], "lower_rr": [0.80, np.nan],
                           "upper_rr": [1.10, 1.15]})
        out = pob.published_trial_table(df)
        self.assertAlmostEqual(out["prob_benefit"].iloc[0],
                               pob.probability_of_benefit_from_interval(0.93, 0.80, 1.10))
        self.assertAlmostEqual(out["prob_benefit"].iloc[1], pob.probability_of_benefit(0.90, 1.15))
        self.assertNotAlmostEqual(out["prob_benefit"].iloc[0], pob.probability_of_benefit(0.93, 1.10))

    def test_docstring_examples(self) -> None:
        failures, _ = doctest.testmod(pob)
        self.assertEqual(failures, 0)


if __name__ == "__main__":
    unittest.main()
