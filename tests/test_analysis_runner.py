import argparse
import importlib.util
import sys
import unittest
from pathlib import Path


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
priors = _load("priors")
analysis_runner = _load("analysis_runner")


class SpecBuilderTests(unittest.TestCase):
    def test_adjustment_terms_use_standardized_continuous(self) -> None:
        terms = analysis_runner.adjustment_terms()
        self.assertIn("age_z", terms)
        self.assertIn("baseline_sofa_z", terms)
        self.assertIn("sepsis", terms)
        self.assertNotIn("age", terms)

    def test_unadjusted_spec(self) -> None:
        spec = analysis_runner.effect_spec()
        self.assertEqual(spec.fixed_terms, ("lower_target",))
        self.assertEqual([g.factor for g in spec.grouping], ["trial_id"])
        self.assertEqual(spec.family, "binomial")
        self.assertEqual(spec.link, "log")
        self.assertEqual(spec.prior_for("lower_target", "lower_target").params, (0.0, 1.0))

    def test_exposure_prior_is_attached(self) -> None:
        skeptical = priors.prior_archetype("skeptical")
        spec = analysis_runner.effect_spec(adjusted=True, exposure_prior=skeptical)
        self.assertIs(spec.prior_for("lower_target", "lower_target"), skeptical)
        self.assertEqual(spec.fixed_terms[0], "lower_target")
        self.assertGreater(len(spec.fixed_terms), 1)

    def test_no_grouping(self) -> None:
        spec = analysis_runner.effect_spec(grouping=())
        self.assertEqual(spec.grouping, ())

    def test_modifier_spec_term_order(self) -> None:
        spec = analysis_runner.modifier_spec("sepsis")
        self.assertEqual(spec.fixed_terms[:2], ("lower_target", "sepsis"))
        self.assertEqual(spec.fixed_terms[-1], "lower_target:sepsis")
        self.assertEqual(spec.fixed_terms.count("sepsis"), 1)

    def test_modifier_spec_with_custom_covariates(self) -> None:
        spec = analysis_runner.modifier_spec("age_75_plus", covariates=["age", "sepsis"])
        self.assertEqual(
            spec.fixed_terms,
            ("lower_target", "age_75_plus", "age_z", "sepsis", "lower_target:age_75_plus"),
        )


class RunSafelyTests(unittest.TestCase):
    def test_failure_becomes_error_row(self) -> None:
        def boom():
            raise ValueError("no trials")

        row = analysis_runner.run_safely("Adjusted", boom)
        self.assertEqual(row["label"], "Adjusted")
        self.assertEqual(row["error"], "ValueError: no trials")
        self.assertFalse(row["converged"])

    def test_cancelled_propagates(self) -> None:
        def cancelled():
            raise hierarchical_fit.Cancelled("stop")

        with self.assertRaises(hierarchical_fit.Cancelled):
            analysis_runner.run_safely("Adjusted", cancelled)

    def test_success_passes_through(self) -> None:
        self.assertEqual(analysis_runner.run_safely("x", lambda a, b=0: a + b, 1, b=2), 3)


class SamplingArgumentsTests(unittest.TestCase):
    def test_defaults_round_trip(self) -> None:
        parser = argparse.ArgumentParser()
        analysis_runner.add_sampling_arguments(parser)
        config = analysis_runner.sampling_config_from_args(parser.parse_args([]))
        self.assertEqual(config, hierarchical_fit.SamplingConfig())

    def test_overrides(self) -> None:
        parser = argparse.ArgumentParser()
        analysis_runner.add_sampling_arguments(parser)
        args = parser.parse_args(["--chains", "2", "--warmup", "200", "--iterations", "400",
                                  "--seed", "5", "--timeout", "60", "--baseline-risk", "0.3"])
        config = analysis_runner.sampling_config_from_args(args)
        self.assertEqual(config.chains, 2)
        self.assertEqual(config.draws, 200)
        self.assertEqual(config.random_seed, 5)
        self.assertEqual(config.timeout_seconds, 60.0)
        self.assertEqual(args.baseline_risk, 0.3)


if __name__ == "__main__":
    unittest.main()
