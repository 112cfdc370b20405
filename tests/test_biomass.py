"""Unit tests for species profiles and biomass estimation."""

import shutil
import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fishmass.biomass.estimator import (
    PILE_LABEL,
    BiomassEstimator,
    EstimationMode,
    ObjectEstimate,
    allometric_weight,
    cone_volume,
)
from fishmass.biomass.species import (
    SPECIES_PROFILES,
    SpeciesProfile,
    SpeciesRepository,
    get_species_profile,
)
from fishmass.preprocessing.measurement import FinalMeasurement, Measurement


def make_estimate(species, weight, volume=100.0):
    measurement = Measurement(10.0, 3.0, volume, corners=[(0, 0), (1, 0), (1, 1), (0, 1)])
    return ObjectEstimate(measurement, species, weight, volume, EstimationMode.ACCURATE)


class TestSpeciesRepository(unittest.TestCase):
    def setUp(self):
        self.repository = SpeciesRepository()
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_case_insensitive_substring_lookup(self):
        self.assertEqual(self.repository.lookup("Rohu").name, "rohu")
        self.assertEqual(self.repository.lookup("Indian Mackerel").name, "mackerel")
        self.assertEqual(self.repository.lookup("SALMON fillet").a, 0.0100)

    def test_unknown_species_uses_default(self):
        for name in ("Fish", "", None, "default"):
            self.assertEqual(self.repository.lookup(name), SPECIES_PROFILES["default"])

    def test_longest_key_wins(self):
        crab = SpeciesProfile("crab", 0.1, 2.5, 0.3, 100.0, 100.0)
        mud_crab = SpeciesProfile("mud crab", 0.43, 2.57, 0.3, 600.0, 550.0)
        repository = SpeciesRepository({"crab": crab, "mud crab": mud_crab})
        self.assertIs(repository.lookup("Giant Mud Crab"), mud_crab)
        self.assertIs(repository.lookup("Blue Crab"), crab)

    def test_spotted_crab_variants(self):
        self.assertEqual(self.repository.lookup("Three Spotted Crab").b, 2.63)
        self.assertEqual(self.repository.lookup("3 spotted crab").b, 2.63)

    def test_repository_always_has_default(self):
        repository = SpeciesRepository({"tuna": SPECIES_PROFILES["tuna"]})
        self.assertEqual(repository.lookup("Fish"), SPECIES_PROFILES["default"])

    def test_module_lookup(self):
        self.assertEqual(get_species_profile("Catla").cross_section_ratio, 0.45)

    def test_from_yaml_merges_over_builtins(self):
        profiles_path = self.temp_dir / "species.yaml"
        profiles_path.write_text(
            "Rohu:\n"
            "  a: 0.02\n"
            "tilapia:\n"
            "  a: 0.016\n"
            "  b: 3.02\n"
            "  cross_section_ratio: 0.35\n"
        )
        repository = SpeciesRepository.from_yaml(profiles_path)

        rohu = repository.lookup("rohu")
        self.assertEqual(rohu.a, 0.02)
        self.assertEqual(rohu.b, SPECIES_PROFILES["rohu"].b)

        tilapia = repository.lookup("Nile Tilapia")
        self.assertEqual(tilapia.name, "tilapia")
        self.assertEqual(tilapia.cross_section_ratio, 0.35)
        self.assertEqual(tilapia.avg_weight, SPECIES_PROFILES["default"].avg_weight)

        self.assertEqual(repository.lookup("tuna"), SPECIES_PROFILES["tuna"])

    def test_from_yaml_rejects_bad_entries(self):
        bad_field = self.temp_dir / "bad_field.yaml"
        bad_field.write_text("rohu:\n  weight: 3\n")
        with self.assertRaises(ValueError):
            SpeciesRepository.from_yaml(bad_field)

        bad_ratio = self.temp_dir / "bad_ratio.yaml"
        bad_ratio.write_text("rohu:\n  cross_section_ratio: 1.5\n")
        with self.assertRaises(ValueError):
            SpeciesRepository.from_yaml(bad_ratio)

        not_mapping = self.temp_dir / "list.yaml"
        not_mapping.write_text("- rohu\n- tuna\n")
        with self.assertRaises(ValueError):
            SpeciesRepository.from_yaml(not_mapping)


class TestAllometricWeight(unittest.TestCase):
    def test_formula(self):
        self.assertAlmostEqual(allometric_weight(10.0, 0.012, 3.0), 12.0)
        self.assertEqual(allometric_weight(0.0, 0.012, 3.0), 0.0)

    def test_monotonic_in_length(self):
        rng = np.random.default_rng(42)
        for profile in SPECIES_PROFILES.values():
            lengths = np.sort(rng.uniform(0.1, 150.0, size=200))
            weights = [allometric_weight(length, profile.a, profile.b) for length in lengths]
            self.assertTrue(all(w2 > w1 for w1, w2 in zip(weights, weights[1:])), profile.name)


class TestBiomassEstimator(unittest.TestCase):
    def setUp(self):
        self.estimator = BiomassEstimator()

    def test_estimate_accurate(self):
        measurement = Measurement(30.0, 8.0, 500.0, corners=[(0, 0), (1, 0), (1, 1), (0, 1)])
        final = FinalMeasurement(measurement, "Rohu", 0.55, (0.1, 0.1, 0.4, 0.3))

        estimate = self.estimator.estimate_accurate(final)
        self.assertAlmostEqual(estimate.weight, 0.0130 * 30.0 ** 3.05)
        self.assertEqual(estimate.volume, 500.0)
        self.assertEqual(estimate.species, "Rohu")
        self.assertEqual(estimate.mode, EstimationMode.ACCURATE)
        self.assertEqual(estimate.box, (0.1, 0.1, 0.4, 0.3))

    def test_estimate_pile_is_cone(self):
        measurement = Measurement(20.0, 10.0, 0.0, corners=[(0, 0), (1, 0), (1, 1), (0, 1)])
        estimate = self.estimator.estimate_pile(measurement)

        expected = np.pi * 5.0 ** 2 * 20.0 / 3.0
        self.assertAlmostEqual(estimate.volume, expected)
        self.assertAlmostEqual(estimate.weight, expected)
        self.assertAlmostEqual(cone_volume(10.0, 20.0), expected)
        self.assertEqual(estimate.species, PILE_LABEL)
        self.assertEqual(estimate.mode, EstimationMode.PILE)

    def test_pile_density(self):
        estimator = BiomassEstimator(pile_density=0.8)
        measurement = Measurement(20.0, 10.0, 0.0, corners=[(0, 0), (1, 0), (1, 1), (0, 1)])
        estimate = estimator.estimate_pile(measurement)
        self.assertAlmostEqual(estimate.weight, estimate.volume * 0.8)
        with self.assertRaises(ValueError):
            BiomassEstimator(pile_density=0)

    def test_estimate_from_counts(self):
        aggregate = self.estimator.estimate_from_counts({"sardine": 10, "rohu": 3, "tuna": 0})

        self.assertEqual([s.species for s in aggregate.summaries], ["rohu", "sardine"])
        self.assertEqual(aggregate.summaries[0].total_weight, 4500.0)
        self.assertEqual(aggregate.summaries[0].total_volume, 4350.0)
        self.assertEqual(aggregate.summaries[1].total_weight, 1000.0)
        self.assertEqual(aggregate.total_weight, 5500.0)
        self.assertEqual(aggregate.total_count, 13)
        self.assertEqual(aggregate.objects, [])

        with self.assertRaises(ValueError):
            self.estimator.estimate_from_counts({"rohu": -1})

    def test_aggregate_totals_equal_sum_of_groups(self):
        rng = np.random.default_rng(7)
        species = ["rohu", "catla", "sardine", "Fish", "tuna"]
        for _ in range(20):
            n = int(rng.integers(1, 40))
            estimates = [
                make_estimate(species[int(rng.integers(0, len(species)))], float(rng.uniform(1, 5000)))
                for _ in range(n)
            ]
            aggregate = self.estimator.aggregate(estimates, calibrated=True)

            self.assertAlmostEqual(sum(s.total_weight for s in aggregate.summaries), aggregate.total_weight)
            self.assertAlmostEqual(aggregate.total_weight, sum(e.weight for e in estimates), places=6)
            self.assertEqual(aggregate.total_count, n)
            weights = [s.total_weight for s in aggregate.summaries]
            self.assertEqual(weights, sorted(weights, reverse=True))

    def test_species_distribution(self):
        estimates = [
            make_estimate("catla", 3000.0),
            make_estimate("rohu", 100.0),
            make_estimate("rohu", 100.0),
            make_estimate("sardine", 50.0),
        ]
        aggregate = self.estimator.aggregate(estimates, calibrated=True)
        distribution = aggregate.species_distribution()

        self.assertEqual([d["species"] for d in distribution], ["rohu", "catla", "sardine"])
        self.assertEqual([d["count"] for d in distribution], [2, 1, 1])
        self.assertAlmostEqual(distribution[0]["percent"], 50.0)
        self.assertAlmostEqual(sum(d["percent"] for d in distribution), 100.0)
        self.assertEqual(aggregate.summary_dict()["distribution"][1],
                         {"species": "catla", "count": 1, "percent": 25.0})

    def test_species_distribution_sums_to_100(self):
        rng = np.random.default_rng(11)
        species = ["rohu", "catla", "sardine", "tuna", "hilsa", "Fish"]
        for _ in range(20):
            counts = {name: int(rng.integers(0, 30)) for name in species}
            aggregate = self.estimator.estimate_from_counts(counts)
            distribution = aggregate.species_distribution()
            if aggregate.total_count == 0:
                self.assertEqual(distribution, [])
                continue
            self.assertAlmostEqual(sum(d["percent"] for d in distribution), 100.0)
            shown = [d["count"] for d in distribution]
            self.assertEqual(shown, sorted(shown, reverse=True))
        self.assertTrue(aggregate.from_counts)

    def test_aggregate_excludes_empty_measurements(self):
        empty = ObjectEstimate(Measurement.zero(), "rohu", 0.0, 0.0, EstimationMode.ACCURATE)
        aggregate = self.estimator.aggregate([make_estimate("rohu", 100.0), empty], calibrated=False)

        self.assertEqual(aggregate.skipped, 1)
        self.assertEqual(len(aggregate.objects), 1)
        self.assertEqual(aggregate.species_counts(), {"rohu": 1})
        self.assertFalse(aggregate.calibrated)

    def test_aggregate_equal_weights_keep_first_seen_order(self):
        estimates = [make_estimate("catla", 50.0), make_estimate("rohu", 50.0)]
        aggregate = self.estimator.aggregate(estimates, calibrated=True)
        self.assertEqual([s.species for s in aggregate.summaries], ["catla", "rohu"])

    def test_empty_aggregate(self):
        aggregate = self.estimator.aggregate([], calibrated=True)
        self.assertTrue(aggregate.is_empty)
        self.assertEqual(aggregate.total_weight, 0.0)
        self.assertEqual(aggregate.summary_dict()["species"], [])


if __name__ == '__main__':
    unittest.main()
