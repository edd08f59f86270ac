import unittest

from src.banderole import (
    InvalidExperimentConfig,
    _compile_experiment,
    assign_variant,
    validate_experiment,
)


def _experiment(variants, id="exp-1", **kwargs):
    e = {
        "id": id,
        "featureFlagId": "f1",
        "name": "experiment",
        "status": "ACTIVE",
        "createdAt": "2024-01-01T00:00:00+00:00",
        "variants": [{"name": n, "value": n.lower(), "percentage": p} for n, p in variants],
    }
    e.update(kwargs)
    return e


class TestExperimentValidation(unittest.TestCase):
    def test_weights_must_sum_to_100(self):
        cases = [
            ([("A", 50), ("B", 49)], False),
            ([("A", 50), ("B", 51)], False),
            ([("A", 99)], False),
            ([("A", 60), ("B", 41)], False),
            ([("A", 50), ("B", 50)], True),
            ([("A", 30), ("B", 40), ("C", 30)], True),
            ([("A", 100)], True),
            ([("A", 33.33), ("B", 33.33), ("C", 33.34)], True),
            ([("A", 33.33), ("B", 33.33), ("C", 33.33)], True),
            ([("A", 0), ("B", 100)], True),
        ]
        for variants, valid in cases:
            with self.subTest(variants):
                if valid:
                    validate_experiment(_experiment(variants))
                else:
                    with self.assertRaisesRegex(InvalidExperimentConfig, "must sum to 100"):
                        validate_experiment(_experiment(variants))

    def test_invalid_records(self):
        cases = [
            _experiment([("A", 50), ("A", 50)]),
            _experiment([]),
            _experiment([("A", -10), ("B", 110)]),
            _experiment([("A", 100)], status="RUNNING_LATE"),
            _experiment([("A", 100)], startDate="2024-02-01T00:00:00+00:00", endDate="2024-01-01T00:00:00+00:00"),
            _experiment([("A", 100)], startDate="2024-02-01T00:00:00"),
            {"id": "exp-1", "featureFlagId": "f1", "status": "ACTIVE"},
        ]
        for e in cases:
            with self.subTest(e):
                with self.assertRaises(InvalidExperimentConfig):
                    validate_experiment(e)


class TestAssignment(unittest.TestCase):
    def test_cumulative_ranges(self):
        # Bucket points of exp-1:user-N, in percent: user-1 47.96,
        # user-2 75.16, user-4 55.28, user-8 42.96.
        cases = [
            ([("A", 50), ("B", 50)], {"user-8": "A", "user-1": "A", "user-4": "B", "user-2": "B"}),
            ([("A", 30), ("B", 40), ("C", 30)], {"user-8": "B", "user-1": "B", "user-4": "B", "user-2": "C"}),
            ([("A", 47.96), ("B", 52.04)], {"user-1": "B", "user-8": "A"}),
            ([("A", 47.97), ("B", 52.03)], {"user-1": "A"}),
            ([("A", 0), ("B", 100)], {"user-1": "B", "user-8": "B"}),
        ]
        for variants, expected in cases:
            e = _compile_experiment(_experiment(variants))
            for user_id, name in expected.items():
                with self.subTest(variants=variants, user_id=user_id):
                    self.assertEqual(assign_variant(e, user_id).name, name)

    def test_sticky(self):
        e = _compile_experiment(_experiment([("A", 50), ("B", 50)]))
        first = assign_variant(e, "user-8")
        self.assertEqual(first.name, "A")
        self.assertEqual(first.value, "a")
        for _ in range(1000):
            self.assertEqual(assign_variant(e, "user-8").name, "A")
        # A recompiled experiment with the same id and weights agrees.
        again = _compile_experiment(_experiment([("A", 50), ("B", 50)], name="renamed"))
        for i in range(1000):
            self.assertEqual(assign_variant(e, f"u{i}").name, assign_variant(again, f"u{i}").name)

    def test_distribution(self):
        e = _compile_experiment(_experiment([("A", 30), ("B", 40), ("C", 30)]))
        n = 100_000
        counts = {"A": 0, "B": 0, "C": 0}
        for i in range(n):
            counts[assign_variant(e, f"user-{i}").name] += 1
        self.assertAlmostEqual(counts["A"] / n, 0.3, delta=0.01)
        self.assertAlmostEqual(counts["B"] / n, 0.4, delta=0.01)
        self.assertAlmostEqual(counts["C"] / n, 0.3, delta=0.01)

    def test_experiments_are_independent(self):
        e1 = _compile_experiment(_experiment([("A", 50), ("B", 50)], id="exp-1"))
        e2 = _compile_experiment(_experiment([("A", 50), ("B", 50)], id="exp-2"))
        n = 20_000
        same = sum(assign_variant(e1, f"user-{i}").name == assign_variant(e2, f"user-{i}").name for i in range(n))
        self.assertAlmostEqual(same / n, 0.5, delta=0.02)

    def test_percentages_a_hair_under_100(self):
        e = _compile_experiment(_experiment([("A", 33.33), ("B", 33.33), ("C", 33.33)]))
        names = set(assign_variant(e, f"user-{i}").name for i in range(20_000))
        self.assertEqual(names, {"A", "B", "C"})

    def test_running_window(self):
        e = _compile_experiment(
            _experiment(
                [("A", 100)],
                startDate="2024-02-01T00:00:00+00:00",
                endDate="2024-03-01T00:00:00+00:00",
            )
        )
        feb_1 = 1706745600
        mar_1 = 1709251200
        self.assertFalse(e.is_running(feb_1 - 1))
        self.assertTrue(e.is_running(feb_1))
        self.assertTrue(e.is_running(mar_1 - 1))
        self.assertFalse(e.is_running(mar_1))

    def test_status(self):
        cases = [
            ("ACTIVE", True, True),
            ("RUNNING", True, True),
            ("ACTIVE", False, False),
            ("DRAFT", True, False),
            ("PAUSED", True, False),
            ("COMPLETED", True, False),
            ("ARCHIVED", True, False),
            ("CANCELLED", True, False),
        ]
        for status, is_active, running in cases:
            with self.subTest(status=status, is_active=is_active):
                e = _compile_experiment(_experiment([("A", 100)], status=status, isActive=is_active))
                self.assertIs(e.is_running(0), running)
