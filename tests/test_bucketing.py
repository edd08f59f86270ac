import unittest

from src.banderole import BUCKET_SPACE, bucket


class TestBucket(unittest.TestCase):
    def test_stable_values(self):
        # These values must never change. Changing them reshuffles every
        # rollout and experiment assignment.
        cases = [
            ("new-checkout:user-1", 9015),
            ("exp-42:alice", 9938),
            ("dark-mode:u1", 1774),
            ("a", 7800),
            ("", 788),
        ]
        for seed, expected in cases:
            with self.subTest(seed):
                self.assertEqual(bucket(seed), expected)
                self.assertEqual(bucket(seed, 100), expected % 100)

    def test_range(self):
        for space in [1, 7, 100, BUCKET_SPACE]:
            for i in range(1000):
                b = bucket(f"flag:user-{i}", space)
                self.assertGreaterEqual(b, 0)
                self.assertLess(b, space)

    def test_invalid_space(self):
        with self.assertRaises(ValueError):
            bucket("x", 0)
        with self.assertRaises(ValueError):
            bucket("x", -5)

    def test_uniform_distribution(self):
        n = 100_000
        counts = [0] * 10
        for i in range(n):
            counts[bucket(f"dist:user-{i}") * 10 // BUCKET_SPACE] += 1
        for c in counts:
            self.assertAlmostEqual(c / n, 0.1, delta=0.005)

    def test_independent_per_seed_prefix(self):
        # The same users land in unrelated buckets for different flags.
        n = 20_000
        both = 0
        for i in range(n):
            in_a = bucket(f"flag-a:user-{i}") < BUCKET_SPACE // 2
            in_b = bucket(f"flag-b:user-{i}") < BUCKET_SPACE // 2
            both += in_a and in_b
        self.assertAlmostEqual(both / n, 0.25, delta=0.02)
