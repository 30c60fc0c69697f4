import hashlib
import unittest

from luckyshare.draw.algorithms import (
    DEFAULT_ALGORITHM_REGISTRY,
    SHA256_TIMESTAMP_MOD,
    TIMESTAMP_SUM_MOD,
    AlgorithmRegistry,
    DrawAlgorithm,
    DrawSnapshot,
    TicketEntry,
    timestamp_sum_mod,
)
from luckyshare.errors import (
    AlgorithmConfigurationError,
    AlgorithmNotFoundError,
    DrawIntegrityError,
    DrawRefusedError,
)


def make_snapshot(timestamps, numbers=None, config=None):
    numbers = numbers or list(range(1, len(timestamps) + 1))
    return DrawSnapshot(
        round_id=7,
        tickets=tuple(
            TicketEntry(
                ticket_id=100 + number,
                ticket_number=number,
                player_id=1 + number % 3,
                timestamp_ms=timestamp,
            )
            for number, timestamp in zip(numbers, timestamps)
        ),
        config=config or {},
    )


class TimestampSumModTests(unittest.TestCase):
    def test_sum_505_over_10_shares_draws_ticket_1(self):
        snapshot = make_snapshot([50] * 9 + [55])

        computation = TIMESTAMP_SUM_MOD.compute(snapshot)

        self.assertEqual(computation.timestamp_sum, 505)
        self.assertEqual(computation.share_count, 10)
        self.assertEqual(computation.winning_number, 1)
        self.assertEqual(snapshot.ticket_for(1).ticket_id, 101)
        self.assertIn("S // N = 50", computation.steps)

    def test_integer_division_happens_before_modulo(self):
        # 7 // 3 = 2, 2 % 3 = 2, + 1
        number, _steps = timestamp_sum_mod(7, 3, {})
        self.assertEqual(number, 3)

    def test_sums_beyond_64_bits(self):
        timestamps = [2**62, 2**62, 2**62]
        snapshot = make_snapshot(timestamps)

        computation = TIMESTAMP_SUM_MOD.compute(snapshot)

        total = sum(timestamps)
        self.assertEqual(computation.winning_number, (total // 3) % 3 + 1)
        self.assertEqual(computation.raw_inputs["timestamp_sum"], str(total))

    def test_raw_inputs_are_ordered_by_ticket_number(self):
        snapshot = make_snapshot([30, 10, 20], numbers=[3, 1, 2])

        computation = TIMESTAMP_SUM_MOD.compute(snapshot)

        self.assertEqual(computation.raw_inputs["tickets"], [[1, 10], [2, 20], [3, 30]])
        self.assertEqual(computation.raw_inputs["algorithm"], "timestamp_sum_mod")
        self.assertEqual(computation.raw_inputs["share_count"], 3)

    def test_same_snapshot_same_result(self):
        snapshot = make_snapshot([1740830400123, 1740830400456, 1740830401789, 1740830402000])
        results = {TIMESTAMP_SUM_MOD.compute(snapshot).winning_number for _ in range(20)}
        self.assertEqual(len(results), 1)


class DrawPreconditionTests(unittest.TestCase):
    def test_empty_round_is_refused(self):
        with self.assertRaises(DrawRefusedError):
            TIMESTAMP_SUM_MOD.compute(make_snapshot([]))

    def test_gap_in_ticket_numbers(self):
        with self.assertRaises(DrawIntegrityError) as ctx:
            TIMESTAMP_SUM_MOD.compute(make_snapshot([1, 2, 3], numbers=[1, 2, 4]))
        self.assertEqual(ctx.exception.details["missing"], [3])

    def test_duplicate_ticket_numbers(self):
        with self.assertRaises(DrawIntegrityError) as ctx:
            TIMESTAMP_SUM_MOD.compute(make_snapshot([1, 2, 3], numbers=[1, 2, 2]))
        self.assertEqual(ctx.exception.details["duplicated"], [2])
        self.assertEqual(ctx.exception.round_id, 7)

    def test_out_of_range_result_is_an_integrity_error(self):
        broken = DrawAlgorithm(
            key="broken",
            number_function=lambda s, n, config: (n + 1, []),
            display_name="Broken",
            formula="n + 1",
        )
        with self.assertRaises(DrawIntegrityError):
            broken.compute(make_snapshot([1, 2]))


class Sha256TimestampModTests(unittest.TestCase):
    def test_requires_seed(self):
        with self.assertRaises(AlgorithmConfigurationError):
            SHA256_TIMESTAMP_MOD.compute(make_snapshot([1, 2, 3]))

    def test_seeded_result(self):
        snapshot = make_snapshot([50] * 9 + [55], config={"seed": "spring-2025"})

        computation = SHA256_TIMESTAMP_MOD.compute(snapshot)

        digest = hashlib.sha256(b"spring-2025:505:10").hexdigest()
        self.assertEqual(computation.winning_number, int(digest, 16) % 10 + 1)
        self.assertEqual(computation.raw_inputs["config"], {"seed": "spring-2025"})


class AlgorithmRegistryTests(unittest.TestCase):
    def test_default_registry_contents(self):
        self.assertIn("timestamp_sum_mod", DEFAULT_ALGORITHM_REGISTRY)
        self.assertIn("sha256_timestamp_mod", DEFAULT_ALGORITHM_REGISTRY)
        self.assertEqual(
            sorted(DEFAULT_ALGORITHM_REGISTRY.available_algorithms()),
            ["sha256_timestamp_mod", "timestamp_sum_mod"],
        )

    def test_unknown_key(self):
        registry = AlgorithmRegistry()
        with self.assertRaises(AlgorithmNotFoundError) as ctx:
            registry.get("missing")
        self.assertIsInstance(ctx.exception, KeyError)
        self.assertEqual(str(ctx.exception), "Unknown draw algorithm 'missing'")

    def test_duplicate_registration(self):
        registry = AlgorithmRegistry()
        registry.register(TIMESTAMP_SUM_MOD)
        with self.assertRaises(ValueError):
            registry.register(TIMESTAMP_SUM_MOD)
        registry.register(TIMESTAMP_SUM_MOD, replace=True)

    def test_compute_by_key(self):
        registry = AlgorithmRegistry()
        registry.register(TIMESTAMP_SUM_MOD)
        computation = registry.compute("timestamp_sum_mod", make_snapshot([50] * 9 + [55]))
        self.assertEqual(computation.algorithm_key, "timestamp_sum_mod")
        self.assertEqual(computation.winning_number, 1)


if __name__ == "__main__":
    unittest.main()
