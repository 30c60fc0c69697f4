import itertools
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from luckyshare.draw.period_code import (
    PERIOD_CODE_PREFIX,
    PeriodCodeGenerator,
    check_character,
    to_base36,
    validate_period_code,
)
from luckyshare.errors import PeriodCodeExhaustedError
from luckyshare.models import Base, LotteryRound

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class Base36Tests(unittest.TestCase):
    def test_to_base36(self):
        self.assertEqual(to_base36(0), "0")
        self.assertEqual(to_base36(35), "Z")
        self.assertEqual(to_base36(36), "10")
        self.assertEqual(to_base36(36 * 36 - 1), "ZZ")
        with self.assertRaises(ValueError):
            to_base36(-1)

    def test_check_character_rejects_foreign_characters(self):
        with self.assertRaises(ValueError):
            check_character("LM-123")


class PeriodCodeFormatTests(unittest.TestCase):
    def test_generated_code_layout(self):
        generator = PeriodCodeGenerator(clock=lambda: NOW, random_source=lambda: "abc123")
        code = generator.generate()

        millis = int(NOW.timestamp() * 1000)
        self.assertTrue(code.startswith(PERIOD_CODE_PREFIX + to_base36(millis) + "ABC123"))
        self.assertEqual(len(code), len(PERIOD_CODE_PREFIX) + len(to_base36(millis)) + 6 + 1)
        self.assertTrue(validate_period_code(code))

    def test_validate_rejects_tampered_codes(self):
        code = PeriodCodeGenerator(clock=lambda: NOW).generate()
        wrong_check = "0" if code[-1] != "0" else "1"

        self.assertFalse(validate_period_code(code[:-1] + wrong_check))
        self.assertFalse(validate_period_code("XX" + code[2:]))
        self.assertFalse(validate_period_code("LM12"))
        self.assertFalse(validate_period_code(code.lower()))
        self.assertFalse(validate_period_code(None))

    def test_no_duplicates_in_100k_codes(self):
        generator = PeriodCodeGenerator()
        codes = {generator.generate() for _ in range(100_000)}
        self.assertEqual(len(codes), 100_000)

    def test_max_attempts_must_be_positive(self):
        with self.assertRaises(ValueError):
            PeriodCodeGenerator(max_attempts=0)


class PeriodCodeUniquenessTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, future=True, expire_on_commit=False)

    def tearDown(self):
        self.engine.dispose()

    def _store_round(self, session, period_code):
        lottery_round = LotteryRound(
            period_code=period_code,
            title="Headphones",
            price_per_share=Decimal("2.00"),
            total_shares=5,
            start_time=NOW,
            end_time=NOW + timedelta(days=1),
        )
        session.add(lottery_round)
        session.flush()
        return lottery_round

    def test_forced_collision_retries_with_new_code(self):
        randoms = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
        generator = PeriodCodeGenerator(clock=lambda: NOW, random_source=lambda: next(randoms))
        taken = PeriodCodeGenerator(clock=lambda: NOW, random_source=lambda: "AAAAAA").generate()

        with self.Session.begin() as session:
            self._store_round(session, taken)
            with self.assertLogs("luckyshare.draw.period_code", level="WARNING") as logs:
                code = generator.generate_unique(session)

        self.assertNotEqual(code, taken)
        self.assertIn("BBBBBB", code)
        self.assertTrue(validate_period_code(code))
        self.assertEqual(len(logs.records), 2)

    def test_pending_round_in_session_counts_as_taken(self):
        randoms = iter(["CCCCCC", "DDDDDD"])
        generator = PeriodCodeGenerator(clock=lambda: NOW, random_source=lambda: next(randoms))
        taken = PeriodCodeGenerator(clock=lambda: NOW, random_source=lambda: "CCCCCC").generate()

        with self.Session() as session:
            session.add(
                LotteryRound(
                    period_code=taken,
                    title="Pending",
                    price_per_share=Decimal("1.00"),
                    total_shares=1,
                    start_time=NOW,
                    end_time=NOW + timedelta(hours=1),
                )
            )
            with session.no_autoflush:
                code = generator.generate_unique(session)

        self.assertIn("DDDDDD", code)

    def test_excluded_codes_are_never_reused(self):
        randoms = itertools.cycle(["EEEEEE", "FFFFFF"])
        generator = PeriodCodeGenerator(clock=lambda: NOW, random_source=lambda: next(randoms))
        rejected = PeriodCodeGenerator(clock=lambda: NOW, random_source=lambda: "EEEEEE").generate()

        with self.Session() as session:
            code = generator.generate_unique(session, exclude=(rejected,))

        self.assertIn("FFFFFF", code)

    def test_exhaustion_raises(self):
        generator = PeriodCodeGenerator(
            clock=lambda: NOW, random_source=lambda: "ZZZZZZ", max_attempts=3
        )
        with self.Session.begin() as session:
            self._store_round(session, generator.generate())
            with self.assertRaises(PeriodCodeExhaustedError) as ctx:
                generator.generate_unique(session)

        self.assertEqual(ctx.exception.kind, "integrity")
        self.assertEqual(ctx.exception.details["attempts"], 3)


if __name__ == "__main__":
    unittest.main()
