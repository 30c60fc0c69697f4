import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.orm import sessionmaker

from luckyshare.db.utils import as_utc, epoch_millis
from luckyshare.draw.ledger import TicketLedger
from luckyshare.draw.lifecycle import RoundLifecycleController
from luckyshare.draw.period_code import PeriodCodeGenerator, validate_period_code
from luckyshare.draw.registry import DrawAlgorithmRegistry
from luckyshare.errors import (
    AlgorithmConfigurationError,
    DrawIntegrityError,
    DrawRefusedError,
    InvalidRoundConfigurationError,
    RoundAlreadyDrawnError,
    RoundNotActiveError,
    RoundOnHoldError,
)
from luckyshare.models import (
    Base,
    DrawAlgorithmConfig,
    DrawResult,
    HandoffStatus,
    LotteryRound,
    Player,
    PrizeHandoff,
    RefundStatus,
    RoundEvent,
    RoundStatus,
    Ticket,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
DELAY = timedelta(seconds=180)


def controller_at(session, now=NOW):
    clock = lambda: now  # noqa: E731
    return RoundLifecycleController(
        session,
        clock=clock,
        draw_delay_seconds=180,
        period_codes=PeriodCodeGenerator(clock=clock),
    )


def ledger_at(session, now=NOW):
    return TicketLedger(
        session,
        lifecycle=controller_at(session, now),
        clock=lambda: now,
        max_attempts=5,
        max_quantity=1000,
    )


class LifecycleTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, future=True, expire_on_commit=False)
        with self.Session.begin() as session:
            DrawAlgorithmRegistry(session).ensure_builtin_algorithms()
            player = Player(external_id="buyer-1", nickname="Alice")
            session.add(player)
            session.flush()
            self.player_id = player.id

    def tearDown(self):
        self.engine.dispose()

    def _create(self, total_shares=10, activate_now=True, **kwargs):
        params = dict(
            title="Game console",
            price_per_share="5.00",
            total_shares=total_shares,
            start_time=NOW - timedelta(hours=1),
            end_time=NOW + timedelta(days=1),
            activate_now=activate_now,
        )
        params.update(kwargs)
        with self.Session.begin() as session:
            return controller_at(session).create_round(**params).id

    def _buy(self, round_id, quantity, now=NOW):
        with self.Session.begin() as session:
            return ledger_at(session, now).purchase(round_id, self.player_id, quantity)

    def _round(self, round_id):
        with self.Session() as session:
            return session.get(LotteryRound, round_id)

    def _actions(self, round_id):
        with self.Session() as session:
            return list(
                session.scalars(
                    select(RoundEvent.action)
                    .where(RoundEvent.round_id == round_id)
                    .order_by(RoundEvent.id)
                )
            )

    def _result_count(self, round_id):
        with self.Session() as session:
            return session.scalar(
                select(func.count(DrawResult.id)).where(DrawResult.round_id == round_id)
            )


class RoundCreationTests(LifecycleTestCase):
    def test_create_pending_round(self):
        round_id = self._create(activate_now=False, purchase_limit=4, currency="usd")

        lottery_round = self._round(round_id)
        self.assertEqual(lottery_round.status, RoundStatus.PENDING)
        self.assertTrue(validate_period_code(lottery_round.period_code))
        self.assertEqual(lottery_round.price_per_share, Decimal("5.00"))
        self.assertEqual(lottery_round.currency, "USD")
        self.assertEqual(lottery_round.purchase_limit.maximum, 4)
        self.assertEqual(as_utc(lottery_round.draw_time), NOW + timedelta(days=1) + DELAY)
        self.assertEqual(self._actions(round_id), ["created"])

    def test_activate_now_only_when_started(self):
        started = self._create(activate_now=True)
        future = self._create(
            activate_now=True,
            start_time=NOW + timedelta(hours=1),
            end_time=NOW + timedelta(days=1),
        )

        self.assertEqual(self._round(started).status, RoundStatus.ACTIVE)
        self.assertEqual(self._actions(started), ["created", "activated"])
        self.assertEqual(self._round(future).status, RoundStatus.PENDING)

    def test_full_purchase_option(self):
        round_id = self._create(full_purchase_enabled=True, full_purchase_price="45.5")
        lottery_round = self._round(round_id)
        self.assertTrue(lottery_round.full_purchase_enabled)
        self.assertEqual(lottery_round.full_purchase_price, Decimal("45.50"))
        self.assertEqual(lottery_round.total_shares, 10)

    def test_invalid_configurations(self):
        invalid = [
            {"title": "  "},
            {"price_per_share": "0"},
            {"price_per_share": "1.005"},
            {"price_per_share": "abc"},
            {"total_shares": 0},
            {"total_shares": 2.0},
            {"currency": "GBP"},
            {"purchase_limit": 0},
            {"end_time": NOW - timedelta(hours=2)},
            {"full_purchase_enabled": True},
            {"full_purchase_enabled": True, "full_purchase_price": "-1"},
            {"period_code": "LM123"},
        ]
        for overrides in invalid:
            with self.subTest(overrides=overrides):
                with self.assertRaises(InvalidRoundConfigurationError):
                    self._create(**overrides)


class ActivationTests(LifecycleTestCase):
    def test_activate_waits_for_start_time(self):
        round_id = self._create(
            activate_now=False,
            start_time=NOW + timedelta(minutes=10),
            end_time=NOW + timedelta(days=1),
        )

        with self.Session.begin() as session:
            self.assertFalse(controller_at(session).activate(round_id))
        with self.Session.begin() as session:
            later = NOW + timedelta(minutes=10)
            self.assertEqual(controller_at(session, later).activate_due(), [round_id])
        with self.Session.begin() as session:
            self.assertFalse(controller_at(session).activate(round_id))

        self.assertEqual(self._round(round_id).status, RoundStatus.ACTIVE)


class SellOutTimerTests(LifecycleTestCase):
    def test_notify_sold_out_is_idempotent(self):
        round_id = self._create(total_shares=3)
        self._buy(round_id, 3)

        with self.Session.begin() as session:
            later = NOW + timedelta(seconds=30)
            self.assertFalse(controller_at(session, later).notify_sold_out(round_id))

        lottery_round = self._round(round_id)
        self.assertEqual(as_utc(lottery_round.sold_out_at), NOW)
        self.assertEqual(as_utc(lottery_round.draw_time), NOW + DELAY)
        self.assertEqual(self._actions(round_id).count("sold_out"), 1)

    def test_notify_before_sell_out_is_ignored(self):
        round_id = self._create(total_shares=3)
        self._buy(round_id, 2)

        with self.Session.begin() as session:
            self.assertFalse(controller_at(session).notify_sold_out(round_id))
        self.assertIsNone(self._round(round_id).sold_out_at)

    def test_sold_out_draw_waits_for_countdown(self):
        round_id = self._create(total_shares=4)
        self._buy(round_id, 4)

        with self.Session.begin() as session:
            controller = controller_at(session, NOW + timedelta(seconds=60))
            self.assertEqual(controller.due_draws(), [])
            with self.assertRaises(DrawRefusedError):
                controller.draw(round_id)

        with self.Session.begin() as session:
            controller = controller_at(session, NOW + DELAY)
            self.assertEqual(controller.due_draws(), [round_id])
            result = controller.draw(round_id)

        self.assertEqual(result.draw_trigger, "sold_out")
        self.assertEqual(result.share_count, 4)
        # every ticket carries the same timestamp T, so S // N == T
        self.assertEqual(result.winning_number, epoch_millis(NOW) % 4 + 1)
        self.assertEqual(self._round(round_id).status, RoundStatus.DRAWN)
        self.assertEqual(as_utc(self._round(round_id).drawn_at), NOW + DELAY)


class DrawTests(LifecycleTestCase):
    def test_draw_persists_result_handoff_and_event(self):
        round_id = self._create(total_shares=10)
        tickets = self._buy(round_id, 10)

        with self.Session.begin() as session:
            result = controller_at(session, NOW + DELAY).draw(round_id)

        winner = next(t for t in tickets if t.ticket_number == result.winning_number)
        self.assertEqual(result.winning_ticket_id, winner.id)
        self.assertEqual(result.winner_player_id, self.player_id)
        self.assertEqual(result.algorithm_name, "timestamp_sum_mod")
        self.assertEqual(result.algorithm_version, 1)
        self.assertEqual(result.timestamp_sum, str(epoch_millis(NOW) * 10))
        self.assertEqual(len(result.input_data["tickets"]), 10)
        self.assertTrue(result.calculation_steps)

        with self.Session() as session:
            handoff = PrizeHandoff.get_for_round(session, round_id)
            self.assertEqual(handoff.status, HandoffStatus.PENDING)
            self.assertEqual(handoff.idempotency_key, f"round-{round_id}")
            self.assertEqual(handoff.winning_ticket_id, winner.id)
            self.assertEqual(session.get(LotteryRound, round_id).winning_ticket_id, winner.id)
        self.assertEqual(self._actions(round_id)[-1], "drawn")

    def test_force_draw_partial_round_then_timer_is_noop(self):
        round_id = self._create(total_shares=10)
        self._buy(round_id, 4)

        with self.Session.begin() as session:
            forced = controller_at(session).force_draw(round_id, admin_id=None)
        self.assertEqual(forced.share_count, 4)
        self.assertEqual(forced.draw_trigger, "forced")
        self.assertTrue(1 <= forced.winning_number <= 4)

        with self.Session.begin() as session:
            self.assertIsNone(controller_at(session, NOW + DELAY).draw(round_id))

        self.assertEqual(self._result_count(round_id), 1)
        self.assertEqual(self._actions(round_id)[-1], "draw_skipped")

    def test_force_draw_while_countdown_pending(self):
        round_id = self._create(total_shares=5)
        self._buy(round_id, 5)

        with self.Session.begin() as session:
            forced = controller_at(session, NOW + timedelta(seconds=10)).force_draw(round_id)
        with self.Session.begin() as session:
            controller = controller_at(session, NOW + DELAY)
            self.assertEqual(controller.due_draws(), [])
            self.assertIsNone(controller.draw(round_id))
        with self.Session.begin() as session:
            self.assertIsNone(controller_at(session).force_draw(round_id))

        self.assertEqual(self._result_count(round_id), 1)
        with self.Session() as session:
            stored = DrawResult.get_for_round(session, round_id)
            self.assertEqual(stored.winning_number, forced.winning_number)
            self.assertEqual(stored.draw_trigger, "forced")

    def test_draw_without_tickets_is_refused(self):
        round_id = self._create()

        with self.Session() as session:
            with self.assertRaises(DrawRefusedError):
                controller_at(session).force_draw(round_id)
        self.assertEqual(self._round(round_id).status, RoundStatus.ACTIVE)

    def test_pending_round_cannot_be_drawn(self):
        round_id = self._create(activate_now=False)
        with self.Session() as session:
            with self.assertRaises(RoundNotActiveError):
                controller_at(session).force_draw(round_id)

    def test_held_round_cannot_be_drawn(self):
        round_id = self._create(total_shares=2)
        self._buy(round_id, 2)
        with self.Session.begin() as session:
            controller_at(session).place_integrity_hold(round_id, "suspicious purchases")

        with self.Session() as session:
            controller = controller_at(session, NOW + DELAY)
            self.assertEqual(controller.due_draws(), [])
            with self.assertRaises(RoundOnHoldError):
                controller.draw(round_id)

        with self.Session.begin() as session:
            controller = controller_at(session, NOW + DELAY)
            self.assertTrue(controller.release_integrity_hold(round_id, note="checked"))
            self.assertFalse(controller.release_integrity_hold(round_id))
            self.assertIsNotNone(controller.draw(round_id))

    def test_missing_default_algorithm(self):
        round_id = self._create(total_shares=2)
        self._buy(round_id, 2)
        with self.Session.begin() as session:
            session.execute(update(DrawAlgorithmConfig).values(is_default=False))

        with self.Session() as session:
            with self.assertRaises(AlgorithmConfigurationError):
                controller_at(session, NOW + DELAY).draw(round_id)
        self.assertEqual(self._round(round_id).status, RoundStatus.ACTIVE)

    def test_sold_shares_without_tickets_is_an_integrity_error(self):
        round_id = self._create(total_shares=5)
        self._buy(round_id, 3)
        with self.Session.begin() as session:
            session.execute(
                update(LotteryRound).where(LotteryRound.id == round_id).values(sold_shares=4)
            )

        with self.Session() as session:
            with self.assertRaises(DrawIntegrityError):
                controller_at(session).force_draw(round_id)
        self.assertEqual(self._round(round_id).status, RoundStatus.ACTIVE)


class CancellationTests(LifecycleTestCase):
    def test_cancel_marks_tickets_refundable(self):
        round_id = self._create()
        self._buy(round_id, 3)

        with self.Session.begin() as session:
            self.assertTrue(controller_at(session).cancel(round_id, reason="supplier issue"))
        with self.Session.begin() as session:
            self.assertFalse(controller_at(session).cancel(round_id))

        lottery_round = self._round(round_id)
        self.assertEqual(lottery_round.status, RoundStatus.CANCELLED)
        self.assertEqual(lottery_round.cancel_reason, "supplier issue")
        with self.Session() as session:
            statuses = {t.refund_status for t in Ticket.for_round(session, round_id)}
        self.assertEqual(statuses, {RefundStatus.REFUNDABLE})
        self.assertEqual(self._actions(round_id).count("cancelled"), 1)

        with self.Session() as session:
            with self.assertRaises(RoundNotActiveError):
                ledger_at(session).purchase(round_id, self.player_id, 1)
            self.assertIsNone(controller_at(session).force_draw(round_id))

    def test_drawn_round_cannot_be_cancelled(self):
        round_id = self._create(total_shares=2)
        self._buy(round_id, 2)
        with self.Session.begin() as session:
            controller_at(session).force_draw(round_id)

        with self.Session() as session:
            with self.assertRaises(RoundAlreadyDrawnError):
                controller_at(session).cancel(round_id)


if __name__ == "__main__":
    unittest.main()
