import json
import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import requests
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from luckyshare.db.utils import as_utc
from luckyshare.draw.ledger import TicketLedger
from luckyshare.draw.lifecycle import RoundLifecycleController
from luckyshare.draw.period_code import PeriodCodeGenerator
from luckyshare.draw.registry import DrawAlgorithmRegistry
from luckyshare.errors import FulfillmentError
from luckyshare.fulfillment.api import FulfillmentClient
from luckyshare.fulfillment.handoff import HandoffAck, HandoffDispatcher, retry_delay
from luckyshare.fulfillment.utils import open_session
from luckyshare.models import Base, HandoffStatus, Player, PrizeHandoff, RoundEvent

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class DummyResponse:
    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data
        self.content = json.dumps(json_data).encode() if json_data is not None else b""

    def json(self):
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class DummySession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, headers=None, params=None, json=None, timeout=None):
        self.calls.append(
            {
                "method": method,
                "url": url,
                "headers": headers,
                "params": params,
                "json": json,
                "timeout": timeout,
            }
        )
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FulfillmentClientTests(unittest.TestCase):
    @patch("luckyshare.fulfillment.api.open_session")
    @patch("luckyshare.fulfillment.api.load_dotenv")
    def test_requires_base_url(self, mock_load_dotenv, mock_open_session):
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ValueError):
                FulfillmentClient()
        mock_open_session.assert_not_called()

    @patch("luckyshare.fulfillment.api.load_dotenv")
    def test_base_url_from_environment_gets_scheme(self, mock_load_dotenv):
        with patch.dict(os.environ, {"FULFILLMENT_BASE_URL": "prizes.example.com/"}, clear=True):
            client = FulfillmentClient(session=DummySession())
        self.assertEqual(client.base_url, "https://prizes.example.com")

    def test_hand_off_posts_claim_with_idempotency_key(self):
        session = DummySession(DummyResponse(201, {"id": "claim-77"}))
        client = FulfillmentClient("https://prizes.example.com", timeout=5, session=session)

        ack = client.hand_off(12, 340, 56)

        self.assertEqual(ack, HandoffAck(reference="claim-77", duplicate=False))
        call = session.calls[0]
        self.assertEqual(call["method"], "POST")
        self.assertEqual(call["url"], "https://prizes.example.com/api/v1/prize-claims")
        self.assertEqual(call["headers"]["Idempotency-Key"], "round-12")
        self.assertEqual(
            call["json"],
            {"round_id": 12, "ticket_id": 340, "user_id": 56, "status": "PENDING_CLAIM"},
        )
        self.assertEqual(call["timeout"], 5)

    def test_repeated_hand_off_is_a_duplicate_not_a_second_claim(self):
        session = DummySession(
            DummyResponse(201, {"reference": "claim-1"}),
            DummyResponse(409, {"reference": "claim-1"}),
        )
        client = FulfillmentClient("https://prizes.example.com", session=session)

        first = client.hand_off(3, 30, 300)
        second = client.hand_off(3, 30, 300)

        self.assertFalse(first.duplicate)
        self.assertTrue(second.duplicate)
        self.assertEqual(second.reference, "claim-1")
        self.assertEqual(
            {call["headers"]["Idempotency-Key"] for call in session.calls}, {"round-3"}
        )

    def test_server_error_becomes_fulfillment_error(self):
        session = DummySession(DummyResponse(503, {"error": "maintenance"}))
        client = FulfillmentClient("https://prizes.example.com", session=session)

        with self.assertRaises(FulfillmentError) as ctx:
            client.hand_off(1, 2, 3)
        self.assertTrue(ctx.exception.retryable)

    def test_connection_error_becomes_fulfillment_error(self):
        session = DummySession(requests.ConnectionError("connection refused"))
        client = FulfillmentClient("https://prizes.example.com", session=session)

        with self.assertRaises(FulfillmentError):
            client.hand_off(1, 2, 3)

    def test_get_claim(self):
        session = DummySession(
            DummyResponse(200, {"id": "claim-9", "status": "PENDING_CLAIM"}),
            DummyResponse(404, {"error": "not found"}),
        )
        client = FulfillmentClient("https://prizes.example.com", session=session)

        self.assertEqual(client.get_claim(9)["id"], "claim-9")
        self.assertIsNone(client.get_claim(10))
        self.assertTrue(session.calls[0]["url"].endswith("/api/v1/prize-claims/round-9"))


class OpenSessionTests(unittest.TestCase):
    def test_requires_token(self):
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(RuntimeError):
                open_session()

    def test_sets_bearer_header(self):
        session = open_session("secret-token")
        self.assertEqual(session.headers["Authorization"], "Bearer secret-token")
        session.close()


class RecordingFulfillment:
    """Fulfillment double keeping at most one claim per round."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []
        self.claims = {}

    def hand_off(self, round_id, winning_ticket_id, winning_user_id):
        self.calls.append((round_id, winning_ticket_id, winning_user_id))
        if self.failures:
            self.failures -= 1
            raise FulfillmentError("fulfillment service unavailable", round_id=round_id)
        duplicate = round_id in self.claims
        self.claims.setdefault(round_id, (winning_ticket_id, winning_user_id))
        return HandoffAck(reference=f"claim-{round_id}", duplicate=duplicate)


class HandoffDispatcherTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, future=True, expire_on_commit=False)
        self.round_id = self._drawn_round()

    def tearDown(self):
        self.engine.dispose()

    def _drawn_round(self):
        clock = lambda: NOW  # noqa: E731
        with self.Session.begin() as session:
            DrawAlgorithmRegistry(session).ensure_builtin_algorithms()
            player = Player(external_id="winner")
            session.add(player)
            session.flush()
            controller = RoundLifecycleController(
                session,
                clock=clock,
                draw_delay_seconds=0,
                period_codes=PeriodCodeGenerator(clock=clock),
            )
            lottery_round = controller.create_round(
                title="Watch",
                price_per_share="10",
                total_shares=2,
                start_time=NOW - timedelta(hours=1),
                end_time=NOW + timedelta(hours=1),
                activate_now=True,
            )
            TicketLedger(session, lifecycle=controller, clock=clock).purchase(
                lottery_round.id, player.id, 2
            )
            controller.draw(lottery_round.id)
            return lottery_round.id

    def _handoff(self):
        with self.Session() as session:
            return PrizeHandoff.get_for_round(session, self.round_id)

    def test_dispatch_acknowledges_once(self):
        fulfillment = RecordingFulfillment()

        for _ in range(2):
            with self.Session.begin() as session:
                dispatcher = HandoffDispatcher(session, fulfillment, clock=lambda: NOW)
                self.assertTrue(dispatcher.dispatch(self.round_id))

        self.assertEqual(len(fulfillment.calls), 1)
        self.assertEqual(len(fulfillment.claims), 1)
        handoff = self._handoff()
        self.assertEqual(handoff.status, HandoffStatus.ACKNOWLEDGED)
        self.assertEqual(handoff.external_reference, f"claim-{self.round_id}")
        self.assertEqual(handoff.attempts, 1)
        with self.Session() as session:
            actions = session.scalars(
                select(RoundEvent.action).where(RoundEvent.round_id == self.round_id)
            ).all()
        self.assertEqual(actions.count("handoff_acknowledged"), 1)

    def test_failed_dispatch_is_scheduled_for_retry(self):
        fulfillment = RecordingFulfillment(failures=1)

        with self.Session.begin() as session:
            dispatcher = HandoffDispatcher(session, fulfillment, clock=lambda: NOW)
            self.assertFalse(dispatcher.dispatch(self.round_id))

        handoff = self._handoff()
        self.assertEqual(handoff.status, HandoffStatus.PENDING)
        self.assertEqual(handoff.attempts, 1)
        self.assertIn("unavailable", handoff.last_error)
        self.assertEqual(as_utc(handoff.next_attempt_at), NOW + timedelta(seconds=30))

        with self.Session() as session:
            dispatcher = HandoffDispatcher(session, fulfillment)
            self.assertEqual(dispatcher.pending_rounds(now=NOW + timedelta(seconds=10)), [])
            self.assertEqual(
                dispatcher.pending_rounds(now=NOW + timedelta(seconds=30)), [self.round_id]
            )

        with self.Session.begin() as session:
            later = NOW + timedelta(seconds=31)
            dispatcher = HandoffDispatcher(session, fulfillment, clock=lambda: later)
            self.assertTrue(dispatcher.dispatch(self.round_id))

        handoff = self._handoff()
        self.assertEqual(handoff.status, HandoffStatus.ACKNOWLEDGED)
        self.assertEqual(handoff.attempts, 2)
        self.assertIsNone(handoff.last_error)

    def test_retry_delay_backs_off_exponentially(self):
        self.assertEqual(retry_delay(1), timedelta(seconds=30))
        self.assertEqual(retry_delay(2), timedelta(seconds=60))
        self.assertEqual(retry_delay(4), timedelta(seconds=240))
        self.assertEqual(retry_delay(20), timedelta(hours=1))


if __name__ == "__main__":
    unittest.main()
