"""Ticket ledger: allocate shares of a round without overselling.

Ticket numbers are reserved with an optimistic compare-and-swap on
``lottery_rounds.sold_shares``::

    UPDATE lottery_rounds SET sold_shares = :expected + :quantity
     WHERE id = :round_id AND status = 'ACTIVE'
       AND sold_shares = :expected AND integrity_hold = false

One matched row hands this purchase the numbers ``expected + 1`` to
``expected + quantity``; the unique ``(round_id, ticket_number)`` constraint
backs that up. Zero rows means another purchaser won the race, so the ledger
re-reads the round and tries again.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from luckyshare.config import load_settings
from luckyshare.db.utils import as_utc, epoch_millis
from luckyshare.errors import (
    CapacityExceededError,
    ConcurrentUpdateError,
    InvalidQuantityError,
    PerUserLimitExceededError,
    PlayerNotFoundError,
    RoundNotActiveError,
    RoundNotFoundError,
    RoundOnHoldError,
)
from luckyshare.models import LotteryRound, Player, RoundStatus, Ticket

from .lifecycle import RoundLifecycleController

logger = logging.getLogger(__name__)


class TicketLedger:
    """Issue tickets for a round under concurrent purchasers.

    Parameters
    ----------
    session : Session
        Session whose transaction the purchase joins. The caller commits.
    lifecycle : RoundLifecycleController, optional
        Receives the sell-out notification. Built from ``session`` by default.
    clock : Callable[[], datetime], optional
        Returns the current UTC time; the value becomes the tickets' timestamp.
    max_attempts : int, optional
        Compare-and-swap attempts before giving up with
        :class:`~luckyshare.errors.ConcurrentUpdateError`.
    max_quantity : int, optional
        Largest ``quantity`` accepted by a single purchase.
    """

    def __init__(
        self,
        session: Session,
        *,
        lifecycle: Optional[RoundLifecycleController] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: Optional[int] = None,
        max_quantity: Optional[int] = None,
    ) -> None:
        settings = load_settings()
        self._session = session
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.lifecycle = lifecycle or RoundLifecycleController(session, clock=self.clock)
        self.max_attempts = max_attempts or settings.purchase_max_attempts
        self.max_quantity = max_quantity or settings.max_tickets_per_purchase

    def purchase(self, round_id: int, player_id: int, quantity: int) -> list[Ticket]:
        """Buy ``quantity`` shares of ``round_id`` for ``player_id``.

        All-or-nothing: either every requested ticket is issued or none is.
        When the purchase sells the round out, the lifecycle controller is
        notified in the same transaction.

        Returns
        -------
        list[Ticket]
            The issued tickets, numbered consecutively.

        Raises
        ------
        InvalidQuantityError
            ``quantity`` is not a positive integer within the per-request bound.
        RoundNotFoundError, PlayerNotFoundError
            Unknown round or player.
        RoundNotActiveError
            Round is not ``ACTIVE`` or its end time has passed.
        RoundOnHoldError
            Round is under an integrity hold.
        PerUserLimitExceededError
            Purchase would exceed the round's per-player cap.
        CapacityExceededError
            Fewer than ``quantity`` shares remain.
        ConcurrentUpdateError
            Every compare-and-swap attempt lost to another purchaser.
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidQuantityError(
                "quantity must be a positive integer", round_id=round_id,
                details={"quantity": quantity},
            )
        if quantity > self.max_quantity:
            raise InvalidQuantityError(
                f"quantity must not exceed {self.max_quantity} per purchase",
                round_id=round_id,
                details={"quantity": quantity, "max_quantity": self.max_quantity},
            )
        if self._session.get(Player, player_id) is None:
            raise PlayerNotFoundError(
                f"Player {player_id} does not exist", round_id=round_id,
                details={"player_id": player_id},
            )

        for attempt in range(1, self.max_attempts + 1):
            now = as_utc(self.clock())
            lottery_round = LotteryRound.load_fresh(self._session, round_id)
            if lottery_round is None:
                raise RoundNotFoundError(f"Round {round_id} does not exist", round_id=round_id)
            self._check_open(lottery_round, now)

            owned = self.count_for_player(round_id, player_id)
            limit = lottery_round.purchase_limit
            if not limit.allows(owned, quantity):
                raise PerUserLimitExceededError(
                    f"Player may hold at most {limit.maximum} shares of this round",
                    round_id=round_id,
                    details={
                        "owned": owned,
                        "requested": quantity,
                        "remaining": limit.remaining(owned),
                    },
                )

            expected = lottery_round.sold_shares
            if expected + quantity > lottery_round.total_shares:
                raise CapacityExceededError(
                    f"Only {lottery_round.total_shares - expected} shares remain",
                    round_id=round_id,
                    details={
                        "requested": quantity,
                        "remaining": lottery_round.total_shares - expected,
                    },
                )

            reserved = self._session.execute(
                update(LotteryRound)
                .where(
                    LotteryRound.id == round_id,
                    LotteryRound.status == RoundStatus.ACTIVE,
                    LotteryRound.sold_shares == expected,
                    LotteryRound.integrity_hold.is_(False),
                )
                .values(sold_shares=expected + quantity, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if reserved.rowcount != 1:
                logger.debug(
                    f"Lost sold_shares race on round {round_id} "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                continue

            tickets = self._issue(round_id, player_id, expected, quantity, now)
            logger.info(
                f"Player {player_id} bought tickets {expected + 1}-{expected + quantity} "
                f"of round {round_id}"
            )
            if expected + quantity == lottery_round.total_shares:
                self.lifecycle.notify_sold_out(round_id, now=now)
            return tickets

        logger.warning(
            f"Purchase on round {round_id} gave up after {self.max_attempts} contended attempts"
        )
        raise ConcurrentUpdateError(
            "Too many concurrent purchases; please retry",
            round_id=round_id,
            details={"attempts": self.max_attempts},
        )

    def _check_open(self, lottery_round: LotteryRound, now: datetime) -> None:
        if lottery_round.status != RoundStatus.ACTIVE:
            raise RoundNotActiveError(
                f"Round is {lottery_round.status}", round_id=lottery_round.id
            )
        if lottery_round.integrity_hold:
            raise RoundOnHoldError("Round is under integrity hold", round_id=lottery_round.id)
        if now > as_utc(lottery_round.end_time):
            raise RoundNotActiveError("Round sales have ended", round_id=lottery_round.id)

    def _issue(
        self,
        round_id: int,
        player_id: int,
        first_taken: int,
        quantity: int,
        now: datetime,
    ) -> list[Ticket]:
        purchase_ref = uuid.uuid4().hex
        timestamp_ms = epoch_millis(now)
        tickets = [
            Ticket(
                round_id=round_id,
                ticket_number=first_taken + offset,
                player_id=player_id,
                purchased_at=now,
                purchase_ref=purchase_ref,
                timestamp_ms=timestamp_ms,
            )
            for offset in range(1, quantity + 1)
        ]
        self._session.add_all(tickets)
        self._session.flush()
        return tickets

    # -------- queries --------
    def count_for_player(self, round_id: int, player_id: int) -> int:
        return self._session.scalar(
            select(func.count(Ticket.id)).where(
                Ticket.round_id == round_id, Ticket.player_id == player_id
            )
        ) or 0

    def tickets_for_round(self, round_id: int) -> list[Ticket]:
        return Ticket.for_round(self._session, round_id)

    def tickets_for_player(
        self, player_id: int, round_id: Optional[int] = None
    ) -> list[Ticket]:
        stmt = select(Ticket).where(Ticket.player_id == player_id)
        if round_id is not None:
            stmt = stmt.where(Ticket.round_id == round_id)
        return list(self._session.scalars(stmt.order_by(Ticket.round_id, Ticket.ticket_number)))


__all__ = ["TicketLedger"]
