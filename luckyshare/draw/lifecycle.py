"""State machine of a lottery round: PENDING -> ACTIVE -> DRAWN, or CANCELLED.

Every transition is a conditional ``UPDATE`` guarded by the state it leaves,
so concurrent triggers for the same round resolve to exactly one winner and
the losers observe a zero row count. The controller never commits; callers
(see :mod:`luckyshare.workflows`) own transaction boundaries.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from luckyshare.config import load_settings
from luckyshare.db.utils import as_utc
from luckyshare.errors import (
    ConcurrentUpdateError,
    DrawIntegrityError,
    DrawRefusedError,
    InvalidRoundConfigurationError,
    RoundAlreadyDrawnError,
    RoundNotActiveError,
    RoundNotFoundError,
    RoundOnHoldError,
)
from luckyshare.models import (
    SUPPORTED_CURRENCIES,
    DrawResult,
    DrawTrigger,
    LotteryRound,
    PrizeHandoff,
    PurchaseLimit,
    RefundStatus,
    RoundEvent,
    RoundStatus,
    Ticket,
)

from .algorithms import DrawSnapshot, TicketEntry
from .period_code import PeriodCodeGenerator, validate_period_code
from .registry import DrawAlgorithmRegistry

logger = logging.getLogger(__name__)

MAX_PRICE = Decimal("9999999999.99")


def _to_money(value: Union[Decimal, int, str], field_name: str) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidRoundConfigurationError(f"{field_name} is not a valid amount") from exc
    if not amount.is_finite() or amount <= 0 or amount > MAX_PRICE:
        raise InvalidRoundConfigurationError(f"{field_name} must be positive")
    if amount.as_tuple().exponent < -2:
        raise InvalidRoundConfigurationError(f"{field_name} has more than two decimal places")
    return amount.quantize(Decimal("0.01"))


class RoundLifecycleController:
    """Drive rounds through their states.

    Parameters
    ----------
    session : Session
        Session whose transaction every transition joins.
    registry : DrawAlgorithmRegistry, optional
        Source of the active algorithm. Built from ``session`` by default.
    clock : Callable[[], datetime], optional
        Returns the current UTC time; tests inject a fixed clock.
    draw_delay_seconds : int, optional
        Countdown between sell-out and the automatic draw. Defaults to
        ``DRAW_DELAY_SECONDS``.
    period_codes : PeriodCodeGenerator, optional
        Generator for new rounds' period codes.
    """

    def __init__(
        self,
        session: Session,
        *,
        registry: Optional[DrawAlgorithmRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
        draw_delay_seconds: Optional[int] = None,
        period_codes: Optional[PeriodCodeGenerator] = None,
    ) -> None:
        settings = None
        if draw_delay_seconds is None or period_codes is None:
            settings = load_settings()
        self._session = session
        self.registry = registry or DrawAlgorithmRegistry(session)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.draw_delay = timedelta(
            seconds=draw_delay_seconds
            if draw_delay_seconds is not None
            else settings.draw_delay_seconds
        )
        self.period_codes = period_codes or PeriodCodeGenerator(
            clock=self.clock, max_attempts=settings.period_code_max_attempts
        )

    # -------- helpers --------
    def _now(self, now: Optional[datetime] = None) -> datetime:
        return as_utc(now) if now is not None else as_utc(self.clock())

    def get_round(self, round_id: int) -> LotteryRound:
        """Load ``round_id`` fresh from the database or raise RoundNotFoundError."""
        lottery_round = LotteryRound.load_fresh(self._session, round_id)
        if lottery_round is None:
            raise RoundNotFoundError(f"Round {round_id} does not exist", round_id=round_id)
        return lottery_round

    # -------- creation --------
    def create_round(
        self,
        *,
        title: str,
        price_per_share: Union[Decimal, int, str],
        total_shares: int,
        start_time: datetime,
        end_time: datetime,
        currency: str = "CNY",
        purchase_limit: Union[PurchaseLimit, int, None] = None,
        description: Optional[str] = None,
        full_purchase_enabled: bool = False,
        full_purchase_price: Union[Decimal, int, str, None] = None,
        created_by_admin_id: Optional[int] = None,
        activate_now: bool = False,
        period_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LotteryRound:
        """Validate a new round and add it to the session.

        The round starts ``PENDING``; with ``activate_now`` and a start time
        that has already passed it starts ``ACTIVE``. The nominal draw time is
        ``end_time`` plus the post-sellout delay.

        Raises
        ------
        InvalidRoundConfigurationError
            When economics or schedule are invalid.
        PeriodCodeExhaustedError
            When no unique period code could be generated.
        """
        now = self._now(now)
        if not title or not title.strip():
            raise InvalidRoundConfigurationError("title is required")
        price = _to_money(price_per_share, "price_per_share")
        if isinstance(total_shares, bool) or not isinstance(total_shares, int) or total_shares < 1:
            raise InvalidRoundConfigurationError("total_shares must be a positive integer")
        currency = (currency or "").upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise InvalidRoundConfigurationError(
                f"currency must be one of {', '.join(SUPPORTED_CURRENCIES)}"
            )
        if not isinstance(purchase_limit, PurchaseLimit):
            try:
                purchase_limit = PurchaseLimit(purchase_limit)
            except ValueError as exc:
                raise InvalidRoundConfigurationError(str(exc)) from exc
        if start_time is None or end_time is None:
            raise InvalidRoundConfigurationError("start_time and end_time are required")
        start_time, end_time = as_utc(start_time), as_utc(end_time)
        if end_time <= start_time:
            raise InvalidRoundConfigurationError("end_time must be after start_time")
        buyout_price = None
        if full_purchase_enabled:
            if full_purchase_price is None:
                raise InvalidRoundConfigurationError(
                    "full_purchase_price is required when full purchase is enabled"
                )
            buyout_price = _to_money(full_purchase_price, "full_purchase_price")

        if period_code is None:
            period_code = self.period_codes.generate_unique(self._session)
        elif not validate_period_code(period_code):
            raise InvalidRoundConfigurationError(f"Malformed period code {period_code!r}")
        status = RoundStatus.PENDING
        if activate_now and start_time <= now:
            status = RoundStatus.ACTIVE

        lottery_round = LotteryRound(
            period_code=period_code,
            title=title.strip(),
            description=description,
            price_per_share=price,
            currency=currency,
            total_shares=total_shares,
            purchase_limit=purchase_limit,
            full_purchase_enabled=full_purchase_enabled,
            full_purchase_price=buyout_price,
            status=status,
            start_time=start_time,
            end_time=end_time,
            draw_time=end_time + self.draw_delay,
            created_by_admin_id=created_by_admin_id,
        )
        self._session.add(lottery_round)
        self._session.flush()
        RoundEvent.record(
            self._session,
            lottery_round.id,
            "created",
            admin_id=created_by_admin_id,
            details={"period_code": period_code, "total_shares": total_shares},
            occurred_at=now,
        )
        if status == RoundStatus.ACTIVE:
            RoundEvent.record(self._session, lottery_round.id, "activated", occurred_at=now)
        logger.info(
            f"Created round {lottery_round.id} ({period_code}) with {total_shares} shares, "
            f"status {status}"
        )
        return lottery_round

    # -------- PENDING -> ACTIVE --------
    def activate(self, round_id: int, *, now: Optional[datetime] = None) -> bool:
        """Open ``round_id`` for sale once its start time has passed.

        Returns False when the round is not pending, not yet due, or held.
        """
        now = self._now(now)
        result = self._session.execute(
            update(LotteryRound)
            .where(
                LotteryRound.id == round_id,
                LotteryRound.status == RoundStatus.PENDING,
                LotteryRound.start_time <= now,
                LotteryRound.integrity_hold.is_(False),
            )
            .values(status=RoundStatus.ACTIVE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        RoundEvent.record(self._session, round_id, "activated", occurred_at=now)
        logger.info(f"Round {round_id} is now ACTIVE")
        return True

    def activate_due(self, *, now: Optional[datetime] = None) -> list[int]:
        """Activate every pending round whose start time has passed."""
        now = self._now(now)
        due = self._session.scalars(
            select(LotteryRound.id)
            .where(
                LotteryRound.status == RoundStatus.PENDING,
                LotteryRound.start_time <= now,
                LotteryRound.integrity_hold.is_(False),
            )
            .order_by(LotteryRound.start_time, LotteryRound.id)
        ).all()
        return [round_id for round_id in due if self.activate(round_id, now=now)]

    # -------- sell-out timer --------
    def notify_sold_out(self, round_id: int, *, now: Optional[datetime] = None) -> bool:
        """Start the post-sellout countdown for ``round_id``.

        Idempotent: only the first call for a sold-out active round sets
        ``sold_out_at`` and moves ``draw_time`` to ``now + delay``; any later
        or premature call matches no row and returns False.
        """
        now = self._now(now)
        result = self._session.execute(
            update(LotteryRound)
            .where(
                LotteryRound.id == round_id,
                LotteryRound.status == RoundStatus.ACTIVE,
                LotteryRound.sold_shares == LotteryRound.total_shares,
                LotteryRound.sold_out_at.is_(None),
            )
            .values(sold_out_at=now, draw_time=now + self.draw_delay, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug(f"Sold-out notification for round {round_id} ignored")
            return False
        RoundEvent.record(
            self._session,
            round_id,
            "sold_out",
            details={"draw_time": (now + self.draw_delay).isoformat()},
            occurred_at=now,
        )
        logger.info(
            f"Round {round_id} sold out; draw scheduled in {int(self.draw_delay.total_seconds())}s"
        )
        return True

    def due_draws(self, *, now: Optional[datetime] = None) -> list[int]:
        """Return rounds whose post-sellout countdown has elapsed."""
        now = self._now(now)
        return list(
            self._session.scalars(
                select(LotteryRound.id)
                .where(
                    LotteryRound.status == RoundStatus.ACTIVE,
                    LotteryRound.integrity_hold.is_(False),
                    LotteryRound.sold_out_at.is_not(None),
                    LotteryRound.draw_time <= now,
                )
                .order_by(LotteryRound.draw_time, LotteryRound.id)
            ).all()
        )

    # -------- ACTIVE -> DRAWN --------
    def draw(
        self,
        round_id: int,
        *,
        trigger: str = DrawTrigger.SOLD_OUT,
        forced_by_admin_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[DrawResult]:
        """Draw ``round_id`` and persist its result, or no-op if already settled.

        The round is claimed ``ACTIVE -> DRAWN`` before its tickets are read,
        so the ticket set cannot grow under the computation. The claim and the
        result insert share the caller's transaction; if anything raises,
        rolling back leaves the round ``ACTIVE`` and the draw can be retried.

        Returns
        -------
        Optional[DrawResult]
            The new result, or ``None`` when another trigger already drew or
            cancelled the round.

        Raises
        ------
        RoundNotActiveError
            When the round is still ``PENDING``.
        RoundOnHoldError
            When the round is under an integrity hold.
        DrawRefusedError
            When a sell-out triggered draw is not due yet or no tickets exist.
        AlgorithmConfigurationError
            When no active default algorithm is available.
        DrawIntegrityError
            When the ticket data is inconsistent.
        ConcurrentUpdateError
            When the round changed between reading it and claiming it.
        """
        now = self._now(now)
        if trigger not in (DrawTrigger.SOLD_OUT, DrawTrigger.FORCED):
            raise ValueError(f"Unknown draw trigger '{trigger}'")
        lottery_round = self.get_round(round_id)

        if lottery_round.status in RoundStatus.TERMINAL:
            self._record_skip(lottery_round, trigger, now)
            return None
        if lottery_round.status != RoundStatus.ACTIVE:
            raise RoundNotActiveError(
                f"Round is {lottery_round.status}; only ACTIVE rounds can be drawn",
                round_id=round_id,
            )
        if lottery_round.integrity_hold:
            raise RoundOnHoldError(
                f"Round is under integrity hold: {lottery_round.hold_reason}",
                round_id=round_id,
            )
        if trigger == DrawTrigger.SOLD_OUT:
            draw_time = as_utc(lottery_round.draw_time)
            if lottery_round.sold_out_at is None or draw_time is None or draw_time > now:
                raise DrawRefusedError(
                    "Sell-out draw is not due yet", round_id=round_id,
                    details={"draw_time": draw_time.isoformat() if draw_time else None},
                )

        if lottery_round.sold_shares == 0:
            raise DrawRefusedError("No tickets have been sold", round_id=round_id)

        selection = self.registry.get_active()

        # once claimed, no purchase can move sold_shares, so the tickets read below are final
        claim = self._session.execute(
            update(LotteryRound)
            .where(
                LotteryRound.id == round_id,
                LotteryRound.status == RoundStatus.ACTIVE,
                LotteryRound.integrity_hold.is_(False),
            )
            .values(status=RoundStatus.DRAWN, drawn_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            current = self.get_round(round_id)
            if current.status in RoundStatus.TERMINAL:
                self._record_skip(current, trigger, now)
                return None
            if current.integrity_hold:
                raise RoundOnHoldError(
                    f"Round is under integrity hold: {current.hold_reason}", round_id=round_id
                )
            raise ConcurrentUpdateError(
                "Round changed while the draw was being claimed", round_id=round_id
            )

        lottery_round = self.get_round(round_id)
        tickets = Ticket.for_round(self._session, round_id)
        if len(tickets) != lottery_round.sold_shares:
            raise DrawIntegrityError(
                f"Round records {lottery_round.sold_shares} sold shares but "
                f"{len(tickets)} tickets exist",
                round_id=round_id,
            )
        snapshot = DrawSnapshot(
            round_id=round_id,
            tickets=tuple(
                TicketEntry(
                    ticket_id=ticket.id,
                    ticket_number=ticket.ticket_number,
                    player_id=ticket.player_id,
                    timestamp_ms=ticket.timestamp_ms,
                )
                for ticket in tickets
            ),
            config=selection.config,
        )
        computation = self.registry.compute(selection, snapshot)
        winner = snapshot.ticket_for(computation.winning_number)
        if winner is None:
            raise DrawIntegrityError(
                f"Winning number {computation.winning_number} has no ticket",
                round_id=round_id,
            )

        result = DrawResult(
            round_id=round_id,
            algorithm_name=selection.name,
            algorithm_version=selection.version,
            algorithm_config=selection.config,
            winning_number=computation.winning_number,
            winning_ticket_id=winner.ticket_id,
            winner_player_id=winner.player_id,
            timestamp_sum=computation.timestamp_sum,
            share_count=computation.share_count,
            input_data=computation.raw_inputs,
            calculation_steps=list(computation.steps),
            draw_trigger=trigger,
            forced_by_admin_id=forced_by_admin_id,
            drawn_at=now,
        )
        self._session.add(result)
        self._session.add(
            PrizeHandoff(
                round_id=round_id,
                winning_ticket_id=winner.ticket_id,
                winner_player_id=winner.player_id,
            )
        )
        RoundEvent.record(
            self._session,
            round_id,
            "drawn",
            admin_id=forced_by_admin_id,
            details={
                "trigger": trigger,
                "algorithm": selection.name,
                "winning_number": computation.winning_number,
                "share_count": computation.share_count,
            },
            occurred_at=now,
        )
        self._session.flush()
        logger.info(
            f"Round {round_id} drawn ({trigger}) with '{selection.name}' "
            f"v{selection.version}: number {computation.winning_number} of "
            f"{computation.share_count}, ticket {winner.ticket_id}"
        )
        return result

    def force_draw(
        self,
        round_id: int,
        *,
        admin_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[DrawResult]:
        """Operator-triggered draw over the tickets sold so far."""
        return self.draw(
            round_id, trigger=DrawTrigger.FORCED, forced_by_admin_id=admin_id, now=now
        )

    def _record_skip(self, lottery_round: LotteryRound, trigger: str, now: datetime) -> None:
        logger.warning(
            f"Draw trigger '{trigger}' for round {lottery_round.id} ignored: "
            f"round is already {lottery_round.status}"
        )
        RoundEvent.record(
            self._session,
            lottery_round.id,
            "draw_skipped",
            details={"trigger": trigger, "status": lottery_round.status},
            occurred_at=now,
        )

    # -------- cancellation --------
    def cancel(
        self,
        round_id: int,
        *,
        reason: Optional[str] = None,
        admin_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Cancel a pending or active round and flag its tickets refundable.

        Returns False when the round was already cancelled.

        Raises
        ------
        RoundAlreadyDrawnError
            When the round has been drawn.
        """
        now = self._now(now)
        lottery_round = self.get_round(round_id)
        if lottery_round.status == RoundStatus.CANCELLED:
            return False
        if lottery_round.status == RoundStatus.DRAWN:
            raise RoundAlreadyDrawnError("A drawn round cannot be cancelled", round_id=round_id)

        result = self._session.execute(
            update(LotteryRound)
            .where(
                LotteryRound.id == round_id,
                LotteryRound.status.in_((RoundStatus.PENDING, RoundStatus.ACTIVE)),
            )
            .values(
                status=RoundStatus.CANCELLED,
                cancelled_at=now,
                cancel_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = self.get_round(round_id)
            if current.status == RoundStatus.DRAWN:
                raise RoundAlreadyDrawnError(
                    "Round was drawn before it could be cancelled", round_id=round_id
                )
            return False

        refundable = self._session.execute(
            update(Ticket)
            .where(Ticket.round_id == round_id)
            .values(refund_status=RefundStatus.REFUNDABLE)
            .execution_options(synchronize_session=False)
        ).rowcount
        RoundEvent.record(
            self._session,
            round_id,
            "cancelled",
            admin_id=admin_id,
            details={"reason": reason, "refundable_tickets": refundable},
            occurred_at=now,
        )
        logger.info(f"Round {round_id} cancelled; {refundable} tickets refundable")
        return True

    # -------- integrity hold --------
    def place_integrity_hold(
        self, round_id: int, reason: str, *, now: Optional[datetime] = None
    ) -> bool:
        """Freeze automated processing of ``round_id`` until an operator releases it."""
        now = self._now(now)
        result = self._session.execute(
            update(LotteryRound)
            .where(LotteryRound.id == round_id)
            .values(integrity_hold=True, hold_reason=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise RoundNotFoundError(f"Round {round_id} does not exist", round_id=round_id)
        RoundEvent.record(
            self._session, round_id, "integrity_hold", details={"reason": reason}, occurred_at=now
        )
        logger.critical(f"Round {round_id} placed under integrity hold: {reason}")
        return True

    def release_integrity_hold(
        self,
        round_id: int,
        *,
        admin_id: Optional[int] = None,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Operator path out of an integrity hold. Returns False if none was set."""
        now = self._now(now)
        self.get_round(round_id)
        result = self._session.execute(
            update(LotteryRound)
            .where(LotteryRound.id == round_id, LotteryRound.integrity_hold.is_(True))
            .values(integrity_hold=False, hold_reason=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        RoundEvent.record(
            self._session,
            round_id,
            "hold_released",
            admin_id=admin_id,
            details={"note": note},
            occurred_at=now,
        )
        logger.warning(f"Integrity hold on round {round_id} released by admin {admin_id}")
        return True


__all__ = ["RoundLifecycleController"]
