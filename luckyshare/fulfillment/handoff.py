"""Delivery of winning tickets to the external fulfillment subsystem."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

import requests
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from luckyshare.db.utils import as_utc
from luckyshare.errors import FulfillmentError
from luckyshare.models import HandoffStatus, PrizeHandoff, RoundEvent

logger = logging.getLogger(__name__)

RETRY_BASE_SECONDS = 30
RETRY_MAX_SECONDS = 3600


@dataclass(frozen=True)
class HandoffAck:
    """Acknowledgement returned by the fulfillment collaborator.

    Attributes
    ----------
    reference : Optional[str]
        Collaborator-side identifier of the prize claim.
    duplicate : bool
        ``True`` when the claim for this round already existed.
    """

    reference: Optional[str]
    duplicate: bool = False


class FulfillmentHandoff(Protocol):
    """Contract of the fulfillment collaborator.

    Implementations must be idempotent on ``round_id``: a second call for the
    same round acknowledges the existing claim and never grants the prize
    twice.
    """

    def hand_off(
        self, round_id: int, winning_ticket_id: int, winning_user_id: int
    ) -> HandoffAck:
        ...


def retry_delay(attempts: int) -> timedelta:
    """Exponential backoff for failed hand-offs, capped at one hour."""
    seconds = RETRY_BASE_SECONDS * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(seconds, RETRY_MAX_SECONDS))


class HandoffDispatcher:
    """Deliver pending ``prize_handoffs`` rows to a :class:`FulfillmentHandoff`.

    Runs after the draw transaction has committed. Each dispatch reads the
    outbox row, calls the collaborator without holding any lock, then records
    the outcome in the caller's transaction.
    """

    def __init__(
        self,
        session: Session,
        fulfillment: FulfillmentHandoff,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._session = session
        self.fulfillment = fulfillment
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def dispatch(self, round_id: int) -> bool:
        """Hand off the winner of ``round_id``.

        Returns
        -------
        bool
            ``True`` once the collaborator has acknowledged the claim (now or
            earlier); ``False`` when this attempt failed and was recorded for
            retry.
        """
        handoff = PrizeHandoff.get_for_round(self._session, round_id)
        if handoff is None:
            logger.error(f"No prize handoff recorded for round {round_id}")
            return False
        if handoff.status == HandoffStatus.ACKNOWLEDGED:
            logger.debug(f"Prize handoff for round {round_id} already acknowledged")
            return True

        now = as_utc(self.clock())
        try:
            ack = self.fulfillment.hand_off(
                round_id, handoff.winning_ticket_id, handoff.winner_player_id
            )
        except (FulfillmentError, requests.RequestException) as exc:
            attempts = (handoff.attempts or 0) + 1
            self._session.execute(
                update(PrizeHandoff)
                .where(
                    PrizeHandoff.id == handoff.id,
                    PrizeHandoff.status == HandoffStatus.PENDING,
                )
                .values(
                    attempts=attempts,
                    last_error=str(exc)[:2000],
                    next_attempt_at=now + retry_delay(attempts),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            logger.warning(
                f"Prize handoff for round {round_id} failed (attempt {attempts}): {exc}"
            )
            return False

        acknowledged = self._session.execute(
            update(PrizeHandoff)
            .where(
                PrizeHandoff.id == handoff.id,
                PrizeHandoff.status == HandoffStatus.PENDING,
            )
            .values(
                status=HandoffStatus.ACKNOWLEDGED,
                attempts=(handoff.attempts or 0) + 1,
                external_reference=ack.reference,
                acknowledged_at=now,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if acknowledged.rowcount == 1:
            RoundEvent.record(
                self._session,
                round_id,
                "handoff_acknowledged",
                details={"reference": ack.reference, "duplicate": ack.duplicate},
                occurred_at=now,
            )
            logger.info(f"Prize handoff for round {round_id} acknowledged")
        return True

    def pending_rounds(self, *, now: Optional[datetime] = None, limit: int = 100) -> list[int]:
        """Rounds whose hand-off is still pending and due for another attempt."""
        now = as_utc(now or self.clock())
        stmt = (
            select(PrizeHandoff.round_id)
            .where(
                PrizeHandoff.status == HandoffStatus.PENDING,
                or_(PrizeHandoff.next_attempt_at.is_(None), PrizeHandoff.next_attempt_at <= now),
            )
            .order_by(PrizeHandoff.created_at, PrizeHandoff.id)
            .limit(limit)
        )
        return list(self._session.scalars(stmt).all())


__all__ = [
    "FulfillmentHandoff",
    "HandoffAck",
    "HandoffDispatcher",
    "retry_delay",
]
