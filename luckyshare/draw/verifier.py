"""Independent recomputation of stored draw results."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from luckyshare.db.utils import dt_iso
from luckyshare.errors import (
    DrawIntegrityError,
    DrawRefusedError,
    DrawVerificationMismatch,
    LotteryError,
    RoundNotFoundError,
)
from luckyshare.models import DrawResult, LotteryRound, Ticket

from .algorithms import DEFAULT_ALGORITHM_REGISTRY, AlgorithmRegistry, DrawSnapshot, TicketEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationReport:
    """Outcome of recomputing one round's draw from its tickets.

    Attributes
    ----------
    round_id : int
        Verified round.
    period_code : str
        Public label of the round.
    algorithm_name : str
        Algorithm recorded on the draw result.
    algorithm_version : int
        Configuration version recorded on the draw result.
    stored_winning_number : int
        Number persisted at draw time.
    recomputed_winning_number : Optional[int]
        Number derived now from the tickets, or ``None`` when recomputation
        failed.
    stored_winning_ticket_id, recomputed_winning_ticket_id : Optional[int]
        Ticket ids the two numbers map to.
    share_count : int
        Tickets found now.
    timestamp_sum : Optional[int]
        ``S`` recomputed from the tickets.
    steps : tuple[str, ...]
        Calculation trail of the recomputation.
    problems : tuple[str, ...]
        Every discrepancy found; empty when the draw verifies.
    """

    round_id: int
    period_code: str
    algorithm_name: str
    algorithm_version: int
    algorithm_config: dict
    stored_winning_number: int
    recomputed_winning_number: Optional[int]
    stored_winning_ticket_id: int
    recomputed_winning_ticket_id: Optional[int]
    share_count: int
    timestamp_sum: Optional[int]
    steps: tuple[str, ...]
    tickets: tuple[tuple[int, int], ...]
    problems: tuple[str, ...]
    verified_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def matches(self) -> bool:
        return not self.problems

    def to_dict(self) -> dict[str, Any]:
        return {
            "round_id": self.round_id,
            "period_code": self.period_code,
            "algorithm": {
                "name": self.algorithm_name,
                "version": self.algorithm_version,
                "config": self.algorithm_config,
            },
            "inputs": {
                "share_count": self.share_count,
                "timestamp_sum": str(self.timestamp_sum) if self.timestamp_sum is not None else None,
                "tickets": [list(entry) for entry in self.tickets],
            },
            "calculation_steps": list(self.steps),
            "stored": {
                "winning_number": self.stored_winning_number,
                "winning_ticket_id": self.stored_winning_ticket_id,
            },
            "recomputed": {
                "winning_number": self.recomputed_winning_number,
                "winning_ticket_id": self.recomputed_winning_ticket_id,
            },
            "matches": self.matches,
            "problems": list(self.problems),
            "verified_at": dt_iso(self.verified_at),
        }

    def to_json(self, *, indent: Optional[int] = 2) -> str:
        """Serialise the report for publication next to the result."""
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)


class DrawVerifier:
    """Recompute a drawn round's winner from its persisted tickets.

    Only the pure algorithm code and the algorithm name/config snapshotted on
    the draw result are used; the stored winning number is compared against,
    never trusted.
    """

    def __init__(
        self,
        session: Session,
        *,
        algorithms: Optional[AlgorithmRegistry] = None,
    ) -> None:
        self._session = session
        self.algorithms = algorithms or DEFAULT_ALGORITHM_REGISTRY

    def verify(self, round_id: int, *, raise_on_mismatch: bool = False) -> VerificationReport:
        """Verify ``round_id`` and return the report.

        Raises
        ------
        RoundNotFoundError
            Unknown round.
        DrawRefusedError
            The round has no draw result yet.
        DrawVerificationMismatch
            Only with ``raise_on_mismatch``, when any discrepancy is found.
        """
        lottery_round = LotteryRound.load_fresh(self._session, round_id)
        if lottery_round is None:
            raise RoundNotFoundError(f"Round {round_id} does not exist", round_id=round_id)
        result = DrawResult.get_for_round(self._session, round_id)
        if result is None:
            raise DrawRefusedError("Round has not been drawn", round_id=round_id)

        tickets = Ticket.for_round(self._session, round_id)
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
            config=dict(result.algorithm_config or {}),
        )

        problems = []
        recomputed_number = None
        recomputed_ticket_id = None
        steps: tuple[str, ...] = ()
        try:
            computation = self.algorithms.compute(result.algorithm_name, snapshot)
        except (DrawIntegrityError, DrawRefusedError) as exc:
            problems.append(f"recomputation failed: {exc.message}")
        except LotteryError as exc:
            # unknown algorithm or broken configuration snapshot
            problems.append(f"algorithm unavailable: {exc.message}")
        else:
            recomputed_number = computation.winning_number
            steps = computation.steps
            winner = snapshot.ticket_for(recomputed_number)
            recomputed_ticket_id = winner.ticket_id if winner is not None else None
            if recomputed_number != result.winning_number:
                problems.append(
                    f"winning number {result.winning_number} stored, "
                    f"{recomputed_number} recomputed"
                )
            if recomputed_ticket_id != result.winning_ticket_id:
                problems.append(
                    f"winning ticket {result.winning_ticket_id} stored, "
                    f"{recomputed_ticket_id} recomputed"
                )
            if computation.raw_inputs != result.input_data:
                problems.append("stored draw inputs differ from the current tickets")

        if snapshot.share_count != result.share_count:
            problems.append(
                f"{result.share_count} shares recorded at draw time, {snapshot.share_count} found"
            )
        if str(snapshot.timestamp_sum) != result.timestamp_sum:
            problems.append(
                f"timestamp sum {result.timestamp_sum} stored, {snapshot.timestamp_sum} recomputed"
            )

        report = VerificationReport(
            round_id=round_id,
            period_code=lottery_round.period_code,
            algorithm_name=result.algorithm_name,
            algorithm_version=result.algorithm_version,
            algorithm_config=dict(result.algorithm_config or {}),
            stored_winning_number=result.winning_number,
            recomputed_winning_number=recomputed_number,
            stored_winning_ticket_id=result.winning_ticket_id,
            recomputed_winning_ticket_id=recomputed_ticket_id,
            share_count=snapshot.share_count,
            timestamp_sum=snapshot.timestamp_sum if snapshot.tickets else None,
            steps=tuple(steps),
            tickets=tuple(
                (entry.ticket_number, entry.timestamp_ms)
                for entry in sorted(snapshot.tickets, key=lambda t: t.ticket_number)
            ),
            problems=tuple(problems),
        )
        if report.matches:
            logger.info(f"Round {round_id} draw verified: number {recomputed_number}")
            return report

        logger.critical(f"Round {round_id} draw verification FAILED: {'; '.join(problems)}")
        if raise_on_mismatch:
            raise DrawVerificationMismatch(
                "Draw verification failed",
                round_id=round_id,
                details={"problems": list(problems)},
                report=report,
            )
        return report


__all__ = ["DrawVerifier", "VerificationReport"]
