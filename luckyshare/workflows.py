"""Public operations of the draw engine.

Each function opens its own transaction(s) from ``session_factory`` (a
:func:`~luckyshare.db.engine.get_sessionmaker` result), so a draw commits
before its winner is handed to the fulfillment service and an integrity
hold survives the rollback of the draw that detected the problem.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Optional, Union

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from .config import load_settings
from .draw.algorithms import AlgorithmRegistry
from .draw.ledger import TicketLedger
from .draw.lifecycle import RoundLifecycleController
from .draw.period_code import PeriodCodeGenerator
from .draw.registry import DrawAlgorithmRegistry
from .draw.verifier import DrawVerifier, VerificationReport
from .errors import (
    DrawIntegrityError,
    DrawVerificationMismatch,
    LotteryError,
    PeriodCodeExhaustedError,
    TransientStorageError,
)
from .fulfillment.handoff import HandoffDispatcher
from .models import (
    DrawAlgorithmConfig,
    DrawResult,
    DrawTrigger,
    LotteryRound,
    PrizeHandoff,
    PurchaseLimit,
    Ticket,
)

if TYPE_CHECKING:
    from .fulfillment.handoff import FulfillmentHandoff

logger = logging.getLogger(__name__)

SessionFactory = sessionmaker


@dataclass
class DrawOutcome:
    """What happened when a draw trigger fired for one round.

    Attributes
    ----------
    round_id : int
        Round the trigger targeted.
    result : Optional[DrawResult]
        The persisted result, or ``None`` when the trigger was a no-op
        (another trigger already settled the round) or failed.
    handoff_acknowledged : bool
        ``True`` once the fulfillment service acknowledged the winner.
    handoff_error : Optional[str]
        Last hand-off failure; the hand-off stays pending for retry.
    error : Optional[LotteryError]
        Draw failure, only populated by :func:`run_due_draws`, which keeps
        going with the next round.
    """

    round_id: int
    result: Optional[DrawResult] = None
    handoff_acknowledged: bool = False
    handoff_error: Optional[str] = None
    error: Optional[LotteryError] = None

    @property
    def drawn(self) -> bool:
        return self.result is not None


@dataclass
class SchedulerTickReport:
    activated: list[int] = field(default_factory=list)
    draws: list[DrawOutcome] = field(default_factory=list)
    handoffs: dict[int, bool] = field(default_factory=dict)


@contextmanager
def _storage_errors(round_id: Optional[int] = None) -> Iterator[None]:
    """Translate database connectivity/lock failures into a retryable error."""
    try:
        yield
    except OperationalError as exc:
        logger.error(f"Storage failure (round {round_id}): {exc.orig}")
        raise TransientStorageError(
            "Storage temporarily unavailable; retry the operation", round_id=round_id
        ) from exc


def _fixed_clock(now: Optional[datetime]):
    if now is None:
        return lambda: datetime.now(timezone.utc)
    return lambda: now


# -------- rounds --------
def create_round(
    session_factory: SessionFactory,
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
    admin_id: Optional[int] = None,
    activate_now: bool = False,
    period_codes: Optional[PeriodCodeGenerator] = None,
    now: Optional[datetime] = None,
) -> LotteryRound:
    """Create a round with a fresh, unique period code.

    A concurrent creator may take the same code between our uniqueness check
    and the insert; the unique index then rejects the insert and the whole
    transaction is retried with a new code, up to
    ``PERIOD_CODE_MAX_ATTEMPTS`` times.

    Raises
    ------
    InvalidRoundConfigurationError
        Invalid economics or schedule.
    PeriodCodeExhaustedError
        No unique period code could be found.
    """
    settings = load_settings()
    clock = _fixed_clock(now)
    generator = period_codes or PeriodCodeGenerator(
        clock=clock, max_attempts=settings.period_code_max_attempts
    )
    rejected: list[str] = []
    for _ in range(generator.max_attempts):
        code = None
        try:
            with _storage_errors(), session_factory.begin() as session:
                code = generator.generate_unique(session, exclude=tuple(rejected))
                controller = RoundLifecycleController(
                    session, clock=clock, period_codes=generator
                )
                return controller.create_round(
                    title=title,
                    price_per_share=price_per_share,
                    total_shares=total_shares,
                    start_time=start_time,
                    end_time=end_time,
                    currency=currency,
                    purchase_limit=purchase_limit,
                    description=description,
                    full_purchase_enabled=full_purchase_enabled,
                    full_purchase_price=full_purchase_price,
                    created_by_admin_id=admin_id,
                    activate_now=activate_now,
                    period_code=code,
                    now=now,
                )
        except IntegrityError:
            with session_factory() as session:
                collided = code is not None and (
                    LotteryRound.get_by_period_code(session, code) is not None
                )
            if not collided:
                raise
            logger.warning("Period code taken by a concurrent insert; retrying")
            rejected.append(code)

    raise PeriodCodeExhaustedError(
        f"Unable to store a round with a unique period code after {generator.max_attempts} attempts"
    )


def activate_round(
    session_factory: SessionFactory, round_id: int, *, now: Optional[datetime] = None
) -> bool:
    """Open ``round_id`` for sale; False when it is not pending or not yet due."""
    with _storage_errors(round_id), session_factory.begin() as session:
        controller = RoundLifecycleController(session, clock=_fixed_clock(now))
        controller.get_round(round_id)
        return controller.activate(round_id, now=now)


def activate_due_rounds(
    session_factory: SessionFactory, *, now: Optional[datetime] = None
) -> list[int]:
    """Open every pending round whose start time has passed."""
    with _storage_errors(), session_factory.begin() as session:
        return RoundLifecycleController(session, clock=_fixed_clock(now)).activate_due(now=now)


def cancel_round(
    session_factory: SessionFactory,
    round_id: int,
    *,
    reason: Optional[str] = None,
    admin_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Cancel ``round_id``; sold tickets become refundable.

    Returns ``False`` when the round was already cancelled. Raises
    :class:`~luckyshare.errors.RoundAlreadyDrawnError` for drawn rounds.
    """
    with _storage_errors(round_id), session_factory.begin() as session:
        controller = RoundLifecycleController(session, clock=_fixed_clock(now))
        return controller.cancel(round_id, reason=reason, admin_id=admin_id, now=now)


def release_integrity_hold(
    session_factory: SessionFactory,
    round_id: int,
    *,
    admin_id: Optional[int] = None,
    note: Optional[str] = None,
) -> bool:
    """Operator path to resume automated processing of a held round."""
    with _storage_errors(round_id), session_factory.begin() as session:
        return RoundLifecycleController(session).release_integrity_hold(
            round_id, admin_id=admin_id, note=note
        )


def _hold_round(session_factory: SessionFactory, round_id: int, reason: str) -> None:
    # called while another error propagates; that error stays the one raised
    try:
        with session_factory.begin() as session:
            RoundLifecycleController(session).place_integrity_hold(round_id, reason)
    except OperationalError as exc:
        logger.critical(f"Could not place integrity hold on round {round_id}: {exc.orig}")


# -------- tickets --------
def purchase_tickets(
    session_factory: SessionFactory,
    round_id: int,
    player_id: int,
    quantity: int,
    *,
    now: Optional[datetime] = None,
) -> list[Ticket]:
    """Buy ``quantity`` shares of ``round_id`` for ``player_id`` (all-or-nothing).

    Purchase failures carry a ``user_message`` of ``"sold out"``,
    ``"limit reached"`` or ``"round closed"``.
    """
    with _storage_errors(round_id), session_factory.begin() as session:
        return TicketLedger(session, clock=_fixed_clock(now)).purchase(
            round_id, player_id, quantity
        )


def tickets_for_round(session_factory: SessionFactory, round_id: int) -> list[Ticket]:
    with _storage_errors(round_id), session_factory() as session:
        return TicketLedger(session).tickets_for_round(round_id)


def tickets_for_player(
    session_factory: SessionFactory, player_id: int, round_id: Optional[int] = None
) -> list[Ticket]:
    with _storage_errors(round_id), session_factory() as session:
        return TicketLedger(session).tickets_for_player(player_id, round_id)


# -------- draws --------
def _draw_round(
    session_factory: SessionFactory,
    round_id: int,
    *,
    trigger: str,
    admin_id: Optional[int],
    fulfillment: Optional["FulfillmentHandoff"],
    algorithms: Optional[AlgorithmRegistry],
    now: Optional[datetime],
) -> DrawOutcome:
    clock = _fixed_clock(now)
    try:
        with _storage_errors(round_id), session_factory.begin() as session:
            controller = RoundLifecycleController(
                session,
                registry=DrawAlgorithmRegistry(session, algorithms=algorithms),
                clock=clock,
            )
            result = controller.draw(
                round_id, trigger=trigger, forced_by_admin_id=admin_id, now=now
            )
    except DrawIntegrityError as exc:
        logger.critical(f"Draw of round {round_id} failed integrity checks: {exc}")
        _hold_round(session_factory, round_id, f"draw failed: {exc.message}")
        raise
    except IntegrityError as exc:
        # e.g. a second draw_results row for the round
        logger.critical(f"Draw of round {round_id} violated a database constraint: {exc.orig}")
        _hold_round(session_factory, round_id, f"draw failed: {exc.orig}")
        raise DrawIntegrityError(
            "Draw rejected by a database integrity constraint",
            round_id=round_id,
            details={"constraint_error": str(exc.orig)},
        ) from exc
    except LotteryError as exc:
        logger.error(f"Draw of round {round_id} failed; round stays ACTIVE: {exc}")
        raise

    outcome = DrawOutcome(round_id=round_id, result=result)
    if result is not None and fulfillment is not None:
        outcome.handoff_acknowledged, outcome.handoff_error = _dispatch(
            session_factory, round_id, fulfillment, clock
        )
    return outcome


def _dispatch(
    session_factory: SessionFactory,
    round_id: int,
    fulfillment: "FulfillmentHandoff",
    clock,
) -> tuple[bool, Optional[str]]:
    try:
        with _storage_errors(round_id), session_factory.begin() as session:
            acknowledged = HandoffDispatcher(session, fulfillment, clock=clock).dispatch(round_id)
            if acknowledged:
                return True, None
            handoff = PrizeHandoff.get_for_round(session, round_id)
            return False, handoff.last_error if handoff is not None else "handoff missing"
    except TransientStorageError as exc:
        # the outbox row is still pending and will be retried
        return False, exc.message


def force_draw(
    session_factory: SessionFactory,
    round_id: int,
    *,
    admin_id: Optional[int] = None,
    fulfillment: Optional["FulfillmentHandoff"] = None,
    algorithms: Optional[AlgorithmRegistry] = None,
    now: Optional[datetime] = None,
) -> DrawOutcome:
    """Operator-triggered draw over the tickets sold so far.

    When the round is already drawn or cancelled the outcome carries no
    result; nothing is raised. Integrity failures place the round under an
    integrity hold before propagating.
    """
    return _draw_round(
        session_factory,
        round_id,
        trigger=DrawTrigger.FORCED,
        admin_id=admin_id,
        fulfillment=fulfillment,
        algorithms=algorithms,
        now=now,
    )


def run_due_draws(
    session_factory: SessionFactory,
    *,
    fulfillment: Optional["FulfillmentHandoff"] = None,
    algorithms: Optional[AlgorithmRegistry] = None,
    now: Optional[datetime] = None,
) -> list[DrawOutcome]:
    """Draw every round whose post-sellout countdown has elapsed.

    One failing round does not stop the others; its outcome carries the
    error (and integrity failures leave the round on hold).
    """
    with _storage_errors(), session_factory() as session:
        due = RoundLifecycleController(session, clock=_fixed_clock(now)).due_draws(now=now)

    outcomes = []
    for round_id in due:
        try:
            outcomes.append(
                _draw_round(
                    session_factory,
                    round_id,
                    trigger=DrawTrigger.SOLD_OUT,
                    admin_id=None,
                    fulfillment=fulfillment,
                    algorithms=algorithms,
                    now=now,
                )
            )
        except LotteryError as exc:
            outcomes.append(DrawOutcome(round_id=round_id, error=exc))
    return outcomes


def retry_pending_handoffs(
    session_factory: SessionFactory,
    fulfillment: "FulfillmentHandoff",
    *,
    now: Optional[datetime] = None,
    limit: int = 100,
) -> dict[int, bool]:
    """Re-deliver pending prize hand-offs that are due; returns success per round."""
    clock = _fixed_clock(now)
    with _storage_errors(), session_factory() as session:
        pending = HandoffDispatcher(session, fulfillment, clock=clock).pending_rounds(
            now=now, limit=limit
        )
    results = {}
    for round_id in pending:
        results[round_id], _error = _dispatch(session_factory, round_id, fulfillment, clock)
    return results


def verify_round(
    session_factory: SessionFactory,
    round_id: int,
    *,
    raise_on_mismatch: bool = True,
    algorithms: Optional[AlgorithmRegistry] = None,
) -> VerificationReport:
    """Recompute the draw of ``round_id`` from its tickets.

    A mismatch places the round under an integrity hold and, by default,
    raises :class:`~luckyshare.errors.DrawVerificationMismatch` carrying the
    report.
    """
    with _storage_errors(round_id), session_factory() as session:
        report = DrawVerifier(session, algorithms=algorithms).verify(round_id)
    if report.matches:
        return report

    _hold_round(session_factory, round_id, "verification mismatch: " + "; ".join(report.problems))
    if raise_on_mismatch:
        raise DrawVerificationMismatch(
            "Draw verification failed",
            round_id=round_id,
            details={"problems": list(report.problems)},
            report=report,
        )
    return report


def run_scheduler_tick(
    session_factory: SessionFactory,
    *,
    fulfillment: Optional["FulfillmentHandoff"] = None,
    algorithms: Optional[AlgorithmRegistry] = None,
    now: Optional[datetime] = None,
) -> SchedulerTickReport:
    """One pass of the periodic scheduler: activate, draw, re-deliver."""
    report = SchedulerTickReport()
    report.activated = activate_due_rounds(session_factory, now=now)
    report.draws = run_due_draws(
        session_factory, fulfillment=fulfillment, algorithms=algorithms, now=now
    )
    if fulfillment is not None:
        report.handoffs = retry_pending_handoffs(session_factory, fulfillment, now=now)
    return report


# -------- algorithms --------
def ensure_builtin_algorithms(
    session_factory: SessionFactory, *, algorithms: Optional[AlgorithmRegistry] = None
) -> list[DrawAlgorithmConfig]:
    with _storage_errors(), session_factory.begin() as session:
        return DrawAlgorithmRegistry(session, algorithms=algorithms).ensure_builtin_algorithms()


def list_algorithms(
    session_factory: SessionFactory, *, active_only: bool = False
) -> list[DrawAlgorithmConfig]:
    with _storage_errors(), session_factory() as session:
        return DrawAlgorithmRegistry(session).list_algorithms(active_only=active_only)


def register_algorithm_config(
    session_factory: SessionFactory,
    name: str,
    *,
    config: Optional[Mapping[str, Any]] = None,
    is_active: bool = False,
    algorithms: Optional[AlgorithmRegistry] = None,
    **metadata: Optional[str],
) -> DrawAlgorithmConfig:
    with _storage_errors(), session_factory.begin() as session:
        return DrawAlgorithmRegistry(session, algorithms=algorithms).register_config(
            name, config=config, is_active=is_active, **metadata
        )


def set_algorithm_active(
    session_factory: SessionFactory,
    name: str,
    active: bool,
    *,
    algorithms: Optional[AlgorithmRegistry] = None,
) -> DrawAlgorithmConfig:
    with _storage_errors(), session_factory.begin() as session:
        return DrawAlgorithmRegistry(session, algorithms=algorithms).set_active(name, active)


def select_default_algorithm(
    session_factory: SessionFactory,
    name: str,
    *,
    algorithms: Optional[AlgorithmRegistry] = None,
) -> DrawAlgorithmConfig:
    """Make ``name`` the default for new draws; past results keep their own."""
    with _storage_errors(), session_factory.begin() as session:
        return DrawAlgorithmRegistry(session, algorithms=algorithms).select_default(name)


def update_algorithm_config(
    session_factory: SessionFactory,
    name: str,
    config: Mapping[str, Any],
) -> DrawAlgorithmConfig:
    with _storage_errors(), session_factory.begin() as session:
        return DrawAlgorithmRegistry(session).update_config(name, config)


__all__ = [
    "DrawOutcome",
    "SchedulerTickReport",
    "activate_due_rounds",
    "activate_round",
    "cancel_round",
    "create_round",
    "ensure_builtin_algorithms",
    "force_draw",
    "list_algorithms",
    "purchase_tickets",
    "register_algorithm_config",
    "release_integrity_hold",
    "retry_pending_handoffs",
    "run_due_draws",
    "run_scheduler_tick",
    "select_default_algorithm",
    "set_algorithm_active",
    "tickets_for_player",
    "tickets_for_round",
    "update_algorithm_config",
    "verify_round",
]
