"""Draw algorithms: pure functions from a round's tickets to a winning number."""

from __future__ import annotations

import hashlib
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from luckyshare.errors import (
    AlgorithmConfigurationError,
    AlgorithmNotFoundError,
    DrawIntegrityError,
    DrawRefusedError,
)


@dataclass(frozen=True)
class TicketEntry:
    """The fields of a ticket that a draw is allowed to look at."""

    ticket_id: int
    ticket_number: int
    player_id: int
    timestamp_ms: int


@dataclass(frozen=True)
class DrawSnapshot:
    """Immutable view of a round's final ticket set.

    Attributes
    ----------
    round_id : int
        Round the tickets belong to.
    tickets : tuple[TicketEntry, ...]
        Every allocated ticket, in any order.
    config : Mapping[str, Any]
        Configuration blob of the algorithm used for this draw.
    """

    round_id: int
    tickets: tuple[TicketEntry, ...]
    config: Mapping[str, Any] = field(default_factory=dict)

    @property
    def share_count(self) -> int:
        return len(self.tickets)

    @property
    def timestamp_sum(self) -> int:
        return sum(ticket.timestamp_ms for ticket in self.tickets)

    def ticket_for(self, ticket_number: int) -> Optional[TicketEntry]:
        for ticket in self.tickets:
            if ticket.ticket_number == ticket_number:
                return ticket
        return None


@dataclass(frozen=True)
class DrawComputation:
    """Winning number plus the raw inputs and steps that produced it.

    Attributes
    ----------
    algorithm_key : str
        Identifier of the algorithm that ran.
    winning_number : int
        Ticket number in ``1..share_count``.
    share_count : int
        ``N``: number of tickets taking part in the draw.
    timestamp_sum : int
        ``S``: sum of the ticket timestamps in epoch milliseconds.
    raw_inputs : dict
        JSON-serialisable record of every value fed into the formula.
    steps : tuple[str, ...]
        Human readable calculation trail, published for verification.
    """

    algorithm_key: str
    winning_number: int
    share_count: int
    timestamp_sum: int
    raw_inputs: Dict[str, Any]
    steps: tuple[str, ...]


# (timestamp_sum, share_count, config) -> (winning_number, steps)
NumberFunction = Callable[[int, int, Mapping[str, Any]], "tuple[int, list[str]]"]


@dataclass(frozen=True)
class DrawAlgorithm:
    """Definition of a draw algorithm.

    Attributes
    ----------
    key : str
        Registry key, also the ``name`` of the matching
        :class:`~luckyshare.models.draw.DrawAlgorithmConfig` row.
    number_function : NumberFunction
        Pure callable computing the winning number from ``S`` and ``N``.
    display_name : str
        Label shown to operators.
    formula : str
        Formula text published next to results.
    description : Optional[str]
        Human-readable summary of the algorithm's behaviour.
    """

    key: str
    number_function: NumberFunction
    display_name: str
    formula: str
    description: Optional[str] = None

    def compute(self, snapshot: DrawSnapshot) -> DrawComputation:
        """Compute the winning number for ``snapshot``.

        Raises
        ------
        DrawRefusedError
            When the round has no tickets.
        DrawIntegrityError
            When ticket numbers are not exactly ``1..N`` or the algorithm
            returns a number outside that range.
        """
        share_count = snapshot.share_count
        if share_count == 0:
            raise DrawRefusedError(
                "Cannot draw a round without tickets", round_id=snapshot.round_id
            )
        _check_dense_numbers(snapshot)

        timestamp_sum = snapshot.timestamp_sum
        winning_number, steps = self.number_function(
            timestamp_sum, share_count, snapshot.config
        )
        if not 1 <= winning_number <= share_count:
            raise DrawIntegrityError(
                f"Algorithm '{self.key}' produced {winning_number}, outside 1..{share_count}",
                round_id=snapshot.round_id,
            )

        raw_inputs = {
            "algorithm": self.key,
            "timestamp_sum": str(timestamp_sum),
            "share_count": share_count,
            "config": dict(snapshot.config),
            "tickets": [
                [ticket.ticket_number, ticket.timestamp_ms]
                for ticket in sorted(snapshot.tickets, key=lambda t: t.ticket_number)
            ],
        }
        return DrawComputation(
            algorithm_key=self.key,
            winning_number=winning_number,
            share_count=share_count,
            timestamp_sum=timestamp_sum,
            raw_inputs=raw_inputs,
            steps=tuple(steps),
        )


class AlgorithmRegistry:
    """Mutable registry mapping algorithm keys to definitions."""

    def __init__(self) -> None:
        self._algorithms: Dict[str, DrawAlgorithm] = {}

    def register(self, algorithm: DrawAlgorithm, *, replace: bool = False) -> None:
        """Register ``algorithm`` under its key.

        A duplicate key raises :class:`ValueError` unless ``replace`` is True.
        Replacing a key changes how historical results using it recompute, so
        production code should register a new key instead.
        """
        if not replace and algorithm.key in self._algorithms:
            raise ValueError(f"Algorithm '{algorithm.key}' is already registered")
        self._algorithms[algorithm.key] = algorithm

    def get(self, key: str) -> DrawAlgorithm:
        """Return the algorithm registered under ``key``."""
        try:
            return self._algorithms[key]
        except KeyError as exc:
            raise AlgorithmNotFoundError(
                f"Unknown draw algorithm '{key}'", details={"algorithm": key}
            ) from exc

    def compute(self, key: str, snapshot: DrawSnapshot) -> DrawComputation:
        """Run the algorithm referenced by ``key`` on ``snapshot``."""
        return self.get(key).compute(snapshot)

    def available_algorithms(self) -> Dict[str, DrawAlgorithm]:
        """Return a copy of the registered algorithms keyed by identifier."""
        return dict(self._algorithms)

    def __contains__(self, key: object) -> bool:
        return key in self._algorithms


def _check_dense_numbers(snapshot: DrawSnapshot) -> None:
    numbers = sorted(ticket.ticket_number for ticket in snapshot.tickets)
    if numbers != list(range(1, len(numbers) + 1)):
        missing = sorted(set(range(1, len(numbers) + 1)) - set(numbers))
        duplicated = sorted(n for n, count in Counter(numbers).items() if count > 1)
        raise DrawIntegrityError(
            "Ticket numbers are not exactly 1..N",
            round_id=snapshot.round_id,
            details={"missing": missing[:20], "duplicated": duplicated[:20]},
        )


def timestamp_sum_mod(
    timestamp_sum: int, share_count: int, config: Mapping[str, Any]
) -> tuple[int, list[str]]:
    """``(S // N) % N + 1``: integer division first, then modulo."""
    quotient = timestamp_sum // share_count
    remainder = quotient % share_count
    winning_number = remainder + 1
    steps = [
        f"S = sum of ticket timestamps (ms) = {timestamp_sum}",
        f"N = shares sold = {share_count}",
        f"S // N = {quotient}",
        f"(S // N) mod N = {remainder}",
        f"winning number = {remainder} + 1 = {winning_number}",
    ]
    return winning_number, steps


def sha256_timestamp_mod(
    timestamp_sum: int, share_count: int, config: Mapping[str, Any]
) -> tuple[int, list[str]]:
    """``int(sha256("seed:S:N"), 16) % N + 1`` with an operator supplied seed."""
    seed = config.get("seed")
    if not isinstance(seed, str) or not seed:
        raise AlgorithmConfigurationError(
            "Algorithm 'sha256_timestamp_mod' requires a non-empty string 'seed'"
        )
    message = f"{seed}:{timestamp_sum}:{share_count}"
    digest = hashlib.sha256(message.encode("utf-8")).hexdigest()
    remainder = int(digest, 16) % share_count
    winning_number = remainder + 1
    steps = [
        f"S = sum of ticket timestamps (ms) = {timestamp_sum}",
        f"N = shares sold = {share_count}",
        f"H = sha256('{message}') = {digest}",
        f"H mod N = {remainder}",
        f"winning number = {remainder} + 1 = {winning_number}",
    ]
    return winning_number, steps


TIMESTAMP_SUM_MOD = DrawAlgorithm(
    key="timestamp_sum_mod",
    number_function=timestamp_sum_mod,
    display_name="Timestamp sum modulo",
    formula="winning number = (S / N) mod N + 1, S = sum of ticket timestamps, N = shares",
    description=(
        "Sums the purchase timestamps of every ticket, divides by the share "
        "count (integer division), and takes the remainder modulo the share "
        "count. Anyone holding the ticket list can recompute it."
    ),
)

SHA256_TIMESTAMP_MOD = DrawAlgorithm(
    key="sha256_timestamp_mod",
    number_function=sha256_timestamp_mod,
    display_name="SHA-256 seeded timestamp modulo",
    formula="winning number = sha256(seed:S:N) mod N + 1",
    description=(
        "Hashes a published seed together with the timestamp sum and share "
        "count, and reduces the digest modulo the share count."
    ),
)

DEFAULT_ALGORITHM_KEY = TIMESTAMP_SUM_MOD.key

DEFAULT_ALGORITHM_REGISTRY = AlgorithmRegistry()
DEFAULT_ALGORITHM_REGISTRY.register(TIMESTAMP_SUM_MOD)
DEFAULT_ALGORITHM_REGISTRY.register(SHA256_TIMESTAMP_MOD)

__all__ = [
    "AlgorithmRegistry",
    "DEFAULT_ALGORITHM_KEY",
    "DEFAULT_ALGORITHM_REGISTRY",
    "DrawAlgorithm",
    "DrawComputation",
    "DrawSnapshot",
    "SHA256_TIMESTAMP_MOD",
    "TIMESTAMP_SUM_MOD",
    "TicketEntry",
    "sha256_timestamp_mod",
    "timestamp_sum_mod",
]
