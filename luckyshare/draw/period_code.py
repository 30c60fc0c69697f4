"""Period codes: public labels for lottery rounds.

A period code looks like ``LM`` + base36 epoch milliseconds + six random
base36 characters + one check character (17 characters today). It only
needs to be unique and hard to predict; the winner of a round is decided by
:mod:`luckyshare.draw.algorithms` from ticket data and never by this code.
"""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from luckyshare.db.utils import epoch_millis
from luckyshare.errors import PeriodCodeExhaustedError
from luckyshare.models.round import LotteryRound

logger = logging.getLogger(__name__)

BASE36_ALPHABET = string.digits + string.ascii_uppercase
PERIOD_CODE_PREFIX = "LM"
RANDOM_PART_LENGTH = 6


def to_base36(value: int) -> str:
    """Encode a non-negative integer with digits ``0-9A-Z``."""
    if value < 0:
        raise ValueError("Only non-negative integers can be encoded")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def check_character(body: str) -> str:
    """Return the check character for ``body`` (position-weighted sum mod 36)."""
    total = 0
    for position, char in enumerate(body, start=1):
        index = BASE36_ALPHABET.find(char)
        if index < 0:
            raise ValueError(f"Invalid period code character {char!r}")
        total += position * index
    return BASE36_ALPHABET[total % 36]


def random_part(length: int = RANDOM_PART_LENGTH) -> str:
    return "".join(secrets.choice(BASE36_ALPHABET) for _ in range(length))


def validate_period_code(code: str) -> bool:
    """Return True when ``code`` is well formed and its check character matches."""
    if not isinstance(code, str):
        return False
    if not code.startswith(PERIOD_CODE_PREFIX):
        return False
    if len(code) < len(PERIOD_CODE_PREFIX) + RANDOM_PART_LENGTH + 2:
        return False
    body, check = code[:-1], code[-1]
    try:
        return check_character(body) == check
    except ValueError:
        return False


class PeriodCodeGenerator:
    """Generate period codes and guarantee uniqueness against the database.

    Parameters
    ----------
    clock : Callable[[], datetime], optional
        Source of the current time. Defaults to ``datetime.now(timezone.utc)``.
    random_source : Callable[[], str], optional
        Returns the random component. Defaults to six characters drawn with
        :mod:`secrets`.
    max_attempts : int
        Codes tried by :meth:`generate_unique` before it gives up.
    """

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        random_source: Optional[Callable[[], str]] = None,
        max_attempts: int = 5,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.random_source = random_source or random_part
        self.max_attempts = max_attempts

    def generate(self) -> str:
        body = (
            PERIOD_CODE_PREFIX
            + to_base36(epoch_millis(self.clock()))
            + self.random_source().upper()
        )
        return body + check_character(body)

    def generate_unique(self, session: Session, *, exclude: tuple[str, ...] = ()) -> str:
        """Return a code unused by any stored or pending round.

        ``exclude`` lists codes already known to collide (e.g. rejected by a
        concurrent insert). Raises :class:`PeriodCodeExhaustedError` after
        ``max_attempts`` collisions; a code is never reused.
        """

        for attempt in range(1, self.max_attempts + 1):
            candidate = self.generate()
            if candidate in exclude or self._taken(session, candidate):
                logger.warning(
                    f"Period code collision on attempt {attempt}/{self.max_attempts}"
                )
                continue
            return candidate

        logger.critical(f"No unique period code after {self.max_attempts} attempts")
        raise PeriodCodeExhaustedError(
            f"Unable to generate a unique period code after {self.max_attempts} attempts",
            details={"attempts": self.max_attempts},
        )

    @staticmethod
    def _taken(session: Session, candidate: str) -> bool:
        for obj in session.new:
            if isinstance(obj, LotteryRound) and obj.period_code == candidate:
                return True
        existing = session.scalar(
            select(LotteryRound.id).where(LotteryRound.period_code == candidate)
        )
        return existing is not None


__all__ = [
    "BASE36_ALPHABET",
    "PERIOD_CODE_PREFIX",
    "PeriodCodeGenerator",
    "check_character",
    "to_base36",
    "validate_period_code",
]
