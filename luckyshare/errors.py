"""Error taxonomy shared by the ledger, lifecycle controller and workflows.

Every exception carries a stable ``error_code``, the ``round_id`` it concerns
(when known) and a ``kind`` that tells callers how to react:

``validation``
    Bad input or a request against a round in the wrong state. Report to the
    caller, never retry automatically.
``contention``
    Expected under load (sold out, lost compare-and-swap). The caller may
    retry the whole operation; nothing was partially applied.
``integrity``
    The persisted data disagrees with itself or with a recomputation. Halts
    automated processing of the round until an operator intervenes.
``transient``
    Infrastructure hiccup. Safe to retry the whole operation.
"""

from __future__ import annotations

from typing import Any, Optional


class LotteryError(Exception):
    """Base class for every error raised by the draw engine."""

    error_code = "LOTTERY_000"
    kind = "error"
    retryable = False
    user_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        round_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.round_id = round_id
        self.details = dict(details or {})

    def __str__(self) -> str:
        if self.round_id is None:
            return self.message
        return f"{self.message} (round_id={self.round_id})"

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable description for RPC/HTTP mappings."""
        payload: dict[str, Any] = {
            "code": self.error_code,
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "round_id": self.round_id,
            "details": self.details,
        }
        if self.user_message is not None:
            payload["user_message"] = self.user_message
        return payload


# --- validation -------------------------------------------------------------


class ValidationError(LotteryError, ValueError):
    error_code = "VALIDATION_001"
    kind = "validation"


class InvalidQuantityError(ValidationError):
    error_code = "VALIDATION_002"


class RoundNotFoundError(ValidationError):
    error_code = "VALIDATION_003"


class PlayerNotFoundError(ValidationError):
    error_code = "VALIDATION_004"


class AlgorithmNotFoundError(ValidationError, KeyError):
    error_code = "VALIDATION_005"

    # KeyError would otherwise repr() the message
    __str__ = LotteryError.__str__


class InvalidRoundConfigurationError(ValidationError):
    error_code = "VALIDATION_006"


class DrawRefusedError(ValidationError):
    """A draw cannot be computed from the current round state (e.g. no tickets)."""

    error_code = "VALIDATION_007"


class PerUserLimitExceededError(ValidationError):
    error_code = "PURCHASE_003"
    user_message = "limit reached"


class RoundStateError(ValidationError):
    error_code = "STATE_001"


class RoundNotActiveError(RoundStateError):
    error_code = "PURCHASE_001"
    user_message = "round closed"


class RoundAlreadyDrawnError(RoundStateError):
    error_code = "STATE_002"


class RoundOnHoldError(RoundStateError):
    """The round is frozen by an integrity hold and needs an operator."""

    error_code = "STATE_003"
    user_message = "round closed"


# --- contention -------------------------------------------------------------


class ContentionError(LotteryError):
    error_code = "CONTENTION_001"
    kind = "contention"
    retryable = True


class CapacityExceededError(ContentionError):
    error_code = "PURCHASE_002"
    user_message = "sold out"


class ConcurrentUpdateError(ContentionError):
    """Every compare-and-swap attempt lost its race against other purchasers."""

    error_code = "CONTENTION_002"


# --- integrity --------------------------------------------------------------


class DrawIntegrityError(LotteryError):
    error_code = "INTEGRITY_001"
    kind = "integrity"


class DrawVerificationMismatch(DrawIntegrityError):
    error_code = "INTEGRITY_002"

    def __init__(self, message: str, *, report: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.report = report


class PeriodCodeExhaustedError(LotteryError):
    error_code = "INTEGRITY_003"
    kind = "integrity"


class AlgorithmConfigurationError(LotteryError):
    """No usable (active and default) draw algorithm is configured."""

    error_code = "CONFIG_001"
    kind = "integrity"


# --- transient --------------------------------------------------------------


class TransientError(LotteryError):
    error_code = "TRANSIENT_001"
    kind = "transient"
    retryable = True


class TransientStorageError(TransientError):
    error_code = "TRANSIENT_002"


class FulfillmentError(TransientError):
    error_code = "TRANSIENT_003"


__all__ = [
    "AlgorithmConfigurationError",
    "AlgorithmNotFoundError",
    "CapacityExceededError",
    "ConcurrentUpdateError",
    "ContentionError",
    "DrawIntegrityError",
    "DrawRefusedError",
    "DrawVerificationMismatch",
    "FulfillmentError",
    "InvalidQuantityError",
    "InvalidRoundConfigurationError",
    "LotteryError",
    "PerUserLimitExceededError",
    "PeriodCodeExhaustedError",
    "PlayerNotFoundError",
    "RoundAlreadyDrawnError",
    "RoundNotActiveError",
    "RoundNotFoundError",
    "RoundOnHoldError",
    "RoundStateError",
    "TransientError",
    "TransientStorageError",
    "ValidationError",
]
