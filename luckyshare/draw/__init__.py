"""Draw & allocation engine: ticket issuance, round lifecycle and verifiable draws."""

from .algorithms import (
    AlgorithmRegistry,
    DEFAULT_ALGORITHM_REGISTRY,
    DrawAlgorithm,
    DrawComputation,
    DrawSnapshot,
    TicketEntry,
)
from .ledger import TicketLedger
from .lifecycle import RoundLifecycleController
from .period_code import PeriodCodeGenerator, validate_period_code
from .registry import AlgorithmSelection, DrawAlgorithmRegistry
from .verifier import DrawVerifier, VerificationReport

__all__ = [
    "AlgorithmRegistry",
    "AlgorithmSelection",
    "DEFAULT_ALGORITHM_REGISTRY",
    "DrawAlgorithm",
    "DrawAlgorithmRegistry",
    "DrawComputation",
    "DrawSnapshot",
    "DrawVerifier",
    "PeriodCodeGenerator",
    "RoundLifecycleController",
    "TicketEntry",
    "TicketLedger",
    "VerificationReport",
    "validate_period_code",
]
