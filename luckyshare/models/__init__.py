from .base import Base

# import models so Alembic/autoloaders can discover mappers
from .admin import Admin  # noqa: F401
from .player import Player  # noqa: F401
from .round import (  # noqa: F401
    LotteryRound,
    PurchaseLimit,
    RoundStatus,
    SUPPORTED_CURRENCIES,
)
from .ticket import RefundStatus, Ticket  # noqa: F401
from .draw import DrawAlgorithmConfig, DrawResult, DrawTrigger  # noqa: F401
from .handoff import HandoffStatus, PrizeHandoff  # noqa: F401
from .audit import RoundEvent  # noqa: F401

__all__ = [
    "Base",
    "Admin",
    "Player",
    "LotteryRound",
    "PurchaseLimit",
    "RoundStatus",
    "SUPPORTED_CURRENCIES",
    "RefundStatus",
    "Ticket",
    "DrawAlgorithmConfig",
    "DrawResult",
    "DrawTrigger",
    "HandoffStatus",
    "PrizeHandoff",
    "RoundEvent",
]
