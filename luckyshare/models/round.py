"""Lottery rounds: the pooled prize that shares are sold into."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    select,
    text,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from luckyshare.db.utils import as_utc, dt_iso

from .base import Base
from .column_types import ID_TYPE, MONEY_TYPE

if TYPE_CHECKING:
    from .audit import RoundEvent
    from .draw import DrawResult
    from .handoff import PrizeHandoff
    from .ticket import Ticket


class RoundStatus:
    """String values stored in ``lottery_rounds.status``."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    DRAWN = "DRAWN"
    CANCELLED = "CANCELLED"

    ALL = (PENDING, ACTIVE, DRAWN, CANCELLED)
    TERMINAL = (DRAWN, CANCELLED)


SUPPORTED_CURRENCIES = ("CNY", "USD", "EUR", "VND", "TJS")


@dataclass(frozen=True)
class PurchaseLimit:
    """Per-player share cap for a round.

    ``maximum=None`` means the round does not limit how many shares a single
    player may hold.
    """

    maximum: Optional[int] = None

    def __post_init__(self) -> None:
        if self.maximum is None:
            return
        if isinstance(self.maximum, bool) or not isinstance(self.maximum, int):
            raise ValueError("PurchaseLimit.maximum must be an integer or None")
        if self.maximum < 1:
            raise ValueError("PurchaseLimit.maximum must be at least 1")

    @classmethod
    def unlimited(cls) -> "PurchaseLimit":
        return cls(None)

    @property
    def is_unlimited(self) -> bool:
        return self.maximum is None

    def remaining(self, already_owned: int) -> Optional[int]:
        """Shares the player may still buy, or ``None`` when unlimited."""
        if self.maximum is None:
            return None
        return max(self.maximum - already_owned, 0)

    def allows(self, already_owned: int, requested: int) -> bool:
        if self.maximum is None:
            return True
        return already_owned + requested <= self.maximum


class LotteryRound(Base):
    """A round selling ``total_shares`` fixed-price shares into one prize.

    ``sold_shares`` is only written by the ticket ledger through a
    compare-and-swap update and the draw fields only by the lifecycle
    controller; application code should treat loaded instances as read-only
    views and reload them after those operations.
    """

    __tablename__ = "lottery_rounds"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    """Primary key."""

    period_code: Mapped[str] = mapped_column(String(32), nullable=False)
    """Public, hard-to-guess label of the round. Has no bearing on the draw."""

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    price_per_share: Mapped[Decimal] = mapped_column(MONEY_TYPE, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CNY")
    total_shares: Mapped[int] = mapped_column(Integer, nullable=False)
    sold_shares: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    max_per_user: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Per-player cap; NULL means unlimited."""

    full_purchase_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    full_purchase_price: Mapped[Optional[Decimal]] = mapped_column(MONEY_TYPE, nullable=True)
    """Price for buying the prize outright. Does not consume share inventory."""

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=RoundStatus.PENDING, index=True
    )
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    draw_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    """Scheduled draw moment: nominal at creation, sell-out time plus delay afterwards."""

    sold_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    drawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    integrity_hold: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    """Set when automated processing must stop until an operator intervenes."""

    hold_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by_admin_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("admins.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    tickets: Mapped[list["Ticket"]] = relationship(
        back_populates="round", order_by="Ticket.ticket_number"
    )
    draw_result: Mapped[Optional["DrawResult"]] = relationship(
        back_populates="round", uselist=False
    )
    handoff: Mapped[Optional["PrizeHandoff"]] = relationship(
        back_populates="round", uselist=False
    )
    events: Mapped[list["RoundEvent"]] = relationship(
        back_populates="round", order_by="RoundEvent.id"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING','ACTIVE','DRAWN','CANCELLED')", name="status_enum"
        ),
        CheckConstraint(
            "currency IN ('CNY','USD','EUR','VND','TJS')", name="currency_enum"
        ),
        CheckConstraint("total_shares > 0", name="total_shares_positive"),
        CheckConstraint(
            "sold_shares >= 0 AND sold_shares <= total_shares", name="sold_shares_range"
        ),
        CheckConstraint(
            "max_per_user IS NULL OR max_per_user > 0", name="max_per_user_positive"
        ),
        CheckConstraint("price_per_share > 0", name="price_positive"),
        Index("uq_lottery_rounds_period_code", "period_code", unique=True),
        Index("ix_lottery_rounds_draw_due", "status", "draw_time"),
    )

    def __init__(
        self,
        *,
        period_code: str,
        title: str,
        price_per_share: Decimal,
        total_shares: int,
        start_time: datetime,
        end_time: datetime,
        currency: str = "CNY",
        purchase_limit: Optional[PurchaseLimit] = None,
        description: Optional[str] = None,
        full_purchase_enabled: bool = False,
        full_purchase_price: Optional[Decimal] = None,
        status: str = RoundStatus.PENDING,
        draw_time: Optional[datetime] = None,
        created_by_admin_id: Optional[int] = None,
    ) -> None:
        self.period_code = period_code
        self.title = title
        self.description = description
        self.price_per_share = price_per_share
        self.currency = currency
        self.total_shares = total_shares
        self.sold_shares = 0
        self.purchase_limit = purchase_limit or PurchaseLimit.unlimited()
        self.full_purchase_enabled = full_purchase_enabled
        self.full_purchase_price = full_purchase_price
        self.status = status
        self.start_time = start_time
        self.end_time = end_time
        self.draw_time = draw_time
        self.integrity_hold = False
        self.created_by_admin_id = created_by_admin_id

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<LotteryRound(id={self.id}, period_code='{self.period_code}', "
            f"status='{self.status}', sold={self.sold_shares}/{self.total_shares})>"
        )

    @property
    def purchase_limit(self) -> PurchaseLimit:
        return PurchaseLimit(self.max_per_user)

    @purchase_limit.setter
    def purchase_limit(self, value: PurchaseLimit) -> None:
        self.max_per_user = value.maximum

    @property
    def remaining_shares(self) -> int:
        return self.total_shares - (self.sold_shares or 0)

    @property
    def progress(self) -> float:
        """Sold fraction in ``[0, 1]``."""
        if not self.total_shares:
            return 0.0
        return (self.sold_shares or 0) / self.total_shares

    @property
    def is_sold_out(self) -> bool:
        return self.remaining_shares == 0

    @property
    def winning_ticket_id(self) -> Optional[int]:
        return self.draw_result.winning_ticket_id if self.draw_result is not None else None

    def is_open_for_sale(self, now: datetime) -> bool:
        """Return True when a purchase at ``now`` could be accepted."""
        return (
            self.status == RoundStatus.ACTIVE
            and not self.integrity_hold
            and as_utc(now) <= as_utc(self.end_time)
            and self.remaining_shares > 0
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "period_code": self.period_code,
            "title": self.title,
            "price_per_share": str(self.price_per_share),
            "currency": self.currency,
            "total_shares": self.total_shares,
            "sold_shares": self.sold_shares,
            "remaining_shares": self.remaining_shares,
            "max_per_user": self.max_per_user,
            "full_purchase_enabled": self.full_purchase_enabled,
            "full_purchase_price": (
                str(self.full_purchase_price) if self.full_purchase_price is not None else None
            ),
            "status": self.status,
            "start_time": dt_iso(self.start_time),
            "end_time": dt_iso(self.end_time),
            "draw_time": dt_iso(self.draw_time),
            "sold_out_at": dt_iso(self.sold_out_at),
            "drawn_at": dt_iso(self.drawn_at),
            "integrity_hold": self.integrity_hold,
        }

    @classmethod
    def get_by_period_code(cls, session: Session, period_code: str) -> Optional["LotteryRound"]:
        """Return the round carrying ``period_code`` if any."""

        return session.scalar(select(cls).where(cls.period_code == period_code))

    @classmethod
    def load_fresh(cls, session: Session, round_id: int) -> Optional["LotteryRound"]:
        """Load ``round_id`` overwriting any stale state held by the session.

        Compare-and-swap updates bypass the identity map, so every decision
        based on ``status`` or ``sold_shares`` must start from this read.
        """

        stmt = (
            select(cls)
            .where(cls.id == round_id)
            .execution_options(populate_existing=True)
        )
        return session.scalar(stmt)
