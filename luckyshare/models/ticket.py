from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from luckyshare.db.utils import epoch_millis

from .base import Base
from .column_types import ID_TYPE

if TYPE_CHECKING:
    from .player import Player
    from .round import LotteryRound


class RefundStatus:
    NONE = "none"
    REFUNDABLE = "refundable"
    REFUNDED = "refunded"


class Ticket(Base):
    """One share of a lottery round, owned by exactly one player.

    ``timestamp_ms`` is the purchase moment as integer epoch milliseconds;
    it is the value the draw algorithms sum, so it is fixed at insert time
    and never rewritten.
    """

    __tablename__ = "tickets"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    round_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("lottery_rounds.id"), nullable=False
    )
    ticket_number: Mapped[int] = mapped_column(Integer, nullable=False)
    player_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("players.id"), nullable=False, index=True
    )
    purchase_ref: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    """Groups the tickets issued by one purchase request."""

    purchased_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    timestamp_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refund_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=RefundStatus.NONE
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    round: Mapped["LotteryRound"] = relationship(back_populates="tickets")
    player: Mapped["Player"] = relationship(back_populates="tickets")

    __table_args__ = (
        UniqueConstraint("round_id", "ticket_number", name="uq_tickets_round_number"),
        CheckConstraint("ticket_number >= 1", name="ticket_number_positive"),
        CheckConstraint(
            "refund_status IN ('none','refundable','refunded')", name="refund_status_enum"
        ),
        Index("ix_tickets_round_player", "round_id", "player_id"),
    )

    def __init__(
        self,
        *,
        round_id: int,
        ticket_number: int,
        player_id: int,
        purchased_at: datetime,
        purchase_ref: str,
        timestamp_ms: Optional[int] = None,
    ) -> None:
        self.round_id = round_id
        self.ticket_number = ticket_number
        self.player_id = player_id
        self.purchased_at = purchased_at
        self.purchase_ref = purchase_ref
        self.timestamp_ms = timestamp_ms if timestamp_ms is not None else epoch_millis(purchased_at)
        self.refund_status = RefundStatus.NONE

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<Ticket(id={self.id}, round_id={self.round_id}, "
            f"number={self.ticket_number}, player_id={self.player_id})>"
        )

    @classmethod
    def for_round(cls, session: Session, round_id: int) -> list["Ticket"]:
        """Return every ticket of ``round_id`` ordered by ticket number."""

        stmt = (
            select(cls)
            .where(cls.round_id == round_id)
            .order_by(cls.ticket_number)
            .execution_options(populate_existing=True)
        )
        return list(session.scalars(stmt))

    @classmethod
    def get_by_number(
        cls, session: Session, round_id: int, ticket_number: int
    ) -> Optional["Ticket"]:
        return session.scalar(
            select(cls).where(cls.round_id == round_id, cls.ticket_number == ticket_number)
        )
