from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .base import Base
from .column_types import ID_TYPE

if TYPE_CHECKING:
    from .round import LotteryRound


class HandoffStatus:
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"


class PrizeHandoff(Base):
    """Outbox row tracking delivery of a winning ticket to fulfillment.

    Written in the draw transaction and delivered after it commits, so the
    network call never runs while the round row is locked.
    """

    __tablename__ = "prize_handoffs"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, index=True, autoincrement=True)
    round_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("lottery_rounds.id"), nullable=False
    )
    winning_ticket_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("tickets.id"), nullable=False
    )
    winner_player_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("players.id"), nullable=False
    )
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=HandoffStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    round: Mapped["LotteryRound"] = relationship(back_populates="handoff")

    __table_args__ = (
        UniqueConstraint("round_id", name="uq_prize_handoffs_round_id"),
        UniqueConstraint("idempotency_key", name="uq_prize_handoffs_idempotency_key"),
        CheckConstraint("status IN ('pending','acknowledged')", name="status_enum"),
        Index("ix_prize_handoffs_status_next", "status", "next_attempt_at"),
    )

    def __init__(
        self,
        *,
        round_id: int,
        winning_ticket_id: int,
        winner_player_id: int,
    ) -> None:
        self.round_id = round_id
        self.winning_ticket_id = winning_ticket_id
        self.winner_player_id = winner_player_id
        self.idempotency_key = self.key_for_round(round_id)
        self.status = HandoffStatus.PENDING
        self.attempts = 0

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<PrizeHandoff(round_id={self.round_id}, status='{self.status}', "
            f"attempts={self.attempts})>"
        )

    @staticmethod
    def key_for_round(round_id: int) -> str:
        return f"round-{round_id}"

    @classmethod
    def get_for_round(cls, session: Session, round_id: int) -> Optional["PrizeHandoff"]:
        stmt = (
            select(cls)
            .where(cls.round_id == round_id)
            .execution_options(populate_existing=True)
        )
        return session.scalar(stmt)
