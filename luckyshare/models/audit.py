from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .base import Base
from .column_types import ID_TYPE

if TYPE_CHECKING:
    from .round import LotteryRound


class RoundEvent(Base):
    """Append-only audit log of round state changes and operator actions."""

    __tablename__ = "round_events"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, index=True, autoincrement=True)
    round_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("lottery_rounds.id"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    actor_type: Mapped[str] = mapped_column(String(16), nullable=False, default="system")
    actor_admin_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("admins.id", ondelete="SET NULL"), nullable=True
    )
    actor_player_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("players.id", ondelete="SET NULL"), nullable=True
    )
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )

    round: Mapped["LotteryRound"] = relationship(back_populates="events")

    __table_args__ = (
        CheckConstraint("actor_type IN ('system','admin','player')", name="actor_type_enum"),
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return f"<RoundEvent(round_id={self.round_id}, action='{self.action}')>"

    @classmethod
    def record(
        cls,
        session: Session,
        round_id: int,
        action: str,
        *,
        admin_id: Optional[int] = None,
        player_id: Optional[int] = None,
        details: Optional[dict] = None,
        occurred_at: Optional[datetime] = None,
    ) -> "RoundEvent":
        """Add an event to ``session``; the caller owns the transaction."""

        if admin_id is not None:
            actor_type = "admin"
        elif player_id is not None:
            actor_type = "player"
        else:
            actor_type = "system"
        event = cls(
            round_id=round_id,
            action=action,
            actor_type=actor_type,
            actor_admin_id=admin_id,
            actor_player_id=player_id,
            details=details,
            occurred_at=occurred_at or datetime.now(timezone.utc),
        )
        session.add(event)
        return event
