"""Database models for draw configuration and draw results."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
    select,
    text,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from luckyshare.db.utils import dt_iso
from luckyshare.errors import DrawIntegrityError

from .base import Base
from .column_types import ID_TYPE

if TYPE_CHECKING:
    from .round import LotteryRound


class DrawAlgorithmConfig(Base):
    """Operator-managed configuration record for one draw algorithm.

    The code behind ``name`` lives in :mod:`luckyshare.draw.algorithms`; this
    row decides whether it may be used and carries its configuration blob.
    ``version`` is bumped on every configuration change and snapshotted into
    each :class:`DrawResult`.
    """

    __tablename__ = "draw_algorithms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    """Primary key."""

    name: Mapped[str] = mapped_column(String(64), nullable=False)
    """Machine name matching a registered algorithm key."""

    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    formula: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    """Human readable formula shown next to published results."""

    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    is_default: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

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

    __table_args__ = (
        UniqueConstraint("name", name="uq_draw_algorithms_name"),
        # at most one default algorithm
        Index(
            "uq_draw_algorithms_single_default",
            "is_default",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
        CheckConstraint("version >= 1", name="version_positive"),
        CheckConstraint("NOT is_default OR is_active", name="default_is_active"),
    )

    def __init__(
        self,
        *,
        name: str,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        formula: Optional[str] = None,
        is_active: bool = False,
        is_default: bool = False,
        config: Optional[dict] = None,
    ) -> None:
        self.name = name
        self.display_name = display_name
        self.description = description
        self.formula = formula
        self.is_active = is_active
        self.is_default = is_default
        self.config = dict(config or {})
        self.version = 1

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<DrawAlgorithmConfig(name='{self.name}', active={self.is_active}, "
            f"default={self.is_default}, version={self.version})>"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "formula": self.formula,
            "is_active": self.is_active,
            "is_default": self.is_default,
            "config": dict(self.config or {}),
            "version": self.version,
        }

    @classmethod
    def get_by_name(cls, session: Session, name: str) -> Optional["DrawAlgorithmConfig"]:
        return session.scalar(select(cls).where(cls.name == name))

    @classmethod
    def get_default(cls, session: Session) -> Optional["DrawAlgorithmConfig"]:
        """Return the configuration flagged as default, if one exists."""

        stmt = (
            select(cls)
            .where(cls.is_default.is_(True))
            .execution_options(populate_existing=True)
        )
        return session.scalar(stmt)


class DrawTrigger:
    SOLD_OUT = "sold_out"
    FORCED = "forced"


class DrawResult(Base):
    """The one and only draw outcome of a round.

    Rows are written once, in the transaction that moves the round to
    ``DRAWN``, and rejected on any later update or delete. Everything needed
    to recompute the winning number is stored alongside it.
    """

    __tablename__ = "draw_results"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    round_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("lottery_rounds.id"), nullable=False
    )
    algorithm_name: Mapped[str] = mapped_column(String(64), nullable=False)
    algorithm_version: Mapped[int] = mapped_column(Integer, nullable=False)
    algorithm_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    """Configuration blob in force when the round was drawn."""

    winning_number: Mapped[int] = mapped_column(Integer, nullable=False)
    winning_ticket_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("tickets.id"), nullable=False
    )
    winner_player_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("players.id"), nullable=False
    )
    timestamp_sum: Mapped[str] = mapped_column(String(64), nullable=False)
    """Sum of ticket timestamps as a decimal string; may exceed 64 bits."""

    share_count: Mapped[int] = mapped_column(Integer, nullable=False)
    """Shares sold when the draw ran (``N`` in the formula)."""

    input_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    calculation_steps: Mapped[list] = mapped_column(JSON, nullable=False)
    draw_trigger: Mapped[str] = mapped_column(String(16), nullable=False)
    forced_by_admin_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("admins.id", ondelete="SET NULL"), nullable=True
    )
    drawn_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    round: Mapped["LotteryRound"] = relationship(back_populates="draw_result")

    __table_args__ = (
        UniqueConstraint("round_id", name="uq_draw_results_round_id"),
        CheckConstraint("draw_trigger IN ('sold_out','forced')", name="trigger_enum"),
        CheckConstraint("winning_number >= 1", name="winning_number_positive"),
        CheckConstraint(
            "winning_number <= share_count", name="winning_number_in_range"
        ),
    )

    def __init__(
        self,
        *,
        round_id: int,
        algorithm_name: str,
        algorithm_version: int,
        algorithm_config: Optional[dict],
        winning_number: int,
        winning_ticket_id: int,
        winner_player_id: int,
        timestamp_sum: int,
        share_count: int,
        input_data: dict,
        calculation_steps: list,
        draw_trigger: str,
        drawn_at: datetime,
        forced_by_admin_id: Optional[int] = None,
    ) -> None:
        self.round_id = round_id
        self.algorithm_name = algorithm_name
        self.algorithm_version = algorithm_version
        self.algorithm_config = dict(algorithm_config or {})
        self.winning_number = winning_number
        self.winning_ticket_id = winning_ticket_id
        self.winner_player_id = winner_player_id
        self.timestamp_sum = str(timestamp_sum)
        self.share_count = share_count
        self.input_data = input_data
        self.calculation_steps = list(calculation_steps)
        self.draw_trigger = draw_trigger
        self.drawn_at = drawn_at
        self.forced_by_admin_id = forced_by_admin_id

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<DrawResult(round_id={self.round_id}, algorithm='{self.algorithm_name}', "
            f"winning_number={self.winning_number})>"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "round_id": self.round_id,
            "algorithm_name": self.algorithm_name,
            "algorithm_version": self.algorithm_version,
            "algorithm_config": dict(self.algorithm_config or {}),
            "winning_number": self.winning_number,
            "winning_ticket_id": self.winning_ticket_id,
            "winner_player_id": self.winner_player_id,
            "timestamp_sum": self.timestamp_sum,
            "share_count": self.share_count,
            "input_data": self.input_data,
            "calculation_steps": list(self.calculation_steps),
            "draw_trigger": self.draw_trigger,
            "forced_by_admin_id": self.forced_by_admin_id,
            "drawn_at": dt_iso(self.drawn_at),
        }

    @classmethod
    def get_for_round(cls, session: Session, round_id: int) -> Optional["DrawResult"]:
        return session.scalar(select(cls).where(cls.round_id == round_id))


@event.listens_for(DrawResult, "before_update")
def _reject_draw_result_update(mapper, connection, target: DrawResult) -> None:
    state = inspect(target)
    changed = [
        attr.key for attr in mapper.column_attrs if state.attrs[attr.key].history.has_changes()
    ]
    if changed:
        raise DrawIntegrityError(
            f"Draw results are immutable; refused update of {', '.join(sorted(changed))}",
            round_id=target.round_id,
        )


@event.listens_for(DrawResult, "before_delete")
def _reject_draw_result_delete(mapper, connection, target: DrawResult) -> None:
    raise DrawIntegrityError("Draw results cannot be deleted", round_id=target.round_id)
