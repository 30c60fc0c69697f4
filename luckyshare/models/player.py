from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, String, func, select
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .base import Base
from .column_types import ID_TYPE

if TYPE_CHECKING:
    from .ticket import Ticket


class Player(Base):
    """A user who buys shares in lottery rounds."""

    def __init__(
        self,
        external_id: str,
        nickname: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ):
        """Create a new :class:`Player` record.

        Parameters
        ----------
        external_id : str
            Identifier of the user in the account service that owns logins.
        nickname : str, optional
            Display name shown next to winning tickets.
        created_at : datetime, optional
            Explicit creation timestamp.
        """

        self.external_id = external_id
        self.nickname = nickname
        if created_at is not None:
            self.created_at = created_at

    __tablename__ = "players"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    nickname: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    tickets: Mapped[list["Ticket"]] = relationship(back_populates="player")

    def __repr__(self) -> str:
        return (
            f"<Player(id={self.id}, external_id='{self.external_id}', "
            f"nickname='{self.nickname}')>"
        )

    @classmethod
    def get_by_external_id(cls, session: Session, external_id: str) -> Optional["Player"]:
        """Retrieve a player by the account service identifier."""

        return session.scalar(select(cls).where(cls.external_id == external_id))
