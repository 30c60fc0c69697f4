"""Persisted selection of the draw algorithm used for new draws."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from luckyshare.errors import (
    AlgorithmConfigurationError,
    AlgorithmNotFoundError,
    ValidationError,
)
from luckyshare.models.draw import DrawAlgorithmConfig

from .algorithms import (
    DEFAULT_ALGORITHM_KEY,
    DEFAULT_ALGORITHM_REGISTRY,
    AlgorithmRegistry,
    DrawComputation,
    DrawSnapshot,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlgorithmSelection:
    """Algorithm chosen for one draw, frozen at the moment of selection.

    Stored on the draw result so later configuration changes never alter how
    a past round is verified.
    """

    name: str
    version: int
    config: Dict[str, Any] = field(default_factory=dict)


class DrawAlgorithmRegistry:
    """Combine code-registered algorithms with their configuration rows.

    Parameters
    ----------
    session : Session
        Session used to read and update ``draw_algorithms``. The caller owns
        the transaction.
    algorithms : AlgorithmRegistry, optional
        In-code algorithm definitions. Defaults to
        :data:`~luckyshare.draw.algorithms.DEFAULT_ALGORITHM_REGISTRY`.
    """

    def __init__(
        self,
        session: Session,
        *,
        algorithms: Optional[AlgorithmRegistry] = None,
    ) -> None:
        self._session = session
        self.algorithms = algorithms or DEFAULT_ALGORITHM_REGISTRY

    def ensure_builtin_algorithms(self) -> list[DrawAlgorithmConfig]:
        """Create configuration rows for code-registered algorithms lacking one.

        The ``timestamp_sum_mod`` row is created active and default when no
        default exists yet; every other new row starts inactive.
        """
        created = []
        has_default = DrawAlgorithmConfig.get_default(self._session) is not None
        for key, algorithm in sorted(self.algorithms.available_algorithms().items()):
            if DrawAlgorithmConfig.get_by_name(self._session, key) is not None:
                continue
            make_default = key == DEFAULT_ALGORITHM_KEY and not has_default
            row = DrawAlgorithmConfig(
                name=key,
                display_name=algorithm.display_name,
                description=algorithm.description,
                formula=algorithm.formula,
                is_active=make_default,
                is_default=make_default,
            )
            self._session.add(row)
            created.append(row)
            logger.info(f"Registered draw algorithm configuration '{key}'")
        self._session.flush()
        return created

    def list_algorithms(self, *, active_only: bool = False) -> list[DrawAlgorithmConfig]:
        stmt = select(DrawAlgorithmConfig).order_by(DrawAlgorithmConfig.name)
        if active_only:
            stmt = stmt.where(DrawAlgorithmConfig.is_active.is_(True))
        return list(self._session.scalars(stmt.execution_options(populate_existing=True)))

    def get_config(self, name: str) -> DrawAlgorithmConfig:
        """Return the row for ``name``, re-read so bulk default switches are visible."""
        row = self._session.scalar(
            select(DrawAlgorithmConfig)
            .where(DrawAlgorithmConfig.name == name)
            .execution_options(populate_existing=True)
        )
        if row is None:
            raise AlgorithmNotFoundError(
                f"No configuration for draw algorithm '{name}'", details={"algorithm": name}
            )
        return row

    def register_config(
        self,
        name: str,
        *,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        formula: Optional[str] = None,
        config: Optional[Mapping[str, Any]] = None,
        is_active: bool = False,
    ) -> DrawAlgorithmConfig:
        """Create the configuration row for a code-registered algorithm."""
        algorithm = self.algorithms.get(name)
        if DrawAlgorithmConfig.get_by_name(self._session, name) is not None:
            raise ValidationError(f"Draw algorithm '{name}' is already configured")
        row = DrawAlgorithmConfig(
            name=name,
            display_name=display_name or algorithm.display_name,
            description=description or algorithm.description,
            formula=formula or algorithm.formula,
            config=dict(config or {}),
            is_active=is_active,
        )
        self._session.add(row)
        self._session.flush()
        logger.info(f"Configured draw algorithm '{name}' (active={is_active})")
        return row

    def set_active(self, name: str, active: bool) -> DrawAlgorithmConfig:
        """Enable or disable ``name``. The default algorithm cannot be disabled."""
        row = self.get_config(name)
        if not active and row.is_default:
            raise ValidationError(
                f"Draw algorithm '{name}' is the default; select another default first"
            )
        if active:
            self.algorithms.get(name)
        row.is_active = active
        self._session.flush()
        logger.info(f"Draw algorithm '{name}' active={active}")
        return row

    def select_default(self, name: str) -> DrawAlgorithmConfig:
        """Make ``name`` the single default algorithm for new draws."""
        row = self.get_config(name)
        self.algorithms.get(name)
        if not row.is_active:
            raise ValidationError(f"Draw algorithm '{name}' must be active to become default")
        if row.is_default:
            return row
        # clear the old default first so the partial unique index never sees two
        self._session.execute(
            update(DrawAlgorithmConfig)
            .where(DrawAlgorithmConfig.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )
        self._session.execute(
            update(DrawAlgorithmConfig)
            .where(DrawAlgorithmConfig.id == row.id)
            .values(is_default=True)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Default draw algorithm is now '{name}'")
        return self.get_config(name)

    def update_config(self, name: str, config: Mapping[str, Any]) -> DrawAlgorithmConfig:
        """Replace the configuration blob of ``name`` and bump its version."""
        row = self.get_config(name)
        row.config = dict(config)
        row.version = (row.version or 0) + 1
        self._session.flush()
        logger.info(f"Draw algorithm '{name}' configuration updated to version {row.version}")
        return row

    def get_active(self) -> AlgorithmSelection:
        """Return the active default algorithm for a new draw.

        Raises
        ------
        AlgorithmConfigurationError
            When no default exists, it is inactive, or its code is not
            registered in this process.
        """
        row = DrawAlgorithmConfig.get_default(self._session)
        if row is None:
            raise AlgorithmConfigurationError("No default draw algorithm is configured")
        if not row.is_active:
            raise AlgorithmConfigurationError(
                f"Default draw algorithm '{row.name}' is not active"
            )
        if row.name not in self.algorithms:
            raise AlgorithmConfigurationError(
                f"Default draw algorithm '{row.name}' has no registered implementation"
            )
        return AlgorithmSelection(
            name=row.name, version=row.version, config=dict(row.config or {})
        )

    def compute(self, selection: AlgorithmSelection, snapshot: DrawSnapshot) -> DrawComputation:
        """Run ``selection`` on ``snapshot``; a pure call with no database access."""
        if dict(snapshot.config) != selection.config:
            snapshot = DrawSnapshot(
                round_id=snapshot.round_id, tickets=snapshot.tickets, config=selection.config
            )
        return self.algorithms.compute(selection.name, snapshot)


__all__ = ["AlgorithmSelection", "DrawAlgorithmRegistry"]
