"""Runtime settings and logging setup for the draw engine."""

from __future__ import annotations

import logging.config
import os
import sys
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable '{name}' must be an integer, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"Environment variable '{name}' must not be negative")
    return value


@dataclass(frozen=True)
class EngineSettings:
    """Settings consumed by the ledger, lifecycle controller and scripts.

    Attributes
    ----------
    db_url : str
        SQLAlchemy database URL. Relative SQLite paths are resolved by
        :func:`luckyshare.db.engine.make_engine`.
    draw_delay_seconds : int
        Countdown between a round selling out and its automatic draw.
    period_code_max_attempts : int
        How many freshly generated period codes are tried before giving up.
    purchase_max_attempts : int
        Compare-and-swap retries a single purchase may spend on lost races.
    max_tickets_per_purchase : int
        Upper bound on ``quantity`` for a single purchase request.
    fulfillment_base_url : Optional[str]
        Base URL of the prize fulfillment service.
    fulfillment_api_token : Optional[str]
        Bearer token presented to the fulfillment service.
    fulfillment_timeout : int
        Request timeout (seconds) for the fulfillment service.
    scheduler_interval_seconds : int
        Sleep between two scheduler ticks in ``scripts/run_scheduler.py``.
    log_level : str
        Root log level used by :func:`configure_logging`.
    """

    db_url: str = "sqlite:///./dev.db"
    draw_delay_seconds: int = 180
    period_code_max_attempts: int = 5
    purchase_max_attempts: int = 10
    max_tickets_per_purchase: int = 1000
    fulfillment_base_url: Optional[str] = None
    fulfillment_api_token: Optional[str] = None
    fulfillment_timeout: int = 30
    scheduler_interval_seconds: int = 5
    log_level: str = "INFO"


def load_settings() -> EngineSettings:
    """Build :class:`EngineSettings` from the environment (and ``.env``)."""
    load_dotenv()
    defaults = EngineSettings()
    return EngineSettings(
        db_url=os.getenv("DB_URL", defaults.db_url),
        draw_delay_seconds=_int_env("DRAW_DELAY_SECONDS", defaults.draw_delay_seconds),
        period_code_max_attempts=max(
            1, _int_env("PERIOD_CODE_MAX_ATTEMPTS", defaults.period_code_max_attempts)
        ),
        purchase_max_attempts=max(
            1, _int_env("PURCHASE_MAX_ATTEMPTS", defaults.purchase_max_attempts)
        ),
        max_tickets_per_purchase=max(
            1, _int_env("MAX_TICKETS_PER_PURCHASE", defaults.max_tickets_per_purchase)
        ),
        fulfillment_base_url=os.getenv("FULFILLMENT_BASE_URL") or None,
        fulfillment_api_token=os.getenv("FULFILLMENT_API_TOKEN") or None,
        fulfillment_timeout=_int_env("FULFILLMENT_TIMEOUT", defaults.fulfillment_timeout),
        scheduler_interval_seconds=max(
            1, _int_env("SCHEDULER_INTERVAL_SECONDS", defaults.scheduler_interval_seconds)
        ),
        log_level=(os.getenv("LOG_LEVEL") or defaults.log_level).upper(),
    )


def configure_logging(log_level: Optional[str] = None) -> None:
    """Apply a console logging configuration for scripts and workers."""
    level = (log_level or load_settings().log_level).upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "simple": {
                    "format": "%(asctime)s | %(levelname)-8s | %(name)-28s | %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "formatter": "simple",
                    "class": "logging.StreamHandler",
                    "stream": sys.stdout,
                },
            },
            "loggers": {
                "": {"handlers": ["console"], "level": level},
                # SQL echo is controlled by make_engine(echo=...)
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )


__all__ = ["EngineSettings", "configure_logging", "load_settings"]
