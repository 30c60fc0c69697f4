"""Periodic worker: activate due rounds, run due draws, re-deliver hand-offs."""

import logging
import time

from luckyshare.config import configure_logging, load_settings
from luckyshare.db.engine import get_sessionmaker, make_engine
from luckyshare.errors import LotteryError
from luckyshare.fulfillment.api import FulfillmentClient
from luckyshare.workflows import run_scheduler_tick

logger = logging.getLogger("luckyshare.scheduler")


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)

    Session = get_sessionmaker(make_engine(settings.db_url, sqlite_timeout=30))
    fulfillment = None
    if settings.fulfillment_base_url:
        fulfillment = FulfillmentClient(
            settings.fulfillment_base_url, timeout=settings.fulfillment_timeout
        )
    else:
        logger.warning("FULFILLMENT_BASE_URL is not set; winners will stay pending hand-off")

    logger.info(f"Scheduler started, tick every {settings.scheduler_interval_seconds}s")
    while True:
        try:
            report = run_scheduler_tick(Session, fulfillment=fulfillment)
        except LotteryError as exc:
            logger.error(f"Scheduler tick failed: {exc}")
        else:
            for outcome in report.draws:
                if outcome.error is not None:
                    logger.error(f"Round {outcome.round_id} not drawn: {outcome.error}")
            if report.activated or report.draws or report.handoffs:
                logger.info(
                    f"Tick: {len(report.activated)} activated, {len(report.draws)} draws, "
                    f"{len(report.handoffs)} hand-offs retried"
                )
        time.sleep(settings.scheduler_interval_seconds)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("Scheduler stopped")
