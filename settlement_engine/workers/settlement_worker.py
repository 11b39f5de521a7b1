"""
Weekly settlement background worker.

Aggregates the previous operating-timezone week once a week, at the
configured weekday and hour (e.g., Monday 2 AM). Re-running a week is safe:
the upsert converges to the same ledger.
"""
import argparse
import asyncio
import signal
from datetime import date, datetime, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..core.aggregator import SettlementAggregator
from ..core.order_ledger import OrderLedger
from ..core.settlement_store import SettlementStore, WeekUpsertResult
from ..core.week_calculator import previous_week, week_range_for
from ..database.connection import close_db, get_session_factory
from ..monitoring.logging import bind_run_context, setup_logging

logger = structlog.get_logger(__name__)


def build_settlement_store(
    settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> SettlementStore:
    """Wire a settlement store from configuration."""
    ledger = OrderLedger(settings.timezone)
    aggregator = SettlementAggregator(ledger, settings.commission_rate)
    return SettlementStore(session_factory, aggregator, due_days=settings.settlement_due_days)


def seconds_until_next_run(now: datetime, weekday: int, hour: int) -> float:
    """
    Seconds from ``now`` until the next weekly run.

    Args:
        now: Timezone-aware current time in the operating timezone
        weekday: Run weekday (0=Monday)
        hour: Run hour (24-hour format)

    Returns:
        float: Seconds until next run
    """
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    next_run += timedelta(days=(weekday - now.weekday()) % 7)
    if next_run <= now:
        next_run += timedelta(days=7)
    return (next_run - now).total_seconds()


async def run_weekly_settlement(
    store: SettlementStore, settings: Settings, week_of: Optional[date] = None
) -> WeekUpsertResult:
    """
    Aggregate one week: the week containing ``week_of``, or the previous week.
    """
    week = week_range_for(week_of) if week_of else previous_week(settings.timezone)
    bind_run_context("settlement_worker", year_week=week.year_week)
    logger.info("weekly_settlement_started", year_week=week.year_week)

    result = await store.upsert_week(week)

    if result.late_orders:
        logger.warning(
            "weekly_settlement_late_orders",
            year_week=week.year_week,
            settlements=sorted(result.late_orders),
        )
    return result


async def start_settlement_worker(settings: Optional[Settings] = None) -> None:
    """
    Start the weekly settlement worker.

    Args:
        settings: Application settings (defaults to environment)
    """
    settings = settings or get_settings()
    setup_logging(settings)
    store = build_settlement_store(settings, get_session_factory())

    logger.info(
        "settlement_worker_starting",
        weekday=settings.settlement_run_weekday,
        hour=settings.settlement_run_hour,
        timezone=settings.operating_timezone,
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("settlement_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            seconds_until = seconds_until_next_run(
                datetime.now(settings.timezone),
                settings.settlement_run_weekday,
                settings.settlement_run_hour,
            )
            logger.info("settlement_next_run_scheduled", seconds_until=seconds_until)

            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await run_weekly_settlement(store, settings)
            except Exception as e:
                logger.error("weekly_settlement_failed", error=str(e), error_type=type(e).__name__)
    finally:
        await close_db()
        logger.info("settlement_worker_stopped")


async def _run_once(week_of: Optional[date]) -> None:
    settings = get_settings()
    setup_logging(settings)
    try:
        store = build_settlement_store(settings, get_session_factory())
        await run_weekly_settlement(store, settings, week_of)
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Weekly settlement worker")
    parser.add_argument(
        "--once", action="store_true", help="Aggregate a single week and exit"
    )
    parser.add_argument(
        "--week-of",
        type=date.fromisoformat,
        default=None,
        help="Any date (YYYY-MM-DD) inside the week to aggregate; implies --once",
    )
    args = parser.parse_args()

    if args.once or args.week_of:
        asyncio.run(_run_once(args.week_of))
    else:
        asyncio.run(start_settlement_worker())


if __name__ == "__main__":
    main()
