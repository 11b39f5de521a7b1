"""
Reconciliation background worker.

Sweeps settlements whose payout outcome is unknown at a fixed interval and
resolves them against the gateway's payout records.
"""
import argparse
import asyncio
import signal
from typing import Any, Optional

import structlog

from ..config import Settings, get_settings
from ..core.payout_orchestrator import PayoutOrchestrator
from ..core.reconciliation import ReconciliationEngine, ReconciliationReport
from ..database.connection import close_db, get_session_factory
from ..integrations.razorpayx_client import RazorpayXClient
from ..monitoring.logging import bind_run_context, setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation(engine: ReconciliationEngine) -> ReconciliationReport:
    """Run one sweep, alerting on attempts that remain unresolved."""
    bind_run_context("reconciliation_worker")
    report = await engine.reconcile_pending()
    if report.unresolved:
        logger.warning(
            "reconciliation_unresolved_settlements",
            settlement_ids=report.unresolved,
        )
    return report


async def start_reconciliation_worker(
    settings: Optional[Settings] = None, once: bool = False
) -> None:
    """
    Start the reconciliation worker.

    Args:
        settings: Application settings (defaults to environment)
        once: Run a single sweep and exit
    """
    settings = settings or get_settings()
    setup_logging(settings)

    logger.info(
        "reconciliation_worker_starting",
        interval_seconds=settings.reconciliation_interval_seconds,
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    session_factory = get_session_factory()
    async with RazorpayXClient(settings) as gateway:
        orchestrator = PayoutOrchestrator(
            session_factory, gateway, default_transfer_mode=settings.default_transfer_mode
        )
        engine = ReconciliationEngine(session_factory, gateway, orchestrator)
        try:
            while running:
                try:
                    await run_reconciliation(engine)
                except Exception as e:
                    # Continue running even if one sweep fails
                    logger.error("reconciliation_execution_error", error=str(e))

                if once:
                    break

                remaining = settings.reconciliation_interval_seconds
                while remaining > 0 and running:
                    sleep_time = min(remaining, 60)
                    await asyncio.sleep(sleep_time)
                    remaining -= sleep_time
        finally:
            await close_db()
            logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Payout reconciliation worker")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(once=args.once))


if __name__ == "__main__":
    main()
