"""
Reconciliation of payout attempts with an unknown outcome.

A settlement flagged ``needs_reconciliation`` had a payout request whose
result never came back. Its attempt key doubles as the payout
reference_id, so the gateway can be asked whether the payout exists:
- A live payout exists: record it, settlement moves to processing
- Only failed payouts, or none: clear the flag, settlement can be retried
- Gateway unreachable: leave flagged for the next run

Claims that never recorded an outcome (the worker was cancelled or crashed
mid-attempt) are swept in as well once they are older than the grace period.
"""
from datetime import timedelta
from typing import Any, Awaitable, List

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.models import SettlementStatus, WeeklySettlement
from ..integrations.gateway import GatewayError, PayoutGateway
from ..monitoring import metrics
from .events import utcnow
from .exceptions import StateTransitionError
from .payout_orchestrator import REJECTED_PAYOUT_STATUSES, PayoutOrchestrator

logger = structlog.get_logger(__name__)

DEFAULT_MIN_AGE_SECONDS = 300


class ReconciliationReport(BaseModel):
    """Outcome of one reconciliation pass."""

    examined: int = 0
    payout_found: List[int] = Field(default_factory=list)
    cleared: List[int] = Field(default_factory=list)
    stale_claims: List[int] = Field(default_factory=list)
    unresolved: List[int] = Field(default_factory=list)


class ReconciliationEngine:
    """Resolves flagged settlements against the gateway's payout records."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PayoutGateway,
        orchestrator: PayoutOrchestrator,
        min_age_seconds: int = DEFAULT_MIN_AGE_SECONDS,
    ):
        """
        Initialize reconciliation engine.

        Args:
            session_factory: Async session factory
            gateway: Payout gateway adapter
            orchestrator: Applies the resolved transitions
            min_age_seconds: Skip attempts flagged or claimed more recently than this,
                the gateway may still be processing them
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.min_age_seconds = min_age_seconds

    async def _flagged(self) -> List[WeeklySettlement]:
        cutoff = utcnow() - timedelta(seconds=self.min_age_seconds)
        async with self.session_factory() as session:
            stmt = (
                select(WeeklySettlement)
                .where(
                    WeeklySettlement.status == SettlementStatus.PENDING.value,
                    or_(
                        WeeklySettlement.needs_reconciliation.is_(True),
                        WeeklySettlement.payout_attempt_key.is_not(None),
                    ),
                    WeeklySettlement.updated_at <= cutoff,
                )
                .order_by(WeeklySettlement.id)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def count_flagged(self) -> int:
        """Number of settlements currently awaiting reconciliation."""
        async with self.session_factory() as session:
            stmt = select(func.count(WeeklySettlement.id)).where(
                WeeklySettlement.needs_reconciliation.is_(True)
            )
            return int((await session.execute(stmt)).scalar_one())

    async def reconcile_pending(self) -> ReconciliationReport:
        """
        Run one reconciliation pass over flagged settlements.

        Returns:
            ReconciliationReport: What was resolved and what remains
        """
        report = ReconciliationReport()
        for settlement in await self._flagged():
            report.examined += 1
            await self._reconcile_one(settlement, report)

        metrics.settlements_awaiting_reconciliation.set(await self.count_flagged())
        logger.info(
            "reconciliation_completed",
            examined=report.examined,
            payout_found=len(report.payout_found),
            cleared=len(report.cleared),
            stale_claims=len(report.stale_claims),
            unresolved=len(report.unresolved),
        )
        return report

    async def _reconcile_one(self, settlement: WeeklySettlement, report: ReconciliationReport) -> None:
        log = logger.bind(settlement_id=settlement.id, attempt_key=settlement.payout_attempt_key)

        if not settlement.needs_reconciliation:
            flagged = await self.orchestrator.flag_stale_attempt(
                settlement.id,
                settlement.payout_attempt_key,
                f"attempt recorded no outcome within {self.min_age_seconds}s",
            )
            if not flagged:
                log.info("stale_claim_resolved_meanwhile")
                return
            report.stale_claims.append(settlement.id)

        if not settlement.payout_attempt_key:
            # Nothing was ever sent under a key
            await self._apply(
                settlement.id,
                "cleared",
                report,
                self.orchestrator.clear_reconciliation(settlement.id, "no attempt key recorded"),
            )
            return

        try:
            payouts = await self.gateway.find_payouts(settlement.payout_attempt_key)
        except GatewayError as e:
            report.unresolved.append(settlement.id)
            metrics.reconciliation_results_total.labels(result="unresolved").inc()
            log.warning("reconciliation_lookup_failed", error=str(e), error_type=e.error_type.value)
            return

        live = [p for p in payouts if p.status.lower() not in REJECTED_PAYOUT_STATUSES]
        if len(live) > 1:
            log.critical("multiple_payouts_for_attempt", payout_ids=[p.payout_id for p in live])

        if live:
            payout = live[0]
            log.info("reconciliation_payout_found", payout_id=payout.payout_id, payout_status=payout.status)
            await self._apply(
                settlement.id,
                "payout_found",
                report,
                self.orchestrator.record_reconciled_payout(
                    settlement.id, payout.payout_id, payout.reference
                ),
            )
        else:
            note = "only failed payouts found at gateway" if payouts else "no payout found at gateway"
            log.info("reconciliation_no_live_payout", found=len(payouts))
            await self._apply(
                settlement.id,
                "cleared",
                report,
                self.orchestrator.clear_reconciliation(settlement.id, note),
            )

    @staticmethod
    async def _apply(
        settlement_id: int, result: str, report: ReconciliationReport, action: Awaitable[Any]
    ) -> None:
        try:
            await action
        except StateTransitionError as e:
            # Resolved by someone else in the meantime
            report.unresolved.append(settlement_id)
            metrics.reconciliation_results_total.labels(result="unresolved").inc()
            logger.warning("reconciliation_transition_rejected", settlement_id=settlement_id, error=str(e))
            return
        getattr(report, result).append(settlement_id)
        metrics.reconciliation_results_total.labels(result=result).inc()
