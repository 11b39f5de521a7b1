"""
Idempotent persistence of weekly settlements.

One transaction per week:
1. Compute per-restaurant aggregates
2. Insert-or-ignore the settlement keyed by (restaurant_id, year_week)
3. Recompute amounts with a guarded UPDATE while the row is still pending
   and no payout attempt holds it
4. Insert-or-ignore one link row per contributing order

Idempotence comes from the unique constraints, not from read-then-write
sequencing, so overlapping runs for the same week are safe.
"""
import time
import uuid
from decimal import Decimal
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.models import SettlementStatus, WeeklySettlement, WeeklySettlementOrder
from ..database.upsert import chunked, insert_ignore
from ..monitoring import metrics
from .aggregator import RestaurantAggregate, SettlementAggregator
from .events import record_event, utcnow
from .exceptions import AggregationError, SettlementError
from .money import assert_split
from .week_calculator import DEFAULT_DUE_DAYS, WeekRange, build_week_range, due_date

logger = structlog.get_logger(__name__)

PENDING = SettlementStatus.PENDING.value
ZERO = Decimal("0.00")


class WeekUpsertResult(BaseModel):
    """Outcome of one weekly aggregation run."""

    year_week: int
    created: List[int] = Field(default_factory=list)
    recomputed: List[int] = Field(default_factory=list)
    unchanged: List[int] = Field(default_factory=list)
    frozen: List[int] = Field(default_factory=list)
    links_added: int = 0
    late_orders: Dict[int, List[str]] = Field(default_factory=dict)

    @property
    def settlement_ids(self) -> List[int]:
        """Every settlement touched or inspected by the run."""
        return sorted(self.created + self.recomputed + self.unchanged + self.frozen)


class SettlementStore:
    """Weekly settlement ledger persistence."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        aggregator: SettlementAggregator,
        due_days: int = DEFAULT_DUE_DAYS,
    ):
        """
        Initialize settlement store.

        Args:
            session_factory: Async session factory
            aggregator: Aggregator providing the weekly figures
            due_days: Days after week end a settlement falls due
        """
        self.session_factory = session_factory
        self.aggregator = aggregator
        self.due_days = due_days

    async def upsert_week(self, week: WeekRange) -> WeekUpsertResult:
        """
        Aggregate ``week`` and upsert its settlements and order links.

        All-or-nothing: any failure rolls back every write for the week.

        Raises:
            SettlementValidationError: If the week range is malformed
            AggregationError: If the ledger or the store fails
            FinancialInvariantViolation: If computed amounts do not reconcile
        """
        week = build_week_range(week.week_start, week.week_end, week.year_week)
        correlation_id = str(uuid.uuid4())
        started = time.perf_counter()
        result = WeekUpsertResult(year_week=week.year_week)

        logger.info(
            "week_upsert_started",
            correlation_id=correlation_id,
            year_week=week.year_week,
            week_start=str(week.week_start),
            week_end=str(week.week_end),
        )

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    aggregates = await self.aggregator.preview_aggregates(session, week)
                    for aggregate in aggregates:
                        await self._upsert_restaurant(
                            session, week, aggregate, result, correlation_id
                        )
                    await self._empty_stale_pending(
                        session, week, {a.restaurant_id for a in aggregates}, result, correlation_id
                    )
        except SettlementError:
            metrics.week_upserts_total.labels(status="failed").inc()
            logger.error("week_upsert_failed", correlation_id=correlation_id, year_week=week.year_week)
            raise
        except (SQLAlchemyError, OSError) as e:
            metrics.week_upserts_total.labels(status="failed").inc()
            logger.error(
                "week_upsert_failed",
                correlation_id=correlation_id,
                year_week=week.year_week,
                error=str(e),
            )
            raise AggregationError(
                f"Failed to upsert settlements for week {week.year_week}: {e}",
                year_week=week.year_week,
            ) from e

        metrics.week_upserts_total.labels(status="success").inc()
        metrics.week_upsert_duration_seconds.observe(time.perf_counter() - started)
        metrics.settlement_rows_total.labels(action="created").inc(len(result.created))
        metrics.settlement_rows_total.labels(action="recomputed").inc(len(result.recomputed))
        metrics.settlement_rows_total.labels(action="frozen").inc(len(result.frozen))
        metrics.settlement_order_links_total.inc(result.links_added)

        logger.info(
            "week_upsert_completed",
            correlation_id=correlation_id,
            year_week=week.year_week,
            created=len(result.created),
            recomputed=len(result.recomputed),
            unchanged=len(result.unchanged),
            frozen=len(result.frozen),
            links_added=result.links_added,
        )
        return result

    async def _upsert_restaurant(
        self,
        session: AsyncSession,
        week: WeekRange,
        aggregate: RestaurantAggregate,
        result: WeekUpsertResult,
        correlation_id: str,
    ) -> None:
        assert_split(aggregate.gross_amount, aggregate.commission_amount, aggregate.net_amount)

        computed = {
            "order_count": aggregate.order_count,
            "gross_amount": aggregate.gross_amount,
            "commission_rate": aggregate.commission_rate,
            "commission_amount": aggregate.commission_amount,
            "net_amount": aggregate.net_amount,
        }
        now = utcnow()
        inserted = await session.execute(
            insert_ignore(
                session,
                WeeklySettlement,
                [
                    {
                        "restaurant_id": aggregate.restaurant_id,
                        "year_week": week.year_week,
                        "week_start_date": week.week_start,
                        "week_end_date": week.week_end,
                        "status": PENDING,
                        "due_date": due_date(week.week_end, self.due_days),
                        "needs_reconciliation": False,
                        "created_at": now,
                        "updated_at": now,
                        **computed,
                    }
                ],
                ["restaurant_id", "year_week"],
            )
        )

        row = (
            await session.execute(
                select(
                    WeeklySettlement.id,
                    WeeklySettlement.status,
                    WeeklySettlement.order_count,
                    WeeklySettlement.gross_amount,
                    WeeklySettlement.commission_rate,
                    WeeklySettlement.payout_attempt_key,
                    WeeklySettlement.needs_reconciliation,
                ).where(
                    WeeklySettlement.restaurant_id == aggregate.restaurant_id,
                    WeeklySettlement.year_week == week.year_week,
                )
            )
        ).one()
        settlement_id = row.id

        if inserted.rowcount == 1:
            result.created.append(settlement_id)
            record_event(
                session,
                settlement_id,
                "settlement.created",
                _amounts_payload(aggregate),
                correlation_id,
            )
        elif (
            row.status != PENDING
            or row.payout_attempt_key is not None
            or row.needs_reconciliation
        ):
            # Amounts are fixed once a payout attempt holds the row
            await self._record_frozen(session, week, aggregate, settlement_id, row.status, result)
            return
        elif (
            row.order_count == aggregate.order_count
            and Decimal(row.gross_amount) == aggregate.gross_amount
            and Decimal(row.commission_rate) == aggregate.commission_rate
        ):
            result.unchanged.append(settlement_id)
        else:
            recomputed = await session.execute(
                update(WeeklySettlement)
                .where(
                    WeeklySettlement.id == settlement_id,
                    WeeklySettlement.status == PENDING,
                    WeeklySettlement.payout_attempt_key.is_(None),
                    WeeklySettlement.needs_reconciliation.is_(False),
                )
                .values(**computed, updated_at=now)
            )
            if recomputed.rowcount == 0:
                # Claimed or moved on after we read it
                await self._record_frozen(session, week, aggregate, settlement_id, None, result)
                return
            result.recomputed.append(settlement_id)
            record_event(
                session,
                settlement_id,
                "settlement.recomputed",
                {
                    **_amounts_payload(aggregate),
                    "previous_order_count": row.order_count,
                    "previous_gross_amount": str(row.gross_amount),
                },
                correlation_id,
            )

        order_ids = await self.aggregator.ledger.delivered_order_ids(
            session, aggregate.restaurant_id, week
        )
        result.links_added += await self._link_orders(session, settlement_id, order_ids)

    async def _link_orders(
        self, session: AsyncSession, settlement_id: int, order_ids: List[str]
    ) -> int:
        added = 0
        now = utcnow()
        rows = [
            {"settlement_id": settlement_id, "order_id": oid, "created_at": now}
            for oid in order_ids
        ]
        for batch in chunked(rows):
            outcome = await session.execute(
                insert_ignore(
                    session, WeeklySettlementOrder, batch, ["settlement_id", "order_id"]
                )
            )
            added += max(outcome.rowcount, 0)
        return added

    async def _record_frozen(
        self,
        session: AsyncSession,
        week: WeekRange,
        aggregate: RestaurantAggregate,
        settlement_id: int,
        status: Optional[str],
        result: WeekUpsertResult,
    ) -> None:
        result.frozen.append(settlement_id)
        order_ids = await self.aggregator.ledger.delivered_order_ids(
            session, aggregate.restaurant_id, week
        )
        linked = set(await self._linked_ids(session, settlement_id))
        late = sorted(set(order_ids) - linked)
        if late:
            result.late_orders[settlement_id] = late
            logger.warning(
                "settlement_frozen_with_late_orders",
                settlement_id=settlement_id,
                status=status,
                late_order_count=len(late),
                computed_gross=str(aggregate.gross_amount),
            )

    async def _empty_stale_pending(
        self,
        session: AsyncSession,
        week: WeekRange,
        active_restaurants: set,
        result: WeekUpsertResult,
        correlation_id: str,
    ) -> None:
        """Zero pending rows whose restaurant no longer has delivered orders."""
        stmt = select(WeeklySettlement.id, WeeklySettlement.restaurant_id).where(
            WeeklySettlement.year_week == week.year_week,
            WeeklySettlement.status == PENDING,
            WeeklySettlement.payout_attempt_key.is_(None),
            WeeklySettlement.needs_reconciliation.is_(False),
            WeeklySettlement.order_count > 0,
        )
        if active_restaurants:
            stmt = stmt.where(WeeklySettlement.restaurant_id.not_in(active_restaurants))
        for row in (await session.execute(stmt)).all():
            emptied = await session.execute(
                update(WeeklySettlement)
                .where(
                    WeeklySettlement.id == row.id,
                    WeeklySettlement.status == PENDING,
                    WeeklySettlement.payout_attempt_key.is_(None),
                    WeeklySettlement.needs_reconciliation.is_(False),
                )
                .values(
                    order_count=0,
                    gross_amount=ZERO,
                    commission_amount=ZERO,
                    net_amount=ZERO,
                    commission_rate=self.aggregator.commission_rate,
                    updated_at=utcnow(),
                )
            )
            if emptied.rowcount:
                result.recomputed.append(row.id)
                record_event(
                    session,
                    row.id,
                    "settlement.recomputed",
                    {"order_count": 0, "gross_amount": "0.00", "reason": "no_delivered_orders"},
                    correlation_id,
                )

    @staticmethod
    async def _linked_ids(session: AsyncSession, settlement_id: int) -> List[str]:
        stmt = (
            select(WeeklySettlementOrder.order_id)
            .where(WeeklySettlementOrder.settlement_id == settlement_id)
            .order_by(WeeklySettlementOrder.order_id)
        )
        return list((await session.execute(stmt)).scalars().all())

    async def get(self, settlement_id: int) -> Optional[WeeklySettlement]:
        """Fetch one settlement by id."""
        async with self.session_factory() as session:
            return await session.get(WeeklySettlement, settlement_id)

    async def list_week(self, year_week: int) -> List[WeeklySettlement]:
        """Settlements of a week, largest gross first."""
        async with self.session_factory() as session:
            stmt = (
                select(WeeklySettlement)
                .where(WeeklySettlement.year_week == year_week)
                .order_by(WeeklySettlement.gross_amount.desc(), WeeklySettlement.restaurant_id)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def linked_order_ids(self, settlement_id: int) -> List[str]:
        """Order ids counted in a settlement."""
        async with self.session_factory() as session:
            return await self._linked_ids(session, settlement_id)


def _amounts_payload(aggregate: RestaurantAggregate) -> Dict[str, object]:
    return {
        "order_count": aggregate.order_count,
        "gross_amount": str(aggregate.gross_amount),
        "commission_rate": str(aggregate.commission_rate),
        "commission_amount": str(aggregate.commission_amount),
        "net_amount": str(aggregate.net_amount),
    }
