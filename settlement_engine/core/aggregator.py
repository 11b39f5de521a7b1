"""
Weekly settlement aggregation.

Groups delivered orders by restaurant for a week and computes the
gross / commission / net split. Reads only; never writes.
"""
from decimal import Decimal
from typing import List

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .exceptions import AggregationError, SettlementValidationError
from .money import compute_split
from .order_ledger import OrderLedger
from .week_calculator import WeekRange, build_week_range

logger = structlog.get_logger(__name__)


class RestaurantAggregate(BaseModel):
    """Computed weekly figures for one restaurant."""

    model_config = ConfigDict(frozen=True)

    restaurant_id: int
    order_count: int
    gross_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    net_amount: Decimal


class SettlementAggregator:
    """
    Computes per-restaurant weekly aggregates from the order ledger.

    The commission rate is fixed at construction so identical ledger state
    and week always produce identical output.
    """

    def __init__(self, ledger: OrderLedger, commission_rate: Decimal):
        """
        Initialize aggregator.

        Args:
            ledger: Order ledger read surface
            commission_rate: Global commission percentage (0-100)
        """
        rate = Decimal(commission_rate)
        if rate < 0 or rate > 100:
            raise SettlementValidationError(f"Commission rate {rate} must be between 0 and 100")
        self.ledger = ledger
        self.commission_rate = rate

    def aggregate(self, restaurant_id: int, order_count: int, gross: Decimal) -> RestaurantAggregate:
        """Build the aggregate for one restaurant's totals."""
        commission, net = compute_split(gross, self.commission_rate)
        return RestaurantAggregate(
            restaurant_id=restaurant_id,
            order_count=order_count,
            gross_amount=gross,
            commission_rate=self.commission_rate,
            commission_amount=commission,
            net_amount=net,
        )

    async def preview_aggregates(
        self, session: AsyncSession, week: WeekRange
    ) -> List[RestaurantAggregate]:
        """
        Aggregate delivered orders of ``week`` per restaurant.

        Args:
            session: Database session (only read from)
            week: Week to aggregate

        Returns:
            List[RestaurantAggregate]: Sorted by gross descending, then restaurant id

        Raises:
            SettlementValidationError: If the week range is malformed
            AggregationError: If the ledger cannot be read
        """
        week = build_week_range(week.week_start, week.week_end, week.year_week)

        try:
            totals = await self.ledger.delivered_totals(session, week)
        except (SQLAlchemyError, OSError) as e:
            logger.error("order_ledger_read_failed", year_week=week.year_week, error=str(e))
            raise AggregationError(
                f"Failed to read order ledger for week {week.year_week}: {e}",
                year_week=week.year_week,
            ) from e

        aggregates = [
            self.aggregate(t.restaurant_id, t.order_count, t.gross_amount) for t in totals
        ]
        aggregates.sort(key=lambda a: (-a.gross_amount, a.restaurant_id))

        logger.info(
            "week_aggregates_computed",
            year_week=week.year_week,
            restaurants=len(aggregates),
            commission_rate=str(self.commission_rate),
        )
        return aggregates
