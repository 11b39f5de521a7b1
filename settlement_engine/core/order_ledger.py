"""
Read-only access to delivered orders.

Week days are local days of the operating timezone; their bounds are
converted to UTC instants before querying.
"""
from datetime import datetime, time, timedelta, timezone, tzinfo
from decimal import Decimal
from typing import List, NamedTuple, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Order
from .week_calculator import WeekRange

DELIVERED_STATUS = "delivered"


class RestaurantTotals(NamedTuple):
    """Delivered-order totals of one restaurant for a week."""

    restaurant_id: int
    order_count: int
    gross_amount: Decimal


class OrderLedger:
    """SQL read surface over the ``orders`` table."""

    def __init__(self, operating_timezone: tzinfo):
        self.operating_timezone = operating_timezone

    def week_bounds(self, week: WeekRange) -> Tuple[datetime, datetime]:
        """
        Half-open UTC interval covering the inclusive local days of ``week``.

        Returns:
            Tuple[datetime, datetime]: [start, end) in UTC
        """
        start = datetime.combine(week.week_start, time.min, tzinfo=self.operating_timezone)
        end = datetime.combine(
            week.week_end + timedelta(days=1), time.min, tzinfo=self.operating_timezone
        )
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def _delivered_in(self, week: WeekRange) -> list:
        start, end = self.week_bounds(week)
        return [
            func.lower(Order.status) == DELIVERED_STATUS,
            Order.created_at >= start,
            Order.created_at < end,
        ]

    async def delivered_totals(
        self, session: AsyncSession, week: WeekRange
    ) -> List[RestaurantTotals]:
        """Per-restaurant delivered order count and gross amount."""
        gross = func.coalesce(func.sum(Order.grand_total), 0).label("gross_amount")
        stmt = (
            select(
                Order.restaurant_id,
                func.count(Order.id).label("order_count"),
                gross,
            )
            .where(*self._delivered_in(week))
            .group_by(Order.restaurant_id)
        )
        result = await session.execute(stmt)
        return [
            RestaurantTotals(
                restaurant_id=row.restaurant_id,
                order_count=int(row.order_count),
                gross_amount=Decimal(str(row.gross_amount)).quantize(Decimal("0.01")),
            )
            for row in result
        ]

    async def delivered_order_ids(
        self, session: AsyncSession, restaurant_id: int, week: WeekRange
    ) -> List[str]:
        """Ids of the delivered orders of one restaurant for a week."""
        stmt = (
            select(Order.order_id)
            .where(Order.restaurant_id == restaurant_id, *self._delivered_in(week))
            .order_by(Order.order_id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
