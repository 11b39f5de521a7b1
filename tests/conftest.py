"""
Pytest configuration and fixtures.
"""
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Iterable, Optional, Tuple
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from settlement_engine.config import Settings
from settlement_engine.core.aggregator import SettlementAggregator
from settlement_engine.core.order_ledger import OrderLedger
from settlement_engine.core.payout_orchestrator import PayoutOrchestrator
from settlement_engine.core.settlement_store import SettlementStore
from settlement_engine.core.week_calculator import WeekRange, build_week_range
from settlement_engine.database.connection import init_db, make_session_factory
from settlement_engine.database.models import Order, RestaurantPayoutAccount
from settlement_engine.integrations.gateway import PayoutResult
from settlement_engine.integrations.razorpayx_client import RazorpayXClient

IST = ZoneInfo("Asia/Kolkata")


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without a database")
    config.addinivalue_line("markers", "integration: tests against a real SQL database")
    config.addinivalue_line("markers", "race: concurrent access tests")


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        commission_rate=Decimal("10.00"),
        operating_timezone="Asia/Kolkata",
        razorpayx_key_id="rzp_test_fake_key",
        razorpayx_key_secret="rzp_test_fake_secret",
        razorpayx_account_number="2323230041626905",
        razorpayx_webhook_secret="whsec_test_fake_secret",
        gateway_max_retries=3,
        app_name="settlement-engine-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def week() -> WeekRange:
    """ISO week 2025-W02 (Monday 6 January to Sunday 12 January)."""
    return build_week_range(date(2025, 1, 6), date(2025, 1, 12))


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine, one database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlements.db'}",
        connect_args={"timeout": 30},
    )

    # Take the write lock at BEGIN so concurrent transactions queue up
    # instead of failing on lock upgrade.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
def ledger() -> OrderLedger:
    return OrderLedger(IST)


@pytest.fixture
def aggregator(ledger: OrderLedger) -> SettlementAggregator:
    return SettlementAggregator(ledger, Decimal("10.00"))


@pytest.fixture
def store(
    session_factory: async_sessionmaker[AsyncSession], aggregator: SettlementAggregator
) -> SettlementStore:
    return SettlementStore(session_factory, aggregator)


@pytest.fixture
def gateway() -> AsyncMock:
    """Gateway double that accepts every request."""
    mock_gateway = AsyncMock(spec=RazorpayXClient)
    mock_gateway.create_payee.return_value = "cont_test_123"
    mock_gateway.create_funding_destination.return_value = "fa_test_123"
    mock_gateway.create_payout.return_value = PayoutResult(
        payout_id="pout_test_123",
        reference=None,
        status="processing",
        amount_minor_units=90000,
    )
    mock_gateway.find_payouts.return_value = []
    return mock_gateway


@pytest.fixture
def orchestrator(
    session_factory: async_sessionmaker[AsyncSession], gateway: AsyncMock
) -> PayoutOrchestrator:
    return PayoutOrchestrator(session_factory, gateway, default_transfer_mode="IMPS")


OrderSpec = Tuple[str, int, str, str, datetime]


@pytest.fixture
def seed_orders(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[Iterable[OrderSpec]], Awaitable[None]]:
    """
    Insert orders given as (order_id, restaurant_id, status, grand_total, created_at).

    ``created_at`` may be in any timezone; it is stored as UTC.
    """

    async def _seed(orders: Iterable[OrderSpec]) -> None:
        async with session_factory() as session:
            async with session.begin():
                for order_id, restaurant_id, status, total, created_at in orders:
                    session.add(
                        Order(
                            order_id=order_id,
                            restaurant_id=restaurant_id,
                            status=status,
                            grand_total=Decimal(total),
                            created_at=created_at.astimezone(timezone.utc),
                        )
                    )

    return _seed


@pytest.fixture
def seed_payout_account(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[int]]:
    """Register a payout account and return its id."""

    async def _seed(
        restaurant_id: int,
        method: str = "upi",
        transfer_mode: Optional[str] = None,
        contact_id: Optional[str] = None,
        fund_account_id: Optional[str] = None,
    ) -> int:
        account = RestaurantPayoutAccount(
            restaurant_id=restaurant_id,
            beneficiary_name=f"Restaurant {restaurant_id}",
            email=f"owner{restaurant_id}@example.com",
            phone="9876543210",
            method=method,
            vpa=f"restaurant{restaurant_id}@upi" if method == "upi" else None,
            ifsc="HDFC0000053" if method == "bank_account" else None,
            account_number="765432123456789" if method == "bank_account" else None,
            transfer_mode=transfer_mode,
            gateway_contact_id=contact_id,
            gateway_fund_account_id=fund_account_id,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(account)
        return account.id

    return _seed


def ist(day: int, hour: int = 12, minute: int = 0, month: int = 1) -> datetime:
    """Aware datetime in the operating timezone, January 2025 by default."""
    return datetime(2025, month, day, hour, minute, tzinfo=IST)


@pytest.fixture
def at_ist() -> Callable[..., datetime]:
    return ist
