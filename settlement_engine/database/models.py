"""SQLAlchemy database models for weekly settlements and payouts."""
import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class SettlementStatus(str, enum.Enum):
    """Settlement lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Order(Base):
    """
    Orders placed through the platform.

    Owned by the ordering system; the settlement engine only reads it.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    restaurant_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    grand_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("grand_total >= 0", name="non_negative_grand_total"),
        Index("idx_orders_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(order_id={self.order_id}, restaurant_id={self.restaurant_id}, "
            f"status={self.status}, total={self.grand_total})>"
        )


class RestaurantPayoutAccount(Base):
    """
    Payout destination and gateway identities of a restaurant.

    gateway_contact_id / gateway_fund_account_id are filled the first time a
    payout is initiated and reused afterwards.
    """

    __tablename__ = "restaurant_payout_accounts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    restaurant_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    beneficiary_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    vpa: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ifsc: Mapped[str | None] = mapped_column(String(11), nullable=True)
    account_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    transfer_mode: Mapped[str | None] = mapped_column(String(10), nullable=True)
    gateway_contact_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_fund_account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("method IN ('upi', 'bank_account')", name="valid_payout_method"),
    )

    def __repr__(self) -> str:
        """String representation of RestaurantPayoutAccount."""
        return (
            f"<RestaurantPayoutAccount(restaurant_id={self.restaurant_id}, "
            f"method={self.method}, mode={self.transfer_mode})>"
        )


class WeeklySettlement(Base):
    """
    Weekly settlement ledger.

    One row per (restaurant_id, year_week). Rows are never deleted; amounts
    are recomputed only while the row is pending.
    """

    __tablename__ = "weekly_settlements"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    restaurant_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    year_week: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    week_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    order_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SettlementStatus.PENDING.value, index=True
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    payout_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payout_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payout_attempt_key: Mapped[str | None] = mapped_column(
        String(64), unique=True, nullable=True
    )
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("restaurant_id", "year_week", name="uniq_restaurant_yearweek"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="valid_settlement_status",
        ),
        CheckConstraint("gross_amount >= 0", name="non_negative_gross"),
        CheckConstraint("order_count >= 0", name="non_negative_order_count"),
        CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 100", name="valid_commission_rate"
        ),
    )

    def __repr__(self) -> str:
        """String representation of WeeklySettlement."""
        return (
            f"<WeeklySettlement(id={self.id}, restaurant_id={self.restaurant_id}, "
            f"year_week={self.year_week}, net={self.net_amount}, status={self.status})>"
        )


class WeeklySettlementOrder(Base):
    """
    Order linkage for a settlement.

    Existence of a row proves the order has been counted in that settlement.
    """

    __tablename__ = "weekly_settlement_orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    settlement_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("weekly_settlements.id"), nullable=False, index=True
    )
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("settlement_id", "order_id", name="uniq_settlement_order"),
    )

    def __repr__(self) -> str:
        """String representation of WeeklySettlementOrder."""
        return (
            f"<WeeklySettlementOrder(settlement_id={self.settlement_id}, "
            f"order_id={self.order_id})>"
        )


class SettlementEvent(Base):
    """
    Settlement audit trail.

    One immutable row per lifecycle transition or gateway interaction.
    """

    __tablename__ = "settlement_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    settlement_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("weekly_settlements.id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (Index("idx_settlement_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of SettlementEvent."""
        return (
            f"<SettlementEvent(id={self.id}, settlement_id={self.settlement_id}, "
            f"type={self.event_type})>"
        )
