"""Settlement aggregation, lifecycle and reconciliation."""
from .aggregator import RestaurantAggregate, SettlementAggregator
from .exceptions import (
    AggregationError,
    FinancialInvariantViolation,
    PayoutAccountMissingError,
    SettlementError,
    SettlementNotFoundError,
    SettlementValidationError,
    StateTransitionError,
)
from .order_ledger import OrderLedger
from .payout_orchestrator import PayoutOrchestrator
from .reconciliation import ReconciliationEngine, ReconciliationReport
from .settlement_store import SettlementStore, WeekUpsertResult
from .week_calculator import WeekRange, current_week, previous_week, week_range_for

__all__ = [
    "AggregationError",
    "FinancialInvariantViolation",
    "OrderLedger",
    "PayoutAccountMissingError",
    "PayoutOrchestrator",
    "ReconciliationEngine",
    "ReconciliationReport",
    "RestaurantAggregate",
    "SettlementAggregator",
    "SettlementError",
    "SettlementNotFoundError",
    "SettlementStore",
    "SettlementValidationError",
    "StateTransitionError",
    "WeekRange",
    "WeekUpsertResult",
    "current_week",
    "previous_week",
    "week_range_for",
]
