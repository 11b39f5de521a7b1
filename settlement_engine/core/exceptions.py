"""
Exception taxonomy for settlement computation and payout orchestration.

Recovery strategy per error:
- SettlementValidationError: rejected before any query, fix the input
- AggregationError: nothing was written, retry the whole week later
- StateTransitionError: not retried, needs an operator decision
- FinancialInvariantViolation: programming/data bug, never coerced
"""

from typing import Any, Dict, Optional


class SettlementError(Exception):
    """
    Base exception for all settlement errors.

    Every exception carries a stable error code for callers that map
    errors onto their own transport, plus free-form context.
    """

    error_code = "settlement_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class SettlementValidationError(SettlementError):
    """Raised when a week range or command input is malformed."""

    error_code = "validation_error"


class AggregationError(SettlementError):
    """Raised when the order ledger cannot be read or the week cannot be written."""

    error_code = "aggregation_error"


class SettlementNotFoundError(SettlementError):
    """Raised when a settlement id does not exist."""

    error_code = "settlement_not_found"

    def __init__(self, settlement_id: int):
        super().__init__(f"Settlement {settlement_id} not found", settlement_id=settlement_id)
        self.settlement_id = settlement_id


class PayoutAccountMissingError(SettlementError):
    """Raised when a restaurant has no payout account configured."""

    error_code = "payout_account_missing"

    def __init__(self, restaurant_id: int):
        super().__init__(
            f"Restaurant {restaurant_id} has no payout account configured",
            restaurant_id=restaurant_id,
        )
        self.restaurant_id = restaurant_id


class StateTransitionError(SettlementError):
    """
    Raised when a lifecycle transition's precondition does not hold.

    Surfaced to the caller and never retried automatically.
    """

    error_code = "invalid_state_transition"

    def __init__(
        self,
        settlement_id: int,
        action: str,
        current_status: Optional[str],
        expected: tuple,
        reason: Optional[str] = None,
    ):
        detail = reason or (
            f"status is {current_status!r}, expected one of {list(expected)}"
        )
        super().__init__(
            f"Cannot {action} settlement {settlement_id}: {detail}",
            settlement_id=settlement_id,
            action=action,
            current_status=current_status,
        )
        self.settlement_id = settlement_id
        self.action = action
        self.current_status = current_status
        self.expected = expected


class FinancialInvariantViolation(SettlementError):
    """Raised when amounts do not reconcile to the cent."""

    error_code = "financial_invariant_violation"
