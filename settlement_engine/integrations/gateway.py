"""
Payout gateway contract.

All amounts cross this boundary as integer minor currency units.
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Request not processed, safe to retry
    PERMANENT = "permanent"  # Rejected, retrying will not help
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff
    AMBIGUOUS = "ambiguous"  # Outcome unknown, reconcile before retrying


class GatewayError(Exception):
    """Base exception for payout gateway errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status code, when a response was received
            original_error: Underlying exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        """Whether the request is known not to have been processed."""
        return self.error_type in (GatewayErrorType.TRANSIENT, GatewayErrorType.RATE_LIMIT)


class GatewayAmbiguousError(GatewayError):
    """Raised when a request may or may not have been processed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, GatewayErrorType.AMBIGUOUS, status_code, original_error)


class PayoutResult(BaseModel):
    """Payout as reported by the gateway."""

    model_config = ConfigDict(frozen=True)

    payout_id: str
    reference: Optional[str] = None
    status: str
    amount_minor_units: Optional[int] = None
    failure_reason: Optional[str] = None


class PayoutGateway(Protocol):
    """Operations the payout orchestrator needs from a gateway."""

    async def create_payee(
        self,
        name: str,
        email: Optional[str] = None,
        contact: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> str: ...

    async def create_funding_destination(
        self, payee_id: str, method: str, details: Dict[str, Any]
    ) -> str: ...

    async def create_payout(
        self,
        funding_id: str,
        amount_minor_units: int,
        mode: str,
        narration: str,
        reference_id: str,
        idempotency_key: str,
    ) -> PayoutResult: ...

    async def find_payouts(self, reference_id: str) -> List[PayoutResult]: ...
