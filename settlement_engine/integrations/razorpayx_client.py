"""
RazorpayX payouts client with retry logic and error classification.

Implements:
- Contact / fund account / payout creation
- Exponential backoff for retry-safe calls (never for payout creation)
- Circuit breaker pattern
- Idempotency header forwarding for payouts
"""
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from ..config import Settings
from ..monitoring import metrics
from .gateway import GatewayAmbiguousError, GatewayError, GatewayErrorType, PayoutResult

logger = structlog.get_logger(__name__)

NARRATION_MAX_LENGTH = 30
PAYOUT_METHODS = ("upi", "bank_account")


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed a threshold. Permanent rejections
    do not count as failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            GatewayError: TRANSIENT if the circuit is open (nothing was sent)
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

        try:
            result = await func()
        except GatewayError as e:
            if e.error_type != GatewayErrorType.PERMANENT:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.gateway_circuit_breaker_state.set(
            {"closed": 0, "open": 1, "half_open": 2}[state]
        )


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


def sanitize_narration(narration: str) -> str:
    """RazorpayX narrations allow at most 30 alphanumeric or space characters."""
    cleaned = re.sub(r"[^A-Za-z0-9 ]+", " ", narration)
    return re.sub(r"\s+", " ", cleaned).strip()[:NARRATION_MAX_LENGTH]


class RazorpayXClient:
    """
    Wrapper for the RazorpayX payouts API.

    Features:
    - Automatic retry with exponential backoff for contact/fund account calls
    - Circuit breaker pattern
    - Error classification (transient, permanent, rate limit, ambiguous)
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        """
        Initialize RazorpayX client.

        Args:
            settings: Settings with RazorpayX credentials and timeouts
            http_client: Optional preconfigured HTTP client
            retry_wait: Optional tenacity wait strategy for retries
        """
        if not settings.gateway_configured:
            raise ValueError(
                "Missing RazorpayX credentials: RAZORPAYX_KEY_ID, "
                "RAZORPAYX_KEY_SECRET, RAZORPAYX_ACCOUNT_NUMBER"
            )
        self.settings = settings
        self.account_number = settings.razorpayx_account_number
        self.max_retries = settings.gateway_max_retries
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=16)
        self.circuit_breaker = CircuitBreaker()
        self.http_client = http_client or httpx.AsyncClient(
            base_url=settings.razorpayx_base_url,
            auth=(settings.razorpayx_key_id, settings.razorpayx_key_secret),
            timeout=httpx.Timeout(settings.gateway_timeout_seconds),
        )

        logger.info("razorpayx_client_initialized", base_url=settings.razorpayx_base_url)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.http_client.aclose()

    async def __aenter__(self) -> "RazorpayXClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        """
        Classify an HTTP error status for retry logic.

        Args:
            status_code: HTTP status code

        Returns:
            GatewayErrorType: Error classification
        """
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code == 504:
            return GatewayErrorType.AMBIGUOUS
        if status_code == 408 or status_code >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
            return error.get("description") or error.get("reason") or response.text
        except ValueError:
            return response.text

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """
        Send one request and classify its failure modes.

        Raises:
            GatewayError: Classified error
            GatewayAmbiguousError: If the request may have been processed
        """
        started = time.perf_counter()
        try:
            response = await self.http_client.request(method, path, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            # The request never reached the gateway
            self._record_error(operation, GatewayErrorType.TRANSIENT, str(e))
            raise GatewayError(
                f"{operation}: connection failed: {e}", GatewayErrorType.TRANSIENT, original_error=e
            ) from e
        except (httpx.TimeoutException, httpx.TransportError) as e:
            self._record_error(operation, GatewayErrorType.AMBIGUOUS, str(e))
            raise GatewayAmbiguousError(
                f"{operation}: no response from gateway: {e}", original_error=e
            ) from e
        finally:
            metrics.gateway_duration_seconds.labels(operation=operation).observe(
                time.perf_counter() - started
            )

        if response.is_error:
            error_type = self._classify_status(response.status_code)
            description = self._error_description(response)
            self._record_error(operation, error_type, description, response.status_code)
            message = f"{operation} failed ({response.status_code}): {description}"
            if error_type == GatewayErrorType.AMBIGUOUS:
                raise GatewayAmbiguousError(message, status_code=response.status_code)
            raise GatewayError(message, error_type, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            self._record_error(operation, GatewayErrorType.AMBIGUOUS, "unparseable response")
            raise GatewayAmbiguousError(
                f"{operation}: unparseable response body", status_code=response.status_code
            ) from e
        if not isinstance(data, dict):
            self._record_error(operation, GatewayErrorType.AMBIGUOUS, "unexpected response")
            raise GatewayAmbiguousError(
                f"{operation}: unexpected response body", status_code=response.status_code
            )

        metrics.gateway_requests_total.labels(operation=operation, status="success").inc()
        return data

    def _record_error(
        self,
        operation: str,
        error_type: GatewayErrorType,
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        metrics.gateway_requests_total.labels(operation=operation, status="error").inc()
        metrics.gateway_errors_total.labels(error_type=error_type.value).inc()
        logger.error(
            "payout_gateway_error",
            operation=operation,
            error_type=error_type.value,
            status_code=status_code,
            error_message=message,
        )

    async def _call_with_retry(self, func: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_retries),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                return await self.circuit_breaker.call(func)
        raise AssertionError("unreachable")  # pragma: no cover

    @staticmethod
    def _require_id(operation: str, data: Dict[str, Any]) -> str:
        entity_id = data.get("id")
        if not entity_id:
            raise GatewayAmbiguousError(f"{operation}: response has no id")
        return str(entity_id)

    async def create_payee(
        self,
        name: str,
        email: Optional[str] = None,
        contact: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> str:
        """
        Create a RazorpayX contact for a restaurant.

        Args:
            name: Beneficiary name
            email: Optional email
            contact: Optional phone number
            reference_id: Optional caller reference (e.g., restaurant id)

        Returns:
            str: Contact id

        Raises:
            GatewayError: If contact creation fails
        """
        payload: Dict[str, Any] = {"name": name, "type": "vendor"}
        if email:
            payload["email"] = email
        if contact:
            payload["contact"] = contact
        if reference_id:
            payload["reference_id"] = reference_id

        logger.info("creating_payee", reference_id=reference_id)
        data = await self._call_with_retry(
            lambda: self._request("create_payee", "POST", "/contacts", json=payload)
        )
        contact_id = self._require_id("create_payee", data)
        logger.info("payee_created", contact_id=contact_id)
        return contact_id

    async def create_funding_destination(
        self, payee_id: str, method: str, details: Dict[str, Any]
    ) -> str:
        """
        Create a fund account (UPI VPA or bank account) for a contact.

        Args:
            payee_id: Contact id
            method: 'upi' or 'bank_account'
            details: {'vpa'} for UPI; {'name', 'ifsc', 'account_number'} for bank

        Returns:
            str: Fund account id

        Raises:
            ValueError: If the method or details are invalid
            GatewayError: If fund account creation fails
        """
        if method == "upi":
            if not details.get("vpa"):
                raise ValueError("UPI fund accounts require a vpa")
            payload: Dict[str, Any] = {
                "contact_id": payee_id,
                "account_type": "vpa",
                "vpa": {"address": details["vpa"]},
            }
        elif method == "bank_account":
            if not details.get("ifsc") or not details.get("account_number"):
                raise ValueError("Bank fund accounts require ifsc and account_number")
            payload = {
                "contact_id": payee_id,
                "account_type": "bank_account",
                "bank_account": {
                    "name": details.get("name"),
                    "ifsc": details["ifsc"],
                    "account_number": details["account_number"],
                },
            }
        else:
            raise ValueError(f"Unsupported payout method {method!r}, expected {PAYOUT_METHODS}")

        logger.info("creating_funding_destination", contact_id=payee_id, method=method)
        data = await self._call_with_retry(
            lambda: self._request(
                "create_funding_destination", "POST", "/fund_accounts", json=payload
            )
        )
        fund_account_id = self._require_id("create_funding_destination", data)
        logger.info("funding_destination_created", fund_account_id=fund_account_id)
        return fund_account_id

    async def create_payout(
        self,
        funding_id: str,
        amount_minor_units: int,
        mode: str,
        narration: str,
        reference_id: str,
        idempotency_key: str,
    ) -> PayoutResult:
        """
        Create a payout. Never retried automatically.

        Args:
            funding_id: Fund account id
            amount_minor_units: Amount in paise
            mode: Transfer mode (UPI, IMPS, NEFT, RTGS)
            narration: Statement narration
            reference_id: Caller reference used for reconciliation lookups
            idempotency_key: Forwarded as the payout idempotency header

        Returns:
            PayoutResult: Created payout

        Raises:
            ValueError: If the amount is not a positive integer
            GatewayError: If the gateway rejects the payout
            GatewayAmbiguousError: If the outcome is unknown
        """
        if isinstance(amount_minor_units, bool) or not isinstance(amount_minor_units, int):
            raise ValueError("amount_minor_units must be an int")
        if amount_minor_units <= 0:
            raise ValueError("amount_minor_units must be positive")

        payload = {
            "account_number": self.account_number,
            "fund_account_id": funding_id,
            "amount": amount_minor_units,
            "currency": self.settings.payout_currency,
            "mode": mode,
            "purpose": "payout",
            "queue_if_low_balance": True,
            "reference_id": reference_id,
            "narration": sanitize_narration(narration),
        }

        logger.info(
            "creating_payout",
            fund_account_id=funding_id,
            amount_minor_units=amount_minor_units,
            mode=mode,
            reference_id=reference_id,
        )
        data = await self.circuit_breaker.call(
            lambda: self._request(
                "create_payout",
                "POST",
                "/payouts",
                json=payload,
                headers={"X-Payout-Idempotency": idempotency_key},
            )
        )
        payout = self._to_payout(data)
        logger.info("payout_created", payout_id=payout.payout_id, status=payout.status)
        return payout

    async def find_payouts(self, reference_id: str) -> List[PayoutResult]:
        """
        List payouts created with a caller reference.

        Raises:
            GatewayError: If listing fails
        """
        params = {"account_number": self.account_number, "reference_id": reference_id}
        data = await self._call_with_retry(
            lambda: self._request("find_payouts", "GET", "/payouts", params=params)
        )
        return [self._to_payout(item) for item in data.get("items", [])]

    def _to_payout(self, data: Dict[str, Any]) -> PayoutResult:
        payout_id = self._require_id("create_payout", data)
        status = data.get("status")
        if not status:
            raise GatewayAmbiguousError(f"payout {payout_id} has no status")
        status_details = data.get("status_details") or {}
        return PayoutResult(
            payout_id=payout_id,
            reference=data.get("utr") or data.get("reference_id"),
            status=str(status),
            amount_minor_units=data.get("amount"),
            failure_reason=data.get("failure_reason") or status_details.get("description"),
        )
