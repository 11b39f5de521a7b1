"""
RazorpayX webhook handler with signature verification.

Implements:
- HMAC-SHA256 signature verification of the raw body
- Payout event parsing
- Event type routing to registered handlers (payout events to the
  payout orchestrator via register_payout_handlers)
"""
import hashlib
import hmac
import json
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

import structlog
from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from ..core.payout_orchestrator import PayoutOrchestrator

logger = structlog.get_logger(__name__)

PAYOUT_EVENTS = (
    "payout.processed",
    "payout.failed",
    "payout.reversed",
    "payout.rejected",
)


class WebhookError(Exception):
    """Raised when webhook processing fails."""

    pass


class GatewayEvent(BaseModel):
    """Payout state change reported by the gateway."""

    model_config = ConfigDict(frozen=True)

    event_id: Optional[str] = None
    event_type: str
    payout_id: str
    status: Optional[str] = None
    reference: Optional[str] = None
    failure_reason: Optional[str] = None


EventHandler = Callable[[GatewayEvent], Awaitable[Any]]


class WebhookHandler:
    """
    Handles RazorpayX webhook deliveries.

    Duplicate deliveries are harmless: handlers apply guarded transitions
    that are no-ops for rows already in the target state.
    """

    def __init__(self, webhook_secret: str):
        """
        Initialize webhook handler.

        Args:
            webhook_secret: Secret configured for the webhook endpoint
        """
        if not webhook_secret:
            raise ValueError("Webhook secret is required")
        self.webhook_secret = webhook_secret
        self.event_handlers: Dict[str, EventHandler] = {}

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Event type (e.g., 'payout.processed')
            handler: Async callable receiving the parsed GatewayEvent
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def sign(self, payload: bytes) -> str:
        """Hex HMAC-SHA256 of the payload under the webhook secret."""
        return hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()

    def verify_signature(self, payload: bytes, signature: str) -> None:
        """
        Verify the X-Razorpay-Signature header.

        Raises:
            WebhookError: If the signature does not match
        """
        if not signature or not hmac.compare_digest(self.sign(payload), signature):
            logger.error("webhook_signature_verification_failed")
            raise WebhookError("Invalid webhook signature")

    @staticmethod
    def parse_event(payload: bytes) -> GatewayEvent:
        """
        Parse a payout webhook body.

        Raises:
            WebhookError: If the body is not a payout event
        """
        try:
            body = json.loads(payload)
            event_type = body["event"]
            entity = body["payload"]["payout"]["entity"]
            status_details = entity.get("status_details") or {}
            return GatewayEvent(
                event_id=body.get("id"),
                event_type=event_type,
                payout_id=entity["id"],
                status=entity.get("status"),
                reference=entity.get("utr"),
                failure_reason=entity.get("failure_reason") or status_details.get("description"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # pydantic's ValidationError is a ValueError
            raise WebhookError(f"Malformed webhook body: {e}") from e

    async def handle(self, payload: bytes, signature: str) -> Optional[Any]:
        """
        Verify, parse and route one delivery.

        Returns:
            The registered handler's result, or None for unhandled event types
        """
        self.verify_signature(payload, signature)
        event = self.parse_event(payload)

        handler = self.event_handlers.get(event.event_type)
        if handler is None:
            logger.info("webhook_event_ignored", event_type=event.event_type)
            return None

        logger.info(
            "webhook_event_received",
            event_id=event.event_id,
            event_type=event.event_type,
            payout_id=event.payout_id,
        )
        return await handler(event)


def register_payout_handlers(handler: WebhookHandler, orchestrator: "PayoutOrchestrator") -> None:
    """Route every payout event type to the orchestrator."""
    for event_type in PAYOUT_EVENTS:
        handler.register_handler(event_type, orchestrator.apply_gateway_event)
