"""External integrations for payouts."""
from .gateway import (
    GatewayAmbiguousError,
    GatewayError,
    GatewayErrorType,
    PayoutGateway,
    PayoutResult,
)
from .razorpayx_client import RazorpayXClient
from .webhook_handler import GatewayEvent, WebhookError, WebhookHandler, register_payout_handlers

__all__ = [
    "GatewayAmbiguousError",
    "GatewayError",
    "GatewayErrorType",
    "GatewayEvent",
    "PayoutGateway",
    "PayoutResult",
    "RazorpayXClient",
    "WebhookError",
    "WebhookHandler",
    "register_payout_handlers",
]
