"""Payment provider webhook ingestion."""

from vouchfor.webhooks.events import (
    CHARGE_REFUNDED,
    PAYMENT_SUCCEEDED,
    PaymentSucceeded,
    Refunded,
    parse_event,
    verify_signature,
)
from vouchfor.webhooks.gateway import IngestResult, WebhookGateway, generate_idempotency_key

__all__ = [
    "CHARGE_REFUNDED",
    "PAYMENT_SUCCEEDED",
    "IngestResult",
    "PaymentSucceeded",
    "Refunded",
    "WebhookGateway",
    "generate_idempotency_key",
    "parse_event",
    "verify_signature",
]
