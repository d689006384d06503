"""Canonical payment events parsed from Stripe webhook payloads.

Nothing downstream of this module sees provider-shaped dictionaries.
"""

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

import stripe
from pydantic import BaseModel, Field

from vouchfor.ledger.exceptions import InvalidEventError, InvalidSignatureError, MissingVendorIdError
from vouchfor.utils import from_unix

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
CHARGE_REFUNDED = "charge.refunded"

# Currencies Stripe already expresses in whole units
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


class PaymentSucceeded(BaseModel):
    """A completed payment for a vendor."""
    kind: Literal["payment_succeeded"] = "payment_succeeded"
    event_id: str | None = None
    transaction_id: str
    vendor_id: str
    amount: Decimal
    currency: str
    occurred_at: datetime  # provider event time, naive UTC
    receipt_email: str | None = None
    customer: str | None = None
    payment_method: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Refunded(BaseModel):
    """A refunded payment, identified by its payment intent."""
    kind: Literal["refunded"] = "refunded"
    event_id: str | None = None
    transaction_id: str


PaymentEvent = PaymentSucceeded | Refunded


def minor_to_major(amount: int, currency: str) -> Decimal:
    """Convert provider minor units (cents) to a decimal amount."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return Decimal(amount) / Decimal(100)


def verify_signature(payload: bytes, sig_header: str, secret: str, tolerance: int = 300) -> None:
    """Verify a Stripe-Signature header against the raw body.

    Raises:
        InvalidSignatureError: Missing, malformed or non-matching signature
    """
    if not sig_header:
        raise InvalidSignatureError("Missing Stripe-Signature header")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), sig_header, secret, tolerance
        )
    except UnicodeDecodeError as e:
        raise InvalidSignatureError("Webhook body is not valid UTF-8") from e
    except stripe.SignatureVerificationError as e:
        raise InvalidSignatureError(f"Invalid webhook signature: {e}") from e


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Mapping):
        # Expanded objects carry their id
        value = value.get("id")
    return str(value) if value is not None else None


def parse_event(raw: Any) -> PaymentEvent | None:
    """Turn a webhook body into a canonical event.

    Returns:
        The event, or None for event types the ledger does not handle

    Raises:
        InvalidEventError: Recognized type with missing or malformed fields
        MissingVendorIdError: Payment without metadata.vendor_id
    """
    if not isinstance(raw, Mapping):
        raise InvalidEventError("Webhook body must be a JSON object")

    event_type = raw.get("type")
    if event_type not in (PAYMENT_SUCCEEDED, CHARGE_REFUNDED):
        return None

    data = raw.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        raise InvalidEventError(f"{event_type} event without data.object")

    event_id = _optional_str(raw.get("id"))

    if event_type == CHARGE_REFUNDED:
        transaction_id = _optional_str(obj.get("payment_intent"))
        if not transaction_id:
            raise InvalidEventError("charge.refunded event without payment_intent")
        return Refunded(event_id=event_id, transaction_id=transaction_id)

    transaction_id = obj.get("id")
    if not transaction_id or not isinstance(transaction_id, str):
        raise InvalidEventError("payment_intent.succeeded event without id")

    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        raise InvalidEventError("metadata must be an object")
    vendor_id = metadata.get("vendor_id")
    if not vendor_id:
        raise MissingVendorIdError(transaction_id)

    amount = obj.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise InvalidEventError(f"Invalid amount for {transaction_id}: {amount!r}")

    currency = obj.get("currency")
    if not isinstance(currency, str) or not currency:
        raise InvalidEventError(f"Missing currency for {transaction_id}")
    currency = currency.upper()

    created = obj.get("created")
    if isinstance(created, bool) or not isinstance(created, (int, float)):
        raise InvalidEventError(f"Missing created timestamp for {transaction_id}")

    return PaymentSucceeded(
        event_id=event_id,
        transaction_id=transaction_id,
        vendor_id=str(vendor_id),
        amount=minor_to_major(amount, currency),
        currency=currency,
        occurred_at=from_unix(created),
        receipt_email=_optional_str(obj.get("receipt_email")),
        customer=_optional_str(obj.get("customer")),
        payment_method=_optional_str(obj.get("payment_method")),
        metadata=dict(metadata),
    )
